"""Shared data models for the interest tracker.

CRITICAL: All token amounts are integers in base units (wei for WXDAI, 1e-6 for USDC).
Rates are Decimal. Never use float for amounts, indices or rates.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

RAY = 10**27


class TransactionType(str, Enum):
    """Closed set of reconciled transaction kinds.

    OTHERS is the visible "unclassified" variant for transfers whose
    function label is not in the classification table.
    """

    BORROW = "borrow"
    REPAY = "repay"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    DISPERSE = "disperse"
    OTHERS = "others"


class Direction(str, Enum):
    """Token movement relative to the subject address."""

    IN = "in"
    OUT = "out"


class BalanceKind(str, Enum):
    """The two balance kinds tracked per reserve."""

    DEBT = "debt"
    SUPPLY = "supply"


class DetailSource(str, Enum):
    """Where a DailyDetail row came from."""

    HISTORY = "history"
    LIVE_BALANCE = "today-point-from-live-balance"


class ProtocolVersion(str, Enum):
    """RMM protocol deployment."""

    V2 = "V2"
    V3 = "V3"


@dataclass(frozen=True)
class BalanceSnapshot:
    """One compounding-index observation for one reserve at one point in time.

    current_balance ~= scaled_balance * index / RAY at the moment of observation.
    """

    timestamp: int
    current_balance: int
    scaled_balance: int
    index: int  # ray-scaled
    reserve_symbol: str


@dataclass(frozen=True)
class RateSnapshot:
    """One reserve's average annualised rates for one UTC day."""

    date: str  # YYYYMMDD
    timestamp: int
    liquidity_rate_avg: Decimal
    variable_borrow_rate_avg: Decimal
    utilization_rate_avg: Decimal | None = None


@dataclass(frozen=True)
class RawTransfer:
    """A single token movement as reported by one transfer source.

    Not unique across sources, and one on-chain transaction may produce
    several transfers sharing a hash (e.g. a disperse call).
    """

    hash: str
    from_address: str
    to_address: str
    value: int
    timestamp: int
    token_contract_address: str
    function_selector_label: str | None = None
    block_number: int | None = None
    source: str = ""


@dataclass(frozen=True)
class ProtocolEvent:
    """A borrow/repay/supply/withdraw event read from the protocol's own event log.

    reserve_id and reserve_symbol identify the market; the reconciler maps
    them back to a configured token.
    """

    hash: str
    type: TransactionType
    amount: int
    timestamp: int
    reserve_id: str
    reserve_symbol: str | None
    version: ProtocolVersion


@dataclass(frozen=True)
class Transaction:
    """Reconciled, typed transaction consumed by the calculators."""

    hash: str
    amount: int
    timestamp: int
    type: TransactionType
    token: str
    version: ProtocolVersion
    direction: Direction

    def to_dict(self) -> dict:
        return {
            "txHash": self.hash,
            "amount": str(self.amount),
            "timestamp": self.timestamp,
            "type": self.type.value,
            "token": self.token,
            "version": self.version.value,
            "direction": self.direction.value,
        }


@dataclass(frozen=True)
class DailyDetail:
    """One calculator output row.

    amount is the running debt or supply position after the period's
    activity and interest. Rate-based rows also carry daily_rate and apr.
    """

    kind: BalanceKind
    date: str
    timestamp: int
    amount: int
    period_interest: int
    total_interest: int
    transaction_amount: int | None = None
    transaction_type: TransactionType | None = None
    source: DetailSource = DetailSource.HISTORY
    daily_rate: Decimal | None = None
    apr: Decimal | None = None

    def to_dict(self) -> dict:
        data = {
            "date": self.date,
            "timestamp": self.timestamp,
            self.kind.value: str(self.amount),
            "periodInterest": str(self.period_interest),
            "totalInterest": str(self.total_interest),
            "transactionAmount": (
                str(self.transaction_amount) if self.transaction_amount is not None else None
            ),
            "transactionType": (
                self.transaction_type.value if self.transaction_type is not None else None
            ),
            "source": self.source.value,
        }
        if self.daily_rate is not None:
            data["dailyRate"] = str(self.daily_rate)
        if self.apr is not None:
            data["apr"] = str(self.apr)
        return data


@dataclass(frozen=True)
class AccrualSummary:
    """Totals for one token/kind computation.

    total_in is borrows (debt) or deposits (supply); total_out is repays or withdrawals.
    """

    kind: BalanceKind
    total_in: int = 0
    total_out: int = 0
    current_amount: int = 0
    total_interest: int = 0

    def to_dict(self) -> dict:
        if self.kind is BalanceKind.DEBT:
            keys = ("totalBorrows", "totalRepays", "currentDebt")
        else:
            keys = ("totalSupplies", "totalWithdraws", "currentSupply")
        return {
            keys[0]: str(self.total_in),
            keys[1]: str(self.total_out),
            keys[2]: str(self.current_amount),
            "totalInterest": str(self.total_interest),
        }


@dataclass(frozen=True)
class AccrualResult:
    """Ordered DailyDetail series plus totals."""

    kind: BalanceKind
    details: list[DailyDetail] = field(default_factory=list)
    summary: AccrualSummary | None = None

    @property
    def total_interest(self) -> int:
        return self.summary.total_interest if self.summary is not None else 0

    @classmethod
    def empty(cls, kind: BalanceKind) -> "AccrualResult":
        return cls(kind=kind, details=[], summary=AccrualSummary(kind=kind))

    def to_dict(self) -> dict:
        summary = self.summary or AccrualSummary(kind=self.kind)
        return {
            "totalInterest": str(self.total_interest),
            "dailyDetails": [d.to_dict() for d in self.details],
            "summary": summary.to_dict(),
        }


@dataclass(frozen=True)
class StatementEntry:
    """A transaction attached to a statement date."""

    type: TransactionType
    amount: int


@dataclass(frozen=True)
class DailyStatement:
    """Per-date merge of a debt series and a supply series for one token."""

    date: str
    timestamp: int
    debt: int = 0
    supply: int = 0
    borrow_interest: int = 0
    supply_interest: int = 0
    transactions: tuple[StatementEntry, ...] = ()

    @property
    def total_interest(self) -> int:
        return self.borrow_interest + self.supply_interest

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "timestamp": self.timestamp,
            "debt": str(self.debt),
            "supply": str(self.supply),
            "borrowInterest": str(self.borrow_interest),
            "supplyInterest": str(self.supply_interest),
            "totalInterest": str(self.total_interest),
            "transactions": [
                {"type": e.type.value, "amount": str(e.amount)} for e in self.transactions
            ],
        }
