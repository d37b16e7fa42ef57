"""Multi-source transaction reconciler.

Merges transfer records from a primary and a secondary transfer source into
one deduplicated, typed, chronologically ordered ledger per token.

Per token the primary source is asked first; only when it fails for that
token is the secondary asked. A source failure never aborts the run: it is
logged and recorded as a failed SourceResult. TotalSourceFailure is raised
only when no source answered for any token.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum

from tracker.config import TokenConfig
from tracker.exceptions import SourceUnavailable, TotalSourceFailure
from tracker.logging import get_logger
from tracker.models import (
    Direction,
    ProtocolEvent,
    ProtocolVersion,
    RawTransfer,
    Transaction,
    TransactionType,
)
from tracker.reconcile.classifier import (
    classify,
    direction_matches,
    direction_of,
    is_mint_or_burn,
)
from tracker.sources.base import TransferSource

logger = get_logger(__name__)

# Underlying token flow relative to the user for each protocol event
EVENT_DIRECTIONS: dict[TransactionType, Direction] = {
    TransactionType.BORROW: Direction.IN,
    TransactionType.WITHDRAW: Direction.IN,
    TransactionType.DEPOSIT: Direction.OUT,
    TransactionType.REPAY: Direction.OUT,
}


class SourceStatus(str, Enum):
    """Outcome of one source query for one token."""

    OK = "ok"
    EMPTY = "empty"
    FAILED = "failed"


@dataclass(frozen=True)
class SourceResult:
    source: str
    token: str
    status: SourceStatus
    count: int = 0
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "token": self.token,
            "status": self.status.value,
            "count": self.count,
            "error": self.error,
        }


@dataclass
class ReconciledTransactions:
    """One token's transactions split by bucket, plus which sources answered."""

    token: str
    supplies: list[Transaction] = field(default_factory=list)
    withdraws: list[Transaction] = field(default_factory=list)
    borrows: list[Transaction] = field(default_factory=list)
    repays: list[Transaction] = field(default_factory=list)
    source_results: list[SourceResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.supplies) + len(self.withdraws) + len(self.borrows) + len(self.repays)

    @property
    def transactions(self) -> list[Transaction]:
        """Every bucketed transaction ordered by timestamp."""
        return sort_transactions([*self.supplies, *self.withdraws, *self.borrows, *self.repays])

    @property
    def answered(self) -> bool:
        """True when at least one source returned a (possibly empty) answer."""
        return any(r.status is not SourceStatus.FAILED for r in self.source_results)

    @property
    def degraded(self) -> list[SourceResult]:
        return [r for r in self.source_results if r.status is SourceStatus.FAILED]


# ──────────────────────────────────────────────
# Pure helpers
# ──────────────────────────────────────────────


def sort_transactions(transactions: list[Transaction]) -> list[Transaction]:
    return sorted(transactions, key=lambda t: (t.timestamp, t.hash, t.type.value))


def dedup_legs(transactions: list[Transaction]) -> list[Transaction]:
    """Collapse multi-leg transactions: one leg per hash for DISPERSE, every leg otherwise.

    A disperse call pays many recipients in one transaction; only one leg
    concerns the subject. Idempotent.
    """
    seen_disperse: set[tuple[str, str, ProtocolVersion]] = set()
    kept: list[Transaction] = []
    for tx in transactions:
        if tx.type is TransactionType.DISPERSE:
            key = (tx.hash, tx.token, tx.version)
            if key in seen_disperse:
                continue
            seen_disperse.add(key)
        kept.append(tx)
    return kept


def bucket_transactions(
    token: str,
    transactions: list[Transaction],
    source_results: list[SourceResult] | None = None,
) -> ReconciledTransactions:
    """Sort transactions into supplies/withdraws/borrows/repays.

    Disperse and unclassified transfers follow their direction: received
    counts as a supply, sent as a withdrawal.
    """
    result = ReconciledTransactions(token=token, source_results=list(source_results or []))
    for tx in sort_transactions(transactions):
        if tx.type is TransactionType.BORROW:
            result.borrows.append(tx)
        elif tx.type is TransactionType.REPAY:
            result.repays.append(tx)
        elif tx.type is TransactionType.DEPOSIT:
            result.supplies.append(tx)
        elif tx.type is TransactionType.WITHDRAW:
            result.withdraws.append(tx)
        elif tx.direction is Direction.IN:
            result.supplies.append(tx)
        else:
            result.withdraws.append(tx)
    return result


def to_transactions(
    transfers: list[RawTransfer],
    subject: str,
    token: str,
    version: ProtocolVersion,
    exclude_hashes: set[str] | frozenset[str] = frozenset(),
) -> list[Transaction]:
    """Turn raw transfers into typed transactions for the subject address.

    Drops transfers whose hash is already known, mint/burn legs, legs the
    subject is not part of, and labelled legs moving against their call
    (e.g. a supply leg leaving the subject), then applies the multi-leg rule.
    """
    subject_lower = subject.lower()
    transactions: list[Transaction] = []
    for transfer in transfers:
        if transfer.hash.lower() in exclude_hashes:
            continue
        if is_mint_or_burn(transfer):
            continue
        if subject_lower not in (transfer.from_address.lower(), transfer.to_address.lower()):
            continue
        tx_type = classify(transfer.function_selector_label)
        direction = direction_of(transfer, subject)
        if not direction_matches(tx_type, direction):
            logger.debug(
                "transfer_direction_mismatch",
                tx_hash=transfer.hash.lower(),
                type=tx_type.value,
                direction=direction.value,
            )
            continue
        transactions.append(
            Transaction(
                hash=transfer.hash.lower(),
                amount=transfer.value,
                timestamp=transfer.timestamp,
                type=tx_type,
                token=token,
                version=version,
                direction=direction,
            )
        )
    return dedup_legs(sort_transactions(transactions))


def merge_transactions(
    cached: list[Transaction],
    fresh: list[Transaction],
) -> list[Transaction]:
    """Merge cached and freshly reconciled transactions.

    Exact duplicates (same hash, type, token, version, amount and timestamp)
    collapse to one; the multi-leg rule is then re-applied.
    """
    seen: set[tuple] = set()
    merged: list[Transaction] = []
    for tx in [*cached, *fresh]:
        key = (tx.hash.lower(), tx.type, tx.token, tx.version, tx.amount, tx.timestamp)
        if key in seen:
            continue
        seen.add(key)
        merged.append(tx)
    return dedup_legs(sort_transactions(merged))


def _token_for_event(event: ProtocolEvent, tokens: tuple[TokenConfig, ...]) -> TokenConfig | None:
    for token in tokens:
        if event.reserve_id == token.reserve_id.lower():
            return token
        if event.reserve_symbol and event.reserve_symbol == token.reserve_symbols.get(event.version):
            return token
    return None


def from_protocol_events(
    events: list[ProtocolEvent],
    tokens: tuple[TokenConfig, ...],
) -> list[Transaction]:
    """Convert protocol event log entries into transactions for the configured tokens.

    Events on reserves that match no configured token are dropped.
    """
    transactions: list[Transaction] = []
    for event in events:
        token = _token_for_event(event, tokens)
        if token is None:
            logger.debug(
                "protocol_event_unknown_reserve",
                reserve_id=event.reserve_id,
                reserve_symbol=event.reserve_symbol,
                tx_hash=event.hash,
            )
            continue
        transactions.append(
            Transaction(
                hash=event.hash,
                amount=event.amount,
                timestamp=event.timestamp,
                type=event.type,
                token=token.symbol,
                version=event.version,
                direction=EVENT_DIRECTIONS[event.type],
            )
        )
    return sort_transactions(transactions)


# ──────────────────────────────────────────────
# Reconciler
# ──────────────────────────────────────────────


class TransactionReconciler:
    """Fetches and reconciles supply-token transfers for every configured token.

    Tokens are queried concurrently; within one token the sources are asked
    in priority order. Each source client paces its own sequential calls.

    Usage:
        reconciler = TransactionReconciler(moralis, gnosisscan, tokens, ProtocolVersion.V3)
        per_token = await reconciler.reconcile(address, exclude_hashes=known)
    """

    def __init__(
        self,
        primary: TransferSource | None,
        secondary: TransferSource | None,
        tokens: tuple[TokenConfig, ...],
        version: ProtocolVersion = ProtocolVersion.V3,
    ) -> None:
        self._sources = [s for s in (primary, secondary) if s is not None]
        self._tokens = tuple(t for t in tokens if version in t.supply_addresses)
        self._version = version

    async def reconcile(
        self,
        address: str,
        exclude_hashes: set[str] | frozenset[str] = frozenset(),
    ) -> dict[str, ReconciledTransactions]:
        """Reconcile every token's transfers for address.

        Raises TotalSourceFailure when every source failed for every token.
        """
        if not self._tokens:
            return {}

        excluded = frozenset(h.lower() for h in exclude_hashes)
        results = await asyncio.gather(
            *(self._reconcile_token(address, token, excluded) for token in self._tokens)
        )
        by_token = {r.token: r for r in results}

        if not any(r.answered for r in results):
            raise TotalSourceFailure([t.symbol for t in self._tokens])

        logger.info(
            "transactions_reconciled",
            version=self._version.value,
            counts={symbol: r.total for symbol, r in by_token.items()},
            degraded=[f"{d.token}:{d.source}" for r in results for d in r.degraded],
        )
        return by_token

    async def _reconcile_token(
        self,
        address: str,
        token: TokenConfig,
        exclude_hashes: frozenset[str],
    ) -> ReconciledTransactions:
        contract = token.supply_addresses[self._version]
        source_results: list[SourceResult] = []
        transfers: list[RawTransfer] = []

        for source in self._sources:
            try:
                transfers = await source.get_transfers(address, contract)
            except SourceUnavailable as e:
                logger.warning(
                    "transfer_source_failed",
                    source=source.name,
                    token=token.symbol,
                    version=self._version.value,
                    error=str(e),
                )
                source_results.append(
                    SourceResult(source.name, token.symbol, SourceStatus.FAILED, error=str(e))
                )
                continue

            status = SourceStatus.OK if transfers else SourceStatus.EMPTY
            source_results.append(SourceResult(source.name, token.symbol, status, len(transfers)))
            break

        transactions = to_transactions(
            transfers, address, token.symbol, self._version, exclude_hashes
        )
        return bucket_transactions(token.symbol, transactions, source_results)
