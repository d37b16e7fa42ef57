"""Daily statement builder: merges a debt series and a supply series by date."""

from dataclasses import dataclass

from tracker.models import DailyDetail, DailyStatement, StatementEntry


@dataclass(frozen=True)
class StatementSummary:
    """Interest totals over a whole statement."""

    total_borrow_interest: int = 0
    total_supply_interest: int = 0

    @property
    def net_interest(self) -> int:
        """Supply interest earned minus borrow interest paid."""
        return self.total_supply_interest - self.total_borrow_interest

    def to_dict(self) -> dict:
        return {
            "totalBorrowInterest": str(self.total_borrow_interest),
            "totalSupplyInterest": str(self.total_supply_interest),
            "netInterest": str(self.net_interest),
        }


class _DayBucket:
    """Mutable accumulator for one date while the statement is assembled."""

    def __init__(self, date: str, timestamp: int) -> None:
        self.date = date
        self.timestamp = timestamp
        self.debt = 0
        self.supply = 0
        self.borrow_interest = 0
        self.supply_interest = 0
        self.entries: list[StatementEntry] = []

    def freeze(self) -> DailyStatement:
        return DailyStatement(
            date=self.date,
            timestamp=self.timestamp,
            debt=self.debt,
            supply=self.supply,
            borrow_interest=self.borrow_interest,
            supply_interest=self.supply_interest,
            transactions=tuple(self.entries),
        )


def _fold(buckets: dict[str, _DayBucket], details: list[DailyDetail], is_debt: bool) -> None:
    for detail in sorted(details, key=lambda d: d.timestamp):
        bucket = buckets.get(detail.date)
        if bucket is None:
            bucket = buckets[detail.date] = _DayBucket(detail.date, detail.timestamp)
        else:
            bucket.timestamp = min(bucket.timestamp, detail.timestamp)

        # A date can repeat (the live-balance point may fall on the last
        # history day): interest adds up, the position is the latest row's.
        if is_debt:
            bucket.debt = detail.amount
            bucket.borrow_interest += detail.period_interest
        else:
            bucket.supply = detail.amount
            bucket.supply_interest += detail.period_interest

        if detail.transaction_amount and detail.transaction_type is not None:
            bucket.entries.append(
                StatementEntry(type=detail.transaction_type, amount=detail.transaction_amount)
            )


def build_daily_statement(
    debt_details: list[DailyDetail],
    supply_details: list[DailyDetail],
) -> list[DailyStatement]:
    """Merge debt and supply series into one row per date, ordered by timestamp.

    A date missing from one series contributes zero position and zero
    interest for that side. Transaction entries are listed debt side first.
    """
    buckets: dict[str, _DayBucket] = {}
    _fold(buckets, debt_details, is_debt=True)
    _fold(buckets, supply_details, is_debt=False)
    return [b.freeze() for b in sorted(buckets.values(), key=lambda b: (b.timestamp, b.date))]


def summarize_statement(statement: list[DailyStatement]) -> StatementSummary:
    return StatementSummary(
        total_borrow_interest=sum(row.borrow_interest for row in statement),
        total_supply_interest=sum(row.supply_interest for row in statement),
    )
