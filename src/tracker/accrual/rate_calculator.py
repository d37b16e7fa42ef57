"""Rate-snapshot interest accrual with intra-day precision.

Used when only daily average rates are available (no compounding index).
Walks UTC days from the midnight before the first transaction up to now:

- A day without transactions accrues running * (annual_rate / 365) once.
- A day with transactions accrues on the running amount for each elapsed
  fraction of the day before applying the transaction, then accrues the
  remainder of the day after the last one.
- The running amount starts at zero, so nothing accrues before the first
  transaction; the rest of its day accrues like any other.
- A day with no rate snapshot accrues nothing (never estimated).

Rates are Decimal; the weighted rate is converted to a ray-scaled integer so
interest amounts stay exact integers (floor).
"""

import time
from collections import defaultdict
from decimal import ROUND_FLOOR, Decimal, localcontext

from tracker.accrual.days import SECONDS_PER_DAY, date_key, day_start, iter_days, seconds_into_day
from tracker.logging import get_logger
from tracker.models import (
    RAY,
    AccrualResult,
    AccrualSummary,
    BalanceKind,
    DailyDetail,
    Direction,
    RateSnapshot,
    Transaction,
    TransactionType,
)

logger = get_logger(__name__)

DEFAULT_DAYS_PER_YEAR = 365


def capital_effect(tx: Transaction, kind: BalanceKind) -> int:
    """Return +1 if tx increases the position, -1 if it decreases it, 0 if unrelated.

    Supply positions also move on disperse and unclassified transfers,
    following the transfer direction.
    """
    if kind is BalanceKind.DEBT:
        if tx.type is TransactionType.BORROW:
            return 1
        if tx.type is TransactionType.REPAY:
            return -1
        return 0

    if tx.type is TransactionType.DEPOSIT:
        return 1
    if tx.type is TransactionType.WITHDRAW:
        return -1
    if tx.type in (TransactionType.DISPERSE, TransactionType.OTHERS):
        return 1 if tx.direction is Direction.IN else -1
    return 0


def accrue(amount: int, daily_rate: Decimal, elapsed_seconds: int) -> int:
    """Interest on amount for elapsed_seconds at daily_rate, floored to base units."""
    if amount <= 0 or elapsed_seconds <= 0 or daily_rate <= 0:
        return 0
    with localcontext() as ctx:
        ctx.prec = 60
        weighted = daily_rate * Decimal(elapsed_seconds) / Decimal(SECONDS_PER_DAY)
        rate_ray = int((weighted * RAY).to_integral_value(rounding=ROUND_FLOOR))
    return amount * rate_ray // RAY


def _annual_rate(snapshot: RateSnapshot | None, kind: BalanceKind) -> Decimal | None:
    if snapshot is None:
        return None
    if kind is BalanceKind.DEBT:
        return snapshot.variable_borrow_rate_avg
    return snapshot.liquidity_rate_avg


def calculate_rate_accrual(
    transactions: list[Transaction],
    rates: dict[str, RateSnapshot],
    kind: BalanceKind,
    now: int | None = None,
    days_per_year: int = DEFAULT_DAYS_PER_YEAR,
) -> AccrualResult:
    """Compute the daily interest series for one token from transactions and daily rates.

    Args:
        transactions: Reconciled transactions for one token; unrelated kinds are ignored.
        rates: RateSnapshots keyed by YYYYMMDD.
        kind: DEBT uses the variable borrow rate, SUPPLY the liquidity rate.
        now: End boundary (unix seconds). Defaults to the current time.
        days_per_year: Annual-to-daily divisor.

    Returns:
        AccrualResult with one DailyDetail per UTC day, each carrying the
        day's daily_rate and apr.
    """
    relevant = [
        tx
        for tx in sorted(transactions, key=lambda t: t.timestamp)
        if capital_effect(tx, kind) != 0
    ]
    if not relevant:
        return AccrualResult.empty(kind)

    end = int(time.time()) if now is None else now
    start = day_start(relevant[0].timestamp)

    by_day: dict[str, list[Transaction]] = defaultdict(list)
    for tx in relevant:
        by_day[date_key(tx.timestamp)].append(tx)

    divisor = Decimal(days_per_year)
    running = 0
    total_interest = 0
    total_in = 0
    total_out = 0
    details: list[DailyDetail] = []

    for day_ts in iter_days(start, end):
        key = date_key(day_ts)
        day_txs = by_day.get(key, [])
        annual = _annual_rate(rates.get(key), kind)
        daily_rate = annual / divisor if annual is not None else Decimal("0")

        day_interest = 0
        tx_amount: int | None = None
        tx_type: TransactionType | None = None

        if not day_txs:
            day_interest = accrue(running, daily_rate, SECONDS_PER_DAY)
            running += day_interest
        else:
            last_offset = 0
            for tx in day_txs:
                offset = seconds_into_day(tx.timestamp)
                interest = accrue(running, daily_rate, offset - last_offset)
                day_interest += interest
                running += interest

                if capital_effect(tx, kind) > 0:
                    running += tx.amount
                    total_in += tx.amount
                else:
                    total_out += tx.amount
                    running -= tx.amount
                    if running < 0:
                        logger.warning(
                            "negative_balance_clamped",
                            kind=kind.value,
                            token=tx.token,
                            tx_hash=tx.hash,
                            shortfall=str(-running),
                        )
                        running = 0

                tx_amount = tx.amount
                tx_type = tx.type
                last_offset = offset

            interest = accrue(running, daily_rate, SECONDS_PER_DAY - last_offset)
            day_interest += interest
            running += interest

        total_interest += day_interest
        details.append(
            DailyDetail(
                kind=kind,
                date=key,
                timestamp=day_ts,
                amount=running,
                period_interest=day_interest,
                total_interest=total_interest,
                transaction_amount=tx_amount,
                transaction_type=tx_type,
                daily_rate=daily_rate,
                apr=annual * 100 if annual is not None else Decimal("0"),
            )
        )

    missing = sum(1 for d in details if d.date not in rates)
    if missing:
        logger.info("rate_snapshots_missing", kind=kind.value, days=missing)

    summary = AccrualSummary(
        kind=kind,
        total_in=total_in,
        total_out=total_out,
        current_amount=running,
        total_interest=total_interest,
    )
    return AccrualResult(kind=kind, details=details, summary=summary)
