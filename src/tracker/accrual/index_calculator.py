"""Index-based interest accrual from scaled-balance snapshots.

Converts a user's balance history for one reserve into per-day interest using
exact integer ray arithmetic:

  capital moved   = (scaled[i] - scaled[i-1]) * index[i] // RAY
  period interest = scaled[i-1] * (index[i] - index[i-1]) // RAY   (never < 0)

CRITICAL: every amount here is an int. No float, no Decimal, no rounding other
than floor division by RAY.
"""

from dataclasses import replace

from tracker.accrual.days import date_key
from tracker.logging import get_logger
from tracker.models import (
    RAY,
    AccrualResult,
    AccrualSummary,
    BalanceKind,
    BalanceSnapshot,
    DailyDetail,
    DetailSource,
    TransactionType,
)

logger = get_logger(__name__)


def movement_types(kind: BalanceKind) -> tuple[TransactionType, TransactionType]:
    """Return the (increase, decrease) transaction types for a balance kind."""
    if kind is BalanceKind.DEBT:
        return TransactionType.BORROW, TransactionType.REPAY
    return TransactionType.DEPOSIT, TransactionType.WITHDRAW


def dedup_by_day(snapshots: list[BalanceSnapshot]) -> list[BalanceSnapshot]:
    """Keep only the last snapshot of each UTC day, ordered by timestamp.

    Snapshots are re-sorted first; the source does not guarantee ordering.
    Ties on timestamp keep their input order, so the later-listed one wins.
    """
    by_day: dict[str, BalanceSnapshot] = {}
    for snapshot in sorted(snapshots, key=lambda s: s.timestamp):
        by_day[date_key(snapshot.timestamp)] = snapshot
    return sorted(by_day.values(), key=lambda s: s.timestamp)


def calculate_index_accrual(
    snapshots: list[BalanceSnapshot],
    kind: BalanceKind,
    reserve_symbol: str | None = None,
) -> AccrualResult:
    """Compute the daily interest series for one reserve and one balance kind.

    Args:
        snapshots: Balance history items, in any order.
        kind: DEBT for variable-debt tokens, SUPPLY for aTokens.
        reserve_symbol: When given, snapshots for other reserves are ignored.

    Returns:
        AccrualResult with one DailyDetail per retained day. The first day
        carries no interest and no capital movement. Empty input yields an
        empty, zero-valued result.
    """
    if reserve_symbol is not None:
        snapshots = [s for s in snapshots if s.reserve_symbol == reserve_symbol]

    if not snapshots:
        return AccrualResult.empty(kind)

    daily = dedup_by_day(snapshots)
    increase_type, decrease_type = movement_types(kind)

    details: list[DailyDetail] = []
    total_interest = 0
    total_in = 0
    total_out = 0

    previous: BalanceSnapshot | None = None
    for snapshot in daily:
        period_interest = 0
        tx_amount: int | None = None
        tx_type: TransactionType | None = None

        if previous is not None:
            delta_scaled = snapshot.scaled_balance - previous.scaled_balance
            if delta_scaled > 0:
                tx_amount = delta_scaled * snapshot.index // RAY
                tx_type = increase_type
                total_in += tx_amount
            elif delta_scaled < 0:
                tx_amount = -delta_scaled * snapshot.index // RAY
                tx_type = decrease_type
                total_out += tx_amount

            index_delta = snapshot.index - previous.index
            if index_delta < 0:
                logger.warning(
                    "index_moved_backward",
                    reserve=snapshot.reserve_symbol,
                    kind=kind.value,
                    timestamp=snapshot.timestamp,
                    previous_index=str(previous.index),
                    index=str(snapshot.index),
                )
            else:
                period_interest = previous.scaled_balance * index_delta // RAY

        total_interest += period_interest
        details.append(
            DailyDetail(
                kind=kind,
                date=date_key(snapshot.timestamp),
                timestamp=snapshot.timestamp,
                amount=snapshot.current_balance,
                period_interest=period_interest,
                total_interest=total_interest,
                transaction_amount=tx_amount,
                transaction_type=tx_type,
                source=DetailSource.HISTORY,
            )
        )
        previous = snapshot

    summary = AccrualSummary(
        kind=kind,
        total_in=total_in,
        total_out=total_out,
        current_amount=daily[-1].current_balance,
        total_interest=total_interest,
    )
    return AccrualResult(kind=kind, details=details, summary=summary)


def apply_live_balance(result: AccrualResult, live_balance: int, now: int) -> AccrualResult:
    """Append the synthetic "today" point computed from a live balanceOf read.

    Interest since the last indexed snapshot is the balance increase minus the
    capital already recorded on the last row, clamped at zero. Results with
    no history are returned unchanged.
    """
    if not result.details:
        return result

    last = result.details[-1]
    total_increase = max(0, live_balance - last.amount)
    capital_moved = last.transaction_amount or 0
    period_interest = max(0, total_increase - capital_moved)
    total_interest = last.total_interest + period_interest

    today = DailyDetail(
        kind=result.kind,
        date=date_key(now),
        timestamp=now,
        amount=live_balance,
        period_interest=period_interest,
        total_interest=total_interest,
        source=DetailSource.LIVE_BALANCE,
    )

    summary = result.summary or AccrualSummary(kind=result.kind)
    summary = replace(summary, current_amount=live_balance, total_interest=total_interest)

    logger.debug(
        "live_balance_point_added",
        kind=result.kind.value,
        live_balance=str(live_balance),
        period_interest=str(period_interest),
    )
    return AccrualResult(kind=result.kind, details=[*result.details, today], summary=summary)
