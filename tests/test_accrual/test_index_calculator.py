"""Tests for the index-based accrual calculator.

Tests verify:
- Single-period interest from an index diff, floored
- First point carries no interest and no capital movement
- Capital movements classified from scaled-balance deltas
- Period interest never negative, even on a backward index
- Deposits minus withdrawals match the scaled delta valued at each index
- Same-day snapshots collapse to the last one
- Live-balance "today" point and its clamp
"""

from fractions import Fraction

from tracker.accrual.index_calculator import (
    apply_live_balance,
    calculate_index_accrual,
    dedup_by_day,
)
from tracker.models import RAY, AccrualResult, BalanceKind, BalanceSnapshot, DetailSource, TransactionType

DAY1 = 1_704_067_200  # 2024-01-01 00:00:00 UTC
DAY = 86_400


def _snap(ts: int, scaled: int, index: int, current: int | None = None, symbol: str = "WXDAI") -> BalanceSnapshot:
    if current is None:
        current = scaled * index // RAY
    return BalanceSnapshot(
        timestamp=ts,
        current_balance=current,
        scaled_balance=scaled,
        index=index,
        reserve_symbol=symbol,
    )


class TestCalculateIndexAccrual:
    """Tests for calculate_index_accrual."""

    def test_two_day_scenario(self) -> None:
        """index 1.000 -> 1.001 on 1000 scaled: day-2 interest is exactly 1."""
        snapshots = [
            _snap(DAY1, 1000, RAY, current=1000),
            _snap(DAY1 + DAY, 1000, RAY * 1001 // 1000, current=1000),
        ]
        result = calculate_index_accrual(snapshots, BalanceKind.DEBT)

        assert [d.period_interest for d in result.details] == [0, 1]
        assert result.details[1].total_interest == 1
        assert result.details[1].amount == 1000
        assert result.total_interest == 1

    def test_first_point_has_no_interest_or_transaction(self) -> None:
        """The first retained snapshot seeds the series."""
        result = calculate_index_accrual([_snap(DAY1, 500, RAY)], BalanceKind.SUPPLY)

        first = result.details[0]
        assert first.period_interest == 0
        assert first.transaction_amount is None
        assert first.transaction_type is None
        assert first.amount == 500
        assert first.source is DetailSource.HISTORY

    def test_empty_input_returns_zero_result(self) -> None:
        """No snapshots is not an error."""
        result = calculate_index_accrual([], BalanceKind.DEBT)

        assert result.details == []
        assert result.total_interest == 0
        assert result.summary is not None
        assert result.summary.current_amount == 0

    def test_borrow_and_repay_classified(self) -> None:
        """Scaled increase is a borrow, decrease a repay, valued at the new index."""
        index2 = RAY * 11 // 10
        snapshots = [
            _snap(DAY1, 1000, RAY),
            _snap(DAY1 + DAY, 1500, index2),
            _snap(DAY1 + 2 * DAY, 1200, index2),
        ]
        result = calculate_index_accrual(snapshots, BalanceKind.DEBT)

        assert result.details[1].transaction_type is TransactionType.BORROW
        assert result.details[1].transaction_amount == 550
        assert result.details[2].transaction_type is TransactionType.REPAY
        assert result.details[2].transaction_amount == 330
        assert result.summary.total_in == 550
        assert result.summary.total_out == 330

    def test_supply_kind_uses_deposit_and_withdraw(self) -> None:
        snapshots = [_snap(DAY1, 1000, RAY), _snap(DAY1 + DAY, 900, RAY)]
        result = calculate_index_accrual(snapshots, BalanceKind.SUPPLY)

        assert result.details[1].transaction_type is TransactionType.WITHDRAW
        assert result.summary.to_dict()["totalWithdraws"] == "100"

    def test_backward_index_yields_zero_interest(self) -> None:
        """A provider glitch moving the index backward never produces negative interest."""
        snapshots = [
            _snap(DAY1, 10**18, RAY * 2),
            _snap(DAY1 + DAY, 10**18, RAY),
            _snap(DAY1 + 2 * DAY, 10**18, RAY * 3),
        ]
        result = calculate_index_accrual(snapshots, BalanceKind.SUPPLY)

        assert all(d.period_interest >= 0 for d in result.details)
        assert result.details[1].period_interest == 0
        assert result.details[2].period_interest == 2 * 10**18

    def test_unsorted_input_is_resorted(self) -> None:
        snapshots = [
            _snap(DAY1 + DAY, 1000, RAY * 1001 // 1000),
            _snap(DAY1, 1000, RAY),
        ]
        result = calculate_index_accrual(snapshots, BalanceKind.DEBT)

        assert [d.timestamp for d in result.details] == [DAY1, DAY1 + DAY]
        assert result.total_interest == 1

    def test_capital_movement_conservation(self) -> None:
        """Σ deposits − Σ withdrawals matches Σ Δscaled * index within one unit per period."""
        indices = [RAY, RAY * 1003 // 1000, RAY * 1007 // 1000, RAY * 1011 // 1000, RAY * 1020 // 1000]
        scaled = [10**18, 3 * 10**18, 2 * 10**18 + 12345, 2 * 10**18 + 12345, 7 * 10**17]
        snapshots = [_snap(DAY1 + i * DAY, scaled[i], indices[i]) for i in range(len(indices))]

        result = calculate_index_accrual(snapshots, BalanceKind.SUPPLY)

        expected = sum(
            Fraction((scaled[i] - scaled[i - 1]) * indices[i], RAY) for i in range(1, len(indices))
        )
        net = result.summary.total_in - result.summary.total_out
        assert abs(net - expected) <= len(indices) - 1

    def test_reserve_filter(self) -> None:
        """Snapshots for other reserves are ignored when a reserve is requested."""
        snapshots = [
            _snap(DAY1, 1000, RAY, symbol="rmmWXDAI"),
            _snap(DAY1, 9999, RAY, symbol="USDC"),
        ]
        result = calculate_index_accrual(snapshots, BalanceKind.SUPPLY, reserve_symbol="rmmWXDAI")

        assert len(result.details) == 1
        assert result.details[0].amount == 1000


class TestDedupByDay:
    """Tests for dedup_by_day."""

    def test_keeps_last_snapshot_per_day(self) -> None:
        morning = _snap(DAY1 + 3600, 100, RAY)
        evening = _snap(DAY1 + 20 * 3600, 200, RAY)
        next_day = _snap(DAY1 + DAY, 300, RAY)

        result = dedup_by_day([evening, next_day, morning])

        assert result == [evening, next_day]


class TestApplyLiveBalance:
    """Tests for the synthetic today point."""

    def _base(self) -> AccrualResult:
        return calculate_index_accrual(
            [_snap(DAY1, 1000, RAY, current=1000), _snap(DAY1 + DAY, 1000, RAY, current=1000)],
            BalanceKind.DEBT,
        )

    def test_appends_today_point(self) -> None:
        now = DAY1 + 5 * DAY + 100
        result = apply_live_balance(self._base(), 1012, now)

        today = result.details[-1]
        assert today.source is DetailSource.LIVE_BALANCE
        assert today.period_interest == 12
        assert today.total_interest == 12
        assert today.amount == 1012
        assert today.date == "20240106"
        assert today.transaction_amount is None
        assert result.summary.current_amount == 1012
        assert result.total_interest == 12

    def test_subtracts_last_recorded_transaction(self) -> None:
        """Capital already recorded on the last row is not counted as interest."""
        base = calculate_index_accrual(
            [_snap(DAY1, 1000, RAY), _snap(DAY1 + DAY, 1200, RAY)],
            BalanceKind.SUPPLY,
        )
        result = apply_live_balance(base, 1250, DAY1 + 2 * DAY)

        # increase 50 minus the 200 deposit already on the last row clamps to zero
        assert result.details[-1].period_interest == 0

    def test_balance_drop_clamps_to_zero(self) -> None:
        result = apply_live_balance(self._base(), 900, DAY1 + 3 * DAY)

        assert result.details[-1].period_interest == 0
        assert result.total_interest == 0
        assert result.summary.current_amount == 900

    def test_empty_result_unchanged(self) -> None:
        empty = AccrualResult.empty(BalanceKind.DEBT)
        assert apply_live_balance(empty, 1000, DAY1) is empty
