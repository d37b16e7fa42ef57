"""Interest accrual -- index-based and rate-based calculators plus the daily statement."""

from tracker.accrual.index_calculator import apply_live_balance, calculate_index_accrual
from tracker.accrual.rate_calculator import calculate_rate_accrual
from tracker.accrual.statement import StatementSummary, build_daily_statement, summarize_statement

__all__ = [
    "StatementSummary",
    "apply_live_balance",
    "build_daily_statement",
    "calculate_index_accrual",
    "calculate_rate_accrual",
    "summarize_statement",
]
