"""Persistent cache layer.

Provides SQLite database management and typed stores for reconciled
transactions and daily interest rates.
"""

from tracker.data.database import TrackerDatabase
from tracker.data.store import RateStore, TransactionCache

__all__ = [
    "RateStore",
    "TrackerDatabase",
    "TransactionCache",
]
