"""Transaction reconciliation across transfer sources and the protocol event log."""

from tracker.reconcile.classifier import LABEL_TYPES, classify, direction_matches, direction_of
from tracker.reconcile.reconciler import (
    ReconciledTransactions,
    SourceResult,
    SourceStatus,
    TransactionReconciler,
    bucket_transactions,
    from_protocol_events,
    merge_transactions,
)

__all__ = [
    "LABEL_TYPES",
    "ReconciledTransactions",
    "SourceResult",
    "SourceStatus",
    "TransactionReconciler",
    "bucket_transactions",
    "classify",
    "direction_matches",
    "direction_of",
    "from_protocol_events",
    "merge_transactions",
]
