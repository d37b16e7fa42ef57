"""Custom exceptions for the interest tracker.

Source, reconciliation and cache exceptions live here to avoid circular
imports between the sources, reconcile and data packages.
"""


class TrackerError(Exception):
    """Base exception for all tracker errors."""


class SourceUnavailable(TrackerError):
    """Raised when a single upstream source (transfers, history, rates, RPC) fails.

    Recovered locally: the failing source contributes no records.
    """

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class TotalSourceFailure(TrackerError):
    """Raised when every configured transfer source failed for every token.

    Means "unable to answer right now", never "the user has no activity".
    """

    def __init__(self, tokens: list[str]) -> None:
        super().__init__(
            "all transfer sources failed for tokens: " + ", ".join(sorted(tokens))
        )
        self.tokens = tokens


class MalformedRecord(TrackerError):
    """Raised when a raw record is missing or has unparseable required fields."""


class ComputationTimeout(TrackerError):
    """Raised when a per-address computation exceeds its time budget.

    Nothing from the aborted run is written to the cache.
    """


class CacheError(TrackerError):
    """Raised when the persistent transaction cache cannot be read or written."""
