"""UTC calendar-day helpers.

Day buckets always follow UTC midnight so results do not depend on the
host's time zone.
"""

from collections.abc import Iterator
from datetime import datetime, timezone

SECONDS_PER_DAY = 86_400


def date_key(timestamp: int) -> str:
    """Format a unix timestamp as its UTC day, YYYYMMDD."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y%m%d")


def day_start(timestamp: int) -> int:
    """Return the UTC midnight at or before timestamp."""
    return timestamp - timestamp % SECONDS_PER_DAY


def seconds_into_day(timestamp: int) -> int:
    return timestamp % SECONDS_PER_DAY


def date_key_to_timestamp(key: str) -> int:
    """Parse YYYYMMDD back to the UTC midnight timestamp of that day.

    Raises ValueError on a malformed key.
    """
    if len(key) != 8 or not key.isdigit():
        raise ValueError(f"Invalid date key: {key!r}")
    parsed = datetime.strptime(key, "%Y%m%d").replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


def iter_days(start: int, end: int) -> Iterator[int]:
    """Yield each UTC midnight from day_start(start) through the day containing end."""
    current = day_start(start)
    while current <= end:
        yield current
        current += SECONDS_PER_DAY
