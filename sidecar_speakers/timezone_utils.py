"""UTC timestamp helpers for speaker records.

All timestamps are timezone-aware UTC datetimes in memory and ISO 8601
strings with microseconds and an explicit ``+00:00`` offset in the
registry snapshot. Conversion to local time is left to the caller.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc_string(dt: datetime) -> str:
    """Format a datetime for the snapshot.

    Naive datetimes are taken to be UTC already.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_utc_timestamp(timestamp_str: Optional[str]) -> Optional[datetime]:
    """Parse a snapshot timestamp back into an aware UTC datetime.

    Accepts any ``datetime.fromisoformat`` input; strings without an
    offset are read as UTC.

    Raises:
        ValueError: If the string is not an ISO 8601 timestamp.
    """
    if timestamp_str is None:
        return None

    dt = datetime.fromisoformat(timestamp_str)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
