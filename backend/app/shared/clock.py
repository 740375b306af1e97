"""
Time helpers.

All instants are stored and compared as naive UTC datetimes, which is
what SQLite hands back for DateTime columns.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_timestamp(ts: int | float) -> datetime:
    """Convert a Unix timestamp to naive UTC."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)
