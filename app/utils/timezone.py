"""
UTC time utilities.

All timestamps are stored as naive UTC datetimes in the database and compared
against naive UTC "now". Token claims use POSIX timestamps.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Get the current time as a naive UTC datetime (database representation)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_timestamp(value) -> datetime:
    """Convert a POSIX timestamp claim to a naive UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
