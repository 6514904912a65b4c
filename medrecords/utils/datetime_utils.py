"""
Date/time helpers.

All timestamps are stored and compared in UTC. Some backends (SQLite) hand
back naive datetimes, so every comparison goes through ``as_utc`` first.
"""

from datetime import datetime, timezone


def as_utc(dt: datetime) -> datetime:
    """Convert dt to tz-aware UTC, treating naive values as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
