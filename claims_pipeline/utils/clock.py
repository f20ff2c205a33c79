"""
Clock helpers.

All persisted timestamps are timezone-aware UTC.
"""

from datetime import date, datetime, timezone


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def today() -> date:
    """Return the current calendar date (UTC)."""
    return utc_now().date()
