"""
Helper Functions
================

Common utility functions used across the application.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Get current UTC datetime with timezone info."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes.

    SQLite hands back naive values for ``DateTime(timezone=True)``
    columns; everything stored by this service is UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """Half-open UTC interval ``[day 00:00, day+1 00:00)``."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)
