"""
Centralized datetime utilities for Signal Copilot.

All timestamps are stored as naive UTC so that SQLite (tests) and
PostgreSQL (production) compare them the same way.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to naive UTC.

    Aware datetimes are converted to UTC first; naive ones are assumed
    to already be UTC.

    Examples:
        >>> to_naive_utc(datetime(2025, 1, 1, 9, tzinfo=timezone(timedelta(hours=-5))))
        datetime.datetime(2025, 1, 1, 14, 0)
    """
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def utc_day_bounds(moment: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Return [start, end) of the UTC calendar day containing ``moment``."""
    moment = to_naive_utc(moment) or utcnow()
    start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)
