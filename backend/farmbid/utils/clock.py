"""UTC clock helpers.

All timestamps are stored as naive UTC datetimes.
"""

from datetime import date, datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def days_between(start: datetime, end: datetime) -> int:
    """Whole calendar days from `start` to `end` (negative if `end` is earlier)."""
    return (_as_date(end) - _as_date(start)).days


def _as_date(value: datetime | date) -> date:
    return value.date() if isinstance(value, datetime) else value
