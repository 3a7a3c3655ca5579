"""Datetime utilities for consistent UTC handling."""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """
    Current UTC time as a naive datetime.

    Columns are `DateTime` without time zone, so values are stored as naive UTC.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value: datetime | None) -> str | None:
    """ISO-8601 string for a stored datetime, or None."""
    return value.isoformat() if value else None
