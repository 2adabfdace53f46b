"""Shared utility functions used by services and blueprints.

utcnow:          timezone-aware "now" used as the default clock
as_utc:          normalise naive datetimes read back from SQLite
parse_date:      returns None on bad input
parse_bool:      loose JSON / query-string booleans
"""
import logging
from datetime import date, datetime, timezone

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return ``value`` as an aware UTC datetime.

    SQLite drops tzinfo on ``DateTime(timezone=True)`` columns, so rows read
    back from it are naive even though they were written in UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def whole_days_between(start, end) -> int:
    """Number of whole days elapsed from ``start`` to ``end`` (never negative)."""
    if start is None or end is None:
        return 0
    delta = as_utc(end) - as_utc(start)
    return max(delta.days, 0)


def parse_date(value):
    """Parse an ISO date string to a date object.

    Returns None for empty/invalid input.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        logger.debug("Unparseable date value: %r", value)
        return None


def parse_bool(value, default=False):
    """Interpret JSON booleans and "true"/"1"/"yes" strings."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")
