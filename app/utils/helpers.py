"""Shared request-parsing helpers for blueprints and services.

parse_date:     ISO date parsing (None for empty or unparseable input)
parse_int_arg:  optional integer from JSON body or query string
"""
import logging
from datetime import date, datetime

logger = logging.getLogger(__name__)


def parse_date(value):
    """Parse an ISO date string to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
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
        logger.debug("Unparseable date: %r", value)
        return None


def parse_int_arg(value):
    """Return ``value`` as int, None when absent.  Raises ValueError when malformed."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"expected an integer, got {value!r}")
    return int(value)
