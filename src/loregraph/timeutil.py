"""Timestamp helpers for source records.

Source logs are written by different tools, so timestamps arrive as
``2025-01-15T14:30:00Z``, ``2025-01-15`` or naive local strings. Everything
is normalized to timezone-aware UTC here.
"""

from datetime import datetime, timezone

from dateutil import parser as dateparser

from .constants import (
    SECONDS_PER_DAY,
    SECONDS_PER_HOUR,
    SECONDS_PER_MINUTE,
    SECONDS_PER_MONTH,
    SECONDS_PER_WEEK,
    SECONDS_PER_YEAR,
)


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse a record timestamp. Returns None for missing or unparsable input."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = dateparser.parse(str(value))
        except (ValueError, OverflowError, dateparser.ParserError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def days_since(value: str | datetime | None, now: datetime | None = None) -> float:
    """Age in fractional days. Unknown or future timestamps count as fresh."""
    parsed = parse_timestamp(value)
    if parsed is None:
        return 0.0
    now = now or datetime.now(timezone.utc)
    return max(0.0, (now - parsed).total_seconds() / SECONDS_PER_DAY)


def format_relative_time(dt: datetime, now: datetime | None = None) -> str:
    """Format a datetime as "3 days ago", "2 weeks ago", ..."""
    if now is None:
        now = datetime.now(timezone.utc)

    seconds = int((now - dt).total_seconds())
    if seconds < 0:
        return "in the future"
    if seconds < SECONDS_PER_MINUTE:
        return f"{seconds} seconds ago"

    for unit_seconds, unit in (
        (SECONDS_PER_YEAR, "year"),
        (SECONDS_PER_MONTH, "month"),
        (SECONDS_PER_WEEK, "week"),
        (SECONDS_PER_DAY, "day"),
        (SECONDS_PER_HOUR, "hour"),
        (SECONDS_PER_MINUTE, "minute"),
    ):
        if seconds >= unit_seconds:
            amount = seconds // unit_seconds
            return f"{amount} {unit}{'s' if amount != 1 else ''} ago"
    return f"{seconds} seconds ago"
