"""Time utilities for consistent timestamp handling."""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "Africa/Lagos"


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def local_instant(day: date, local_time: time, tz_name: str | None = None) -> datetime:
    """Combine a calendar date and a wall-clock time in tz_name into a UTC instant."""
    tz = ZoneInfo(tz_name or DEFAULT_TIMEZONE)
    return datetime.combine(day, local_time, tzinfo=tz).astimezone(timezone.utc)


def month_bounds(now: datetime, tz_name: str | None = None) -> tuple[datetime, datetime]:
    """Return [start, end) of the calendar month containing now, in tz_name, as UTC."""
    tz = ZoneInfo(tz_name or DEFAULT_TIMEZONE)
    local = now.astimezone(tz)
    start = local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    # Day 28 + 4 days always lands in the following month.
    next_month = (start.replace(day=28) + timedelta(days=4)).replace(day=1)
    return start.astimezone(timezone.utc), next_month.astimezone(timezone.utc)
