"""
Date utilities: parsing local dates, year-month keys, user-local "today".
"""
import re
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.config import get_settings

_YEAR_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


def parse_local_date(value: date | str) -> date:
    """
    Разобрать дату в формате YYYY-MM-DD

    Args:
        value: date или строка ISO

    Returns:
        date

    Raises:
        ValueError: если формат неверный

    Example:
        >>> parse_local_date("2025-01-03")
        datetime.date(2025, 1, 3)
    """
    if isinstance(value, datetime):
        raise ValueError(f"Expected a calendar date, got datetime {value!r}")
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Expected YYYY-MM-DD, got {value!r}")
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise ValueError(f"Invalid date {value!r}, expected YYYY-MM-DD") from None


def year_month(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def month_bounds(ym: str) -> tuple[date, date]:
    """
    Half-open bounds [first day, first day of next month) for "YYYY-MM".

    Raises:
        ValueError: если формат неверный
    """
    m = _YEAR_MONTH_RE.match(ym or "")
    if not m:
        raise ValueError(f"Invalid year-month {ym!r}, expected YYYY-MM")
    y, mo = int(m.group(1)), int(m.group(2))
    if not 1 <= mo <= 12:
        raise ValueError(f"Invalid month in {ym!r}")
    start = date(y, mo, 1)
    end = date(y + 1, 1, 1) if mo == 12 else date(y, mo + 1, 1)
    return start, end


def months_spanned(start: date, end: date) -> list[str]:
    """Year-months touched by the half-open interval [start, end)."""
    if end <= start:
        return []
    last = end - timedelta(days=1)
    result = []
    y, m = start.year, start.month
    while (y, m) <= (last.year, last.month):
        result.append(f"{y:04d}-{m:02d}")
        y, m = (y + 1, 1) if m == 12 else (y, m + 1)
    return result


def resolve_timezone(tz_name: str | None, default: str | None = None) -> ZoneInfo:
    """ZoneInfo for tz_name, falling back to DEFAULT_TIMEZONE for unknown/empty names."""
    default = default or get_settings().DEFAULT_TIMEZONE
    try:
        return ZoneInfo(tz_name or default)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(default)


def user_local_today(tz_name: str | None, now: datetime | None = None) -> date:
    """Calendar date 'today' in the user's timezone."""
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(resolve_timezone(tz_name)).date()
