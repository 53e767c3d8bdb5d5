"""
Calendar helpers for billing periods and month keys.

All datetimes are naive UTC.
"""
import calendar
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from perdexa.core.errors import ValidationError

MONTH_KEY_RE = re.compile(r"^(\d{4})-(\d{2})$")
INT_RE = re.compile(r"^-?\d+$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and INT_RE.match(value.strip()):
        return int(value.strip())
    return None


def validate_year_month(year, month) -> Tuple[int, int]:
    """Coerce and check a (year, month) pair; month is 1..12."""
    y = as_int(year)
    m = as_int(month)
    if y is None or m is None:
        raise ValidationError("invalid_year_month", "Year and month must be integers")
    if not 1 <= m <= 12 or not 1 <= y <= 9999:
        raise ValidationError("invalid_year_month", f"Invalid year/month: {year}-{month}")
    return y, m


def month_start(year: int, month: int) -> datetime:
    return datetime(year, month, 1)


def month_end(year: int, month: int) -> datetime:
    """Last instant of the month, millisecond precision (23:59:59.999)."""
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, last_day, 23, 59, 59, 999000)


def month_bounds(year: int, month: int) -> Tuple[datetime, datetime]:
    return month_start(year, month), month_end(year, month)


def add_months(value: datetime, months: int) -> datetime:
    """Shift by whole months, clamping the day to the target month's length."""
    index = value.month - 1 + months
    year = value.year + index // 12
    month = index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def start_of_month(value: datetime) -> datetime:
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def format_month_key(value: datetime) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def parse_month_key(month_key: str) -> datetime:
    """'2025-10' -> datetime(2025, 10, 1)."""
    match = MONTH_KEY_RE.match((month_key or "").strip())
    if not match:
        raise ValidationError("invalid_month", f"Month key must be YYYY-MM, got {month_key!r}")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12 or year < 1:
        raise ValidationError("invalid_month", f"Month key out of range: {month_key!r}")
    return month_start(year, month)


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from start to end, rounded up."""
    return math.ceil((end - start) / timedelta(days=1))


def isoformat(value):
    return value.isoformat() if value is not None else None


def from_unix(value) -> Optional[datetime]:
    """Provider epoch seconds -> naive UTC datetime; None and garbage pass as None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).replace(tzinfo=None) if value.tzinfo else value
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return None
