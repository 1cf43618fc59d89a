"""
Datetime helper utilities to ensure consistent timezone handling across the ledger.

All ledger tables use timezone-naive UTC datetimes (DateTime(timezone=False)).
"""

import calendar
from datetime import datetime, timedelta, timezone
from typing import Optional


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time without timezone info"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_months(dt: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length"""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


PERIOD_DAYS = {
    "week": 7,
    "month": 30,
    "year": 365,
}


def period_start(period: str, now: Optional[datetime] = None) -> datetime:
    """Start of a reporting period ('week', 'month' or 'year') ending at now"""
    if period not in PERIOD_DAYS:
        raise ValueError(f"Unknown period '{period}', expected one of {sorted(PERIOD_DAYS)}")
    now = ensure_naive_datetime(now) or get_naive_utc_now()
    return now - timedelta(days=PERIOD_DAYS[period])


def month_start(now: Optional[datetime] = None) -> datetime:
    """Midnight on the first day of the calendar month containing now"""
    now = ensure_naive_datetime(now) or get_naive_utc_now()
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
