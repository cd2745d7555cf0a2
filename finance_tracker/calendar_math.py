from __future__ import annotations

from calendar import monthrange
from datetime import date, datetime, timedelta
from typing import List

DAYS_IN_WEEK = 7


def weekly_occurrences(
    day_of_week: int,
    lower_exclusive: date,
    upper_inclusive: date,
) -> List[date]:
    """Dates in (lower, upper] falling on ``day_of_week`` (0=Sunday..6=Saturday)."""
    lower = as_date(lower_exclusive)
    upper = as_date(upper_inclusive)
    if lower >= upper:
        return []
    target_weekday = to_python_weekday(day_of_week)
    days_ahead = (target_weekday - lower.weekday()) % DAYS_IN_WEEK or DAYS_IN_WEEK
    return _step_forward(lower + timedelta(days=days_ahead), upper, DAYS_IN_WEEK)


def monthly_occurrences(
    day_of_month: int,
    lower_exclusive: date,
    upper_inclusive: date,
) -> List[date]:
    """One date per month in (lower, upper], clamped to the month's last day."""
    lower = as_date(lower_exclusive)
    upper = as_date(upper_inclusive)
    if lower >= upper:
        return []
    occurrences: List[date] = []
    year, month = lower.year, lower.month
    while (year, month) <= (upper.year, upper.month):
        candidate = clamp_to_month(year, month, day_of_month)
        if lower < candidate <= upper:
            occurrences.append(candidate)
        year, month = _next_month(year, month)
    return occurrences


def custom_interval_occurrences(
    interval_days: int,
    lower_exclusive: date,
    upper_inclusive: date,
) -> List[date]:
    lower = as_date(lower_exclusive)
    upper = as_date(upper_inclusive)
    if lower >= upper:
        return []
    return _step_forward(lower + timedelta(days=interval_days), upper, interval_days)


def daily_occurrences(lower_exclusive: date, upper_inclusive: date) -> List[date]:
    return custom_interval_occurrences(1, lower_exclusive, upper_inclusive)


def clamp_to_month(year: int, month: int, anchor_day: int) -> date:
    last_day = monthrange(year, month)[1]
    return date(year, month, min(anchor_day, last_day))


def to_python_weekday(day_of_week: int) -> int:
    # Sunday-based (0=Sunday) to date.weekday() (0=Monday).
    return (day_of_week - 1) % DAYS_IN_WEEK


def as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def _step_forward(first: date, upper: date, step_days: int) -> List[date]:
    occurrences: List[date] = []
    current = first
    step = timedelta(days=step_days)
    while current <= upper:
        occurrences.append(current)
        current += step
    return occurrences


def _next_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1
