from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List

from finance_tracker.calendar_math import (
    as_date,
    custom_interval_occurrences,
    daily_occurrences,
    monthly_occurrences,
    weekly_occurrences,
)
from finance_tracker.recurrence_rule import RecurrenceRule

ZERO = Decimal("0")
# Longest gap between two occurrences of any supported frequency other than custom.
MAX_STANDARD_PERIOD_DAYS = 31


@dataclass(frozen=True)
class Occurrence:
    rule_id: str | None
    date: date


def generate_occurrences(rule: RecurrenceRule, as_of: date) -> List[date]:
    """Dates still to be materialized for ``rule`` as of ``as_of``.

    Every date after the watermark (or the start date) up to ``as_of`` and the
    rule's end date is returned, so a run after downtime catches up on all
    missed periods at once.
    """
    if not rule.is_active:
        return []
    lower = as_date(rule.last_generated_date or rule.start_date)
    as_of = as_date(as_of)
    upper = min(as_of, as_date(rule.end_date)) if rule.end_date is not None else as_of
    if lower >= upper:
        return []
    return occurrences_between(rule, lower, upper)


def due_occurrences(rule: RecurrenceRule, as_of: date) -> List[Occurrence]:
    return [
        Occurrence(rule_id=rule.id, date=occurrence_date)
        for occurrence_date in generate_occurrences(rule, as_of)
    ]


def occurrences_between(
    rule: RecurrenceRule,
    lower_exclusive: date,
    upper_inclusive: date,
) -> List[date]:
    if rule.frequency == "daily":
        return daily_occurrences(lower_exclusive, upper_inclusive)
    if rule.frequency == "weekly":
        return weekly_occurrences(rule.day_of_week, lower_exclusive, upper_inclusive)
    if rule.frequency == "monthly":
        return monthly_occurrences(rule.day_of_month, lower_exclusive, upper_inclusive)
    if rule.frequency == "custom":
        return custom_interval_occurrences(
            rule.interval_days, lower_exclusive, upper_inclusive
        )
    raise ValueError(f"Unsupported frequency: {rule.frequency}")


def project_upcoming(
    rule: RecurrenceRule,
    as_of: date,
    horizon_end: date,
) -> List[date]:
    """Occurrences after ``as_of`` up to ``horizon_end``, without side effects."""
    if not rule.is_active:
        return []
    # Custom intervals are phased from the watermark, so the search starts there.
    anchor = as_date(rule.last_generated_date or rule.start_date)
    as_of = as_date(as_of)
    upper = as_date(horizon_end)
    if rule.end_date is not None:
        upper = min(upper, as_date(rule.end_date))
    if max(anchor, as_of) >= upper:
        return []
    return [
        occurrence_date
        for occurrence_date in occurrences_between(rule, anchor, upper)
        if occurrence_date > as_of
    ]


def next_occurrence(rule: RecurrenceRule, as_of: date) -> date | None:
    if not rule.is_active:
        return None
    period_days = rule.interval_days if rule.frequency == "custom" else MAX_STANDARD_PERIOD_DAYS
    search_from = max(as_date(rule.last_generated_date or rule.start_date), as_date(as_of))
    upcoming = project_upcoming(
        rule, search_from, search_from + timedelta(days=period_days)
    )
    return upcoming[0] if upcoming else None


def upcoming_totals(
    rules: Iterable[RecurrenceRule],
    as_of: date,
    horizon_end: date,
) -> Dict[str, Decimal]:
    """Projected recurring expense totals per currency up to ``horizon_end``."""
    totals: Dict[str, Decimal] = {}
    for rule in rules:
        if rule.template.is_income:
            continue
        count = len(project_upcoming(rule, as_of, horizon_end))
        if not count:
            continue
        currency = rule.template.currency
        totals[currency] = totals.get(currency, ZERO) + rule.template.amount * count
    return totals
