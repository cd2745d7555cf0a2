from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Optional, Tuple

from finance_tracker.calendar_math import as_date
from finance_tracker.recurrence_rule import (
    RecurrenceRule,
    TransactionTemplate,
    validate_rule,
    validate_template,
)
from finance_tracker.storage import RecurrenceStorage, Transaction

DEFAULT_CATEGORIES = [
    "Groceries",
    "Dining",
    "Transportation",
    "Entertainment",
    "Housing",
    "Utilities",
    "Healthcare",
    "Shopping",
    "Travel",
    "Other",
]


@dataclass(frozen=True)
class RecurrenceSettings:
    frequency: str
    end_date: date | None = None
    day_of_week: int | None = None
    day_of_month: int | None = None
    interval_days: int | None = None


def record_transaction(
    storage: RecurrenceStorage,
    owner_id: int,
    template: TransactionTemplate,
    on: date,
    recurrence: RecurrenceSettings | None = None,
) -> Tuple[Transaction, Optional[RecurrenceRule]]:
    """Record a transaction and, optionally, the recurring definition it starts.

    The rule starts on the transaction's own date. Occurrences are generated
    strictly after the start date, so the recorded transaction is never
    generated a second time.
    """
    template = validate_template(template)
    on = as_date(on)
    rule = None
    if recurrence is not None:
        # Nothing is written when the schedule is invalid.
        rule = validate_rule(
            RecurrenceRule(
                owner_id=owner_id,
                template=template,
                frequency=recurrence.frequency,
                start_date=on,
                end_date=recurrence.end_date,
                day_of_week=recurrence.day_of_week,
                day_of_month=recurrence.day_of_month,
                interval_days=recurrence.interval_days,
            )
        )

    transaction = storage.create_transaction(
        owner_id=owner_id,
        description=template.description,
        amount=template.amount,
        date=on,
        currency=template.currency,
        category_id=template.category_id,
        notes=template.notes,
        is_income=template.is_income,
    )
    if rule is not None:
        rule = storage.create_rule(rule)
    return transaction, rule
