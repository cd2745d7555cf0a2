from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from finance_tracker.calendar_math import as_date

SUPPORTED_FREQUENCIES = {"daily", "weekly", "monthly", "custom"}
FREQUENCY_ALIASES = {
    "everyday": "daily",
    "week": "weekly",
    "month": "monthly",
    "customdays": "custom",
    "interval": "custom",
}
RECURRING_NOTE_TAG = "[recurring]"
MAX_AMOUNT_PLACES = 2

TEMPLATE_FIELDS = {"description", "amount", "currency", "category_id", "notes", "is_income"}
EDITABLE_RULE_FIELDS = {
    "frequency",
    "end_date",
    "day_of_week",
    "day_of_month",
    "interval_days",
    "is_active",
}
NULLABLE_FIELDS = {
    "category_id",
    "notes",
    "end_date",
    "day_of_week",
    "day_of_month",
    "interval_days",
}


class ValidationError(ValueError):
    """Raised when a recurring transaction definition is malformed."""


@dataclass(frozen=True)
class TransactionTemplate:
    description: str
    amount: Decimal
    currency: str = "USD"
    category_id: int | None = None
    notes: str | None = None
    is_income: bool = False


@dataclass(frozen=True)
class RecurrenceRule:
    owner_id: int
    template: TransactionTemplate
    frequency: str
    start_date: date
    day_of_week: int | None = None
    day_of_month: int | None = None
    interval_days: int | None = None
    end_date: date | None = None
    last_generated_date: date | None = None
    is_active: bool = True
    id: str | None = None
    created_at: datetime | None = field(default=None, compare=False)


def validate_rule(rule: RecurrenceRule) -> RecurrenceRule:
    """Return a normalized copy of ``rule`` or raise ``ValidationError``.

    Frequency names are normalized, currency codes upper-cased, and parameters
    that do not belong to the rule's frequency are cleared.
    """
    frequency = normalize_frequency(rule.frequency)
    template = validate_template(rule.template)
    start_date = as_date(rule.start_date)
    end_date = as_date(rule.end_date) if rule.end_date is not None else None
    if end_date is not None and end_date < start_date:
        raise ValidationError("end_date must be on or after start_date.")

    params: dict[str, int | None] = {
        "day_of_week": None,
        "day_of_month": None,
        "interval_days": None,
    }
    if frequency == "weekly":
        params["day_of_week"] = _require_int(rule.day_of_week, "day_of_week", 0, 6)
    elif frequency == "monthly":
        params["day_of_month"] = _require_int(rule.day_of_month, "day_of_month", 1, 31)
    elif frequency == "custom":
        params["interval_days"] = _require_int(rule.interval_days, "interval_days", 1, None)

    return replace(
        rule,
        template=template,
        frequency=frequency,
        start_date=start_date,
        end_date=end_date,
        is_active=bool(rule.is_active),
        **params,
    )


def validate_template(template: TransactionTemplate) -> TransactionTemplate:
    description = (template.description or "").strip()
    if not description:
        raise ValidationError("Description required.")
    amount = coerce_amount(template.amount)
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero.")
    notes = template.notes.strip() if template.notes else None
    return replace(
        template,
        description=description,
        amount=amount,
        currency=normalize_currency(template.currency),
        notes=notes or None,
        is_income=bool(template.is_income),
    )


def apply_rule_changes(rule: RecurrenceRule, changes: Mapping[str, Any]) -> RecurrenceRule:
    """Apply a partial user edit to ``rule`` and re-validate the result.

    Only template fields and the schedule fields in ``EDITABLE_RULE_FIELDS`` may
    change; the owner, start date and watermark stay as they are.
    """
    unknown = set(changes) - TEMPLATE_FIELDS - EDITABLE_RULE_FIELDS
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}.")
    missing = sorted(
        key for key, value in changes.items() if value is None and key not in NULLABLE_FIELDS
    )
    if missing:
        raise ValidationError(f"Fields cannot be null: {', '.join(missing)}.")
    template_changes = {key: value for key, value in changes.items() if key in TEMPLATE_FIELDS}
    rule_changes = {key: value for key, value in changes.items() if key in EDITABLE_RULE_FIELDS}
    updated = replace(
        rule,
        template=replace(rule.template, **template_changes),
        **rule_changes,
    )
    return validate_rule(updated)


def normalize_frequency(value: str | None) -> str:
    if not isinstance(value, str):
        raise ValidationError("Frequency required.")
    normalized = "".join(ch for ch in value.strip().lower() if ch.isalnum())
    normalized = FREQUENCY_ALIASES.get(normalized, normalized)
    if normalized not in SUPPORTED_FREQUENCIES:
        raise ValidationError("Only daily, weekly, monthly, or custom schedules are supported.")
    return normalized


def normalize_currency(value: str | None) -> str:
    normalized = (value or "").strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValidationError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, bool):
        raise ValidationError("Amount must be a number.")
    try:
        coerced = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValidationError("Amount must be a number.") from exc
    if not coerced.is_finite():
        raise ValidationError("Amount must be a number.")
    if coerced.normalize().as_tuple().exponent < -MAX_AMOUNT_PLACES:
        raise ValidationError("Amount cannot have more than two decimal places.")
    return coerced


def tag_recurring_note(notes: str | None, tag: str = RECURRING_NOTE_TAG) -> str:
    if not notes:
        return tag
    if notes.endswith(tag):
        return notes
    return f"{notes} {tag}"


def _require_int(value: Any, name: str, minimum: int, maximum: int | None) -> int:
    if value is None:
        raise ValidationError(f"{name} is required for this frequency.")
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer.")
    if value < minimum or (maximum is not None and value > maximum):
        if maximum is None:
            raise ValidationError(f"{name} must be at least {minimum}.")
        raise ValidationError(f"{name} must be between {minimum} and {maximum}.")
    return value
