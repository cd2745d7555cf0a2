import logging
from datetime import date, datetime, timedelta
import datetime as _dt
from decimal import Decimal

from fastapi import Depends, FastAPI, HTTPException, Header, Query
from pydantic import BaseModel

from finance_tracker.config import build_storage, configure_logging, get_system_default_currency
from finance_tracker.ledger import DEFAULT_CATEGORIES, RecurrenceSettings, record_transaction
from finance_tracker.occurrence_generator import next_occurrence, project_upcoming, upcoming_totals
from finance_tracker.recurrence_processor import RecurrenceProcessingError, RecurrenceProcessor
from finance_tracker.recurrence_rule import (
    RecurrenceRule,
    TransactionTemplate,
    ValidationError,
)
from finance_tracker.storage import RecurrenceStorage, RuleNotFoundError, StorageError, Transaction

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI()

SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()
MAX_UPCOMING_DAYS = 366

_storage: RecurrenceStorage | None = None


def get_storage() -> RecurrenceStorage:
    global _storage
    if _storage is None:
        _storage = build_storage()
    return _storage


class RecurringTransactionPayload(BaseModel):
    description: str
    amount: Decimal
    currency: str | None = None
    category_id: int | None = None
    notes: str | None = None
    is_income: bool = False
    frequency: str
    start_date: date
    end_date: date | None = None
    day_of_week: int | None = None
    day_of_month: int | None = None
    interval_days: int | None = None
    is_active: bool = True

    def to_rule(self, owner_id: int) -> RecurrenceRule:
        return RecurrenceRule(
            owner_id=owner_id,
            template=TransactionTemplate(
                description=self.description,
                amount=self.amount,
                currency=self.currency or SYSTEM_DEFAULT_CURRENCY,
                category_id=self.category_id,
                notes=self.notes,
                is_income=self.is_income,
            ),
            frequency=self.frequency,
            start_date=self.start_date,
            end_date=self.end_date,
            day_of_week=self.day_of_week,
            day_of_month=self.day_of_month,
            interval_days=self.interval_days,
            is_active=self.is_active,
        )


class RecurringTransactionUpdatePayload(BaseModel):
    description: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    category_id: int | None = None
    notes: str | None = None
    is_income: bool | None = None
    frequency: str | None = None
    end_date: date | None = None
    day_of_week: int | None = None
    day_of_month: int | None = None
    interval_days: int | None = None
    is_active: bool | None = None


class RecurringTransactionResponse(BaseModel):
    id: str
    user_id: int
    description: str
    amount: Decimal
    currency: str
    category_id: int | None = None
    notes: str | None = None
    is_income: bool
    frequency: str
    start_date: date
    end_date: date | None = None
    day_of_week: int | None = None
    day_of_month: int | None = None
    interval_days: int | None = None
    last_generated_date: date | None = None
    is_active: bool
    next_occurrence: date | None = None
    created_at: datetime | None = None


class TransactionPayload(BaseModel):
    description: str
    amount: Decimal
    currency: str | None = None
    category_id: int | None = None
    notes: str | None = None
    is_income: bool = False
    is_recurring: bool = False
    frequency: str | None = None
    end_date: date | None = None
    day_of_week: int | None = None
    day_of_month: int | None = None
    interval_days: int | None = None
    date: _dt.date | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        if payload.is_recurring and not payload.frequency:
            raise ValueError("Recurring transactions require a frequency.")
        return payload


class TransactionResponse(BaseModel):
    id: str
    user_id: int
    description: str
    amount: Decimal
    currency: str
    category_id: int | None = None
    notes: str | None = None
    is_income: bool
    date: date
    recurring_transaction_id: str | None = None


class RecordTransactionResponse(BaseModel):
    transaction: TransactionResponse
    recurring_transaction: RecurringTransactionResponse | None = None


class ProcessResponse(BaseModel):
    message: str
    transactions_generated: int


class UpcomingEntry(BaseModel):
    recurring_transaction_id: str
    description: str
    amount: Decimal
    currency: str
    is_income: bool
    date: date


class UpcomingResponse(BaseModel):
    entries: list[UpcomingEntry]
    expense_totals: dict[str, Decimal]


def get_user_id(x_user_id: str | None) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        return int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc


def get_owned_rule(storage: RecurrenceStorage, rule_id: str, user_id: int) -> RecurrenceRule:
    try:
        rule = storage.get_rule(rule_id)
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    if rule is None:
        raise HTTPException(status_code=404, detail="Recurring transaction not found.")
    if rule.owner_id != user_id:
        raise HTTPException(
            status_code=403,
            detail="Not authorized to access this recurring transaction.",
        )
    return rule


def to_rule_response(rule: RecurrenceRule, today: date | None = None) -> RecurringTransactionResponse:
    template = rule.template
    return RecurringTransactionResponse(
        id=rule.id,
        user_id=rule.owner_id,
        description=template.description,
        amount=template.amount,
        currency=template.currency,
        category_id=template.category_id,
        notes=template.notes,
        is_income=template.is_income,
        frequency=rule.frequency,
        start_date=rule.start_date,
        end_date=rule.end_date,
        day_of_week=rule.day_of_week,
        day_of_month=rule.day_of_month,
        interval_days=rule.interval_days,
        last_generated_date=rule.last_generated_date,
        is_active=rule.is_active,
        next_occurrence=next_occurrence(rule, today or date.today()),
        created_at=rule.created_at,
    )


def to_transaction_response(transaction: Transaction) -> TransactionResponse:
    return TransactionResponse(
        id=transaction.id,
        user_id=transaction.owner_id,
        description=transaction.description,
        amount=transaction.amount,
        currency=transaction.currency,
        category_id=transaction.category_id,
        notes=transaction.notes,
        is_income=transaction.is_income,
        date=transaction.date,
        recurring_transaction_id=transaction.recurring_rule_id,
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/categories/defaults", response_model=list[str])
def default_categories() -> list[str]:
    return list(DEFAULT_CATEGORIES)


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    recurring_transaction_id: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    storage: RecurrenceStorage = Depends(get_storage),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    try:
        transactions = storage.list_transactions(user_id, rule_id=recurring_transaction_id)
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return [to_transaction_response(txn) for txn in transactions]


@app.post("/transactions", response_model=RecordTransactionResponse, status_code=201)
def create_transaction(
    payload: TransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    storage: RecurrenceStorage = Depends(get_storage),
) -> RecordTransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    template = TransactionTemplate(
        description=payload.description,
        amount=payload.amount,
        currency=payload.currency or SYSTEM_DEFAULT_CURRENCY,
        category_id=payload.category_id,
        notes=payload.notes,
        is_income=payload.is_income,
    )
    recurrence = None
    if payload.is_recurring:
        recurrence = RecurrenceSettings(
            frequency=payload.frequency,
            end_date=payload.end_date,
            day_of_week=payload.day_of_week,
            day_of_month=payload.day_of_month,
            interval_days=payload.interval_days,
        )
    try:
        transaction, rule = record_transaction(
            storage,
            owner_id=user_id,
            template=template,
            on=payload.date or date.today(),
            recurrence=recurrence,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return RecordTransactionResponse(
        transaction=to_transaction_response(transaction),
        recurring_transaction=to_rule_response(rule) if rule else None,
    )


@app.get("/recurring-transactions", response_model=list[RecurringTransactionResponse])
def list_recurring_transactions(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    storage: RecurrenceStorage = Depends(get_storage),
) -> list[RecurringTransactionResponse]:
    user_id = get_user_id(x_user_id)
    try:
        rules = storage.list_rules(user_id)
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return [to_rule_response(rule) for rule in rules]


@app.post(
    "/recurring-transactions",
    response_model=RecurringTransactionResponse,
    status_code=201,
)
def create_recurring_transaction(
    payload: RecurringTransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    storage: RecurrenceStorage = Depends(get_storage),
) -> RecurringTransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        rule = storage.create_rule(payload.to_rule(user_id))
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return to_rule_response(rule)


@app.get("/recurring-transactions/upcoming", response_model=UpcomingResponse)
def upcoming_recurring_transactions(
    days: int = Query(30, ge=1, le=MAX_UPCOMING_DAYS),
    as_of: date | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    storage: RecurrenceStorage = Depends(get_storage),
) -> UpcomingResponse:
    user_id = get_user_id(x_user_id)
    start = as_of or date.today()
    horizon_end = start + timedelta(days=days)
    try:
        rules = storage.list_rules(user_id)
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    entries = [
        UpcomingEntry(
            recurring_transaction_id=rule.id,
            description=rule.template.description,
            amount=rule.template.amount,
            currency=rule.template.currency,
            is_income=rule.template.is_income,
            date=occurrence_date,
        )
        for rule in rules
        for occurrence_date in project_upcoming(rule, start, horizon_end)
    ]
    entries.sort(key=lambda entry: (entry.date, entry.description))
    return UpcomingResponse(
        entries=entries,
        expense_totals=upcoming_totals(rules, start, horizon_end),
    )


@app.post("/recurring-transactions/process", response_model=ProcessResponse)
def process_recurring_transactions(
    as_of: date | None = None,
    storage: RecurrenceStorage = Depends(get_storage),
) -> ProcessResponse:
    processor = RecurrenceProcessor(storage)
    try:
        count = processor.process_all(as_of or date.today())
    except RecurrenceProcessingError as exc:
        logger.error("Recurring processing finished with failures: %s", exc)
        raise HTTPException(
            status_code=500,
            detail=f"{exc} {exc.created} transaction(s) were generated before the failure.",
        ) from exc
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return ProcessResponse(
        message="Successfully processed recurring transactions",
        transactions_generated=count,
    )


@app.get("/recurring-transactions/{rule_id}", response_model=RecurringTransactionResponse)
def get_recurring_transaction(
    rule_id: str,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    storage: RecurrenceStorage = Depends(get_storage),
) -> RecurringTransactionResponse:
    user_id = get_user_id(x_user_id)
    return to_rule_response(get_owned_rule(storage, rule_id, user_id))


@app.put("/recurring-transactions/{rule_id}", response_model=RecurringTransactionResponse)
def update_recurring_transaction(
    rule_id: str,
    payload: RecurringTransactionUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    storage: RecurrenceStorage = Depends(get_storage),
) -> RecurringTransactionResponse:
    user_id = get_user_id(x_user_id)
    get_owned_rule(storage, rule_id, user_id)
    try:
        rule = storage.update_rule(rule_id, payload.model_dump(exclude_unset=True))
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RuleNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Recurring transaction not found.") from exc
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return to_rule_response(rule)


@app.delete("/recurring-transactions/{rule_id}")
def delete_recurring_transaction(
    rule_id: str,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    storage: RecurrenceStorage = Depends(get_storage),
) -> dict:
    user_id = get_user_id(x_user_id)
    get_owned_rule(storage, rule_id, user_id)
    try:
        deleted = storage.delete_rule(rule_id)
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="Recurring transaction not found.")
    return {"status": "deleted"}
