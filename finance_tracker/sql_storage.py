from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterator, List, Mapping, Optional

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from finance_tracker.recurrence_rule import RecurrenceRule, TransactionTemplate
from finance_tracker.storage import (
    DuplicateOccurrenceError,
    RecurrenceStorage,
    RuleNotFoundError,
    StorageError,
    Transaction,
    WatermarkConflictError,
    build_transaction,
    check_watermark_advance,
)

logger = logging.getLogger(__name__)

metadata = MetaData()

recurring_transactions = Table(
    "recurring_transactions",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("description", String(255), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("category_id", Integer),
    Column("notes", String(500)),
    Column("is_income", Boolean, nullable=False, default=False),
    Column("frequency", String(20), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("day_of_week", Integer),
    Column("day_of_month", Integer),
    Column("interval_days", Integer),
    Column("last_generated_date", Date),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("description", String(255), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("category_id", Integer),
    Column("date", Date, nullable=False),
    Column("notes", String(500)),
    Column("is_income", Boolean, nullable=False, default=False),
    Column("recurring_transaction_id", String(32), index=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint(
        "recurring_transaction_id",
        "date",
        name="uq_transactions_recurring_date",
    ),
)

EDITABLE_COLUMNS = (
    "description",
    "amount",
    "currency",
    "category_id",
    "notes",
    "is_income",
    "frequency",
    "end_date",
    "day_of_week",
    "day_of_month",
    "interval_days",
    "is_active",
)


def create_storage_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args)


class _SQLRuleBatch:
    def __init__(self, conn: Connection, rule: RecurrenceRule) -> None:
        self._conn = conn
        self.rule = rule
        self._watermark = rule.last_generated_date

    def create_transaction(self, **kwargs: Any) -> Transaction:
        transaction = build_transaction(**kwargs)
        _insert_transaction(self._conn, transaction)
        return transaction

    def update_watermark(self, new_last_generated_date: date) -> None:
        check_watermark_advance(self._watermark, new_last_generated_date)
        column = recurring_transactions.c.last_generated_date
        watermark_matches = (
            column.is_(None) if self._watermark is None else column == self._watermark
        )
        try:
            result = self._conn.execute(
                update(recurring_transactions)
                .where(recurring_transactions.c.id == self.rule.id, watermark_matches)
                .values(last_generated_date=new_last_generated_date)
            )
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to update watermark for {self.rule.id}.") from exc
        if result.rowcount == 0:
            raise WatermarkConflictError(
                f"Recurring transaction {self.rule.id} was processed concurrently."
            )
        self._watermark = new_last_generated_date


class SQLStorage(RecurrenceStorage):
    """SQLAlchemy Core backend; each rule batch runs in one database transaction."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str) -> "SQLStorage":
        return cls(create_storage_engine(database_url))

    def init_schema(self) -> None:
        logger.info("Ensuring recurring transaction tables exist")
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StorageError("Failed to initialize storage schema.") from exc

    def list_active_rules(self) -> List[RecurrenceRule]:
        stmt = (
            select(recurring_transactions)
            .where(recurring_transactions.c.is_active)
            .order_by(recurring_transactions.c.created_at.asc())
        )
        return [_row_to_rule(row) for row in self._fetch_all(stmt)]

    def list_rules(self, owner_id: int) -> List[RecurrenceRule]:
        stmt = (
            select(recurring_transactions)
            .where(recurring_transactions.c.user_id == owner_id)
            .order_by(recurring_transactions.c.created_at.desc())
        )
        return [_row_to_rule(row) for row in self._fetch_all(stmt)]

    def get_rule(self, rule_id: str) -> Optional[RecurrenceRule]:
        stmt = select(recurring_transactions).where(recurring_transactions.c.id == rule_id)
        rows = self._fetch_all(stmt)
        return _row_to_rule(rows[0]) if rows else None

    def delete_rule(self, rule_id: str) -> bool:
        stmt = recurring_transactions.delete().where(recurring_transactions.c.id == rule_id)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to delete recurring transaction {rule_id}.") from exc
        return result.rowcount > 0

    def list_transactions(
        self, owner_id: int, rule_id: str | None = None
    ) -> List[Transaction]:
        conditions = [transactions.c.user_id == owner_id]
        if rule_id is not None:
            conditions.append(transactions.c.recurring_transaction_id == rule_id)
        stmt = (
            select(transactions)
            .where(*conditions)
            .order_by(transactions.c.date.asc(), transactions.c.created_at.asc())
        )
        return [_row_to_transaction(row) for row in self._fetch_all(stmt)]

    def create_transaction(self, **kwargs: Any) -> Transaction:
        transaction = build_transaction(**kwargs)
        try:
            with self.engine.begin() as conn:
                _insert_transaction(conn, transaction)
        except SQLAlchemyError as exc:
            raise StorageError("Failed to create transaction.") from exc
        return transaction

    @contextmanager
    def rule_batch(self, rule: RecurrenceRule) -> Iterator[_SQLRuleBatch]:
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    select(recurring_transactions)
                    .where(recurring_transactions.c.id == rule.id)
                    .with_for_update()
                ).mappings().first()
                if row is None:
                    raise RuleNotFoundError(f"Recurring transaction {rule.id} not found.")
                current = _row_to_rule(row)
                if current.last_generated_date != rule.last_generated_date:
                    raise WatermarkConflictError(
                        f"Recurring transaction {rule.id} was processed concurrently."
                    )
                yield _SQLRuleBatch(conn, current)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to process recurring transaction {rule.id}.") from exc

    def _insert_rule(self, rule: RecurrenceRule) -> RecurrenceRule:
        values = _rule_values(rule)
        values["id"] = rule.id
        values["user_id"] = rule.owner_id
        values["start_date"] = rule.start_date
        values["created_at"] = datetime.now()
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(recurring_transactions).values(**values))
        except SQLAlchemyError as exc:
            raise StorageError("Failed to create recurring transaction.") from exc
        return self.require_rule(rule.id)

    def _save_rule(self, rule: RecurrenceRule) -> RecurrenceRule:
        stmt = (
            update(recurring_transactions)
            .where(recurring_transactions.c.id == rule.id)
            .values(**_rule_values(rule))
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to update recurring transaction {rule.id}.") from exc
        if result.rowcount == 0:
            raise RuleNotFoundError(f"Recurring transaction {rule.id} not found.")
        return self.require_rule(rule.id)

    def _fetch_all(self, stmt) -> List[Mapping[str, Any]]:
        try:
            with self.engine.begin() as conn:
                return conn.execute(stmt).mappings().all()
        except SQLAlchemyError as exc:
            raise StorageError("Failed to read from storage.") from exc


def _insert_transaction(conn: Connection, transaction: Transaction) -> None:
    try:
        conn.execute(
            insert(transactions).values(
                id=transaction.id,
                user_id=transaction.owner_id,
                description=transaction.description,
                amount=transaction.amount,
                currency=transaction.currency,
                category_id=transaction.category_id,
                date=transaction.date,
                notes=transaction.notes,
                is_income=transaction.is_income,
                recurring_transaction_id=transaction.recurring_rule_id,
                created_at=transaction.created_at,
            )
        )
    except IntegrityError as exc:
        raise DuplicateOccurrenceError(
            f"Transaction for {transaction.recurring_rule_id} on "
            f"{transaction.date.isoformat()} already exists."
        ) from exc
    except SQLAlchemyError as exc:
        raise StorageError("Failed to create transaction.") from exc


def _rule_values(rule: RecurrenceRule) -> dict:
    template = rule.template
    values = {
        "description": template.description,
        "amount": template.amount,
        "currency": template.currency,
        "category_id": template.category_id,
        "notes": template.notes,
        "is_income": template.is_income,
        "frequency": rule.frequency,
        "end_date": rule.end_date,
        "day_of_week": rule.day_of_week,
        "day_of_month": rule.day_of_month,
        "interval_days": rule.interval_days,
        "is_active": rule.is_active,
    }
    return {key: values[key] for key in EDITABLE_COLUMNS}


def _row_to_rule(row: Mapping[str, Any]) -> RecurrenceRule:
    return RecurrenceRule(
        id=row["id"],
        owner_id=row["user_id"],
        template=TransactionTemplate(
            description=row["description"],
            amount=_coerce_decimal(row["amount"]),
            currency=row["currency"],
            category_id=row["category_id"],
            notes=row["notes"],
            is_income=bool(row["is_income"]),
        ),
        frequency=row["frequency"],
        start_date=row["start_date"],
        day_of_week=row["day_of_week"],
        day_of_month=row["day_of_month"],
        interval_days=row["interval_days"],
        end_date=row["end_date"],
        last_generated_date=row["last_generated_date"],
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
    )


def _row_to_transaction(row: Mapping[str, Any]) -> Transaction:
    return Transaction(
        id=row["id"],
        owner_id=row["user_id"],
        description=row["description"],
        amount=_coerce_decimal(row["amount"]),
        date=row["date"],
        currency=row["currency"],
        category_id=row["category_id"],
        notes=row["notes"],
        is_income=bool(row["is_income"]),
        recurring_rule_id=row["recurring_transaction_id"],
        created_at=row["created_at"],
    )


def _coerce_decimal(value: Decimal | float | int | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
