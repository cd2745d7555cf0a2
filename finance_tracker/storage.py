from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol, Set, Tuple

from finance_tracker.recurrence_rule import (
    RecurrenceRule,
    ValidationError,
    apply_rule_changes,
    coerce_amount,
    normalize_currency,
    validate_rule,
)

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Raised when the underlying persistence layer fails."""


class RuleNotFoundError(StorageError):
    """Raised when a recurring transaction does not exist."""


class WatermarkConflictError(StorageError):
    """Raised when a rule's watermark changed since it was read, or would regress."""


class DuplicateOccurrenceError(StorageError):
    """Raised when a transaction already exists for a rule on a given date."""


@dataclass(frozen=True)
class Transaction:
    id: str
    owner_id: int
    description: str
    amount: Decimal
    date: date
    currency: str
    category_id: int | None = None
    notes: str | None = None
    is_income: bool = False
    recurring_rule_id: str | None = None
    created_at: datetime | None = field(default=None, compare=False)


class RuleBatch(Protocol):
    rule: RecurrenceRule

    def create_transaction(
        self,
        owner_id: int,
        description: str,
        amount: Decimal,
        date: date,
        currency: str,
        category_id: int | None = None,
        notes: str | None = None,
        is_income: bool = False,
        recurring_rule_id: str | None = None,
    ) -> Transaction:
        ...

    def update_watermark(self, new_last_generated_date: date) -> None:
        ...


def new_identifier() -> str:
    return uuid.uuid4().hex


class RecurrenceStorage(ABC):
    """Rule and transaction store shared by every backend.

    Validation and partial updates live here so that backends only deal with
    persistence. ``rule_batch`` is the unit of work used by the processor: every
    transaction created through the batch and the watermark update are committed
    together when the ``with`` block exits cleanly, and discarded otherwise.
    """

    @abstractmethod
    def list_active_rules(self) -> List[RecurrenceRule]:
        ...

    @abstractmethod
    def list_rules(self, owner_id: int) -> List[RecurrenceRule]:
        ...

    @abstractmethod
    def get_rule(self, rule_id: str) -> Optional[RecurrenceRule]:
        ...

    @abstractmethod
    def delete_rule(self, rule_id: str) -> bool:
        ...

    @abstractmethod
    def list_transactions(
        self, owner_id: int, rule_id: str | None = None
    ) -> List[Transaction]:
        ...

    @abstractmethod
    def rule_batch(self, rule: RecurrenceRule) -> Iterator[RuleBatch]:
        ...

    @abstractmethod
    def create_transaction(
        self,
        owner_id: int,
        description: str,
        amount: Decimal,
        date: date,
        currency: str,
        category_id: int | None = None,
        notes: str | None = None,
        is_income: bool = False,
        recurring_rule_id: str | None = None,
    ) -> Transaction:
        ...

    @abstractmethod
    def _insert_rule(self, rule: RecurrenceRule) -> RecurrenceRule:
        ...

    @abstractmethod
    def _save_rule(self, rule: RecurrenceRule) -> RecurrenceRule:
        """Persist user-editable fields only; the watermark is left untouched."""

    def create_rule(self, rule: RecurrenceRule) -> RecurrenceRule:
        validated = validate_rule(rule)
        if validated.last_generated_date is not None:
            raise ValidationError("New recurring transactions cannot carry a watermark.")
        created = self._insert_rule(replace(validated, id=new_identifier()))
        logger.info(
            "Created recurring transaction %s (%s) for owner %s",
            created.id,
            created.frequency,
            created.owner_id,
        )
        return created

    def update_rule(self, rule_id: str, changes: Mapping[str, Any]) -> RecurrenceRule:
        current = self.require_rule(rule_id)
        updated = apply_rule_changes(current, changes)
        return self._save_rule(updated)

    def require_rule(self, rule_id: str) -> RecurrenceRule:
        rule = self.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(f"Recurring transaction {rule_id} not found.")
        return rule

    def update_watermark(self, rule_id: str, new_last_generated_date: date) -> None:
        rule = self.require_rule(rule_id)
        with self.rule_batch(rule) as batch:
            batch.update_watermark(new_last_generated_date)


def check_watermark_advance(current: date | None, new_value: date) -> None:
    if current is not None and new_value < current:
        raise WatermarkConflictError(
            f"Watermark cannot move back from {current.isoformat()} to {new_value.isoformat()}."
        )


def build_transaction(
    owner_id: int,
    description: str,
    amount: Decimal,
    date: date,
    currency: str,
    category_id: int | None = None,
    notes: str | None = None,
    is_income: bool = False,
    recurring_rule_id: str | None = None,
) -> Transaction:
    try:
        amount = coerce_amount(amount)
        currency = normalize_currency(currency)
    except ValidationError as exc:
        raise StorageError(f"Invalid transaction: {exc}") from exc
    return Transaction(
        id=new_identifier(),
        owner_id=owner_id,
        description=description,
        amount=amount,
        date=date,
        currency=currency,
        category_id=category_id,
        notes=notes,
        is_income=bool(is_income),
        recurring_rule_id=recurring_rule_id,
        created_at=datetime.now(),
    )


class _MemoryRuleBatch:
    def __init__(self, storage: "InMemoryStorage", rule: RecurrenceRule) -> None:
        self._storage = storage
        self.rule = rule
        self.pending: List[Transaction] = []
        self.watermark: date | None = None

    def create_transaction(self, **kwargs: Any) -> Transaction:
        transaction = self._storage._build_transaction(**kwargs)
        if transaction.recurring_rule_id is not None:
            key = (transaction.recurring_rule_id, transaction.date)
            staged = {(txn.recurring_rule_id, txn.date) for txn in self.pending}
            if key in staged or self._storage._has_occurrence(*key):
                raise DuplicateOccurrenceError(
                    f"Transaction for {key[0]} on {key[1].isoformat()} already exists."
                )
        self.pending.append(transaction)
        return transaction

    def update_watermark(self, new_last_generated_date: date) -> None:
        check_watermark_advance(
            self.watermark or self.rule.last_generated_date, new_last_generated_date
        )
        self.watermark = new_last_generated_date


class InMemoryStorage(RecurrenceStorage):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rule_locks: Dict[str, threading.Lock] = {}
        self._rules: Dict[str, RecurrenceRule] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._occurrence_keys: Set[Tuple[str, date]] = set()

    def list_active_rules(self) -> List[RecurrenceRule]:
        with self._lock:
            return [rule for rule in self._rules.values() if rule.is_active]

    def list_rules(self, owner_id: int) -> List[RecurrenceRule]:
        with self._lock:
            rules = [rule for rule in self._rules.values() if rule.owner_id == owner_id]
        return sorted(rules, key=lambda rule: rule.created_at, reverse=True)

    def get_rule(self, rule_id: str) -> Optional[RecurrenceRule]:
        with self._lock:
            return self._rules.get(rule_id)

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            self._rule_locks.pop(rule_id, None)
            return self._rules.pop(rule_id, None) is not None

    def list_transactions(
        self, owner_id: int, rule_id: str | None = None
    ) -> List[Transaction]:
        with self._lock:
            transactions = [
                txn
                for txn in self._transactions.values()
                if txn.owner_id == owner_id
                and (rule_id is None or txn.recurring_rule_id == rule_id)
            ]
        return sorted(transactions, key=lambda txn: (txn.date, txn.created_at))

    def create_transaction(self, **kwargs: Any) -> Transaction:
        transaction = self._build_transaction(**kwargs)
        with self._lock:
            if transaction.recurring_rule_id is not None and self._has_occurrence_locked(
                transaction.recurring_rule_id, transaction.date
            ):
                raise DuplicateOccurrenceError(
                    f"Transaction for {transaction.recurring_rule_id} on "
                    f"{transaction.date.isoformat()} already exists."
                )
            self._store_transaction_locked(transaction)
        return transaction

    @contextmanager
    def rule_batch(self, rule: RecurrenceRule) -> Iterator[_MemoryRuleBatch]:
        with self._lock:
            rule_lock = self._rule_locks.setdefault(rule.id, threading.Lock())
        with rule_lock:
            current = self.get_rule(rule.id)
            if current is None:
                raise RuleNotFoundError(f"Recurring transaction {rule.id} not found.")
            if current.last_generated_date != rule.last_generated_date:
                raise WatermarkConflictError(
                    f"Recurring transaction {rule.id} was processed concurrently."
                )
            batch = _MemoryRuleBatch(self, current)
            yield batch
            with self._lock:
                for transaction in batch.pending:
                    self._store_transaction_locked(transaction)
                if batch.watermark is not None and rule.id in self._rules:
                    self._rules[rule.id] = replace(
                        self._rules[rule.id], last_generated_date=batch.watermark
                    )

    def _insert_rule(self, rule: RecurrenceRule) -> RecurrenceRule:
        created = replace(rule, created_at=datetime.now())
        with self._lock:
            self._rules[created.id] = created
        return created

    def _save_rule(self, rule: RecurrenceRule) -> RecurrenceRule:
        with self._lock:
            current = self._rules.get(rule.id)
            if current is None:
                raise RuleNotFoundError(f"Recurring transaction {rule.id} not found.")
            saved = replace(rule, last_generated_date=current.last_generated_date)
            self._rules[rule.id] = saved
        return saved

    def _build_transaction(self, **kwargs: Any) -> Transaction:
        return build_transaction(**kwargs)

    def _has_occurrence(self, rule_id: str, occurrence_date: date) -> bool:
        with self._lock:
            return self._has_occurrence_locked(rule_id, occurrence_date)

    def _has_occurrence_locked(self, rule_id: str, occurrence_date: date) -> bool:
        return (rule_id, occurrence_date) in self._occurrence_keys

    def _store_transaction_locked(self, transaction: Transaction) -> None:
        self._transactions[transaction.id] = transaction
        if transaction.recurring_rule_id is not None:
            self._occurrence_keys.add((transaction.recurring_rule_id, transaction.date))
