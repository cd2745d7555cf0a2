from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable

from finance_tracker.occurrence_generator import due_occurrences
from finance_tracker.recurrence_rule import RECURRING_NOTE_TAG, RecurrenceRule, tag_recurring_note
from finance_tracker.storage import (
    RecurrenceStorage,
    RuleNotFoundError,
    StorageError,
    WatermarkConflictError,
)

logger = logging.getLogger(__name__)


class RecurrenceProcessingError(StorageError):
    """Raised after a processing pass in which one or more rules failed.

    Rules that failed were rolled back and will be retried on the next pass;
    ``created`` counts the transactions committed for the other rules.
    """

    def __init__(self, created: int, failures: Dict[str, StorageError]) -> None:
        self.created = created
        self.failures = failures
        rule_ids = ", ".join(sorted(failures))
        super().__init__(
            f"Failed to process {len(failures)} recurring transaction(s): {rule_ids}."
        )


@dataclass
class RecurrenceProcessor:
    storage: RecurrenceStorage
    note_tag: str = RECURRING_NOTE_TAG

    def process_all(
        self,
        as_of: date,
        cancel_event: threading.Event | None = None,
    ) -> int:
        return self.process_rules(self.storage.list_active_rules(), as_of, cancel_event)

    def process_rules(
        self,
        rules: Iterable[RecurrenceRule],
        as_of: date,
        cancel_event: threading.Event | None = None,
    ) -> int:
        created = 0
        failures: Dict[str, StorageError] = {}
        for rule in rules:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Recurring processing cancelled after %s transaction(s)", created)
                break
            try:
                created += self.process_rule(rule, as_of)
            except WatermarkConflictError:
                logger.warning(
                    "Skipping recurring transaction %s: processed by another run", rule.id
                )
            except RuleNotFoundError:
                logger.warning(
                    "Skipping recurring transaction %s: deleted during processing", rule.id
                )
            except StorageError as exc:
                logger.exception("Failed to process recurring transaction %s", rule.id)
                failures[rule.id] = exc

        if failures:
            raise RecurrenceProcessingError(created, failures)
        logger.info(
            "Generated %s recurring transaction(s) as of %s", created, as_of.isoformat()
        )
        return created

    def process_rule(self, rule: RecurrenceRule, as_of: date) -> int:
        with self.storage.rule_batch(rule) as batch:
            current = batch.rule
            occurrences = due_occurrences(current, as_of)
            if not occurrences:
                return 0

            template = current.template
            notes = tag_recurring_note(template.notes, self.note_tag)
            for occurrence in occurrences:
                batch.create_transaction(
                    owner_id=current.owner_id,
                    description=template.description,
                    amount=template.amount,
                    date=occurrence.date,
                    currency=template.currency,
                    category_id=template.category_id,
                    notes=notes,
                    is_income=template.is_income,
                    recurring_rule_id=occurrence.rule_id,
                )
            watermark = max(occurrence.date for occurrence in occurrences)
            batch.update_watermark(watermark)

        logger.debug(
            "Recurring transaction %s: %s occurrence(s) through %s",
            current.id,
            len(occurrences),
            watermark.isoformat(),
        )
        return len(occurrences)
