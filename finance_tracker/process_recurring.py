"""Scheduled entry point that materializes due recurring transactions.

Meant to be run once a day by cron or a similar scheduler::

    finance-tracker-process-recurring --as-of 2024-06-30
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from datetime import date, datetime
from typing import Sequence

from finance_tracker.config import build_storage, configure_logging
from finance_tracker.recurrence_processor import RecurrenceProcessingError, RecurrenceProcessor
from finance_tracker.storage import StorageError

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate due recurring transactions.")
    parser.add_argument(
        "--as-of",
        type=_parse_date,
        default=None,
        help="Processing date in YYYY-MM-DD format (defaults to today).",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Overrides the DATABASE_URL environment variable.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    configure_logging()
    args = parse_args(argv)
    as_of = args.as_of or date.today()

    cancel_event = threading.Event()
    previous_handler = signal.signal(signal.SIGTERM, lambda signum, frame: cancel_event.set())

    try:
        processor = RecurrenceProcessor(build_storage(args.database_url))
        count = processor.process_all(as_of, cancel_event=cancel_event)
    except RecurrenceProcessingError as exc:
        logger.error("%s %s transaction(s) generated before the failure.", exc, exc.created)
        return 1
    except StorageError:
        logger.exception("Recurring processing failed")
        return 1
    finally:
        signal.signal(signal.SIGTERM, previous_handler)
    print(f"Generated {count} recurring transaction(s) as of {as_of.isoformat()}.")
    return 0


def _parse_date(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise argparse.ArgumentTypeError("Date must be in YYYY-MM-DD format.") from exc


if __name__ == "__main__":
    sys.exit(main())
