from __future__ import annotations

import logging
import os

from finance_tracker.recurrence_rule import ValidationError, normalize_currency
from finance_tracker.sql_storage import SQLStorage
from finance_tracker.storage import InMemoryStorage, RecurrenceStorage

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_database_url() -> str | None:
    return os.getenv("DATABASE_URL") or None


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValidationError:
        return "USD"


def configure_logging() -> None:
    level_name = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=DEFAULT_LOG_FORMAT)


def build_storage(database_url: str | None = None) -> RecurrenceStorage:
    """In-memory storage when no database is configured, SQL storage otherwise."""
    url = database_url if database_url is not None else get_database_url()
    if not url or url == "memory":
        return InMemoryStorage()
    storage = SQLStorage.from_url(url)
    storage.init_schema()
    return storage
