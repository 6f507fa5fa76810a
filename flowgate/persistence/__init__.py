"""Deployment history ledger."""

from __future__ import annotations

import os
from typing import Callable, Dict, Optional

from ..config import FlowgateConfig, load_config
from .inmemory import InMemoryHistoryRepository
from .models import HistoryEntry, HistorySummary, normalize_status_filter
from .postgres import PostgresHistoryRepository
from .repository import HistoryRepository
from .sqlite import SQLiteHistoryRepository

# Checked in order before the loaded configuration.
DATABASE_URL_ENV = ("FLOWGATE_DATABASE_URL", "DATABASE_URL")

_repository_instance: HistoryRepository | None = None


def _sqlite_backend(url: str) -> HistoryRepository:
    return SQLiteHistoryRepository(url.split("://", 1)[1])


_BACKENDS: Dict[str, Callable[[str], HistoryRepository]] = {
    "sqlite": _sqlite_backend,
    "postgres": PostgresHistoryRepository,
    "postgresql": PostgresHistoryRepository,
}


def resolve_database_url(config: Optional[FlowgateConfig] = None) -> Optional[str]:
    for name in DATABASE_URL_ENV:
        value = os.getenv(name)
        if value:
            return value
    return (config or load_config()).database_url


def open_repository(database_url: Optional[str]) -> HistoryRepository:
    """Build a fresh ledger backend for ``database_url``.

    No URL means an in-memory ledger. The URL scheme picks the backend;
    schemes other than ``sqlite``, ``postgres`` and ``postgresql`` raise
    ``ValueError``.
    """
    if not database_url:
        return InMemoryHistoryRepository()
    scheme, sep, _ = database_url.partition("://")
    backend = _BACKENDS.get(scheme.lower()) if sep else None
    if backend is None:
        raise ValueError(f"Unsupported database backend: {database_url}")
    return backend(database_url)


def get_repository(
    database_url: Optional[str] = None, config: Optional[FlowgateConfig] = None
) -> HistoryRepository:
    """Return the process-wide ledger, opening it on first use.

    Passing ``database_url`` or ``config`` replaces the shared instance.
    """
    global _repository_instance
    if _repository_instance is None or database_url or config is not None:
        _repository_instance = open_repository(
            database_url or resolve_database_url(config)
        )
    return _repository_instance


__all__ = [
    "HistoryEntry",
    "HistoryRepository",
    "HistorySummary",
    "InMemoryHistoryRepository",
    "PostgresHistoryRepository",
    "SQLiteHistoryRepository",
    "get_repository",
    "normalize_status_filter",
    "open_repository",
    "resolve_database_url",
]
