"""Durable journal for shopflow workflow runs."""

from __future__ import annotations

from typing import Optional

from ..config import ShopflowConfig, load_config
from .inmemory import InMemoryWorkflowJournal
from .journal import WorkflowJournal
from .sqlite import SQLiteWorkflowJournal

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresWorkflowJournal
except ImportError:  # pragma: no cover - optional dependency
    PostgresWorkflowJournal = None  # type: ignore

_journal_instance: WorkflowJournal | None = None


def get_journal(
    database_url: Optional[str] = None, config: Optional[ShopflowConfig] = None
) -> WorkflowJournal:
    """Factory function to obtain the process-wide workflow journal.

    The backend is selected from ``database_url``, which can be provided
    explicitly, via ``SHOPFLOW_JOURNAL_URL`` or from loaded configuration.
    When no database is configured, an in-memory journal is returned.
    """

    global _journal_instance
    if _journal_instance is not None and database_url is None and config is None:
        return _journal_instance

    config = config or load_config()
    database_url = database_url or config.journal_url

    if not database_url:
        _journal_instance = InMemoryWorkflowJournal()
        return _journal_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _journal_instance = SQLiteWorkflowJournal(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresWorkflowJournal is None:
            raise RuntimeError("Postgres support not available, install asyncpg")
        _journal_instance = PostgresWorkflowJournal(database_url)
    else:
        raise ValueError(f"Unsupported journal backend: {database_url}")

    return _journal_instance


__all__ = [
    "WorkflowJournal",
    "InMemoryWorkflowJournal",
    "SQLiteWorkflowJournal",
    "PostgresWorkflowJournal",
    "get_journal",
]
