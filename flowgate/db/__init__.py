"""Persistence layer for flowgate executions."""

from __future__ import annotations

from typing import Optional

from ..config import FlowgateConfig, load_config
from .models import CustomerApiKey, SweepLock, UserInput, Workflow, WorkflowExecution
from .store import ExecutionDB, parse_id

_database_instance: ExecutionDB | None = None


def get_database(
    database_url: Optional[str] = None, config: Optional[FlowgateConfig] = None
) -> ExecutionDB:
    """Factory function to obtain the execution database.

    The URL can be provided explicitly or comes from loaded configuration
    (which already honours ``FLOWGATE_DATABASE_URL`` and ``DATABASE_URL``).
    Only async drivers are supported: ``sqlite+aiosqlite`` and
    ``postgresql+asyncpg``.
    """

    global _database_instance
    if _database_instance is not None and database_url is None and config is None:
        return _database_instance

    config = config or load_config()
    database_url = database_url or config.database_url

    if database_url.startswith("sqlite://"):
        database_url = database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    elif database_url.startswith("postgres://") or database_url.startswith("postgresql://"):
        database_url = "postgresql+asyncpg://" + database_url.split("://", 1)[1]
    elif not (
        database_url.startswith("sqlite+aiosqlite://")
        or database_url.startswith("postgresql+asyncpg://")
    ):
        raise ValueError(f"Unsupported database backend: {database_url}")

    _database_instance = ExecutionDB(database_url)
    return _database_instance


__all__ = [
    "CustomerApiKey",
    "ExecutionDB",
    "SweepLock",
    "UserInput",
    "Workflow",
    "WorkflowExecution",
    "get_database",
    "parse_id",
]
