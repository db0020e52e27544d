"""Persistence layer for forgeflow executions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ForgeflowConfig, load_config
from .inmemory import InMemoryStateStore
from .models import (
    ErrorInfo,
    ExecutionStatus,
    JoinState,
    StepStatus,
    TriggerInfo,
    WorkflowExecution,
    WorkflowStep,
)
from .repository import StateStore
from .sql import SQLStateStore

_store_instance: StateStore | None = None

_SQL_PREFIXES = ("sqlite+aiosqlite://", "postgresql+asyncpg://")


def _normalize_url(database_url: str) -> str:
    """Map plain driver URLs onto their async dialects."""
    if database_url.startswith("sqlite:///"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


def get_state_store(
    database_url: Optional[str] = None, config: Optional[ForgeflowConfig] = None
) -> StateStore:
    """Factory function to obtain a state store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``FORGEFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FORGEFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _store_instance = InMemoryStateStore()
        return _store_instance

    url = _normalize_url(database_url)
    if not url.startswith(_SQL_PREFIXES):
        raise ValueError(f"Unsupported database backend: {database_url}")
    _store_instance = SQLStateStore(url)
    return _store_instance


__all__ = [
    "ErrorInfo",
    "ExecutionStatus",
    "InMemoryStateStore",
    "JoinState",
    "SQLStateStore",
    "StateStore",
    "StepStatus",
    "TriggerInfo",
    "WorkflowExecution",
    "WorkflowStep",
    "get_state_store",
]
