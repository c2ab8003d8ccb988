"""Persistence layer for waypoint workflow state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import WaypointConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .repository import WorkflowRepository
from .sql import SQLModelWorkflowRepository

_repository_instance: WorkflowRepository | None = None

_SYNC_DRIVERS = {
    "sqlite://": "sqlite+aiosqlite://",
    "postgres://": "postgresql+asyncpg://",
    "postgresql://": "postgresql+asyncpg://",
}


def _async_url(database_url: str) -> str:
    for prefix, replacement in _SYNC_DRIVERS.items():
        if database_url.startswith(prefix):
            return replacement + database_url[len(prefix):]
    return database_url


def get_repository(
    database_url: Optional[str] = None, config: Optional[WaypointConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow repository.

    The backend is selected from ``database_url`` which can be provided
    explicitly, via environment variable ``WAYPOINT_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned. Plain ``sqlite://`` and
    ``postgresql://`` URLs are mapped onto their async drivers.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("WAYPOINT_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryWorkflowRepository()
        return _repository_instance

    url = _async_url(database_url)
    if not (url.startswith("sqlite+") or url.startswith("postgresql+")):
        raise ValueError(f"Unsupported database backend: {database_url}")
    _repository_instance = SQLModelWorkflowRepository(url)
    return _repository_instance


def reset_repository() -> None:
    """Forget the cached repository instance."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "WorkflowRepository",
    "InMemoryWorkflowRepository",
    "SQLModelWorkflowRepository",
    "get_repository",
    "reset_repository",
]
