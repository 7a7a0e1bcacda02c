"""Persistence layer for dossiers and step instances."""

from __future__ import annotations

import logging
from typing import Optional

from ..config import DossierflowConfig, load_config
from .inmemory import InMemoryStepInstanceStore
from .models import (
    AuditEvent,
    Document,
    DocumentIssues,
    DocumentStatus,
    DocumentVersion,
    Dossier,
    FieldValue,
    RequiredDocument,
    ReviewStatus,
    StepInstance,
    StepStatus,
    TransitionRecord,
)
from .repository import StepInstanceStore
from .sqlite import SQLiteStepInstanceStore

logger = logging.getLogger(__name__)

_repository_instance: StepInstanceStore | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[DossierflowConfig] = None
) -> StepInstanceStore:
    """Factory function to obtain a step instance store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly or through the loaded configuration (which already honours
    ``DOSSIERFLOW_DATABASE_URL`` and ``DATABASE_URL``). When no database is
    configured, an in-memory store is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = database_url or config.database_url

    if not database_url:
        _repository_instance = InMemoryStepInstanceStore()
    elif database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteStepInstanceStore(path)
    elif database_url.startswith(("postgres://", "postgresql://")):
        from .postgres import PostgresStepInstanceStore

        _repository_instance = PostgresStepInstanceStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    logger.debug(f"Using {type(_repository_instance).__name__} store")
    return _repository_instance


def reset_repository() -> None:
    """Forget the cached store so the next lookup builds a fresh one."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "AuditEvent",
    "Document",
    "DocumentIssues",
    "DocumentStatus",
    "DocumentVersion",
    "Dossier",
    "FieldValue",
    "RequiredDocument",
    "ReviewStatus",
    "StepInstance",
    "StepStatus",
    "TransitionRecord",
    "StepInstanceStore",
    "InMemoryStepInstanceStore",
    "SQLiteStepInstanceStore",
    "get_repository",
    "reset_repository",
]
