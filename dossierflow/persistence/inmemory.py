"""In-memory implementation of the step instance store."""

from __future__ import annotations

import asyncio
from typing import Dict, Optional

from ..catalog import StepCatalog
from ..errors import NotFoundError, PersistenceError, StaleStateError
from .models import (
    AuditEvent,
    Document,
    Dossier,
    FieldValue,
    StepInstance,
    TransitionRecord,
)
from .repository import StepInstanceStore


class InMemoryStepInstanceStore(StepInstanceStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never hold a live reference to stored state.
    """

    def __init__(self) -> None:
        self._catalogs: Dict[str, StepCatalog] = {}
        self._dossiers: Dict[str, Dossier] = {}
        self._instances: Dict[str, StepInstance] = {}
        self._field_values: Dict[str, Dict[str, FieldValue]] = {}
        self._documents: Dict[str, Document] = {}
        self._events: list[AuditEvent] = []
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_catalog(self, catalog: StepCatalog) -> None:
        self._catalogs[catalog.product_id] = catalog.model_copy(deep=True)

    async def get_step_catalog(self, product_id: str) -> Optional[StepCatalog]:
        catalog = self._catalogs.get(product_id)
        return catalog.model_copy(deep=True) if catalog else None

    async def create_dossier(self, dossier: Dossier) -> None:
        if dossier.id in self._dossiers:
            raise PersistenceError(f"Dossier {dossier.id} already exists")
        self._dossiers[dossier.id] = dossier.model_copy(deep=True)

    async def get_dossier(self, dossier_id: str) -> Optional[Dossier]:
        dossier = self._dossiers.get(dossier_id)
        return dossier.model_copy(deep=True) if dossier else None

    async def get_or_create_step_instance(
        self, dossier_id: str, step_id: str, instance: StepInstance
    ) -> StepInstance:
        async with self._lock:
            for existing in self._instances.values():
                if existing.dossier_id == dossier_id and existing.step_id == step_id:
                    return existing.model_copy(deep=True)
            self._instances[instance.id] = instance.model_copy(deep=True)
            return instance.model_copy(deep=True)

    async def get_step_instance(self, instance_id: str) -> Optional[StepInstance]:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def list_step_instances(self, dossier_id: str) -> list[StepInstance]:
        return [
            i.model_copy(deep=True)
            for i in self._instances.values()
            if i.dossier_id == dossier_id
        ]

    async def get_field_values(self, step_instance_id: str) -> list[FieldValue]:
        values = self._field_values.get(step_instance_id, {})
        return [v.model_copy(deep=True) for v in values.values()]

    async def list_documents(self, step_instance_id: str) -> list[Document]:
        return [
            d.model_copy(deep=True)
            for d in self._documents.values()
            if d.step_instance_id == step_instance_id
        ]

    async def get_document(self, document_id: str) -> Optional[Document]:
        document = self._documents.get(document_id)
        return document.model_copy(deep=True) if document else None

    # ------------------------------------------------------------------
    async def commit(self, record: TransitionRecord) -> None:
        async with self._lock:
            self._check(record)
            if record.instance is not None:
                self._instances[record.instance.id] = record.instance.model_copy(deep=True)
            for value in record.field_values:
                self._field_values.setdefault(value.step_instance_id, {})[
                    value.field_key
                ] = value.model_copy(deep=True)
            if record.document is not None:
                self._documents[record.document.id] = record.document.model_copy(deep=True)
            if record.dossier is not None:
                self._dossiers[record.dossier.id] = record.dossier.model_copy(deep=True)
            self._events.extend(e.model_copy(deep=True) for e in record.events)

    def _check(self, record: TransitionRecord) -> None:
        if record.instance is not None:
            stored = self._instances.get(record.instance.id)
            if stored is None:
                raise NotFoundError(f"Step instance {record.instance.id} not found")
            if stored.revision != record.expected_instance_revision:
                raise StaleStateError(
                    record.instance.id,
                    expected=record.expected_instance_revision,
                    actual=stored.revision,
                )
        if record.document is not None:
            stored_doc = self._documents.get(record.document.id)
            if record.expected_document_revision is None:
                if stored_doc is not None:
                    raise StaleStateError(
                        record.document.id, expected=None, actual=stored_doc.revision
                    )
            elif stored_doc is None or stored_doc.revision != record.expected_document_revision:
                raise StaleStateError(
                    record.document.id,
                    expected=record.expected_document_revision,
                    actual=stored_doc.revision if stored_doc else None,
                )
        if record.dossier is not None and record.dossier.id not in self._dossiers:
            raise NotFoundError(f"Dossier {record.dossier.id} not found")

    async def find_event(self, idempotency_key: str) -> Optional[AuditEvent]:
        for event in self._events:
            if event.idempotency_key == idempotency_key:
                return event.model_copy(deep=True)
        return None

    async def list_events(self, dossier_id: str) -> list[AuditEvent]:
        return [e.model_copy(deep=True) for e in self._events if e.dossier_id == dossier_id]
