"""Repository abstraction for dossier and step instance persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from ..catalog import StepCatalog
from .models import (
    AuditEvent,
    Document,
    Dossier,
    FieldValue,
    StepInstance,
    TransitionRecord,
)


class StepInstanceStore(Protocol):
    """Protocol for workflow state persistence backends.

    Implementations must apply :meth:`commit` atomically and reject it with
    :class:`~dossierflow.errors.StaleStateError` when a stored revision no
    longer matches the expected one. Backend failures surface as
    :class:`~dossierflow.errors.PersistenceError`.
    """

    async def save_catalog(self, catalog: StepCatalog) -> None:
        """Persist (replace) the step catalog of a product."""

    async def get_step_catalog(self, product_id: str) -> Optional[StepCatalog]:
        """Return the catalog ordered by position, if one is stored."""

    async def create_dossier(self, dossier: Dossier) -> None:
        """Persist a new dossier."""

    async def get_dossier(self, dossier_id: str) -> Optional[Dossier]:
        """Retrieve a dossier by id."""

    async def get_or_create_step_instance(
        self, dossier_id: str, step_id: str, instance: StepInstance
    ) -> StepInstance:
        """Return the stored instance for the pair, inserting ``instance`` if none."""

    async def get_step_instance(self, instance_id: str) -> Optional[StepInstance]:
        """Retrieve a step instance by id."""

    async def list_step_instances(self, dossier_id: str) -> list[StepInstance]:
        """Return every instance created for a dossier."""

    async def get_field_values(self, step_instance_id: str) -> list[FieldValue]:
        """Return the field values stored for an instance."""

    async def list_documents(self, step_instance_id: str) -> list[Document]:
        """Return the documents attached to an instance."""

    async def get_document(self, document_id: str) -> Optional[Document]:
        """Retrieve a document by id."""

    async def commit(self, record: TransitionRecord) -> None:
        """Atomically apply a transition after the optimistic revision check."""

    async def find_event(self, idempotency_key: str) -> Optional[AuditEvent]:
        """Return the event recorded under ``idempotency_key``, if any."""

    async def list_events(self, dossier_id: str) -> list[AuditEvent]:
        """Return a dossier's audit events, oldest first."""
