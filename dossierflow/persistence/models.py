"""Data models for persisted dossier and step state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..constants import DEFAULT_DOSSIER_STATUS


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class StepStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ReviewStatus(str, Enum):
    """Per-field review state, independent of the instance status."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class DocumentStatus(str, Enum):
    NOT_SUBMITTED = "NOT_SUBMITTED"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Dossier(BaseModel):
    """A client's case file moving through a product's steps."""

    id: str
    product_id: str
    status: str = DEFAULT_DOSSIER_STATUS
    current_step_instance_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class StepInstance(BaseModel):
    """Runtime record of one catalog step for one dossier."""

    id: str = Field(default_factory=new_id)
    dossier_id: str
    step_id: str
    status: StepStatus = StepStatus.DRAFT
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    assigned_agent_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    validated_by: Optional[str] = None
    validated_at: Optional[datetime] = None
    revision: int = 0


class FieldValue(BaseModel):
    step_instance_id: str
    field_key: str
    value: Any = None
    validation_status: ReviewStatus = ReviewStatus.PENDING
    rejection_reason: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)


class DocumentVersion(BaseModel):
    """One uploaded file. Only the latest version of a document is live."""

    number: int
    file_ref: str
    uploaded_at: datetime = Field(default_factory=utcnow)
    uploaded_by: Optional[str] = None
    status: DocumentStatus = DocumentStatus.PENDING
    review_reason: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None


class Document(BaseModel):
    """A required document slot of a step instance and its version history."""

    id: str = Field(default_factory=new_id)
    dossier_id: str
    step_instance_id: str
    document_type_id: str
    versions: list[DocumentVersion] = Field(default_factory=list)
    revision: int = 0

    @property
    def current_version(self) -> Optional[DocumentVersion]:
        return self.versions[-1] if self.versions else None

    @property
    def status(self) -> DocumentStatus:
        current = self.current_version
        return current.status if current else DocumentStatus.NOT_SUBMITTED


class RequiredDocument(BaseModel):
    """A document type a step requires, with the document submitted for it."""

    document_type_id: str
    document: Optional[Document] = None

    @property
    def status(self) -> DocumentStatus:
        return self.document.status if self.document else DocumentStatus.NOT_SUBMITTED


class DocumentIssues(BaseModel):
    """Required document type ids grouped by what is wrong with them."""

    not_submitted: list[str] = Field(default_factory=list)
    pending: list[str] = Field(default_factory=list)
    rejected: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.not_submitted or self.pending or self.rejected)

    def as_missing(self) -> dict[str, list[str]]:
        return {k: v for k, v in self.model_dump().items() if v}


class AuditEvent(BaseModel):
    """Durable record of a transition, review or override."""

    id: str = Field(default_factory=new_id)
    dossier_id: str
    entity_type: str
    entity_id: str
    event_type: str
    actor_id: Optional[str] = None
    actor_role: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class TransitionRecord(BaseModel):
    """Everything one engine action writes, committed atomically.

    ``instance`` and ``document`` carry the *new* state; the store checks that
    the stored revision still equals ``expected_*_revision`` and bumps it.
    """

    instance: Optional[StepInstance] = None
    expected_instance_revision: Optional[int] = None
    field_values: list[FieldValue] = Field(default_factory=list)
    document: Optional[Document] = None
    expected_document_revision: Optional[int] = None
    dossier: Optional[Dossier] = None
    events: list[AuditEvent] = Field(default_factory=list)
