"""Audit events for transitions, reviews and overrides."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from ..persistence.models import AuditEvent
from .policy import Actor

logger = logging.getLogger(__name__)

STEP_SUBMITTED = "STEP_SUBMITTED"
STEP_RESUBMITTED = "STEP_RESUBMITTED"
REVIEW_STARTED = "REVIEW_STARTED"
FIELD_REVIEWED = "FIELD_REVIEWED"
DOCUMENT_UPLOADED = "DOCUMENT_UPLOADED"
DOCUMENT_REVIEWED = "DOCUMENT_REVIEWED"
STEP_APPROVED = "STEP_APPROVED"
STEP_REJECTED = "STEP_REJECTED"
STEP_COMPLETED = "STEP_COMPLETED"
STEP_ASSIGNED = "STEP_ASSIGNED"
OVERRIDE_USED = "OVERRIDE_USED"
DOSSIER_STATUS_CHANGED = "DOSSIER_STATUS_CHANGED"


class AuditLog:
    """Builds audit events for a transition and logs them.

    Events are not written here: the engine hands them to the store together
    with the state change so both land in the same commit.
    """

    def record(
        self,
        event_type: str,
        *,
        dossier_id: str,
        entity_type: str,
        entity_id: str,
        actor: Optional[Actor],
        created_at: datetime,
        payload: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            dossier_id=dossier_id,
            entity_type=entity_type,
            entity_id=entity_id,
            event_type=event_type,
            actor_id=actor.id if actor else None,
            actor_role=actor.primary_role if actor else None,
            payload=payload or {},
            idempotency_key=idempotency_key,
            created_at=created_at,
        )
        actor_id = event.actor_id or "system"
        if event_type == OVERRIDE_USED:
            logger.warning(
                f"Override used by {actor_id} on {entity_type} {entity_id}: {event.payload}"
            )
        else:
            logger.info(f"{event_type} {entity_type} {entity_id} by {actor_id}")
        return event
