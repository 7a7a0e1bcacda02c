"""Step transition engine: the state machine behind every dossier step."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence

from .catalog import Step, StepCatalog, StepType
from .config import DossierflowConfig, load_config
from .contracts import Action, ActiveStepView, Navigation, TransitionResult
from .errors import (
    GateNotSatisfiedError,
    NotFoundError,
    OverrideUsedError,
    PersistenceError,
    StaleStateError,
    ValidationError,
)
from .gates import (
    all_required_approved,
    document_issues,
    is_empty,
    next_step_unlock_at,
    submission_blockers,
    validate_fields,
)
from .persistence.models import (
    AuditEvent,
    Document,
    DocumentStatus,
    DocumentVersion,
    Dossier,
    FieldValue,
    RequiredDocument,
    ReviewStatus,
    StepInstance,
    StepStatus,
    TransitionRecord,
    new_id,
)
from .persistence.repository import StepInstanceStore
from .security import audit
from .security.audit import AuditLog
from .security.policy import Actor, PolicyEngine

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

EDITABLE_STATUSES = frozenset({StepStatus.DRAFT, StepStatus.REJECTED})


def _utc_clock() -> datetime:
    return datetime.now(timezone.utc)


def can_edit(instance: StepInstance) -> bool:
    """Whether the client may change the instance's fields and documents."""
    return instance.status in EDITABLE_STATUSES


def can_edit_field(instance: StepInstance, field_key: str) -> bool:
    # Every field reopens on rejection, not only the ones marked rejected.
    return can_edit(instance)


def is_done(instance: Optional[StepInstance]) -> bool:
    return (
        instance is not None
        and instance.completed_at is not None
        and instance.status != StepStatus.REJECTED
    )


def legal_actions(
    step: Step,
    instance: Optional[StepInstance],
    *,
    timer_blocked: bool = False,
    fields_approved: bool = True,
    documents_approved: bool = True,
) -> List[Action]:
    """List the actions the current state of ``instance`` allows."""
    if instance is None or step.type == StepType.TIMER:
        return []

    actions: List[Action] = []
    status = instance.status
    if step.type in (StepType.CLIENT, StepType.ADMIN) and can_edit(instance):
        actions.append(Action.EDIT)

    if step.type == StepType.CLIENT:
        if status == StepStatus.DRAFT and not timer_blocked:
            actions.append(Action.SUBMIT)
        elif status == StepStatus.REJECTED:
            actions.append(Action.RESUBMIT)
        elif status == StepStatus.SUBMITTED:
            actions.append(Action.START_REVIEW)
        elif status == StepStatus.UNDER_REVIEW:
            if fields_approved and documents_approved:
                actions.append(Action.APPROVE)
            actions.append(Action.REJECT)
    elif step.type == StepType.ADMIN:
        if status == StepStatus.DRAFT and not timer_blocked:
            actions.append(Action.MARK_COMPLETE)
    elif step.type == StepType.FORMATION:
        if instance.completed_at is None and not timer_blocked:
            actions.append(Action.MARK_COMPLETE)

    if is_done(instance):
        actions.append(Action.ADVANCE)
    return actions


def unapproved_fields(step: Step, stored: Mapping[str, FieldValue]) -> List[str]:
    """Keys of required or filled-in fields whose value is not approved yet."""
    return [
        f.key
        for f in step.fields
        if (f.required or f.key in stored)
        and (f.key not in stored or stored[f.key].validation_status != ReviewStatus.APPROVED)
    ]


def navigation_after(catalog: StepCatalog, index: int) -> tuple[Navigation, Optional[int]]:
    if catalog.is_last(index):
        return Navigation.WORKFLOW_COMPLETE, None
    return Navigation.ADVANCE, index + 1


@dataclass
class _StepContext:
    instance: StepInstance
    dossier: Dossier
    catalog: StepCatalog
    step: Step
    index: int


class StepTransitionEngine:
    """Apply step transitions for dossiers stored in ``store``.

    Each mutating call performs one transition and returns the authoritative
    new state. Nothing is written unless every check passes; the write itself
    is a single optimistic commit on the instance revision.
    """

    def __init__(
        self,
        store: StepInstanceStore,
        config: Optional[DossierflowConfig] = None,
        clock: Optional[Clock] = None,
        policy: Optional[PolicyEngine] = None,
        audit_log: Optional[AuditLog] = None,
    ) -> None:
        self.store = store
        self.config = config or load_config()
        self.clock = clock or _utc_clock
        self.policy = policy or PolicyEngine(self.config.policy)
        self.audit_log = audit_log or AuditLog()

    # ------------------------------------------------------------------
    # Loading helpers
    async def _catalog(self, product_id: str) -> StepCatalog:
        catalog = await self.store.get_step_catalog(product_id)
        if catalog is None:
            raise NotFoundError(f"No step catalog for product {product_id}")
        return catalog

    async def _dossier(self, dossier_id: str) -> Dossier:
        dossier = await self.store.get_dossier(dossier_id)
        if dossier is None:
            raise NotFoundError(f"Dossier {dossier_id} not found")
        return dossier

    async def _context(self, instance_id: str) -> _StepContext:
        instance = await self.store.get_step_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"Step instance {instance_id} not found")
        dossier = await self._dossier(instance.dossier_id)
        catalog = await self._catalog(dossier.product_id)
        index = catalog.index_of(instance.step_id)
        return _StepContext(instance, dossier, catalog, catalog.steps[index], index)

    @staticmethod
    def _check_revision(instance: StepInstance, expected_revision: Optional[int]) -> None:
        if expected_revision is not None and instance.revision != expected_revision:
            raise StaleStateError(
                instance.id, expected=expected_revision, actual=instance.revision
            )

    @staticmethod
    def _require_status(
        instance: StepInstance, allowed: Iterable[StepStatus], action: str
    ) -> None:
        allowed = list(allowed)
        if instance.status not in allowed:
            raise StaleStateError(
                instance.id,
                expected=[s.value for s in allowed],
                actual=instance.status.value,
                message=(
                    f"Cannot {action} step instance {instance.id} "
                    f"in status {instance.status.value}"
                ),
            )

    @staticmethod
    def _require_type(step: Step, *types: StepType) -> None:
        if step.type not in types:
            raise GateNotSatisfiedError(
                "step_type",
                missing={"step_type": [t.value for t in types]},
                message=f"Step {step.code} is a {step.type.value} step",
            )

    def _check_timer(self, ctx: _StepContext, instances: Sequence[StepInstance]) -> None:
        gate = next_step_unlock_at(ctx.catalog.steps, ctx.index, instances)
        now = self.clock()
        if gate is not None and gate.is_blocking(now):
            raise GateNotSatisfiedError(
                "timer",
                missing={"timer": [gate.timer_step_id]},
                message=(
                    f"Step {ctx.step.code} is locked for another "
                    f"{gate.remaining_minutes(now)} minutes"
                ),
                blocked_until=gate.unlock_at,
            )

    def _check_reason(self, reason: Optional[str]) -> str:
        minimum = self.config.policy.rejection_reason_min_length
        reason = (reason or "").strip()
        if len(reason) < minimum:
            raise ValidationError(
                {"reason": f"A rejection reason of at least {minimum} characters is required"}
            )
        return reason

    async def _values_by_key(self, instance_id: str) -> dict[str, FieldValue]:
        return {v.field_key: v for v in await self.store.get_field_values(instance_id)}

    async def _replay(
        self, idempotency_key: Optional[str], event_type: str, entity_id: str
    ) -> Optional[AuditEvent]:
        """Return the event already recorded under ``idempotency_key``.

        A key recorded for another action or another entity is a conflict,
        never a replay.
        """
        if not idempotency_key:
            return None
        event = await self.store.find_event(idempotency_key)
        if event is None:
            return None
        if event.event_type != event_type or event.entity_id != entity_id:
            logger.warning(
                f"Idempotency key {idempotency_key} reused for {event_type} on {entity_id}, "
                f"already recorded for {event.event_type} on {event.entity_id}"
            )
            raise StaleStateError(
                entity_id,
                expected=f"{event_type} on {entity_id}",
                actual=f"{event.event_type} on {event.entity_id}",
                message=(
                    f"Idempotency key {idempotency_key!r} was already used for "
                    f"{event.event_type} on {event.entity_id}"
                ),
            )
        logger.info(f"Replaying {event.event_type} for idempotency key {idempotency_key}")
        return event

    async def _replayed_result(self, event: AuditEvent) -> TransitionResult:
        instance_id = event.payload.get("step_instance_id", event.entity_id)
        instance = await self.store.get_step_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"Step instance {instance_id} not found")
        return TransitionResult(
            instance=instance,
            navigation=Navigation(event.payload.get("navigation", Navigation.STAY.value)),
            next_index=event.payload.get("next_index"),
            replayed=True,
        )

    def _event(
        self,
        event_type: str,
        ctx: _StepContext,
        actor: Optional[Actor],
        payload: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> AuditEvent:
        body = {"step_instance_id": ctx.instance.id, "step_code": ctx.step.code}
        body.update(payload or {})
        return self.audit_log.record(
            event_type,
            dossier_id=ctx.dossier.id,
            entity_type="step_instance",
            entity_id=ctx.instance.id,
            actor=actor,
            created_at=self.clock(),
            payload=body,
            idempotency_key=idempotency_key,
        )

    def _advance(self, ctx: _StepContext, **changes: Any) -> StepInstance:
        changes["revision"] = ctx.instance.revision + 1
        return ctx.instance.model_copy(update=changes)

    def _approval_dossier(
        self, ctx: _StepContext, actor: Actor, events: List[AuditEvent]
    ) -> Dossier:
        dossier = ctx.dossier.model_copy(update={"current_step_instance_id": ctx.instance.id})
        target = ctx.step.dossier_status_on_approval
        if target and target != dossier.status:
            events.append(
                self._event(
                    audit.DOSSIER_STATUS_CHANGED,
                    ctx,
                    actor,
                    {"from": dossier.status, "to": target},
                )
            )
            dossier.status = target
        return dossier

    async def _commit(self, record: TransitionRecord) -> None:
        try:
            await self.store.commit(record)
        except StaleStateError as exc:
            logger.warning(f"Transition rejected on stale state: {exc}")
            raise
        except PersistenceError as exc:
            logger.error(f"Failed to persist transition: {exc}")
            raise

    # ------------------------------------------------------------------
    # Queries
    async def create_dossier(
        self,
        product_id: str,
        dossier_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Dossier:
        await self._catalog(product_id)
        dossier = Dossier(id=dossier_id or new_id(), product_id=product_id)
        if status:
            dossier.status = status
        await self.store.create_dossier(dossier)
        logger.info(f"Created dossier {dossier.id} for product {product_id}")
        return dossier

    async def get_or_create_step_instance(
        self, dossier_id: str, step_id: str, now: Optional[datetime] = None
    ) -> StepInstance:
        dossier = await self._dossier(dossier_id)
        catalog = await self._catalog(dossier.product_id)
        step = catalog.steps[catalog.index_of(step_id)]
        if step.type == StepType.TIMER:
            raise GateNotSatisfiedError(
                "step_type",
                missing={"step_type": ["CLIENT", "ADMIN", "FORMATION"]},
                message=f"TIMER step {step.code} has no instance",
            )
        candidate = StepInstance(
            dossier_id=dossier_id, step_id=step_id, started_at=now or self.clock()
        )
        instance = await self.store.get_or_create_step_instance(dossier_id, step_id, candidate)
        if instance.id == candidate.id:
            logger.debug(f"Created step instance {instance.id} for step {step.code}")
        return instance

    async def get_field_values(self, instance_id: str) -> List[FieldValue]:
        return await self.store.get_field_values(instance_id)

    async def get_required_documents(self, instance_id: str) -> List[RequiredDocument]:
        ctx = await self._context(instance_id)
        return await self._required_documents(ctx.step, instance_id)

    async def _required_documents(self, step: Step, instance_id: str) -> List[RequiredDocument]:
        by_type = {d.document_type_id: d for d in await self.store.list_documents(instance_id)}
        return [
            RequiredDocument(document_type_id=t, document=by_type.get(t))
            for t in step.required_document_types
        ]

    async def get_active_step_view(
        self, dossier_id: str, now: Optional[datetime] = None
    ) -> ActiveStepView:
        """Return the view of the first step of the dossier that is not done."""
        dossier = await self._dossier(dossier_id)
        catalog = await self._catalog(dossier.product_id)
        instances = {i.step_id: i for i in await self.store.list_step_instances(dossier_id)}
        for index, step in enumerate(catalog.steps):
            if step.type == StepType.TIMER:
                continue
            if not is_done(instances.get(step.id)):
                return await self._build_view(dossier, catalog, index, now)
        return ActiveStepView(
            dossier_id=dossier_id,
            total_steps=len(catalog.steps),
            workflow_complete=True,
        )

    async def get_step_view(
        self, dossier_id: str, step_id: str, now: Optional[datetime] = None
    ) -> ActiveStepView:
        dossier = await self._dossier(dossier_id)
        catalog = await self._catalog(dossier.product_id)
        return await self._build_view(dossier, catalog, catalog.index_of(step_id), now)

    async def _build_view(
        self,
        dossier: Dossier,
        catalog: StepCatalog,
        index: int,
        now: Optional[datetime],
    ) -> ActiveStepView:
        now = now or self.clock()
        step = catalog.steps[index]
        view = ActiveStepView(
            dossier_id=dossier.id, step=step, index=index, total_steps=len(catalog.steps)
        )
        if step.type == StepType.TIMER:
            return view

        instance = await self.get_or_create_step_instance(dossier.id, step.id, now)
        instances = await self.store.list_step_instances(dossier.id)
        gate = next_step_unlock_at(catalog.steps, index, instances)
        blocked = gate is not None and gate.is_blocking(now)

        values = await self.store.get_field_values(instance.id)
        required = await self._required_documents(step, instance.id)
        pending_fields = unapproved_fields(step, {v.field_key: v for v in values})

        view.instance = instance
        view.editable = can_edit(instance)
        view.blocked = blocked
        view.blocked_until = gate.unlock_at if gate else None
        view.remaining_minutes = gate.remaining_minutes(now) if blocked else 0
        view.issues = document_issues(required)
        view.field_values = values
        view.required_documents = required
        view.actions = legal_actions(
            step,
            instance,
            timer_blocked=blocked,
            fields_approved=not pending_fields,
            documents_approved=all_required_approved(required),
        )
        return view

    # ------------------------------------------------------------------
    # Client transitions
    async def submit_step(
        self,
        instance_id: str,
        values: Mapping[str, Any],
        actor: Actor,
        *,
        expected_revision: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransitionResult:
        """Validate and submit a DRAFT CLIENT step for review."""
        self.policy.require(actor, "submit")
        replay = await self._replay(idempotency_key, audit.STEP_SUBMITTED, instance_id)
        if replay is not None:
            return await self._replayed_result(replay)

        ctx = await self._context(instance_id)
        self._require_type(ctx.step, StepType.CLIENT)
        self._check_revision(ctx.instance, expected_revision)
        self._require_status(ctx.instance, [StepStatus.DRAFT], "submit")

        known = {f.key for f in ctx.step.fields}
        unknown = sorted(set(values) - known)
        if unknown:
            logger.warning(f"Ignoring unknown fields for step {ctx.step.code}: {unknown}")

        stored = await self._values_by_key(instance_id)
        merged = {k: v.value for k, v in stored.items()}
        merged.update({k: v for k, v in values.items() if k in known})

        errors = validate_fields(ctx.step.fields, merged)
        if errors:
            raise ValidationError(errors)

        blockers = submission_blockers(await self._required_documents(ctx.step, instance_id))
        if not blockers.is_empty:
            raise GateNotSatisfiedError("documents", missing=blockers.as_missing())
        self._check_timer(ctx, await self.store.list_step_instances(ctx.dossier.id))

        now = self.clock()
        field_values = [
            FieldValue(
                step_instance_id=instance_id,
                field_key=f.key,
                value=merged.get(f.key),
                validation_status=ReviewStatus.PENDING,
                updated_at=now,
            )
            for f in ctx.step.fields
            if f.key in merged
        ]
        navigation, next_index = navigation_after(ctx.catalog, ctx.index)
        instance = self._advance(ctx, status=StepStatus.SUBMITTED, completed_at=now)
        event = self._event(
            audit.STEP_SUBMITTED,
            ctx,
            actor,
            {
                "fields": [v.field_key for v in field_values],
                "navigation": navigation.value,
                "next_index": next_index,
            },
            idempotency_key,
        )
        await self._commit(
            TransitionRecord(
                instance=instance,
                expected_instance_revision=ctx.instance.revision,
                field_values=field_values,
                dossier=ctx.dossier.model_copy(
                    update={"current_step_instance_id": instance_id}
                ),
                events=[event],
            )
        )
        return TransitionResult(instance=instance, navigation=navigation, next_index=next_index)

    async def resubmit_step(
        self,
        instance_id: str,
        corrected: Mapping[str, Any],
        actor: Actor,
        *,
        expected_revision: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransitionResult:
        """Resubmit a REJECTED step.

        Only fields marked REJECTED and fields the caller actually changed
        are validated and reset to PENDING. Fields left blank or unchanged
        keep their stored value and review status.
        """
        self.policy.require(actor, "resubmit")
        replay = await self._replay(idempotency_key, audit.STEP_RESUBMITTED, instance_id)
        if replay is not None:
            return await self._replayed_result(replay)

        ctx = await self._context(instance_id)
        self._require_type(ctx.step, StepType.CLIENT)
        self._check_revision(ctx.instance, expected_revision)
        self._require_status(ctx.instance, [StepStatus.REJECTED], "resubmit")

        known = {f.key for f in ctx.step.fields}
        stored = await self._values_by_key(instance_id)
        rejected = {
            k for k, v in stored.items()
            if k in known and v.validation_status == ReviewStatus.REJECTED
        }
        touched = {
            k for k, v in corrected.items()
            if k in known and not is_empty(v) and (k not in stored or stored[k].value != v)
        }
        keys = rejected | touched

        merged = {k: v.value for k, v in stored.items()}
        merged.update({k: corrected[k] for k in keys if k in corrected})
        errors = validate_fields(ctx.step.fields, merged, only=keys)
        if errors:
            raise ValidationError(errors)

        blockers = submission_blockers(await self._required_documents(ctx.step, instance_id))
        if not blockers.is_empty:
            raise GateNotSatisfiedError("documents", missing=blockers.as_missing())

        now = self.clock()
        field_values = []
        for key in sorted(keys):
            base = stored.get(key) or FieldValue(step_instance_id=instance_id, field_key=key)
            field_values.append(
                base.model_copy(
                    update={
                        "value": merged.get(key),
                        "validation_status": ReviewStatus.PENDING,
                        "rejection_reason": None,
                        "reviewed_by": None,
                        "reviewed_at": None,
                        "updated_at": now,
                    }
                )
            )
        navigation, next_index = navigation_after(ctx.catalog, ctx.index)
        instance = self._advance(
            ctx,
            status=StepStatus.SUBMITTED,
            completed_at=now,
            rejection_reason=None,
        )
        event = self._event(
            audit.STEP_RESUBMITTED,
            ctx,
            actor,
            {"fields": sorted(keys), "navigation": navigation.value, "next_index": next_index},
            idempotency_key,
        )
        await self._commit(
            TransitionRecord(
                instance=instance,
                expected_instance_revision=ctx.instance.revision,
                field_values=field_values,
                events=[event],
            )
        )
        return TransitionResult(instance=instance, navigation=navigation, next_index=next_index)

    async def upload_document(
        self,
        instance_id: str,
        document_type_id: str,
        file_ref: str,
        actor: Actor,
    ) -> Document:
        """Attach a new version of a required document to an editable step."""
        ctx = await self._context(instance_id)
        self.policy.require(actor, "upload_document")
        if document_type_id not in ctx.step.required_document_types:
            raise NotFoundError(
                f"Step {ctx.step.code} does not require document type {document_type_id}"
            )
        if not can_edit(ctx.instance):
            raise StaleStateError(
                instance_id,
                expected=[s.value for s in EDITABLE_STATUSES],
                actual=ctx.instance.status.value,
                message=f"Step instance {instance_id} is not editable",
            )

        existing = next(
            (
                d for d in await self.store.list_documents(instance_id)
                if d.document_type_id == document_type_id
            ),
            None,
        )
        version = DocumentVersion(
            number=len(existing.versions) + 1 if existing else 1,
            file_ref=file_ref,
            uploaded_at=self.clock(),
            uploaded_by=actor.id,
        )
        if existing is None:
            document = Document(
                dossier_id=ctx.dossier.id,
                step_instance_id=instance_id,
                document_type_id=document_type_id,
                versions=[version],
            )
        else:
            document = existing.model_copy(
                update={
                    "versions": existing.versions + [version],
                    "revision": existing.revision + 1,
                }
            )
        event = self._event(
            audit.DOCUMENT_UPLOADED,
            ctx,
            actor,
            {"document_id": document.id, "document_type_id": document_type_id, "version": version.number},
        )
        await self._commit(
            TransitionRecord(
                instance=self._advance(ctx),
                expected_instance_revision=ctx.instance.revision,
                document=document,
                expected_document_revision=existing.revision if existing else None,
                events=[event],
            )
        )
        return document

    async def complete_formation_step(
        self,
        instance_id: str,
        actor: Actor,
        *,
        idempotency_key: Optional[str] = None,
    ) -> TransitionResult:
        """Record a FORMATION step as completed. Repeated calls are no-ops."""
        self.policy.require(actor, "complete_formation")
        replay = await self._replay(idempotency_key, audit.STEP_COMPLETED, instance_id)
        if replay is not None:
            return await self._replayed_result(replay)

        ctx = await self._context(instance_id)
        self._require_type(ctx.step, StepType.FORMATION)
        navigation, next_index = navigation_after(ctx.catalog, ctx.index)
        if ctx.instance.completed_at is not None:
            return TransitionResult(
                instance=ctx.instance, navigation=navigation, next_index=next_index
            )
        self._check_timer(ctx, await self.store.list_step_instances(ctx.dossier.id))

        now = self.clock()
        instance = self._advance(ctx, status=StepStatus.APPROVED, completed_at=now)
        events = [
            self._event(
                audit.STEP_COMPLETED,
                ctx,
                actor,
                {
                    "manual": False,
                    "formation_id": ctx.step.formation_id,
                    "navigation": navigation.value,
                    "next_index": next_index,
                },
                idempotency_key,
            )
        ]
        dossier = self._approval_dossier(ctx, actor, events)
        await self._commit(
            TransitionRecord(
                instance=instance,
                expected_instance_revision=ctx.instance.revision,
                dossier=dossier,
                events=events,
            )
        )
        return TransitionResult(instance=instance, navigation=navigation, next_index=next_index)

    # ------------------------------------------------------------------
    # Agent transitions
    async def start_review(
        self,
        instance_id: str,
        actor: Actor,
        *,
        expected_revision: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransitionResult:
        self.policy.require(actor, "start_review")
        replay = await self._replay(idempotency_key, audit.REVIEW_STARTED, instance_id)
        if replay is not None:
            return await self._replayed_result(replay)

        ctx = await self._context(instance_id)
        self._check_revision(ctx.instance, expected_revision)
        self._require_status(ctx.instance, [StepStatus.SUBMITTED], "start review of")

        instance = self._advance(
            ctx,
            status=StepStatus.UNDER_REVIEW,
            assigned_agent_id=ctx.instance.assigned_agent_id or actor.id,
        )
        event = self._event(audit.REVIEW_STARTED, ctx, actor, idempotency_key=idempotency_key)
        await self._commit(
            TransitionRecord(
                instance=instance,
                expected_instance_revision=ctx.instance.revision,
                events=[event],
            )
        )
        return TransitionResult(instance=instance)

    async def review_field(
        self,
        instance_id: str,
        field_key: str,
        decision: ReviewStatus,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> FieldValue:
        """Approve or reject a single submitted field value."""
        ctx = await self._context(instance_id)
        self.policy.require(actor, "review_field")
        self._require_status(
            ctx.instance, [StepStatus.SUBMITTED, StepStatus.UNDER_REVIEW], "review fields of"
        )
        if ctx.step.field(field_key) is None:
            raise NotFoundError(f"Step {ctx.step.code} has no field {field_key}")
        decision = ReviewStatus(decision)
        if decision == ReviewStatus.PENDING:
            raise ValueError("A field review must approve or reject")
        if decision == ReviewStatus.REJECTED:
            reason = self._check_reason(reason)

        now = self.clock()
        stored = await self._values_by_key(instance_id)
        base = stored.get(field_key) or FieldValue(
            step_instance_id=instance_id, field_key=field_key
        )
        value = base.model_copy(
            update={
                "validation_status": decision,
                "rejection_reason": reason if decision == ReviewStatus.REJECTED else None,
                "reviewed_by": actor.id,
                "reviewed_at": now,
            }
        )
        event = self._event(
            audit.FIELD_REVIEWED,
            ctx,
            actor,
            {"field_key": field_key, "decision": decision.value, "reason": value.rejection_reason},
        )
        await self._commit(
            TransitionRecord(
                instance=self._advance(ctx),
                expected_instance_revision=ctx.instance.revision,
                field_values=[value],
                events=[event],
            )
        )
        return value

    async def review_document(
        self,
        document_id: str,
        decision: DocumentStatus,
        actor: Actor,
        reason: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Document:
        """Approve or reject the latest version of a document."""
        self.policy.require(actor, "review_document")
        replay = await self._replay(idempotency_key, audit.DOCUMENT_REVIEWED, document_id)
        if replay is not None:
            replayed = await self.store.get_document(replay.entity_id)
            if replayed is None:
                raise NotFoundError(f"Document {replay.entity_id} not found")
            return replayed

        document = await self.store.get_document(document_id)
        if document is None:
            raise NotFoundError(f"Document {document_id} not found")
        ctx = await self._context(document.step_instance_id)
        self._require_status(
            ctx.instance,
            [StepStatus.DRAFT, StepStatus.SUBMITTED, StepStatus.UNDER_REVIEW, StepStatus.REJECTED],
            "review documents of",
        )
        decision = DocumentStatus(decision)
        if decision not in (DocumentStatus.APPROVED, DocumentStatus.REJECTED):
            raise ValueError("A document review must approve or reject")
        current = document.current_version
        if current is None:
            raise GateNotSatisfiedError(
                "documents", missing={"not_submitted": [document.document_type_id]}
            )
        if decision == DocumentStatus.REJECTED:
            reason = self._check_reason(reason)

        reviewed = current.model_copy(
            update={
                "status": decision,
                "review_reason": reason if decision == DocumentStatus.REJECTED else None,
                "reviewed_by": actor.id,
                "reviewed_at": self.clock(),
            }
        )
        updated = document.model_copy(
            update={
                "versions": document.versions[:-1] + [reviewed],
                "revision": document.revision + 1,
            }
        )
        event = self.audit_log.record(
            audit.DOCUMENT_REVIEWED,
            dossier_id=document.dossier_id,
            entity_type="document",
            entity_id=document.id,
            actor=actor,
            created_at=self.clock(),
            payload={
                "step_instance_id": ctx.instance.id,
                "document_type_id": document.document_type_id,
                "version": reviewed.number,
                "decision": decision.value,
                "reason": reviewed.review_reason,
            },
            idempotency_key=idempotency_key,
        )
        await self._commit(
            TransitionRecord(
                document=updated,
                expected_document_revision=document.revision,
                events=[event],
            )
        )
        return updated

    async def approve_step(
        self,
        instance_id: str,
        actor: Actor,
        override: bool = False,
        *,
        expected_revision: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransitionResult:
        """Approve a step under review.

        Every field value must be approved. Required documents must be
        approved too, unless ``override`` is passed by an actor allowed to
        bypass the document gate; the bypass is audited and reported on the
        result.
        """
        self.policy.require(actor, "approve")
        if override:
            self.policy.require_override(actor)
        replay = await self._replay(idempotency_key, audit.STEP_APPROVED, instance_id)
        if replay is not None:
            return await self._replayed_result(replay)

        ctx = await self._context(instance_id)
        self._check_revision(ctx.instance, expected_revision)
        self._require_status(ctx.instance, [StepStatus.UNDER_REVIEW], "approve")

        unapproved = unapproved_fields(ctx.step, await self._values_by_key(instance_id))
        if unapproved:
            raise GateNotSatisfiedError("fields", missing={"fields": unapproved})

        required = await self._required_documents(ctx.step, instance_id)
        bypassed: dict[str, list[str]] = {}
        if not all_required_approved(required):
            bypassed = document_issues(required).as_missing()
            if not override:
                raise GateNotSatisfiedError("documents", missing=bypassed)

        now = self.clock()
        navigation, next_index = navigation_after(ctx.catalog, ctx.index)
        instance = self._advance(
            ctx, status=StepStatus.APPROVED, validated_by=actor.id, validated_at=now
        )
        events = [
            self._event(
                audit.STEP_APPROVED,
                ctx,
                actor,
                {
                    "override": bool(bypassed),
                    "navigation": navigation.value,
                    "next_index": next_index,
                },
                idempotency_key,
            )
        ]
        override_used = None
        if bypassed:
            override_used = OverrideUsedError(instance_id, actor.id, bypassed)
            events.append(self._event(audit.OVERRIDE_USED, ctx, actor, {"bypassed": bypassed}))
        dossier = self._approval_dossier(ctx, actor, events)
        await self._commit(
            TransitionRecord(
                instance=instance,
                expected_instance_revision=ctx.instance.revision,
                dossier=dossier,
                events=events,
            )
        )
        return TransitionResult(
            instance=instance,
            navigation=navigation,
            next_index=next_index,
            override=override_used,
        )

    async def reject_step(
        self,
        instance_id: str,
        reason: str,
        actor: Actor,
        field_keys: Sequence[str] = (),
        *,
        expected_revision: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransitionResult:
        """Send a step back to the client with a reason."""
        self.policy.require(actor, "reject")
        replay = await self._replay(idempotency_key, audit.STEP_REJECTED, instance_id)
        if replay is not None:
            return await self._replayed_result(replay)

        ctx = await self._context(instance_id)
        self._check_revision(ctx.instance, expected_revision)
        self._require_status(ctx.instance, [StepStatus.UNDER_REVIEW], "reject")
        reason = self._check_reason(reason)
        unknown = [k for k in field_keys if ctx.step.field(k) is None]
        if unknown:
            raise ValidationError({k: "is not a field of this step" for k in unknown})

        now = self.clock()
        stored = await self._values_by_key(instance_id)
        field_values = []
        for key in field_keys:
            base = stored.get(key) or FieldValue(step_instance_id=instance_id, field_key=key)
            field_values.append(
                base.model_copy(
                    update={
                        "validation_status": ReviewStatus.REJECTED,
                        "rejection_reason": reason,
                        "reviewed_by": actor.id,
                        "reviewed_at": now,
                    }
                )
            )
        instance = self._advance(ctx, status=StepStatus.REJECTED, rejection_reason=reason)
        event = self._event(
            audit.STEP_REJECTED,
            ctx,
            actor,
            {"reason": reason, "fields": list(field_keys)},
            idempotency_key,
        )
        await self._commit(
            TransitionRecord(
                instance=instance,
                expected_instance_revision=ctx.instance.revision,
                field_values=field_values,
                events=[event],
            )
        )
        return TransitionResult(instance=instance)

    async def mark_admin_step_complete(
        self,
        instance_id: str,
        actor: Actor,
        *,
        expected_revision: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransitionResult:
        """Complete an ADMIN step. Only the role configured on the step may do so."""
        ctx = await self._context(instance_id)
        self._require_type(ctx.step, StepType.ADMIN)
        self.policy.require_admin_step_role(actor, ctx.step.admin_role)
        replay = await self._replay(idempotency_key, audit.STEP_COMPLETED, instance_id)
        if replay is not None:
            return await self._replayed_result(replay)

        self._check_revision(ctx.instance, expected_revision)
        self._require_status(ctx.instance, [StepStatus.DRAFT], "complete")
        self._check_timer(ctx, await self.store.list_step_instances(ctx.dossier.id))

        now = self.clock()
        navigation, next_index = navigation_after(ctx.catalog, ctx.index)
        instance = self._advance(
            ctx,
            status=StepStatus.APPROVED,
            completed_at=now,
            validated_by=actor.id,
            validated_at=now,
        )
        events = [
            self._event(
                audit.STEP_COMPLETED,
                ctx,
                actor,
                {"manual": True, "navigation": navigation.value, "next_index": next_index},
                idempotency_key,
            )
        ]
        dossier = self._approval_dossier(ctx, actor, events)
        await self._commit(
            TransitionRecord(
                instance=instance,
                expected_instance_revision=ctx.instance.revision,
                dossier=dossier,
                events=events,
            )
        )
        return TransitionResult(instance=instance, navigation=navigation, next_index=next_index)

    async def assign_step(self, instance_id: str, agent_id: str, actor: Actor) -> StepInstance:
        ctx = await self._context(instance_id)
        self.policy.require(actor, "assign")
        instance = self._advance(ctx, assigned_agent_id=agent_id)
        event = self._event(audit.STEP_ASSIGNED, ctx, actor, {"agent_id": agent_id})
        await self._commit(
            TransitionRecord(
                instance=instance,
                expected_instance_revision=ctx.instance.revision,
                events=[event],
            )
        )
        return instance
