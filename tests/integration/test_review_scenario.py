"""A dossier goes through rejection, correction and approval on SQLite."""

from datetime import timedelta

import pytest

from dossierflow.contracts import Navigation
from dossierflow.persistence import SQLiteStepInstanceStore
from dossierflow.persistence.models import DocumentStatus, ReviewStatus, StepStatus


@pytest.mark.asyncio
async def test_rejected_step_is_corrected_and_approved(
    make_engine, identity_catalog, client, verificateur, createur, clock, tmp_path
):
    store = SQLiteStepInstanceStore(tmp_path / "dossiers.db")
    engine = await make_engine(identity_catalog, store=store)

    instance = await engine.get_or_create_step_instance("d-1", "s-identity")
    await engine.upload_document(instance.id, "passport", "passport.pdf", client)
    submitted = await engine.submit_step(
        instance.id, {"name": "Jane Do", "email": "jane@example.com"}, client
    )
    assert submitted.instance.completed_at == clock.now

    clock.advance(hours=1)
    await engine.start_review(instance.id, verificateur)
    await engine.review_field(instance.id, "email", ReviewStatus.APPROVED, verificateur)
    rejected = await engine.reject_step(instance.id, "invalid ID", verificateur, field_keys=["name"])
    assert rejected.instance.status == StepStatus.REJECTED

    view = await engine.get_active_step_view("d-1")
    assert view.step.id == "s-identity"
    assert view.editable is True

    clock.advance(hours=2)
    resubmitted = await engine.resubmit_step(instance.id, {"name": "Jane Doe"}, client)
    assert resubmitted.instance.status == StepStatus.SUBMITTED
    assert resubmitted.instance.completed_at == clock.now
    assert resubmitted.instance.completed_at > submitted.instance.completed_at

    await engine.start_review(instance.id, verificateur)
    await engine.review_field(instance.id, "name", ReviewStatus.APPROVED, verificateur)
    passport = (await engine.get_required_documents(instance.id))[0].document
    await engine.review_document(passport.id, DocumentStatus.APPROVED, verificateur)
    approved = await engine.approve_step(instance.id, verificateur)
    assert approved.instance.status == StepStatus.APPROVED
    assert (await store.get_dossier("d-1")).status == "FORM_SUBMITTED"

    view = await engine.get_active_step_view("d-1")
    assert view.step.id == "s-filing"
    completed = await engine.mark_admin_step_complete(view.instance.id, createur)
    assert completed.navigation == Navigation.WORKFLOW_COMPLETE
    assert (await store.get_dossier("d-1")).status == "LLC_ACCEPTED"

    events = [e.event_type for e in await store.list_events("d-1")]
    assert events == [
        "DOCUMENT_UPLOADED",
        "STEP_SUBMITTED",
        "REVIEW_STARTED",
        "FIELD_REVIEWED",
        "STEP_REJECTED",
        "STEP_RESUBMITTED",
        "REVIEW_STARTED",
        "FIELD_REVIEWED",
        "DOCUMENT_REVIEWED",
        "STEP_APPROVED",
        "DOSSIER_STATUS_CHANGED",
        "STEP_COMPLETED",
        "DOSSIER_STATUS_CHANGED",
    ]
    assert clock.now - submitted.instance.completed_at == timedelta(hours=3)
    store.close()
