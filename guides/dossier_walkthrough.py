"""Walk a dossier through submission, rejection, correction and approval."""

import asyncio

from dossierflow import (
    Actor,
    ActorRole,
    StepCatalog,
    StepTransitionEngine,
    get_repository,
)
from dossierflow.persistence.models import DocumentStatus, ReviewStatus

CATALOG = {
    "steps": [
        {
            "id": "identity",
            "code": "identity",
            "position": 1,
            "type": "CLIENT",
            "fields": [
                {"key": "full_name", "label": "Full name", "required": True},
                {"key": "email", "label": "Email", "field_type": "email", "required": True},
            ],
            "required_document_types": ["passport"],
            "dossier_status_on_approval": "FORM_SUBMITTED",
        },
        {"id": "wait", "code": "wait", "position": 2, "type": "TIMER", "timer_delay_minutes": 2880},
        {"id": "filing", "code": "filing", "position": 3, "type": "ADMIN"},
    ]
}


async def main():
    store = get_repository()
    await store.save_catalog(StepCatalog.from_dict("llc", CATALOG))
    engine = StepTransitionEngine(store)

    client = Actor.client("client-1")
    agent = Actor.agent("agent-1", ActorRole.VERIFICATEUR)

    dossier = await engine.create_dossier("llc")
    print(f"📁 Dossier created: {dossier.id}")

    view = await engine.get_active_step_view(dossier.id)
    instance = view.instance
    print(f"➡️  Active step: {view.step.code}, actions: {[a.value for a in view.actions]}")

    await engine.upload_document(instance.id, "passport", "s3://uploads/passport.pdf", client)
    await engine.submit_step(
        instance.id, {"full_name": "Jane Do", "email": "jane@example.com"}, client
    )
    await engine.start_review(instance.id, agent)
    await engine.review_field(instance.id, "email", ReviewStatus.APPROVED, agent)
    result = await engine.reject_step(
        instance.id, "Name does not match the passport", agent, field_keys=["full_name"]
    )
    print(f"❌ Rejected: {result.instance.rejection_reason}")

    await engine.resubmit_step(instance.id, {"full_name": "Jane Doe"}, client)
    await engine.start_review(instance.id, agent)
    await engine.review_field(instance.id, "full_name", ReviewStatus.APPROVED, agent)
    passport = (await engine.get_required_documents(instance.id))[0].document
    await engine.review_document(passport.id, DocumentStatus.APPROVED, agent)
    result = await engine.approve_step(instance.id, agent)
    print(f"✅ Approved, navigation: {result.navigation.value}")

    view = await engine.get_active_step_view(dossier.id)
    print(f"⏳ Next step {view.step.code} blocked for {view.remaining_minutes} minutes")

    for event in await store.list_events(dossier.id):
        print(f"   {event.event_type} by {event.actor_id}")


if __name__ == "__main__":
    asyncio.run(main())
