import pytest

from dossierflow.errors import NotFoundError, PersistenceError, StaleStateError
from dossierflow.persistence import (
    InMemoryStepInstanceStore,
    SQLiteStepInstanceStore,
)
from dossierflow.persistence.models import (
    AuditEvent,
    Document,
    DocumentVersion,
    Dossier,
    FieldValue,
    StepInstance,
    StepStatus,
    TransitionRecord,
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryStepInstanceStore()
    return SQLiteStepInstanceStore(tmp_path / "flow.db")


async def _seed(store, catalog):
    await store.save_catalog(catalog)
    await store.create_dossier(Dossier(id="d-1", product_id=catalog.product_id))
    return await store.get_or_create_step_instance(
        "d-1", "s-identity", StepInstance(dossier_id="d-1", step_id="s-identity")
    )


@pytest.mark.asyncio
async def test_catalog_and_dossier_round_trip(store, identity_catalog):
    await _seed(store, identity_catalog)

    catalog = await store.get_step_catalog("llc")
    assert catalog == identity_catalog
    assert await store.get_step_catalog("unknown") is None
    dossier = await store.get_dossier("d-1")
    assert dossier.product_id == "llc"
    assert dossier.status == "QUALIFICATION"

    with pytest.raises(PersistenceError):
        await store.create_dossier(Dossier(id="d-1", product_id="llc"))


@pytest.mark.asyncio
async def test_get_or_create_returns_existing_instance(store, identity_catalog):
    first = await _seed(store, identity_catalog)
    again = await store.get_or_create_step_instance(
        "d-1", "s-identity", StepInstance(dossier_id="d-1", step_id="s-identity")
    )
    assert again.id == first.id
    assert [i.id for i in await store.list_step_instances("d-1")] == [first.id]


@pytest.mark.asyncio
async def test_commit_applies_everything(store, identity_catalog):
    instance = await _seed(store, identity_catalog)
    updated = instance.model_copy(update={"status": StepStatus.SUBMITTED, "revision": 1})
    document = Document(
        dossier_id="d-1",
        step_instance_id=instance.id,
        document_type_id="passport",
        versions=[DocumentVersion(number=1, file_ref="p.pdf")],
    )
    record = TransitionRecord(
        instance=updated,
        expected_instance_revision=0,
        field_values=[FieldValue(step_instance_id=instance.id, field_key="name", value="Jane")],
        document=document,
        dossier=Dossier(id="d-1", product_id="llc", status="FORM_SUBMITTED"),
        events=[
            AuditEvent(
                dossier_id="d-1",
                entity_type="step_instance",
                entity_id=instance.id,
                event_type="STEP_SUBMITTED",
                idempotency_key="k-1",
            )
        ],
    )

    await store.commit(record)

    stored = await store.get_step_instance(instance.id)
    assert stored.status == StepStatus.SUBMITTED
    assert stored.revision == 1
    values = await store.get_field_values(instance.id)
    assert [(v.field_key, v.value) for v in values] == [("name", "Jane")]
    assert (await store.get_document(document.id)).versions[0].file_ref == "p.pdf"
    assert [d.id for d in await store.list_documents(instance.id)] == [document.id]
    assert (await store.get_dossier("d-1")).status == "FORM_SUBMITTED"
    assert (await store.find_event("k-1")).event_type == "STEP_SUBMITTED"
    assert await store.find_event("other") is None
    assert len(await store.list_events("d-1")) == 1


@pytest.mark.asyncio
async def test_stale_commit_is_rejected_atomically(store, identity_catalog):
    instance = await _seed(store, identity_catalog)
    await store.commit(
        TransitionRecord(
            instance=instance.model_copy(update={"status": StepStatus.SUBMITTED, "revision": 1}),
            expected_instance_revision=0,
        )
    )

    stale = TransitionRecord(
        instance=instance.model_copy(update={"status": StepStatus.APPROVED, "revision": 1}),
        expected_instance_revision=0,
        field_values=[FieldValue(step_instance_id=instance.id, field_key="name", value="X")],
        events=[
            AuditEvent(
                dossier_id="d-1",
                entity_type="step_instance",
                entity_id=instance.id,
                event_type="STEP_APPROVED",
            )
        ],
    )
    with pytest.raises(StaleStateError) as exc_info:
        await store.commit(stale)

    assert exc_info.value.expected == 0
    assert exc_info.value.actual == 1
    assert (await store.get_step_instance(instance.id)).status == StepStatus.SUBMITTED
    assert await store.get_field_values(instance.id) == []
    assert await store.list_events("d-1") == []


@pytest.mark.asyncio
async def test_document_revision_is_checked(store, identity_catalog):
    instance = await _seed(store, identity_catalog)
    document = Document(
        dossier_id="d-1", step_instance_id=instance.id, document_type_id="passport"
    )
    await store.commit(TransitionRecord(document=document))

    with pytest.raises(StaleStateError):
        await store.commit(TransitionRecord(document=document))
    with pytest.raises(StaleStateError):
        await store.commit(
            TransitionRecord(
                document=document.model_copy(update={"revision": 6}),
                expected_document_revision=5,
            )
        )


@pytest.mark.asyncio
async def test_commit_on_missing_instance(store, identity_catalog):
    await _seed(store, identity_catalog)
    ghost = StepInstance(dossier_id="d-1", step_id="s-filing", revision=1)
    with pytest.raises(NotFoundError):
        await store.commit(TransitionRecord(instance=ghost, expected_instance_revision=0))


@pytest.mark.asyncio
async def test_sqlite_store_persists_across_connections(tmp_path, identity_catalog):
    path = tmp_path / "flow.db"
    store = SQLiteStepInstanceStore(path)
    instance = await _seed(store, identity_catalog)
    store.close()

    reopened = SQLiteStepInstanceStore(path)
    assert (await reopened.get_step_instance(instance.id)).id == instance.id
    assert await reopened.get_step_catalog("llc") == identity_catalog
    reopened.close()


@pytest.mark.asyncio
async def test_sqlite_rolls_back_on_unexpected_error(tmp_path, identity_catalog, monkeypatch):
    store = SQLiteStepInstanceStore(tmp_path / "flow.db")
    instance = await _seed(store, identity_catalog)
    apply = store._apply

    def failing_apply(cur, record):
        apply(cur, record)
        raise RuntimeError("serialization failed")

    monkeypatch.setattr(store, "_apply", failing_apply)
    submitted = instance.model_copy(update={"status": StepStatus.SUBMITTED, "revision": 1})
    with pytest.raises(RuntimeError):
        await store.commit(TransitionRecord(instance=submitted, expected_instance_revision=0))

    assert store._conn.in_transaction is False
    assert (await store.get_step_instance(instance.id)).status == StepStatus.DRAFT

    monkeypatch.setattr(store, "_apply", apply)
    await store.commit(TransitionRecord(instance=submitted, expected_instance_revision=0))
    assert (await store.get_step_instance(instance.id)).status == StepStatus.SUBMITTED
    store.close()
