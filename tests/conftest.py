"""Shared builders for dossierflow tests."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

import dossierflow.persistence as persistence
from dossierflow.catalog import StepCatalog
from dossierflow.config import DossierflowConfig
from dossierflow.engine import StepTransitionEngine
from dossierflow.persistence import InMemoryStepInstanceStore
from dossierflow.security import Actor, ActorRole

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock handed to the engine."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fixtures_dir() -> Path:
    return Path(__file__).parent / "fixtures"


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    monkeypatch.setenv("DOSSIERFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("DOSSIERFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    persistence.reset_repository()
    yield
    persistence.reset_repository()


@pytest.fixture
def client():
    return Actor.client("client-1")


@pytest.fixture
def verificateur():
    return Actor.agent("agent-v", ActorRole.VERIFICATEUR)


@pytest.fixture
def createur():
    return Actor.agent("agent-c", ActorRole.CREATEUR)


@pytest.fixture
def admin():
    return Actor.agent("admin-1", ActorRole.ADMIN)


@pytest.fixture
def identity_catalog() -> StepCatalog:
    """CLIENT step with fields and documents, then an ADMIN step."""
    return StepCatalog.from_dict(
        "llc",
        {
            "steps": [
                {
                    "id": "s-identity",
                    "code": "identity",
                    "position": 1,
                    "type": "CLIENT",
                    "fields": [
                        {"key": "name", "label": "Name", "required": True, "min_length": 2},
                        {"key": "email", "field_type": "email", "required": True},
                        {"key": "nickname"},
                    ],
                    "required_document_types": ["passport"],
                    "dossier_status_on_approval": "FORM_SUBMITTED",
                },
                {
                    "id": "s-filing",
                    "code": "filing",
                    "position": 2,
                    "type": "ADMIN",
                    "required_document_types": ["articles"],
                    "dossier_status_on_approval": "LLC_ACCEPTED",
                },
            ]
        },
    )


@pytest.fixture
def timer_catalog() -> StepCatalog:
    """CLIENT(name), TIMER(60), CLIENT(address)."""
    return StepCatalog.from_dict(
        "timed",
        {
            "steps": [
                {
                    "id": "s-name",
                    "code": "name",
                    "position": 1,
                    "type": "CLIENT",
                    "fields": [{"key": "name", "required": True}],
                },
                {
                    "id": "s-wait",
                    "code": "wait",
                    "position": 2,
                    "type": "TIMER",
                    "timer_delay_minutes": 60,
                },
                {
                    "id": "s-address",
                    "code": "address",
                    "position": 3,
                    "type": "CLIENT",
                    "fields": [{"key": "address", "required": True}],
                },
            ]
        },
    )


@pytest.fixture
def formation_catalog() -> StepCatalog:
    return StepCatalog.from_dict(
        "training",
        {
            "steps": [
                {
                    "id": "s-course",
                    "code": "course",
                    "position": 1,
                    "type": "FORMATION",
                    "formation_id": "f-basics",
                },
                {
                    "id": "s-setup",
                    "code": "setup",
                    "position": 2,
                    "type": "ADMIN",
                    "dossier_status_on_approval": "COMPLETED",
                },
            ]
        },
    )


@pytest.fixture
def make_engine(clock):
    """Return a coroutine building an engine over a fresh store with one dossier."""

    async def _make(catalog, dossier_id="d-1", store=None, config=None):
        store = store or InMemoryStepInstanceStore()
        await store.save_catalog(catalog)
        engine = StepTransitionEngine(store, config=config or DossierflowConfig(), clock=clock)
        await engine.create_dossier(catalog.product_id, dossier_id=dossier_id)
        return engine

    return _make
