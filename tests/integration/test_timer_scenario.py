"""A TIMER step delays the step that follows it."""

from datetime import timedelta

import pytest

from dossierflow.contracts import Action, Navigation
from dossierflow.errors import GateNotSatisfiedError
from dossierflow.persistence.models import StepStatus


@pytest.mark.asyncio
async def test_step_after_timer_unlocks_after_delay(make_engine, timer_catalog, client, clock):
    engine = await make_engine(timer_catalog)
    start = clock.now

    first = await engine.get_or_create_step_instance("d-1", "s-name")
    result = await engine.submit_step(first.id, {"name": "Jane Doe"}, client)
    assert result.navigation == Navigation.ADVANCE

    view = await engine.get_active_step_view("d-1")
    assert view.step.id == "s-address"
    assert view.blocked is True
    assert view.blocked_until == start + timedelta(minutes=60)
    assert view.remaining_minutes == 60
    assert Action.SUBMIT not in view.actions

    clock.advance(minutes=59)
    view = await engine.get_active_step_view("d-1")
    assert view.blocked is True
    assert view.remaining_minutes == 1
    with pytest.raises(GateNotSatisfiedError) as exc_info:
        await engine.submit_step(view.instance.id, {"address": "1 Main St"}, client)
    assert exc_info.value.gate == "timer"
    assert exc_info.value.blocked_until == start + timedelta(minutes=60)

    clock.advance(minutes=2)
    view = await engine.get_active_step_view("d-1")
    assert view.blocked is False
    assert view.remaining_minutes == 0
    assert Action.SUBMIT in view.actions

    result = await engine.submit_step(view.instance.id, {"address": "1 Main St"}, client)
    assert result.instance.status == StepStatus.SUBMITTED
    assert result.navigation == Navigation.WORKFLOW_COMPLETE
    assert (await engine.get_active_step_view("d-1")).workflow_complete is True


@pytest.mark.asyncio
async def test_step_after_timer_stays_locked_while_anchor_incomplete(make_engine, timer_catalog, clock):
    engine = await make_engine(timer_catalog)

    clock.advance(days=30)
    view = await engine.get_step_view("d-1", "s-address")

    assert view.blocked is True
    assert view.blocked_until is None
    assert view.actions == [Action.EDIT]
