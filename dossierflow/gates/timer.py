"""Timer gate: delays between a step and the one following a TIMER."""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from pydantic import BaseModel

from ..catalog import Step, StepType
from ..persistence.models import StepInstance


class TimerGate(BaseModel):
    """Unlock moment of a step gated by a preceding TIMER.

    ``unlock_at`` is ``None`` when the anchor step has not been completed
    yet; an unknown unlock moment always blocks.
    """

    timer_step_id: str
    anchor_step_id: str
    delay_minutes: int
    unlock_at: Optional[datetime] = None

    def is_blocking(self, now: datetime) -> bool:
        return self.unlock_at is None or now < self.unlock_at

    def remaining_minutes(self, now: datetime) -> int:
        if self.unlock_at is None:
            return self.delay_minutes
        remaining = (self.unlock_at - now).total_seconds() / 60
        return max(0, math.ceil(remaining))


def next_step_unlock_at(
    steps: Sequence[Step], index: int, instances: Iterable[StepInstance]
) -> Optional[TimerGate]:
    """Return the timer gate in front of ``steps[index]``, if any."""
    if index < 1 or index >= len(steps):
        return None
    timer = steps[index - 1]
    if timer.type != StepType.TIMER or not timer.timer_delay_minutes:
        return None

    gate = TimerGate(
        timer_step_id=timer.id,
        anchor_step_id="",
        delay_minutes=timer.timer_delay_minutes,
    )
    # Catalog validation keeps TIMER steps off position 0.
    if index < 2:
        return gate
    anchor = steps[index - 2]
    gate.anchor_step_id = anchor.id
    completed_at = next(
        (i.completed_at for i in instances if i.step_id == anchor.id), None
    )
    if completed_at is not None:
        gate.unlock_at = completed_at + timedelta(minutes=timer.timer_delay_minutes)
    return gate
