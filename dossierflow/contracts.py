"""Views and results the transition engine hands back to callers."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .catalog import Step
from .errors import OverrideUsedError
from .persistence.models import (
    DocumentIssues,
    FieldValue,
    RequiredDocument,
    StepInstance,
)


class Action(str, Enum):
    """Actions a caller may currently perform on a step."""

    EDIT = "edit"
    SUBMIT = "submit"
    RESUBMIT = "resubmit"
    START_REVIEW = "start_review"
    APPROVE = "approve"
    REJECT = "reject"
    MARK_COMPLETE = "mark_complete"
    ADVANCE = "advance"


class Navigation(str, Enum):
    STAY = "stay"
    ADVANCE = "advance"
    WORKFLOW_COMPLETE = "workflow_complete"


class ActiveStepView(BaseModel):
    """Everything a surface needs to render a step, derived in one place.

    Forms, agent panels and read-only screens consume this view instead of
    interpreting ``StepInstance.status`` themselves.
    """

    dossier_id: str
    step: Optional[Step] = None
    index: Optional[int] = None
    total_steps: int = 0
    instance: Optional[StepInstance] = None
    editable: bool = False
    blocked: bool = False
    blocked_until: Optional[datetime] = None
    remaining_minutes: int = 0
    issues: DocumentIssues = Field(default_factory=DocumentIssues)
    field_values: List[FieldValue] = Field(default_factory=list)
    required_documents: List[RequiredDocument] = Field(default_factory=list)
    actions: List[Action] = Field(default_factory=list)
    workflow_complete: bool = False


class TransitionResult(BaseModel):
    """Authoritative state returned by every mutating engine call."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    instance: StepInstance
    navigation: Navigation = Navigation.STAY
    next_index: Optional[int] = None
    override: Optional[OverrideUsedError] = None
    replayed: bool = False

    @property
    def override_used(self) -> bool:
        return self.override is not None
