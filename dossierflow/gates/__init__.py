"""Pure predicates that must hold before a transition is permitted."""

from .documents import all_required_approved, document_issues, submission_blockers
from .fields import check_value, is_empty, validate_fields
from .timer import TimerGate, next_step_unlock_at

__all__ = [
    "TimerGate",
    "all_required_approved",
    "check_value",
    "document_issues",
    "is_empty",
    "next_step_unlock_at",
    "submission_blockers",
    "validate_fields",
]
