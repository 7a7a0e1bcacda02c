"""dossierflow: step workflow and validation engine for client dossiers."""

from .catalog import FieldDef, FieldType, Step, StepCatalog, StepType, load_catalog
from .config import DossierflowConfig, load_config
from .contracts import Action, ActiveStepView, Navigation, TransitionResult
from .engine import StepTransitionEngine, can_edit, can_edit_field, legal_actions
from .errors import (
    CatalogError,
    DossierflowError,
    GateNotSatisfiedError,
    NotFoundError,
    OverrideUsedError,
    PermissionDeniedError,
    PersistenceError,
    StaleStateError,
    ValidationError,
)
from .persistence import get_repository
from .security import Actor, ActorRole

__version__ = "0.1.0"
__all__ = [
    "Action",
    "ActiveStepView",
    "Actor",
    "ActorRole",
    "CatalogError",
    "DossierflowConfig",
    "DossierflowError",
    "FieldDef",
    "FieldType",
    "GateNotSatisfiedError",
    "Navigation",
    "NotFoundError",
    "OverrideUsedError",
    "PermissionDeniedError",
    "PersistenceError",
    "StaleStateError",
    "Step",
    "StepCatalog",
    "StepTransitionEngine",
    "StepType",
    "TransitionResult",
    "ValidationError",
    "can_edit",
    "can_edit_field",
    "get_repository",
    "legal_actions",
    "load_catalog",
    "load_config",
]
