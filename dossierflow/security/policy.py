"""Role based authorization for step transitions."""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional

from pydantic import BaseModel, Field

from ..config import PolicyConfig
from ..errors import PermissionDeniedError


class ActorRole(str, Enum):
    CLIENT = "CLIENT"
    VERIFICATEUR = "VERIFICATEUR"
    CREATEUR = "CREATEUR"
    ADMIN = "ADMIN"


class Actor(BaseModel):
    """Who is performing an action, with the roles they hold."""

    id: str
    roles: List[str] = Field(default_factory=list)

    @property
    def primary_role(self) -> Optional[str]:
        return self.roles[0] if self.roles else None

    def has_any(self, roles: Iterable[str]) -> bool:
        return bool(set(self.roles) & set(roles))

    @classmethod
    def client(cls, actor_id: str) -> "Actor":
        return cls(id=actor_id, roles=[ActorRole.CLIENT.value])

    @classmethod
    def agent(cls, actor_id: str, *roles: ActorRole | str) -> "Actor":
        return cls(id=actor_id, roles=[ActorRole(r).value for r in roles])


_CLIENT_SIDE = frozenset({ActorRole.CLIENT.value, ActorRole.ADMIN.value})
_REVIEWERS = frozenset({ActorRole.VERIFICATEUR.value, ActorRole.ADMIN.value})

DEFAULT_RULES: Dict[str, FrozenSet[str]] = {
    "submit": _CLIENT_SIDE,
    "resubmit": _CLIENT_SIDE,
    "upload_document": _CLIENT_SIDE | {ActorRole.CREATEUR.value},
    "complete_formation": _CLIENT_SIDE,
    "start_review": _REVIEWERS,
    "review_field": _REVIEWERS,
    "review_document": _REVIEWERS,
    "approve": _REVIEWERS,
    "reject": _REVIEWERS,
    "assign": frozenset({ActorRole.ADMIN.value}),
}


class PolicyEngine:
    """Decides which actor roles may perform which engine actions."""

    def __init__(
        self,
        config: Optional[PolicyConfig] = None,
        rules: Optional[Dict[str, FrozenSet[str]]] = None,
    ) -> None:
        self.config = config or PolicyConfig()
        self.rules = dict(DEFAULT_RULES)
        if rules:
            self.rules.update(rules)

    def allowed_roles(self, action: str) -> FrozenSet[str]:
        return self.rules.get(action, frozenset())

    def is_allowed(self, actor: Actor, action: str) -> bool:
        return actor.has_any(self.allowed_roles(action))

    def require(self, actor: Actor, action: str) -> None:
        roles = self.allowed_roles(action)
        if not actor.has_any(roles):
            raise PermissionDeniedError(actor.id, action, required=sorted(roles))

    def require_admin_step_role(self, actor: Actor, step_role: str) -> None:
        """ADMIN steps are completed by the step's configured role or an admin."""
        roles = {step_role, ActorRole.ADMIN.value}
        if not actor.has_any(roles):
            raise PermissionDeniedError(actor.id, "mark_admin_complete", required=sorted(roles))

    def can_override(self, actor: Actor) -> bool:
        return actor.has_any(self.config.override_roles)

    def require_override(self, actor: Actor) -> None:
        if not self.can_override(actor):
            raise PermissionDeniedError(
                actor.id, "override", required=sorted(self.config.override_roles)
            )
