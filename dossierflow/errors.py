"""Exception hierarchy for the step workflow engine."""

from __future__ import annotations

from typing import Any, Optional


class DossierflowError(Exception):
    """Base exception for all dossierflow errors."""


class ValidationError(DossierflowError):
    """Submitted field values failed validation. Nothing was persisted."""

    def __init__(self, errors: dict[str, str]) -> None:
        self.errors = dict(errors)
        keys = ", ".join(sorted(self.errors))
        super().__init__(f"Invalid field values: {keys}")

    @property
    def field_keys(self) -> list[str]:
        return sorted(self.errors)


class GateNotSatisfiedError(DossierflowError):
    """A document, field-review, timer or role gate blocks the transition.

    ``missing`` carries the specific outstanding items (document type ids,
    field keys, ...) so callers can tell the user exactly what to do next.
    """

    def __init__(
        self,
        gate: str,
        missing: dict[str, list[str]] | None = None,
        message: str | None = None,
        blocked_until: Any = None,
    ) -> None:
        self.gate = gate
        self.missing = missing or {}
        self.blocked_until = blocked_until
        super().__init__(message or f"{gate} gate not satisfied: {self.missing}")


class StaleStateError(DossierflowError):
    """The instance changed since it was read; reload before retrying."""

    def __init__(
        self,
        entity_id: str,
        expected: Any = None,
        actual: Any = None,
        message: str | None = None,
    ) -> None:
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            message
            or f"Stale state for {entity_id}: expected {expected!r}, found {actual!r}"
        )


class PermissionDeniedError(DossierflowError):
    """The actor lacks the role required for the attempted action."""

    def __init__(self, actor_id: Optional[str], action: str, required: Any = None) -> None:
        self.actor_id = actor_id
        self.action = action
        self.required = required
        super().__init__(
            f"Actor {actor_id!r} may not perform {action!r} (requires {required})"
        )


class OverrideUsedError(DossierflowError):
    """Informational: a completion went through via manual override.

    This is never raised by the engine. It is attached to the transition
    result and mirrored by an ``OVERRIDE_USED`` audit event.
    """

    def __init__(self, instance_id: str, actor_id: Optional[str], bypassed: dict[str, list[str]]) -> None:
        self.instance_id = instance_id
        self.actor_id = actor_id
        self.bypassed = bypassed
        super().__init__(
            f"Step instance {instance_id} completed by override from {actor_id!r}"
        )


class PersistenceError(DossierflowError):
    """The step instance store failed to read or write."""


class NotFoundError(DossierflowError):
    """A dossier, catalog, step, instance or document does not exist."""


class CatalogError(DossierflowError):
    """A step catalog violates its structural invariants."""
