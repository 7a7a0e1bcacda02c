"""Authorization policy and audit trail."""

from .audit import AuditLog
from .policy import Actor, ActorRole, PolicyEngine

__all__ = ["Actor", "ActorRole", "AuditLog", "PolicyEngine"]
