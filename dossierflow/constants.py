"""Shared constants for dossierflow."""

DEFAULT_REJECTION_REASON_MIN_LENGTH = 10
DEFAULT_OVERRIDE_ROLES = ("ADMIN",)
DEFAULT_ADMIN_STEP_ROLE = "CREATEUR"
DEFAULT_DOSSIER_STATUS = "QUALIFICATION"

# Dossier statuses a step may apply on approval, in display order.
DOSSIER_STATUSES = (
    "QUALIFICATION",
    "FORM_SUBMITTED",
    "NM_PENDING",
    "LLC_ACCEPTED",
    "EIN_PENDING",
    "BANK_PREPARATION",
    "BANK_OPENED",
    "WAITING_48H",
    "IN_PROGRESS",
    "UNDER_REVIEW",
    "COMPLETED",
    "CLOSED",
    "ERROR",
)
