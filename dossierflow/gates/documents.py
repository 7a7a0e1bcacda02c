"""Required document gates."""

from __future__ import annotations

from typing import Iterable

from ..persistence.models import DocumentIssues, DocumentStatus, RequiredDocument


def all_required_approved(required: Iterable[RequiredDocument]) -> bool:
    """True iff every required document's current version is approved."""
    return all(r.status == DocumentStatus.APPROVED for r in required)


def document_issues(required: Iterable[RequiredDocument]) -> DocumentIssues:
    """Group the required documents that are not approved by their problem."""
    issues = DocumentIssues()
    for r in required:
        status = r.status
        if status == DocumentStatus.NOT_SUBMITTED:
            issues.not_submitted.append(r.document_type_id)
        elif status == DocumentStatus.PENDING:
            issues.pending.append(r.document_type_id)
        elif status == DocumentStatus.REJECTED:
            issues.rejected.append(r.document_type_id)
    return issues


def submission_blockers(required: Iterable[RequiredDocument]) -> DocumentIssues:
    """Documents that stop a client from submitting.

    Pending uploads are fine at submission time; review happens afterwards.
    """
    issues = document_issues(required)
    issues.pending = []
    return issues
