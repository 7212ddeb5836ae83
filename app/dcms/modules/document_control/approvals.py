"""
Approval workflow engine.

One DocumentApproval row per approver role and cycle. After every decision the
required approvals of the current cycle are re-read from the database and the
document status follows them:
- every required approval approved -> approved
- any required approval rejected -> draft
- otherwise unchanged
An outcome the document cannot move to raises, and the decision is rolled back.
"""
from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.dcms.audit import record_event
from app.dcms.models import User
from app.dcms.utils import utcnow

from .constants import APPROVAL_DECISIONS
from .errors import NotFoundError, PreconditionFailedError
from .lifecycle import (
    append_audit_entry,
    can_transition_to,
    ensure_not_terminal,
    flush_or_conflict,
    load_document,
    transition_status,
)
from .models import Document, DocumentApproval

logger = logging.getLogger(__name__)

OPEN_APPROVAL_STATUSES = ("pending", "delegated")


def current_cycle(s: Session, document_id: str) -> int:
    return s.scalar(select(func.max(DocumentApproval.cycle)).where(DocumentApproval.document_id == document_id)) or 0


def create_approval_workflow(
    s: Session,
    document_id: str,
    roles: list[str],
    *,
    user: User | None,
) -> list[DocumentApproval]:
    """Start a new approval cycle with one pending approval per role, in list order."""
    doc = load_document(s, document_id, operation="create_approval_workflow", refresh=True)
    ensure_not_terminal(doc, operation="create_approval_workflow")

    cleaned = [r.strip() for r in roles if r and r.strip()]
    if not cleaned:
        raise PreconditionFailedError(
            "At least one approver role is required.", entity_id=doc.id, operation="create_approval_workflow"
        )

    cycle = current_cycle(s, doc.id) + 1
    stale = s.scalars(
        select(DocumentApproval).where(
            DocumentApproval.document_id == doc.id,
            DocumentApproval.status.in_(OPEN_APPROVAL_STATUSES),
        )
    )
    for old in stale:
        old.status = "skipped"
        old.comments = f"Superseded by approval cycle {cycle}"
    approvals = [
        DocumentApproval(
            document_id=doc.id,
            company_id=doc.company_id,
            cycle=cycle,
            document_version=doc.version,
            approver_role=role,
            order_index=idx,
            required=True,
            status="pending",
        )
        for idx, role in enumerate(cleaned)
    ]
    s.add_all(approvals)
    append_audit_entry(
        doc,
        action="approval_workflow_created",
        user=user,
        details={"cycle": cycle, "roles": cleaned, "version": doc.version},
    )
    flush_or_conflict(s, entity_id=doc.id, operation="create_approval_workflow")

    record_event(
        s,
        actor=user,
        action="doc_control.approval.workflow_create",
        entity_type="Document",
        entity_id=doc.id,
        metadata={"control_number": doc.control_number, "cycle": cycle, "roles": cleaned},
    )
    return approvals


def get_approval(s: Session, approval_id: str) -> DocumentApproval:
    approval = s.get(DocumentApproval, approval_id)
    if not approval:
        raise NotFoundError(f"Approval not found: {approval_id}", entity_id=approval_id, operation="get_approval")
    return approval


def list_approvals(s: Session, document_id: str, *, all_cycles: bool = False) -> list[DocumentApproval]:
    """Approvals of the current cycle (or every cycle) in display order."""
    load_document(s, document_id, operation="list_approvals")
    stmt = select(DocumentApproval).where(DocumentApproval.document_id == document_id)
    if not all_cycles:
        stmt = stmt.where(DocumentApproval.cycle == current_cycle(s, document_id))
    stmt = stmt.order_by(DocumentApproval.cycle.asc(), DocumentApproval.order_index.asc())
    return list(s.scalars(stmt))


def pending_approvals(
    s: Session,
    company_id: str,
    *,
    role: str | None = None,
    approver_user_id: int | None = None,
) -> list[DocumentApproval]:
    stmt = (
        select(DocumentApproval)
        .join(Document, Document.id == DocumentApproval.document_id)
        .where(
            DocumentApproval.company_id == company_id,
            DocumentApproval.status.in_(OPEN_APPROVAL_STATUSES),
            Document.status.notin_(("obsolete", "archived")),
        )
        .order_by(DocumentApproval.created_at.asc(), DocumentApproval.order_index.asc())
    )
    if role:
        stmt = stmt.where(DocumentApproval.approver_role == role)
    if approver_user_id is not None:
        stmt = stmt.where(DocumentApproval.approver_user_id == approver_user_id)
    rows = list(s.scalars(stmt))
    # Only the open rows of each document's latest cycle are actionable.
    latest: dict[str, int] = {}
    for row in rows:
        if row.document_id not in latest:
            latest[row.document_id] = current_cycle(s, row.document_id)
    return [r for r in rows if r.cycle == latest[r.document_id]]


def evaluate_approvals(s: Session, doc: Document, *, user: User | None) -> str | None:
    """
    Re-read the required approvals of the current cycle and move the document accordingly.
    Returns the status the approvals call for, or None when still undecided.
    """
    cycle = current_cycle(s, doc.id)
    required = list(
        s.scalars(
            select(DocumentApproval)
            .where(
                DocumentApproval.document_id == doc.id,
                DocumentApproval.cycle == cycle,
                DocumentApproval.required.is_(True),
            )
            .execution_options(populate_existing=True)
        )
    )

    if any(a.status == "rejected" for a in required):
        target = "draft"
    elif all(a.status == "approved" for a in required):
        target = "approved"
    else:
        return None

    if doc.status == target:
        return target
    # Active documents were approved before they went into force.
    if target == "approved" and doc.status == "active":
        return target

    ok, errors = can_transition_to(doc, target)
    if not ok:
        logger.warning(
            "Approval outcome %s cannot be applied to %s (status=%s): %s",
            target,
            doc.control_number,
            doc.status,
            "; ".join(errors),
        )
        raise PreconditionFailedError(
            f"Approval outcome '{target}' cannot be applied to {doc.control_number}: " + "; ".join(errors),
            entity_id=doc.id,
            operation="submit_approval",
        )

    reason = "All required approvals granted" if target == "approved" else "Required approval rejected"
    transition_status(s, doc, target, user=user, reason=reason, action="approval_outcome")
    if target == "approved":
        doc.approved_at = utcnow()
    return target


def submit_approval(
    s: Session,
    approval_id: str,
    decision: str,
    *,
    user: User,
    comments: str | None = None,
    rejection_reason: str | None = None,
    signature_data: str | None = None,
    signature_type: str | None = None,
) -> DocumentApproval:
    """
    Record a decision. Resubmitting on an already-decided approval overwrites it
    and re-evaluates the workflow.
    """
    approval = get_approval(s, approval_id)
    if decision not in APPROVAL_DECISIONS:
        raise PreconditionFailedError(
            f"Invalid approval decision: {decision}", entity_id=approval.id, operation="submit_approval"
        )
    if decision == "skipped" and approval.required:
        raise PreconditionFailedError(
            "A required approval cannot be skipped.", entity_id=approval.id, operation="submit_approval"
        )

    doc = load_document(s, approval.document_id, operation="submit_approval", refresh=True)
    ensure_not_terminal(doc, operation="submit_approval")
    if approval.cycle != current_cycle(s, doc.id):
        raise PreconditionFailedError(
            "Approval belongs to a superseded approval cycle.", entity_id=approval.id, operation="submit_approval"
        )

    previous = approval.status
    # A decision whose outcome cannot be applied is rolled back with it.
    with s.begin_nested():
        approval.status = decision
        approval.decided_at = utcnow()
        approval.decided_by_user_id = user.id
        if approval.approver_user_id is None:
            approval.approver_user_id = user.id
        approval.comments = comments
        approval.rejection_reason = (rejection_reason or comments) if decision == "rejected" else None
        approval.signature_data = signature_data
        approval.signature_type = signature_type

        append_audit_entry(
            doc,
            action="approval_decision",
            user=user,
            reason=approval.rejection_reason,
            details={
                "approval_id": approval.id,
                "role": approval.approver_role,
                "decision": decision,
                "previous": previous,
            },
        )
        flush_or_conflict(s, entity_id=doc.id, operation="submit_approval")

        outcome = evaluate_approvals(s, doc, user=user)
        flush_or_conflict(s, entity_id=doc.id, operation="submit_approval")

    record_event(
        s,
        actor=user,
        action="doc_control.approval.submit",
        entity_type="DocumentApproval",
        entity_id=approval.id,
        reason=approval.rejection_reason,
        metadata={
            "document_id": doc.id,
            "control_number": doc.control_number,
            "role": approval.approver_role,
            "decision": decision,
            "previous": previous,
            "document_status": doc.status,
            "outcome": outcome,
        },
    )
    return approval


def delegate_approval(
    s: Session,
    approval_id: str,
    delegate_to_user_id: int,
    *,
    user: User,
    reason: str | None = None,
) -> DocumentApproval:
    """Reassign an open approval to another approver without deciding it."""
    approval = get_approval(s, approval_id)
    if approval.status not in OPEN_APPROVAL_STATUSES:
        raise PreconditionFailedError(
            f"Only open approvals can be delegated (status={approval.status}).",
            entity_id=approval.id,
            operation="delegate_approval",
        )
    delegate = s.get(User, delegate_to_user_id)
    if not delegate or not delegate.is_active:
        raise NotFoundError(
            f"Delegate user not found: {delegate_to_user_id}",
            entity_id=str(delegate_to_user_id),
            operation="delegate_approval",
        )

    doc = load_document(s, approval.document_id, operation="delegate_approval")
    ensure_not_terminal(doc, operation="delegate_approval")

    approval.delegated_from_user_id = approval.approver_user_id or user.id
    approval.approver_user_id = delegate.id
    approval.status = "delegated"
    append_audit_entry(
        doc,
        action="approval_delegated",
        user=user,
        reason=reason,
        details={"approval_id": approval.id, "role": approval.approver_role, "delegate_to": delegate.id},
    )
    flush_or_conflict(s, entity_id=doc.id, operation="delegate_approval")

    record_event(
        s,
        actor=user,
        action="doc_control.approval.delegate",
        entity_type="DocumentApproval",
        entity_id=approval.id,
        reason=reason,
        metadata={"document_id": doc.id, "from_user_id": approval.delegated_from_user_id, "to_user_id": delegate.id},
    )
    return approval
