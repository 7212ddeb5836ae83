"""
Document lifecycle state machine and the per-document audit trail.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.dcms.audit import record_event
from app.dcms.utils import utcnow

from .constants import DOCUMENT_STATUSES, STATUS_TRANSITIONS, TERMINAL_STATUSES
from .errors import ConflictError, NotFoundError, PreconditionFailedError
from .models import Document

if TYPE_CHECKING:
    from app.dcms.models import User


def load_document(s: Session, document_id: str, *, operation: str, refresh: bool = False) -> Document:
    """
    Fetch a document or raise NotFoundError.
    refresh=True re-reads the row so status checks never branch on a stale copy.
    """
    doc = s.get(Document, document_id, populate_existing=refresh)
    if not doc:
        raise NotFoundError(f"Document not found: {document_id}", entity_id=document_id, operation=operation)
    return doc


def flush_or_conflict(s: Session, *, entity_id: str | None, operation: str) -> None:
    """Flush pending writes; concurrent-writer failures surface as retryable ConflictError."""
    try:
        s.flush()
    except StaleDataError as e:
        raise ConflictError(
            f"Document was modified concurrently during {operation}; reload and retry.",
            entity_id=entity_id,
            operation=operation,
        ) from e
    except IntegrityError as e:
        raise ConflictError(
            f"Constraint violation during {operation}: {e.orig}",
            entity_id=entity_id,
            operation=operation,
        ) from e


def ensure_not_terminal(doc: Document, *, operation: str) -> None:
    if doc.status in TERMINAL_STATUSES:
        raise PreconditionFailedError(
            f"Document {doc.control_number} is {doc.status}; {operation} is not allowed.",
            entity_id=doc.id,
            operation=operation,
        )


def append_audit_entry(
    doc: Document,
    *,
    action: str,
    user: User | None,
    from_status: str | None = None,
    to_status: str | None = None,
    reason: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "action": action,
        "at": utcnow().isoformat(),
        "by": user.id if user else None,
        "by_email": user.email if user else None,
    }
    if from_status is not None or to_status is not None:
        entry["from_status"] = from_status
        entry["to_status"] = to_status
    if reason:
        entry["reason"] = reason
    if details:
        entry["details"] = details
    # New list so the JSON column is flagged dirty; prior entries are never touched.
    doc.audit_trail = [*(doc.audit_trail or []), entry]
    return entry


def can_transition_to(doc: Document, new_status: str) -> tuple[bool, list[str]]:
    """Check if document can transition to new_status."""
    errors = []

    if doc.status not in STATUS_TRANSITIONS:
        errors.append(f"Current status '{doc.status}' is invalid")
        return False, errors

    if new_status not in STATUS_TRANSITIONS[doc.status]:
        errors.append(f"Cannot transition from '{doc.status}' to '{new_status}'")
        return False, errors

    return True, []


def transition_status(
    s: Session,
    doc: Document,
    new_status: str,
    *,
    user: User | None,
    reason: str | None = None,
    action: str = "status_change",
) -> Document:
    """Change document status with validation. Same-status requests are a no-op."""
    if new_status not in DOCUMENT_STATUSES:
        raise PreconditionFailedError(f"Invalid status: {new_status}", entity_id=doc.id, operation=action)

    if doc.status == new_status:
        return doc

    ok, errors = can_transition_to(doc, new_status)
    if not ok:
        raise PreconditionFailedError("; ".join(errors), entity_id=doc.id, operation=action)

    old_status = doc.status
    doc.status = new_status
    doc.updated_by_user_id = user.id if user else None
    append_audit_entry(doc, action=action, user=user, from_status=old_status, to_status=new_status, reason=reason)

    record_event(
        s,
        actor=user,
        action=f"doc_control.document.{action}",
        entity_type="Document",
        entity_id=doc.id,
        reason=reason,
        metadata={
            "control_number": doc.control_number,
            "from": old_status,
            "to": new_status,
        },
    )
    return doc
