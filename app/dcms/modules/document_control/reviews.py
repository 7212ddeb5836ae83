"""
Review scheduling: due dates, explicit review records and the review-due queue.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.dcms.audit import record_event
from app.dcms.utils import add_months, utcnow

from .constants import DEFAULT_REVIEW_FREQUENCY_MONTHS, REVIEW_OUTCOMES, REVIEW_TYPES
from .errors import NotFoundError, PreconditionFailedError
from .lifecycle import append_audit_entry, ensure_not_terminal, flush_or_conflict, load_document
from .models import Document, DocumentReview

if TYPE_CHECKING:
    from app.dcms.models import User

OPEN_REVIEW_STATUSES = ("scheduled", "in_progress", "overdue")


def compute_next_review_date(start: date, months: int | None) -> date:
    return add_months(start, months or DEFAULT_REVIEW_FREQUENCY_MONTHS)


def get_review(s: Session, review_id: str) -> DocumentReview:
    review = s.get(DocumentReview, review_id)
    if not review:
        raise NotFoundError(f"Review not found: {review_id}", entity_id=review_id, operation="get_review")
    return review


def create_review(
    s: Session,
    document_id: str,
    *,
    due_date: date | None = None,
    review_type: str = "scheduled",
    assigned_to_user_id: int | None = None,
    user: User | None,
) -> DocumentReview:
    """Schedule an explicit review. Defaults to the document's next review date."""
    if review_type not in REVIEW_TYPES:
        raise PreconditionFailedError(f"Invalid review type: {review_type}", entity_id=document_id, operation="create_review")
    doc = load_document(s, document_id, operation="create_review", refresh=True)
    ensure_not_terminal(doc, operation="create_review")

    due = due_date or doc.next_review_date or date.today()
    review = DocumentReview(
        document_id=doc.id,
        company_id=doc.company_id,
        review_type=review_type,
        due_date=due,
        assigned_to_user_id=assigned_to_user_id,
        status="scheduled",
        created_by_user_id=user.id if user else None,
    )
    s.add(review)
    append_audit_entry(doc, action="review_scheduled", user=user, details={"due_date": due.isoformat(), "review_type": review_type})
    flush_or_conflict(s, entity_id=doc.id, operation="create_review")

    record_event(
        s,
        actor=user,
        action="doc_control.review.create",
        entity_type="DocumentReview",
        entity_id=review.id,
        metadata={"document_id": doc.id, "control_number": doc.control_number, "due_date": due.isoformat()},
    )
    return review


def start_review(s: Session, review_id: str, *, user: User | None) -> DocumentReview:
    review = get_review(s, review_id)
    if review.status not in ("scheduled", "overdue"):
        raise PreconditionFailedError(
            f"Review cannot be started from status {review.status}", entity_id=review.id, operation="start_review"
        )
    review.status = "in_progress"
    review.started_at = utcnow()
    if review.assigned_to_user_id is None and user is not None:
        review.assigned_to_user_id = user.id
    flush_or_conflict(s, entity_id=review.id, operation="start_review")
    record_event(
        s,
        actor=user,
        action="doc_control.review.start",
        entity_type="DocumentReview",
        entity_id=review.id,
        metadata={"document_id": review.document_id},
    )
    return review


def cancel_review(s: Session, review_id: str, *, user: User | None, reason: str | None = None) -> DocumentReview:
    review = get_review(s, review_id)
    if review.status not in OPEN_REVIEW_STATUSES:
        raise PreconditionFailedError(
            f"Review cannot be cancelled from status {review.status}", entity_id=review.id, operation="cancel_review"
        )
    review.status = "cancelled"
    review.reviewer_notes = reason or review.reviewer_notes
    flush_or_conflict(s, entity_id=review.id, operation="cancel_review")
    record_event(
        s,
        actor=user,
        action="doc_control.review.cancel",
        entity_type="DocumentReview",
        entity_id=review.id,
        reason=reason,
        metadata={"document_id": review.document_id},
    )
    return review


def complete_review(
    s: Session,
    review_id: str,
    *,
    outcome: str,
    next_review_date: date,
    user: User | None,
    notes: str | None = None,
    action_items: list[str] | None = None,
) -> DocumentReview:
    """
    Record the outcome and write next_review_date back onto the document so later
    overdue calculations start from this review.
    """
    if outcome not in REVIEW_OUTCOMES:
        raise PreconditionFailedError(f"Invalid review outcome: {outcome}", entity_id=review_id, operation="complete_review")
    review = get_review(s, review_id)
    if review.status not in OPEN_REVIEW_STATUSES:
        raise PreconditionFailedError(
            f"Review is already {review.status}", entity_id=review.id, operation="complete_review"
        )
    doc = load_document(s, review.document_id, operation="complete_review", refresh=True)

    review.status = "completed"
    review.outcome = outcome
    review.reviewer_notes = notes
    review.action_items = [a.strip() for a in (action_items or []) if a and a.strip()]
    review.next_review_date = next_review_date
    review.completed_at = utcnow()
    review.completed_by_user_id = user.id if user else None

    previous = doc.next_review_date
    doc.next_review_date = next_review_date
    doc.last_reviewed_at = review.completed_at
    doc.updated_by_user_id = user.id if user else None
    append_audit_entry(
        doc,
        action="review_completed",
        user=user,
        reason=notes,
        details={"review_id": review.id, "outcome": outcome, "next_review_date": next_review_date.isoformat()},
    )
    flush_or_conflict(s, entity_id=doc.id, operation="complete_review")

    record_event(
        s,
        actor=user,
        action="doc_control.review.complete",
        entity_type="DocumentReview",
        entity_id=review.id,
        reason=notes,
        metadata={
            "document_id": doc.id,
            "control_number": doc.control_number,
            "outcome": outcome,
            "previous_next_review_date": previous.isoformat() if previous else None,
            "next_review_date": next_review_date.isoformat(),
        },
    )
    return review


def list_reviews(s: Session, document_id: str) -> list[DocumentReview]:
    load_document(s, document_id, operation="list_reviews")
    stmt = select(DocumentReview).where(DocumentReview.document_id == document_id).order_by(DocumentReview.due_date.desc())
    return list(s.scalars(stmt))


@dataclass
class ReviewDueItem:
    document: Document
    review_status: str  # overdue | due_soon | scheduled
    days_until_due: int


def classify_review_date(next_review_date: date, *, today: date, days_ahead: int) -> str:
    if next_review_date < today:
        return "overdue"
    if next_review_date <= today + timedelta(days=days_ahead):
        return "due_soon"
    return "scheduled"


def documents_due_for_review(
    s: Session,
    company_id: str,
    *,
    days_ahead: int = 30,
    today: date | None = None,
    include_scheduled: bool = True,
) -> list[ReviewDueItem]:
    """
    Active documents ranked by next review date, each tagged overdue / due_soon / scheduled.
    A document due today is due_soon, not overdue.
    """
    today = today or date.today()
    stmt = (
        select(Document)
        .where(
            Document.company_id == company_id,
            Document.status == "active",
            Document.next_review_date.is_not(None),
        )
        .order_by(Document.next_review_date.asc(), Document.control_number.asc())
    )
    if not include_scheduled:
        stmt = stmt.where(Document.next_review_date <= today + timedelta(days=days_ahead))

    items = []
    for doc in s.scalars(stmt):
        items.append(
            ReviewDueItem(
                document=doc,
                review_status=classify_review_date(doc.next_review_date, today=today, days_ahead=days_ahead),
                days_until_due=(doc.next_review_date - today).days,
            )
        )
    return items


def mark_overdue_reviews(s: Session, *, company_id: str | None = None, today: date | None = None) -> int:
    """Sweep: scheduled reviews whose due date has passed become overdue."""
    today = today or date.today()
    stmt = (
        update(DocumentReview)
        .where(DocumentReview.status == "scheduled", DocumentReview.due_date < today)
        .values(status="overdue", updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    if company_id:
        stmt = stmt.where(DocumentReview.company_id == company_id)
    result = s.execute(stmt)
    return int(result.rowcount or 0)
