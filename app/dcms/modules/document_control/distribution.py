"""
Distribution & acknowledgment tracking.

Two independent mechanisms live here:
- distributions: a record that a version was handed to a recipient, optionally
  acknowledged with a quiz score
- acknowledgment requirements: a worker must acknowledge by a deadline; a sweep
  marks missed deadlines overdue
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.dcms.audit import record_event
from app.dcms.utils import dedupe, utcnow

from .constants import ACKNOWLEDGMENT_METHODS, DEFAULT_ACK_DEADLINE_DAYS, DISTRIBUTION_METHODS, QUIZ_PASS_SCORE
from .errors import NotFoundError, PreconditionFailedError
from .lifecycle import append_audit_entry, ensure_not_terminal, flush_or_conflict, load_document
from .models import Document, DocumentAcknowledgment, DocumentDistribution

if TYPE_CHECKING:
    from app.dcms.models import User

logger = logging.getLogger(__name__)


def _clean_recipients(values: list[str] | None) -> list[str]:
    return dedupe(str(v).strip() for v in (values or []) if v is not None and str(v).strip())


def _check_ack_method(method: str, *, entity_id: str, operation: str) -> None:
    if method not in ACKNOWLEDGMENT_METHODS:
        raise PreconditionFailedError(f"Invalid acknowledgment method: {method}", entity_id=entity_id, operation=operation)


# ---------------------------------------------------------------------------
# Distributions
# ---------------------------------------------------------------------------


def get_distribution(s: Session, distribution_id: str) -> DocumentDistribution:
    dist = s.get(DocumentDistribution, distribution_id)
    if not dist:
        raise NotFoundError(
            f"Distribution not found: {distribution_id}", entity_id=distribution_id, operation="get_distribution"
        )
    return dist


def distribute_document(
    s: Session,
    document_id: str,
    recipients: list[str],
    *,
    method: str = "system_notification",
    quiz_required: bool = False,
    notes: str | None = None,
    user: User | None,
) -> list[DocumentDistribution]:
    """
    Create one distribution per new recipient. Recipients that already hold a
    distribution for this document are left as they are.
    Returns only the rows created by this call.
    """
    if method not in DISTRIBUTION_METHODS:
        raise PreconditionFailedError(
            f"Invalid distribution method: {method}", entity_id=document_id, operation="distribute_document"
        )
    doc = load_document(s, document_id, operation="distribute_document", refresh=True)
    ensure_not_terminal(doc, operation="distribute_document")

    cleaned = _clean_recipients(recipients)
    if not cleaned:
        raise PreconditionFailedError(
            "At least one recipient is required.", entity_id=doc.id, operation="distribute_document"
        )

    existing = set(
        s.scalars(
            select(DocumentDistribution.distributed_to).where(
                DocumentDistribution.document_id == doc.id,
                DocumentDistribution.distributed_to.in_(cleaned),
            )
        )
    )
    created = [
        DocumentDistribution(
            document_id=doc.id,
            company_id=doc.company_id,
            document_version=doc.version,
            distributed_to=r,
            distribution_method=method,
            distributed_by_user_id=user.id if user else None,
            notes=notes,
            quiz_required=bool(quiz_required),
        )
        for r in cleaned
        if r not in existing
    ]
    if created:
        s.add_all(created)
        append_audit_entry(
            doc,
            action="distributed",
            user=user,
            details={"recipients": [d.distributed_to for d in created], "method": method, "version": doc.version},
        )
    flush_or_conflict(s, entity_id=doc.id, operation="distribute_document")

    record_event(
        s,
        actor=user,
        action="doc_control.distribution.create",
        entity_type="Document",
        entity_id=doc.id,
        metadata={
            "control_number": doc.control_number,
            "created": len(created),
            "already_distributed": sorted(existing),
            "method": method,
        },
    )
    return created


def acknowledge_distribution(
    s: Session,
    distribution_id: str,
    *,
    method: str = "checkbox",
    signature: str | None = None,
    quiz_score: int | None = None,
    user: User | None = None,
) -> DocumentDistribution:
    dist = get_distribution(s, distribution_id)
    _check_ack_method(method, entity_id=dist.id, operation="acknowledge_distribution")
    if dist.quiz_required and quiz_score is None:
        raise PreconditionFailedError(
            "This distribution requires a quiz score.", entity_id=dist.id, operation="acknowledge_distribution"
        )
    if quiz_score is not None and not 0 <= int(quiz_score) <= 100:
        raise PreconditionFailedError(
            f"Quiz score must be between 0 and 100 (got {quiz_score}).",
            entity_id=dist.id,
            operation="acknowledge_distribution",
        )

    dist.acknowledged = True
    dist.acknowledged_at = utcnow()
    dist.acknowledgment_method = method
    dist.acknowledgment_signature = signature
    if quiz_score is not None:
        dist.quiz_score = int(quiz_score)
        dist.quiz_passed = dist.quiz_score >= QUIZ_PASS_SCORE
    flush_or_conflict(s, entity_id=dist.id, operation="acknowledge_distribution")

    record_event(
        s,
        actor=user,
        action="doc_control.distribution.acknowledge",
        entity_type="DocumentDistribution",
        entity_id=dist.id,
        metadata={
            "document_id": dist.document_id,
            "recipient": dist.distributed_to,
            "method": method,
            "quiz_score": dist.quiz_score,
            "quiz_passed": dist.quiz_passed,
        },
    )
    return dist


def send_distribution_reminder(s: Session, distribution_id: str, *, user: User | None = None) -> DocumentDistribution:
    """Count a reminder. Delivery belongs to the notification layer."""
    dist = get_distribution(s, distribution_id)
    if dist.acknowledged:
        raise PreconditionFailedError(
            "Distribution is already acknowledged.", entity_id=dist.id, operation="send_distribution_reminder"
        )
    dist.reminder_count = (dist.reminder_count or 0) + 1
    dist.last_reminder_at = utcnow()
    flush_or_conflict(s, entity_id=dist.id, operation="send_distribution_reminder")
    record_event(
        s,
        actor=user,
        action="doc_control.distribution.remind",
        entity_type="DocumentDistribution",
        entity_id=dist.id,
        metadata={"document_id": dist.document_id, "recipient": dist.distributed_to, "reminder_count": dist.reminder_count},
    )
    return dist


def list_distributions(s: Session, document_id: str) -> list[DocumentDistribution]:
    load_document(s, document_id, operation="list_distributions")
    stmt = (
        select(DocumentDistribution)
        .where(DocumentDistribution.document_id == document_id)
        .order_by(DocumentDistribution.distributed_at.asc(), DocumentDistribution.distributed_to.asc())
    )
    return list(s.scalars(stmt))


def unacknowledged_distributions(
    s: Session,
    company_id: str,
    *,
    document_id: str | None = None,
    recipient: str | None = None,
) -> list[DocumentDistribution]:
    stmt = (
        select(DocumentDistribution)
        .where(DocumentDistribution.company_id == company_id, DocumentDistribution.acknowledged.is_(False))
        .order_by(DocumentDistribution.distributed_at.asc())
    )
    if document_id:
        stmt = stmt.where(DocumentDistribution.document_id == document_id)
    if recipient:
        stmt = stmt.where(DocumentDistribution.distributed_to == recipient)
    return list(s.scalars(stmt))


@dataclass
class DistributionSummary:
    total: int
    acknowledged: int
    pending: int
    quiz_required: int
    quiz_passed: int
    quiz_failed: int
    acknowledgment_rate: int

    def to_dict(self) -> dict:
        return asdict(self)


def distribution_summary(s: Session, document_id: str) -> DistributionSummary:
    rows = list_distributions(s, document_id)
    total = len(rows)
    acknowledged = sum(1 for d in rows if d.acknowledged)
    return DistributionSummary(
        total=total,
        acknowledged=acknowledged,
        pending=total - acknowledged,
        quiz_required=sum(1 for d in rows if d.quiz_required),
        quiz_passed=sum(1 for d in rows if d.quiz_passed is True),
        quiz_failed=sum(1 for d in rows if d.quiz_passed is False),
        acknowledgment_rate=round(acknowledged / total * 100) if total else 100,
    )


# ---------------------------------------------------------------------------
# Acknowledgment requirements
# ---------------------------------------------------------------------------


def get_acknowledgment(s: Session, ack_id: str) -> DocumentAcknowledgment:
    ack = s.get(DocumentAcknowledgment, ack_id)
    if not ack:
        raise NotFoundError(f"Acknowledgment not found: {ack_id}", entity_id=ack_id, operation="get_acknowledgment")
    return ack


def _deadline_days(doc: Document, explicit: int | None) -> int:
    if explicit is not None:
        if explicit < 0:
            raise PreconditionFailedError(
                "Deadline days cannot be negative.", entity_id=doc.id, operation="create_acknowledgment_requirements"
            )
        return explicit
    if doc.acknowledgment_deadline_days is not None:
        return doc.acknowledgment_deadline_days
    return DEFAULT_ACK_DEADLINE_DAYS


def create_acknowledgment_requirements(
    s: Session,
    document_id: str,
    worker_ids: list[str],
    *,
    deadline_days: int | None = None,
    notes: str | None = None,
    user: User | None,
    today: date | None = None,
) -> list[DocumentAcknowledgment]:
    """
    Require each worker to acknowledge the current version by today + deadline_days.
    Re-running refreshes the deadline of pending/overdue rows; acknowledged and
    exempt rows are not touched.
    """
    today = today or date.today()
    doc = load_document(s, document_id, operation="create_acknowledgment_requirements", refresh=True)
    ensure_not_terminal(doc, operation="create_acknowledgment_requirements")

    workers = _clean_recipients(worker_ids)
    if not workers:
        raise PreconditionFailedError(
            "At least one worker is required.", entity_id=doc.id, operation="create_acknowledgment_requirements"
        )
    required_by = today + timedelta(days=_deadline_days(doc, deadline_days))

    existing = {
        a.worker_id: a
        for a in s.scalars(
            select(DocumentAcknowledgment).where(
                DocumentAcknowledgment.document_id == doc.id,
                DocumentAcknowledgment.worker_id.in_(workers),
            )
        )
    }

    out: list[DocumentAcknowledgment] = []
    created = refreshed = 0
    for worker in workers:
        ack = existing.get(worker)
        if ack is None:
            ack = DocumentAcknowledgment(
                document_id=doc.id,
                company_id=doc.company_id,
                worker_id=worker,
                document_version=doc.version,
                status="pending",
                required_by_date=required_by,
                notes=notes,
            )
            s.add(ack)
            created += 1
        elif ack.status in ("pending", "overdue"):
            ack.status = "pending"
            ack.required_by_date = required_by
            ack.document_version = doc.version
            if notes:
                ack.notes = notes
            refreshed += 1
        out.append(ack)

    append_audit_entry(
        doc,
        action="acknowledgment_required",
        user=user,
        details={"workers": workers, "required_by": required_by.isoformat()},
    )
    flush_or_conflict(s, entity_id=doc.id, operation="create_acknowledgment_requirements")

    record_event(
        s,
        actor=user,
        action="doc_control.acknowledgment.require",
        entity_type="Document",
        entity_id=doc.id,
        metadata={
            "control_number": doc.control_number,
            "created": created,
            "refreshed": refreshed,
            "required_by": required_by.isoformat(),
        },
    )
    return out


def acknowledge_document(
    s: Session,
    ack_id: str,
    *,
    method: str = "checkbox",
    signature: str | None = None,
    notes: str | None = None,
    user: User | None = None,
) -> DocumentAcknowledgment:
    ack = get_acknowledgment(s, ack_id)
    _check_ack_method(method, entity_id=ack.id, operation="acknowledge_document")
    if ack.status == "exempt":
        raise PreconditionFailedError(
            "Worker is exempt from acknowledging this document.", entity_id=ack.id, operation="acknowledge_document"
        )
    ack.status = "acknowledged"
    ack.acknowledged_at = utcnow()
    ack.acknowledgment_method = method
    ack.signature_data = signature
    if notes:
        ack.notes = notes
    flush_or_conflict(s, entity_id=ack.id, operation="acknowledge_document")

    record_event(
        s,
        actor=user,
        action="doc_control.acknowledgment.acknowledge",
        entity_type="DocumentAcknowledgment",
        entity_id=ack.id,
        metadata={"document_id": ack.document_id, "worker_id": ack.worker_id, "method": method},
    )
    return ack


def acknowledge_document_by_worker(
    s: Session,
    document_id: str,
    worker_id: str,
    *,
    method: str = "checkbox",
    signature: str | None = None,
    notes: str | None = None,
    user: User | None = None,
) -> DocumentAcknowledgment:
    """Acknowledge on behalf of a worker, creating the requirement row if none exists."""
    worker = (worker_id or "").strip()
    if not worker:
        raise PreconditionFailedError("worker_id is required.", entity_id=document_id, operation="acknowledge_document_by_worker")
    doc = load_document(s, document_id, operation="acknowledge_document_by_worker")
    ack = s.scalar(
        select(DocumentAcknowledgment).where(
            DocumentAcknowledgment.document_id == doc.id,
            DocumentAcknowledgment.worker_id == worker,
        )
    )
    if ack is None:
        ack = DocumentAcknowledgment(
            document_id=doc.id,
            company_id=doc.company_id,
            worker_id=worker,
            document_version=doc.version,
            status="pending",
        )
        s.add(ack)
        flush_or_conflict(s, entity_id=doc.id, operation="acknowledge_document_by_worker")
    return acknowledge_document(s, ack.id, method=method, signature=signature, notes=notes, user=user)


def update_overdue_acknowledgments(s: Session, *, company_id: str | None = None, today: date | None = None) -> int:
    """Sweep: pending acknowledgments past their deadline become overdue. Returns the number changed."""
    today = today or date.today()
    stmt = (
        update(DocumentAcknowledgment)
        .where(
            DocumentAcknowledgment.status == "pending",
            DocumentAcknowledgment.required_by_date.is_not(None),
            DocumentAcknowledgment.required_by_date < today,
        )
        .values(status="overdue", updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    if company_id:
        stmt = stmt.where(DocumentAcknowledgment.company_id == company_id)
    count = int(s.execute(stmt).rowcount or 0)
    if count:
        logger.info("Marked %s acknowledgment(s) overdue (company=%s, today=%s)", count, company_id or "*", today)
    return count


def exempt_from_acknowledgment(
    s: Session,
    ack_id: str,
    *,
    reason: str,
    user: User | None,
) -> DocumentAcknowledgment:
    if not (reason or "").strip():
        raise PreconditionFailedError("An exemption reason is required.", entity_id=ack_id, operation="exempt_from_acknowledgment")
    ack = get_acknowledgment(s, ack_id)
    if ack.status == "acknowledged":
        raise PreconditionFailedError(
            "Acknowledged requirements cannot be exempted.", entity_id=ack.id, operation="exempt_from_acknowledgment"
        )
    ack.status = "exempt"
    ack.exempt_reason = reason.strip()
    flush_or_conflict(s, entity_id=ack.id, operation="exempt_from_acknowledgment")
    record_event(
        s,
        actor=user,
        action="doc_control.acknowledgment.exempt",
        entity_type="DocumentAcknowledgment",
        entity_id=ack.id,
        reason=ack.exempt_reason,
        metadata={"document_id": ack.document_id, "worker_id": ack.worker_id},
    )
    return ack


def send_acknowledgment_reminder(s: Session, ack_id: str, *, user: User | None = None) -> DocumentAcknowledgment:
    ack = get_acknowledgment(s, ack_id)
    if ack.status not in ("pending", "overdue"):
        raise PreconditionFailedError(
            f"No reminder needed for status {ack.status}.", entity_id=ack.id, operation="send_acknowledgment_reminder"
        )
    ack.reminder_count = (ack.reminder_count or 0) + 1
    ack.last_reminder_at = utcnow()
    flush_or_conflict(s, entity_id=ack.id, operation="send_acknowledgment_reminder")
    record_event(
        s,
        actor=user,
        action="doc_control.acknowledgment.remind",
        entity_type="DocumentAcknowledgment",
        entity_id=ack.id,
        metadata={"document_id": ack.document_id, "worker_id": ack.worker_id, "reminder_count": ack.reminder_count},
    )
    return ack


def document_acknowledgments(s: Session, document_id: str, *, status: str | None = None) -> list[DocumentAcknowledgment]:
    load_document(s, document_id, operation="document_acknowledgments")
    stmt = select(DocumentAcknowledgment).where(DocumentAcknowledgment.document_id == document_id)
    if status:
        stmt = stmt.where(DocumentAcknowledgment.status == status)
    stmt = stmt.order_by(DocumentAcknowledgment.worker_id.asc())
    return list(s.scalars(stmt))


def worker_acknowledgments(
    s: Session,
    company_id: str,
    worker_id: str,
    *,
    include_completed: bool = False,
) -> list[DocumentAcknowledgment]:
    stmt = select(DocumentAcknowledgment).where(
        DocumentAcknowledgment.company_id == company_id,
        DocumentAcknowledgment.worker_id == worker_id,
    )
    if not include_completed:
        stmt = stmt.where(DocumentAcknowledgment.status.in_(("pending", "overdue")))
    stmt = stmt.order_by(DocumentAcknowledgment.required_by_date.asc())
    return list(s.scalars(stmt))


@dataclass
class AcknowledgmentSummary:
    total: int
    acknowledged: int
    pending: int
    overdue: int
    exempt: int
    completion_rate: int

    def to_dict(self) -> dict:
        return asdict(self)


def acknowledgment_summary(s: Session, document_id: str) -> AcknowledgmentSummary:
    rows = document_acknowledgments(s, document_id)
    counts = {"acknowledged": 0, "pending": 0, "overdue": 0, "exempt": 0}
    for a in rows:
        counts[a.status] = counts.get(a.status, 0) + 1
    total = len(rows)
    return AcknowledgmentSummary(
        total=total,
        acknowledged=counts["acknowledged"],
        pending=counts["pending"],
        overdue=counts["overdue"],
        exempt=counts["exempt"],
        completion_rate=round(counts["acknowledged"] / total * 100) if total else 100,
    )
