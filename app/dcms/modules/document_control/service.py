"""
Document registry: the canonical document record and its lifecycle operations.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from werkzeug.utils import secure_filename

from app.dcms.audit import record_event
from app.dcms.storage import Storage, StorageError
from app.dcms.utils import add_months, dedupe, utcnow

from .approvals import create_approval_workflow
from .constants import DEFAULT_REVIEW_FREQUENCY_MONTHS, DOCUMENT_STATUSES, DOCUMENT_TYPE_CODES
from .errors import ConflictError, DependencyError, NotFoundError, PreconditionFailedError
from .folders import get_folder
from .lifecycle import (
    append_audit_entry,
    ensure_not_terminal,
    flush_or_conflict,
    load_document,
    transition_status,
)
from .models import Document, DocumentApproval, DocumentDistribution
from .reference import get_company, get_document_type
from .sequences import allocate_control_number

if TYPE_CHECKING:
    from app.dcms.models import User

logger = logging.getLogger(__name__)

# Fields update_document may change. Status, version and control number have their own operations.
UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "tags",
        "audit_elements",
        "applicable_to",
        "department",
        "category",
        "effective_date",
        "expiry_date",
        "next_review_date",
        "is_critical",
        "acknowledgment_required",
        "acknowledgment_deadline_days",
    }
)
_LIST_FIELDS = frozenset({"tags", "audit_elements", "applicable_to"})
_DATE_FIELDS = frozenset({"effective_date", "expiry_date", "next_review_date"})


def _clean_list(values) -> list:
    return dedupe(v.strip() if isinstance(v, str) else v for v in (values or []) if v not in (None, ""))


def _clean_elements(values) -> list[int]:
    out = []
    for v in values or []:
        try:
            n = int(v)
        except (TypeError, ValueError):
            raise PreconditionFailedError(f"Invalid audit element: {v!r}", operation="audit_elements") from None
        if not 1 <= n <= 14:
            raise PreconditionFailedError(f"Audit element out of range (1-14): {n}", operation="audit_elements")
        out.append(n)
    return sorted(set(out))


def create_document(
    s: Session,
    company_id: str,
    *,
    document_type_code: str,
    title: str,
    user: User | None,
    description: str | None = None,
    tags: list[str] | None = None,
    audit_elements: list[int] | None = None,
    applicable_to: list[str] | None = None,
    department: str | None = None,
    category: str | None = None,
    effective_date: date | None = None,
    expiry_date: date | None = None,
    folder_id: str | None = None,
    is_critical: bool = False,
    acknowledgment_required: bool = False,
    acknowledgment_deadline_days: int | None = None,
    today: date | None = None,
) -> Document:
    """
    Register a new document in draft at version 1.0 with a freshly allocated control number.
    If its type requires approval, the approval workflow is created in the same transaction.
    """
    title = (title or "").strip()
    errors = []
    if not title:
        errors.append("Title is required")
    if expiry_date and effective_date and expiry_date < effective_date:
        errors.append("Expiry date must be on or after the effective date")
    if errors:
        raise PreconditionFailedError("; ".join(errors), operation="create_document")

    company = get_company(s, company_id)
    doc_type = get_document_type(s, document_type_code)
    folder = get_folder(s, folder_id) if folder_id else None
    if folder is not None and folder.company_id != company.id:
        raise PreconditionFailedError("Folder belongs to a different company.", entity_id=folder_id, operation="create_document")

    today = today or date.today()
    review_months = doc_type.review_frequency_months or DEFAULT_REVIEW_FREQUENCY_MONTHS
    next_review = add_months(effective_date or today, review_months)

    attempt = 0
    while True:
        attempt += 1
        control_number, sequence = allocate_control_number(s, company.id, doc_type.code)
        candidate = Document(
            company_id=company.id,
            control_number=control_number,
            document_type_code=doc_type.code,
            sequence_number=sequence,
            title=title,
            description=(description or "").strip() or None,
            version="1.0",
            status="draft",
            tags=_clean_list(tags),
            audit_elements=_clean_elements(audit_elements),
            applicable_to=_clean_list(applicable_to) or ["all_workers"],
            department=department,
            category=category,
            folder_id=folder.id if folder else None,
            folder_path=folder.path if folder else "/",
            is_critical=is_critical,
            acknowledgment_required=acknowledgment_required,
            acknowledgment_deadline_days=acknowledgment_deadline_days,
            effective_date=effective_date,
            expiry_date=expiry_date,
            next_review_date=next_review,
            audit_trail=[],
            created_by_user_id=user.id if user else None,
            updated_by_user_id=user.id if user else None,
        )
        try:
            with s.begin_nested():
                s.add(candidate)
                s.flush()
        except IntegrityError as e:
            logger.warning("Control number collision on %s (attempt %s): %s", control_number, attempt, e.orig)
            if attempt == 2:
                raise ConflictError(
                    f"Could not allocate a unique control number for {doc_type.code}; retry.",
                    entity_id=company.id,
                    operation="create_document",
                ) from e
            continue
        break

    doc = candidate
    append_audit_entry(doc, action="created", user=user, to_status="draft", details={"version": "1.0"})

    if doc_type.requires_approval and doc_type.approval_roles:
        create_approval_workflow(s, doc.id, list(doc_type.approval_roles), user=user)

    flush_or_conflict(s, entity_id=doc.id, operation="create_document")
    record_event(
        s,
        actor=user,
        action="doc_control.document.create",
        entity_type="Document",
        entity_id=doc.id,
        metadata={
            "control_number": doc.control_number,
            "document_type_code": doc.document_type_code,
            "title": doc.title,
            "next_review_date": doc.next_review_date.isoformat(),
        },
    )
    return doc


def get_document(s: Session, document_id: str) -> Document:
    return load_document(s, document_id, operation="get_document")


def get_document_by_control_number(s: Session, company_id: str, control_number: str) -> Document:
    cn = (control_number or "").strip().upper()
    doc = s.scalar(select(Document).where(Document.company_id == company_id, Document.control_number == cn))
    if not doc:
        raise NotFoundError(f"Document not found: {cn}", entity_id=cn, operation="get_document_by_control_number")
    return doc


def update_document(
    s: Session,
    document_id: str,
    updates: dict[str, Any],
    *,
    user: User | None,
    reason: str | None = None,
) -> Document:
    """Update descriptive fields. Terminal documents are read-only."""
    unknown = sorted(set(updates) - UPDATABLE_FIELDS)
    if unknown:
        raise PreconditionFailedError(
            f"Fields cannot be updated here: {', '.join(unknown)}", entity_id=document_id, operation="update_document"
        )

    doc = load_document(s, document_id, operation="update_document", refresh=True)
    ensure_not_terminal(doc, operation="update_document")

    changes: dict[str, dict[str, Any]] = {}
    for field, value in updates.items():
        if field == "title":
            value = (value or "").strip()
            if not value:
                raise PreconditionFailedError("Title is required", entity_id=doc.id, operation="update_document")
        elif field == "audit_elements":
            value = _clean_elements(value)
        elif field in _LIST_FIELDS:
            value = _clean_list(value)
        current = getattr(doc, field)
        if current == value:
            continue
        changes[field] = {
            "from": current.isoformat() if field in _DATE_FIELDS and current else current,
            "to": value.isoformat() if field in _DATE_FIELDS and value else value,
        }
        setattr(doc, field, value)

    if not changes:
        return doc

    if doc.expiry_date and doc.effective_date and doc.expiry_date < doc.effective_date:
        raise PreconditionFailedError(
            "Expiry date must be on or after the effective date", entity_id=doc.id, operation="update_document"
        )

    doc.updated_by_user_id = user.id if user else None
    append_audit_entry(doc, action="updated", user=user, reason=reason, details={"fields": sorted(changes)})
    flush_or_conflict(s, entity_id=doc.id, operation="update_document")

    record_event(
        s,
        actor=user,
        action="doc_control.document.update",
        entity_type="Document",
        entity_id=doc.id,
        reason=reason,
        metadata={"control_number": doc.control_number, "changes": changes},
    )
    return doc


def _json_overlaps(values: list | None, wanted: list) -> bool:
    return bool(set(values or []) & set(wanted))


def list_documents(
    s: Session,
    company_id: str,
    *,
    document_type_code: str | None = None,
    status: str | list[str] | None = None,
    department: str | None = None,
    audit_elements: list[int] | None = None,
    tags: list[str] | None = None,
    applicable_to: str | None = None,
    review_due_before: date | None = None,
    folder_id: str | None = None,
    query: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Document], int]:
    """
    Filtered, paginated listing ordered by most recently updated.
    Array-membership filters (elements, tags, applicability) are applied after the SQL filters
    so the same code runs on SQLite and Postgres.
    """
    stmt = select(Document).where(Document.company_id == company_id)
    if document_type_code:
        stmt = stmt.where(Document.document_type_code == document_type_code.upper())
    if status:
        statuses = [status] if isinstance(status, str) else list(status)
        bad = [st for st in statuses if st not in DOCUMENT_STATUSES]
        if bad:
            raise PreconditionFailedError(f"Invalid status filter: {', '.join(bad)}", operation="list_documents")
        stmt = stmt.where(Document.status.in_(statuses))
    if department:
        stmt = stmt.where(Document.department == department)
    if review_due_before:
        stmt = stmt.where(Document.next_review_date <= review_due_before)
    if folder_id:
        stmt = stmt.where(Document.folder_id == folder_id)
    if query and query.strip():
        like = f"%{query.strip()}%"
        stmt = stmt.where(
            or_(
                Document.title.ilike(like),
                Document.control_number.ilike(like),
                Document.description.ilike(like),
            )
        )
    stmt = stmt.order_by(Document.updated_at.desc(), Document.control_number.asc())

    limit = max(1, min(int(limit or 50), 500))
    offset = max(0, int(offset or 0))

    if audit_elements or tags or applicable_to:
        rows = [
            d
            for d in s.scalars(stmt)
            if (not audit_elements or _json_overlaps(d.audit_elements, list(audit_elements)))
            and (not tags or _json_overlaps(d.tags, list(tags)))
            and (not applicable_to or applicable_to in (d.applicable_to or []))
        ]
        return rows[offset : offset + limit], len(rows)

    total = s.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    rows = list(s.scalars(stmt.limit(limit).offset(offset)))
    return rows, int(total)


@dataclass
class SearchHit:
    document: Document
    score: int
    snippet: str | None


def _snippet(text: str | None, term: str, width: int = 80) -> str | None:
    if not text:
        return None
    idx = text.lower().find(term.lower())
    if idx < 0:
        return None
    start = max(0, idx - width // 2)
    return text[start : idx + len(term) + width // 2].replace("\n", " ").strip()


def search_documents(
    s: Session,
    company_id: str,
    query: str,
    *,
    statuses: tuple[str, ...] = ("active", "approved"),
    document_types: list[str] | None = None,
    audit_elements: list[int] | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[SearchHit]:
    """
    Full-text search over control number, title, description and extracted text, ranked by
    where the term matched (control number > title > description/body).
    """
    term = (query or "").strip()
    if not term:
        return []
    like = f"%{term}%"
    stmt = select(Document).where(
        Document.company_id == company_id,
        Document.status.in_(statuses),
        or_(
            Document.control_number.ilike(like),
            Document.title.ilike(like),
            Document.description.ilike(like),
            Document.extracted_text.ilike(like),
        ),
    )
    if document_types:
        stmt = stmt.where(Document.document_type_code.in_([t.upper() for t in document_types]))

    hits = []
    lowered = term.lower()
    for doc in s.scalars(stmt):
        if audit_elements and not _json_overlaps(doc.audit_elements, list(audit_elements)):
            continue
        score = 0
        if lowered in doc.control_number.lower():
            score += 3
        if lowered in doc.title.lower():
            score += 2
        if doc.description and lowered in doc.description.lower():
            score += 1
        if doc.extracted_text and lowered in doc.extracted_text.lower():
            score += 1
        hits.append(SearchHit(document=doc, score=score, snippet=_snippet(doc.extracted_text, term)))

    hits.sort(key=lambda h: (-h.score, h.document.control_number))
    return hits[offset : offset + limit]


def change_status(
    s: Session,
    document_id: str,
    new_status: str,
    *,
    user: User | None,
    reason: str | None = None,
) -> Document:
    doc = load_document(s, document_id, operation="change_status", refresh=True)
    transition_status(s, doc, new_status, user=user, reason=reason)
    flush_or_conflict(s, entity_id=doc.id, operation="change_status")
    return doc


def submit_for_review(s: Session, document_id: str, *, user: User | None, reason: str | None = None) -> Document:
    return change_status(s, document_id, "pending_review", user=user, reason=reason or "Submitted for review")


def start_review_cycle(s: Session, document_id: str, *, user: User | None, reason: str | None = None) -> Document:
    return change_status(s, document_id, "under_review", user=user, reason=reason or "Review started")


def activate_document(
    s: Session,
    document_id: str,
    *,
    user: User | None,
    today: date | None = None,
    reason: str | None = None,
) -> Document:
    """
    Make an approved document effective today. The review clock restarts from the
    effective date.
    """
    doc = load_document(s, document_id, operation="activate_document", refresh=True)
    if doc.status != "approved":
        raise PreconditionFailedError(
            f"Only approved documents can be activated (status={doc.status}).",
            entity_id=doc.id,
            operation="activate_document",
        )
    today = today or date.today()
    transition_status(s, doc, "active", user=user, reason=reason or "Activated", action="activate")
    doc.effective_date = today
    months = doc.document_type.review_frequency_months or DEFAULT_REVIEW_FREQUENCY_MONTHS
    doc.next_review_date = add_months(today, months)
    if doc.approved_at is None:
        doc.approved_at = utcnow()
    flush_or_conflict(s, entity_id=doc.id, operation="activate_document")
    return doc


def obsolete_document(
    s: Session,
    document_id: str,
    *,
    user: User | None,
    reason: str | None = None,
) -> Document:
    doc = load_document(s, document_id, operation="obsolete_document", refresh=True)
    ensure_not_terminal(doc, operation="obsolete_document")
    transition_status(s, doc, "obsolete", user=user, reason=reason or "Marked obsolete", action="obsolete")
    flush_or_conflict(s, entity_id=doc.id, operation="obsolete_document")
    return doc


def supersede_document(
    s: Session,
    new_document_id: str,
    old_document_id: str,
    *,
    user: User | None,
    reason: str | None = None,
) -> tuple[Document, Document]:
    """Record that new supersedes old (identifiers only) and retire the old document."""
    if new_document_id == old_document_id:
        raise PreconditionFailedError("A document cannot supersede itself.", entity_id=new_document_id, operation="supersede_document")
    new_doc = load_document(s, new_document_id, operation="supersede_document", refresh=True)
    old_doc = load_document(s, old_document_id, operation="supersede_document", refresh=True)
    if new_doc.company_id != old_doc.company_id:
        raise PreconditionFailedError("Documents belong to different companies.", entity_id=new_doc.id, operation="supersede_document")
    ensure_not_terminal(new_doc, operation="supersede_document")

    new_doc.supersedes_document_id = old_doc.id
    old_doc.superseded_by_document_id = new_doc.id
    append_audit_entry(new_doc, action="supersedes", user=user, reason=reason, details={"document_id": old_doc.id, "control_number": old_doc.control_number})
    append_audit_entry(old_doc, action="superseded_by", user=user, reason=reason, details={"document_id": new_doc.id, "control_number": new_doc.control_number})
    if not old_doc.is_terminal:
        transition_status(s, old_doc, "obsolete", user=user, reason=reason or f"Superseded by {new_doc.control_number}", action="obsolete")
    flush_or_conflict(s, entity_id=old_doc.id, operation="supersede_document")

    record_event(
        s,
        actor=user,
        action="doc_control.document.supersede",
        entity_type="Document",
        entity_id=new_doc.id,
        reason=reason,
        metadata={"supersedes": old_doc.control_number, "by": new_doc.control_number},
    )
    return new_doc, old_doc


def build_document_storage_key(doc: Document, filename: str) -> str:
    safe_name = secure_filename(filename or "") or "document.bin"
    return f"documents/{doc.company_id}/{doc.control_number}/v{doc.version}/{safe_name}"


def attach_file(
    s: Session,
    document_id: str,
    *,
    data: bytes,
    filename: str,
    content_type: str | None,
    storage: Storage,
    user: User | None,
) -> Document:
    """Store the document's file and point the record at it. Clears the extracted-text cache."""
    doc = load_document(s, document_id, operation="attach_file", refresh=True)
    ensure_not_terminal(doc, operation="attach_file")
    if not data:
        raise PreconditionFailedError("File is empty.", entity_id=doc.id, operation="attach_file")

    key = build_document_storage_key(doc, filename)
    content_type = content_type or "application/octet-stream"
    try:
        storage.put_bytes(key, data, content_type=content_type)
    except (StorageError, OSError) as e:
        raise DependencyError(f"File storage failed: {e}", entity_id=doc.id, operation="attach_file") from e

    doc.file_path = key
    doc.file_name = secure_filename(filename or "") or "document.bin"
    doc.file_type = content_type
    doc.file_size_bytes = len(data)
    doc.file_sha256 = hashlib.sha256(data).hexdigest()
    doc.extracted_text = None
    doc.page_count = None
    doc.indexed_at = None
    doc.updated_by_user_id = user.id if user else None
    append_audit_entry(doc, action="file_attached", user=user, details={"file_name": doc.file_name, "sha256": doc.file_sha256})
    flush_or_conflict(s, entity_id=doc.id, operation="attach_file")

    record_event(
        s,
        actor=user,
        action="doc_control.document.upload",
        entity_type="Document",
        entity_id=doc.id,
        metadata={
            "control_number": doc.control_number,
            "storage_key": key,
            "sha256": doc.file_sha256,
            "size_bytes": doc.file_size_bytes,
            "content_type": content_type,
        },
    )
    return doc


def registry_stats(s: Session, company_id: str, *, today: date | None = None) -> dict[str, Any]:
    today = today or date.today()
    docs = list(
        s.execute(
            select(Document.status, Document.document_type_code, Document.next_review_date, Document.updated_at).where(
                Document.company_id == company_id
            )
        )
    )
    pending = s.scalar(
        select(func.count())
        .select_from(DocumentApproval)
        .where(DocumentApproval.company_id == company_id, DocumentApproval.status == "pending")
    )
    unacknowledged = s.scalar(
        select(func.count())
        .select_from(DocumentDistribution)
        .where(DocumentDistribution.company_id == company_id, DocumentDistribution.acknowledged.is_(False))
    )

    by_status = {st: 0 for st in DOCUMENT_STATUSES}
    by_type = {code: 0 for code in sorted(DOCUMENT_TYPE_CODES)}
    overdue = due_30 = recent = 0
    soon = today + timedelta(days=30)
    recent_cutoff = utcnow() - timedelta(days=7)
    for status, type_code, next_review, updated_at in docs:
        by_status[status] = by_status.get(status, 0) + 1
        by_type[type_code] = by_type.get(type_code, 0) + 1
        if next_review:
            if next_review < today:
                overdue += 1
            elif next_review <= soon:
                due_30 += 1
        if updated_at and updated_at >= recent_cutoff:
            recent += 1

    return {
        "total_documents": len(docs),
        "by_status": by_status,
        "by_type": by_type,
        "reviews_due_30_days": due_30,
        "reviews_overdue": overdue,
        "pending_approvals": int(pending or 0),
        "unacknowledged_distributions": int(unacknowledged or 0),
        "recently_updated": recent,
    }
