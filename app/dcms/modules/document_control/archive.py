"""
Archive manager: write-once retention snapshots of documents and revisions.
"""
from __future__ import annotations

import copy
from datetime import date
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.dcms.audit import record_event
from app.dcms.utils import add_years, iso

from .constants import ARCHIVE_REASONS, DEFAULT_RETENTION_YEARS
from .errors import NotFoundError, PreconditionFailedError
from .lifecycle import append_audit_entry, flush_or_conflict, load_document, transition_status
from .models import Document, DocumentArchive
from .versioning import get_revision

if TYPE_CHECKING:
    from app.dcms.models import User


def _validate(reason: str, retention_years: int | None, hold: bool, hold_reason: str | None, *, entity_id: str, operation: str) -> int:
    errors = []
    if reason not in ARCHIVE_REASONS:
        errors.append(f"Invalid archive reason: {reason}")
    years = DEFAULT_RETENTION_YEARS if retention_years is None else int(retention_years)
    if years < 0:
        errors.append("Retention years cannot be negative")
    if hold and not (hold_reason or "").strip():
        errors.append("A destruction hold requires a reason")
    if errors:
        raise PreconditionFailedError("; ".join(errors), entity_id=entity_id, operation=operation)
    return years


def _document_metadata(doc: Document) -> dict:
    return {
        "company_id": doc.company_id,
        "sequence_number": doc.sequence_number,
        "department": doc.department,
        "category": doc.category,
        "applicable_to": list(doc.applicable_to or []),
        "folder_path": doc.folder_path,
        "effective_date": iso(doc.effective_date),
        "expiry_date": iso(doc.expiry_date),
        "next_review_date": iso(doc.next_review_date),
        "approved_at": iso(doc.approved_at),
        "file_type": doc.file_type,
        "file_size_bytes": doc.file_size_bytes,
        "file_sha256": doc.file_sha256,
        "page_count": doc.page_count,
        "referenced_control_numbers": list(doc.referenced_control_numbers or []),
        "supersedes_document_id": doc.supersedes_document_id,
        "superseded_by_document_id": doc.superseded_by_document_id,
        "audit_trail": copy.deepcopy(doc.audit_trail or []),
    }


def archive_document(
    s: Session,
    document_id: str,
    *,
    reason: str = "manual",
    notes: str | None = None,
    retention_years: int | None = None,
    destruction_hold: bool = False,
    hold_reason: str | None = None,
    user: User | None,
    today: date | None = None,
) -> DocumentArchive:
    """
    Snapshot the document into the archive. The live row is kept; a non-terminal
    document moves to archived. An already obsolete/archived document just gets
    another snapshot.
    """
    today = today or date.today()
    years = _validate(reason, retention_years, destruction_hold, hold_reason, entity_id=document_id, operation="archive_document")
    doc = load_document(s, document_id, operation="archive_document", refresh=True)
    status_at_archive = doc.status

    archive = DocumentArchive(
        company_id=doc.company_id,
        original_document_id=doc.id,
        control_number=doc.control_number,
        document_type_code=doc.document_type_code,
        title=doc.title,
        description=doc.description,
        version=doc.version,
        status_at_archive=status_at_archive,
        file_path=doc.file_path,
        file_name=doc.file_name,
        extracted_text=doc.extracted_text,
        tags=copy.deepcopy(doc.tags or []),
        audit_elements=copy.deepcopy(doc.audit_elements or []),
        metadata_snapshot=_document_metadata(doc),
        archive_reason=reason,
        archive_notes=notes,
        archived_by_user_id=user.id if user else None,
        retention_years=years,
        can_be_destroyed_after=add_years(today, years),
        destruction_hold=bool(destruction_hold),
        destruction_hold_reason=hold_reason if destruction_hold else None,
    )
    s.add(archive)

    if doc.is_terminal:
        append_audit_entry(doc, action="archive_snapshot", user=user, reason=notes, details={"archive_reason": reason})
    else:
        transition_status(s, doc, "archived", user=user, reason=notes or f"Archived ({reason})", action="archive")
    flush_or_conflict(s, entity_id=doc.id, operation="archive_document")

    record_event(
        s,
        actor=user,
        action="doc_control.archive.create",
        entity_type="DocumentArchive",
        entity_id=archive.id,
        reason=notes,
        metadata={
            "document_id": doc.id,
            "control_number": doc.control_number,
            "version": doc.version,
            "status_at_archive": status_at_archive,
            "archive_reason": reason,
            "can_be_destroyed_after": archive.can_be_destroyed_after.isoformat(),
        },
    )
    return archive


def archive_version(
    s: Session,
    revision_id: str,
    *,
    reason: str = "superseded",
    notes: str | None = None,
    retention_years: int | None = None,
    destruction_hold: bool = False,
    hold_reason: str | None = None,
    user: User | None,
    today: date | None = None,
) -> DocumentArchive:
    """Snapshot a single revision. The document's status is not changed."""
    today = today or date.today()
    years = _validate(reason, retention_years, destruction_hold, hold_reason, entity_id=revision_id, operation="archive_version")
    rev = get_revision(s, revision_id)
    doc = load_document(s, rev.document_id, operation="archive_version")

    snapshot = copy.deepcopy(rev.metadata_snapshot or {})
    snapshot.update(
        {
            "revision_number": rev.revision_number,
            "previous_version": rev.previous_version,
            "change_type": rev.change_type,
            "change_summary": rev.change_summary,
        }
    )
    archive = DocumentArchive(
        company_id=rev.company_id,
        original_document_id=rev.document_id,
        revision_id=rev.id,
        control_number=doc.control_number,
        document_type_code=doc.document_type_code,
        title=rev.title,
        description=rev.description,
        version=rev.version,
        status_at_archive=rev.status_at_revision,
        file_path=rev.file_path,
        file_name=rev.file_name,
        tags=copy.deepcopy(rev.tags or []),
        audit_elements=list(snapshot.get("audit_elements") or []),
        metadata_snapshot=snapshot,
        archive_reason=reason,
        archive_notes=notes,
        archived_by_user_id=user.id if user else None,
        retention_years=years,
        can_be_destroyed_after=add_years(today, years),
        destruction_hold=bool(destruction_hold),
        destruction_hold_reason=hold_reason if destruction_hold else None,
    )
    s.add(archive)
    flush_or_conflict(s, entity_id=rev.document_id, operation="archive_version")

    record_event(
        s,
        actor=user,
        action="doc_control.archive.version",
        entity_type="DocumentArchive",
        entity_id=archive.id,
        reason=notes,
        metadata={"document_id": rev.document_id, "revision_id": rev.id, "version": rev.version, "archive_reason": reason},
    )
    return archive


def get_archive(s: Session, archive_id: str) -> DocumentArchive:
    archive = s.get(DocumentArchive, archive_id)
    if not archive:
        raise NotFoundError(f"Archive not found: {archive_id}", entity_id=archive_id, operation="get_archive")
    return archive


def list_archives(s: Session, company_id: str, *, document_id: str | None = None) -> list[DocumentArchive]:
    stmt = select(DocumentArchive).where(DocumentArchive.company_id == company_id)
    if document_id:
        stmt = stmt.where(DocumentArchive.original_document_id == document_id)
    stmt = stmt.order_by(DocumentArchive.archived_at.desc())
    return list(s.scalars(stmt))


def archives_eligible_for_destruction(s: Session, company_id: str, *, today: date | None = None) -> list[DocumentArchive]:
    today = today or date.today()
    stmt = (
        select(DocumentArchive)
        .where(
            DocumentArchive.company_id == company_id,
            DocumentArchive.destruction_hold.is_(False),
            DocumentArchive.can_be_destroyed_after < today,
        )
        .order_by(DocumentArchive.can_be_destroyed_after.asc())
    )
    return list(s.scalars(stmt))
