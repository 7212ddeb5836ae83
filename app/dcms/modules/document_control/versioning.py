"""
Semantic versions ("major.minor") and write-once revision snapshots.
"""
from __future__ import annotations

import re
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.dcms.audit import record_event

from .constants import CHANGE_TYPES
from .errors import NotFoundError, PreconditionFailedError
from .lifecycle import append_audit_entry, ensure_not_terminal, flush_or_conflict, load_document, transition_status
from .models import DocumentRevision

if TYPE_CHECKING:
    from app.dcms.models import User

_VERSION_RE = re.compile(r"^(\d+)\.(\d+)$")


def parse_version(version: str) -> tuple[int, int]:
    m = _VERSION_RE.match((version or "").strip())
    if not m:
        raise PreconditionFailedError(f"Unsupported version format: {version!r}", operation="parse_version")
    return int(m.group(1)), int(m.group(2))


def next_version(current: str, change_type: str) -> str:
    """
    - initial: "1.0"
    - minor_edit: "2.3" -> "2.4"
    - major_revision / complete_rewrite: "2.3" -> "3.0"
    """
    if change_type not in CHANGE_TYPES:
        raise PreconditionFailedError(f"Invalid change type: {change_type}", operation="next_version")
    if change_type == "initial":
        return "1.0"
    major, minor = parse_version(current)
    if change_type == "minor_edit":
        return f"{major}.{minor + 1}"
    return f"{major + 1}.0"


def create_revision(
    s: Session,
    document_id: str,
    *,
    change_type: str,
    summary: str,
    details: str | None = None,
    user: User | None,
) -> DocumentRevision:
    """
    Bump the document version and snapshot its state.
    The revision row carries the new version; previous_version holds the one it replaced,
    so Document.version always equals the newest revision's version.
    """
    doc = load_document(s, document_id, operation="create_revision", refresh=True)
    ensure_not_terminal(doc, operation="create_revision")

    old_version = doc.version
    new_version = next_version(old_version, change_type)

    last_number = s.scalar(
        select(func.max(DocumentRevision.revision_number)).where(DocumentRevision.document_id == doc.id)
    )
    revision = DocumentRevision(
        document_id=doc.id,
        company_id=doc.company_id,
        revision_number=(last_number or 0) + 1,
        version=new_version,
        previous_version=old_version,
        change_type=change_type,
        change_summary=(summary or "").strip(),
        change_details=details,
        title=doc.title,
        description=doc.description,
        status_at_revision=doc.status,
        file_path=doc.file_path,
        file_name=doc.file_name,
        tags=list(doc.tags or []),
        metadata_snapshot={
            "control_number": doc.control_number,
            "document_type_code": doc.document_type_code,
            "audit_elements": list(doc.audit_elements or []),
            "applicable_to": list(doc.applicable_to or []),
            "department": doc.department,
            "category": doc.category,
            "effective_date": doc.effective_date.isoformat() if doc.effective_date else None,
            "next_review_date": doc.next_review_date.isoformat() if doc.next_review_date else None,
            "file_sha256": doc.file_sha256,
        },
        created_by_user_id=user.id if user else None,
    )
    s.add(revision)

    doc.version = new_version
    append_audit_entry(
        doc,
        action="revision_created",
        user=user,
        reason=summary,
        details={"from_version": old_version, "to_version": new_version, "change_type": change_type},
    )
    transition_status(s, doc, "under_revision", user=user, reason=summary)
    flush_or_conflict(s, entity_id=doc.id, operation="create_revision")

    record_event(
        s,
        actor=user,
        action="doc_control.revision.create",
        entity_type="DocumentRevision",
        entity_id=revision.id,
        reason=summary,
        metadata={
            "document_id": doc.id,
            "control_number": doc.control_number,
            "revision_number": revision.revision_number,
            "from_version": old_version,
            "to_version": new_version,
            "change_type": change_type,
        },
    )
    return revision


def list_revisions(s: Session, document_id: str) -> list[DocumentRevision]:
    load_document(s, document_id, operation="list_revisions")
    stmt = (
        select(DocumentRevision)
        .where(DocumentRevision.document_id == document_id)
        .order_by(DocumentRevision.revision_number.desc())
    )
    return list(s.scalars(stmt))


def get_revision(s: Session, revision_id: str) -> DocumentRevision:
    rev = s.get(DocumentRevision, revision_id)
    if not rev:
        raise NotFoundError(f"Revision not found: {revision_id}", entity_id=revision_id, operation="get_revision")
    return rev
