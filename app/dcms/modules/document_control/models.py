from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.dcms.models import Base
from app.dcms.utils import utcnow

from .constants import DEFAULT_PREFIX_FORMAT, DOCUMENT_STATUSES, TERMINAL_STATUSES
from .errors import ImmutableRecordError, PreconditionFailedError

# JSON arrays everywhere; JSONB on Postgres so they can be indexed.
JSONList = JSON().with_variant(JSONB(), "postgresql")
JSONDict = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


def _status_check(column: str, values: tuple[str, ...], name: str) -> CheckConstraint:
    quoted = ", ".join(f"'{v}'" for v in values)
    return CheckConstraint(f"{column} IN ({quoted})", name=name)


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Explicit control-number prefix; falls back to the name's initials.
    doc_prefix: Mapped[str | None] = mapped_column(String(8), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)


class DocumentType(Base):
    """Immutable reference data keyed by type code (POL, SWP, ...)."""

    __tablename__ = "document_types"

    code: Mapped[str] = mapped_column(String(8), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    approval_roles: Mapped[list[str]] = mapped_column(JSONList, nullable=False, default=list)
    review_frequency_months: Mapped[int | None] = mapped_column(Integer, nullable=True)
    prefix_format: Mapped[str] = mapped_column(String(64), nullable=False, default=DEFAULT_PREFIX_FORMAT)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class DocumentSequence(Base):
    """Per (company, type) counter backing control-number allocation."""

    __tablename__ = "document_sequences"

    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id", ondelete="CASCADE"), primary_key=True)
    document_type_code: Mapped[str] = mapped_column(String(8), ForeignKey("document_types.code"), primary_key=True)
    current_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint("company_id", "control_number", name="uq_documents_company_control_number"),
        UniqueConstraint("company_id", "document_type_code", "sequence_number", name="uq_documents_company_type_seq"),
        _status_check("status", DOCUMENT_STATUSES, "ck_documents_status"),
        Index("idx_documents_company_status", "company_id", "status"),
        Index("idx_documents_next_review", "company_id", "next_review_date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False)

    control_number: Mapped[str] = mapped_column(String(32), nullable=False)
    document_type_code: Mapped[str] = mapped_column(String(8), ForeignKey("document_types.code"), nullable=False)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[str] = mapped_column(String(16), nullable=False, default="1.0")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")

    # File reference + extraction cache
    file_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    file_size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    page_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    extracted_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    indexed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    referenced_control_numbers: Mapped[list[str]] = mapped_column(JSONList, nullable=False, default=list)

    tags: Mapped[list[str]] = mapped_column(JSONList, nullable=False, default=list)
    audit_elements: Mapped[list[int]] = mapped_column(JSONList, nullable=False, default=list)
    applicable_to: Mapped[list[str]] = mapped_column(JSONList, nullable=False, default=lambda: ["all_workers"])
    department: Mapped[str | None] = mapped_column(String(128), nullable=True)
    category: Mapped[str | None] = mapped_column(String(128), nullable=True)

    folder_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("document_folders.id", ondelete="SET NULL"), nullable=True)
    folder_path: Mapped[str] = mapped_column(String(1024), nullable=False, default="/")

    is_critical: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    acknowledgment_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    acknowledgment_deadline_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    effective_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    next_review_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # Non-owning cross references (plain identifiers)
    supersedes_document_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    superseded_by_document_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    # Append-only; always reassigned as a new list, never mutated in place.
    audit_trail: Mapped[list[dict[str, Any]]] = mapped_column(JSONList, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    row_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": row_version}

    document_type: Mapped[DocumentType] = relationship("DocumentType", lazy="selectin")

    @validates("status")
    def _validate_status(self, key: str, value: str) -> str:
        if value not in DOCUMENT_STATUSES:
            raise PreconditionFailedError(f"Invalid document status: {value!r}", entity_id=self.id, operation="set_status")
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class DocumentRevision(Base):
    """Write-once snapshot taken on each version bump."""

    __tablename__ = "document_revisions"
    __table_args__ = (
        UniqueConstraint("document_id", "revision_number", name="uq_document_revision_number"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    document_id: Mapped[str] = mapped_column(String(36), ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False, index=True)
    company_id: Mapped[str] = mapped_column(String(36), nullable=False)

    revision_number: Mapped[int] = mapped_column(Integer, nullable=False)
    version: Mapped[str] = mapped_column(String(16), nullable=False)
    previous_version: Mapped[str | None] = mapped_column(String(16), nullable=True)
    change_type: Mapped[str] = mapped_column(String(32), nullable=False)
    change_summary: Mapped[str] = mapped_column(Text, nullable=False, default="")
    change_details: Mapped[str | None] = mapped_column(Text, nullable=True)

    # State of the document when the revision was cut
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status_at_revision: Mapped[str] = mapped_column(String(32), nullable=False)
    file_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSONList, nullable=False, default=list)
    metadata_snapshot: Mapped[dict[str, Any]] = mapped_column(JSONDict, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


class DocumentApproval(Base):
    __tablename__ = "document_approvals"
    __table_args__ = (
        Index("idx_document_approvals_document_cycle", "document_id", "cycle"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    document_id: Mapped[str] = mapped_column(String(36), ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False)
    company_id: Mapped[str] = mapped_column(String(36), nullable=False)
    # Approval cycle; a new workflow on the same document starts the next cycle.
    cycle: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    document_version: Mapped[str] = mapped_column(String(16), nullable=False)

    approver_role: Mapped[str] = mapped_column(String(64), nullable=False)
    approver_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    delegated_from_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    decided_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    signature_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    signature_type: Mapped[str | None] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)


class DocumentReview(Base):
    __tablename__ = "document_reviews"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    document_id: Mapped[str] = mapped_column(String(36), ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False, index=True)
    company_id: Mapped[str] = mapped_column(String(36), nullable=False)

    review_type: Mapped[str] = mapped_column(String(16), nullable=False, default="scheduled")
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    assigned_to_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="scheduled")

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reviewer_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    action_items: Mapped[list[str]] = mapped_column(JSONList, nullable=False, default=list)
    next_review_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)


class DocumentDistribution(Base):
    __tablename__ = "document_distributions"
    __table_args__ = (
        UniqueConstraint("document_id", "distributed_to", name="uq_document_distribution_recipient"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    document_id: Mapped[str] = mapped_column(String(36), ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False)
    company_id: Mapped[str] = mapped_column(String(36), nullable=False)
    document_version: Mapped[str] = mapped_column(String(16), nullable=False)

    distributed_to: Mapped[str] = mapped_column(String(64), nullable=False)  # recipient/worker identifier
    distribution_method: Mapped[str] = mapped_column(String(32), nullable=False, default="system_notification")
    distributed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    distributed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    acknowledgment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    acknowledgment_signature: Mapped[str | None] = mapped_column(Text, nullable=True)

    quiz_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    quiz_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    quiz_passed: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    reminder_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_reminder_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)


class DocumentAcknowledgment(Base):
    __tablename__ = "document_acknowledgments"
    __table_args__ = (
        UniqueConstraint("document_id", "worker_id", name="uq_document_acknowledgment_worker"),
        Index("idx_document_acknowledgments_status_due", "status", "required_by_date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    document_id: Mapped[str] = mapped_column(String(36), ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False)
    company_id: Mapped[str] = mapped_column(String(36), nullable=False)
    worker_id: Mapped[str] = mapped_column(String(64), nullable=False)
    document_version: Mapped[str] = mapped_column(String(16), nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    required_by_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    acknowledgment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    signature_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    exempt_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    reminder_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_reminder_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)


class DocumentArchive(Base):
    """Write-once, fully denormalized snapshot of a retired document or revision."""

    __tablename__ = "document_archives"
    __table_args__ = (
        Index("idx_document_archives_destruction", "company_id", "can_be_destroyed_after"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    company_id: Mapped[str] = mapped_column(String(36), nullable=False)
    original_document_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    revision_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    control_number: Mapped[str] = mapped_column(String(32), nullable=False)
    document_type_code: Mapped[str] = mapped_column(String(8), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[str] = mapped_column(String(16), nullable=False)
    status_at_archive: Mapped[str] = mapped_column(String(32), nullable=False)
    file_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    extracted_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSONList, nullable=False, default=list)
    audit_elements: Mapped[list[int]] = mapped_column(JSONList, nullable=False, default=list)
    metadata_snapshot: Mapped[dict[str, Any]] = mapped_column(JSONDict, nullable=False, default=dict)

    archive_reason: Mapped[str] = mapped_column(String(32), nullable=False, default="manual")
    archive_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    archived_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    retention_years: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    can_be_destroyed_after: Mapped[date] = mapped_column(Date, nullable=False)
    destruction_hold: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    destruction_hold_reason: Mapped[str | None] = mapped_column(Text, nullable=True)


class DocumentFolder(Base):
    __tablename__ = "document_folders"
    __table_args__ = (
        UniqueConstraint("company_id", "path", name="uq_document_folders_company_path"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    company_id: Mapped[str] = mapped_column(String(36), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    parent_folder_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("document_folders.id", ondelete="CASCADE"), nullable=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    path: Mapped[str] = mapped_column(String(1024), nullable=False)
    depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    folder_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    folder_type: Mapped[str] = mapped_column(String(32), nullable=False, default="custom")
    icon: Mapped[str | None] = mapped_column(String(64), nullable=True)
    color: Mapped[str | None] = mapped_column(String(16), nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_system_folder: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_hidden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    linked_document_types: Mapped[list[str]] = mapped_column(JSONList, nullable=False, default=list)
    linked_audit_elements: Mapped[list[int]] = mapped_column(JSONList, nullable=False, default=list)
    accessible_to: Mapped[list[str]] = mapped_column(JSONList, nullable=False, default=lambda: ["all_workers"])

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)


def _refuse_update(mapper, connection, target) -> None:
    state = inspect(target)
    changed = [attr.key for attr in mapper.column_attrs if state.attrs[attr.key].history.has_changes()]
    if changed:
        raise ImmutableRecordError(
            f"{type(target).__name__} is write-once (attempted change: {', '.join(changed)})",
            entity_id=getattr(target, "id", None),
            operation="update",
        )


def _refuse_delete(mapper, connection, target) -> None:
    raise ImmutableRecordError(
        f"{type(target).__name__} is write-once and cannot be deleted",
        entity_id=getattr(target, "id", None),
        operation="delete",
    )


for _model in (DocumentRevision, DocumentArchive):
    event.listen(_model, "before_update", _refuse_update)
    event.listen(_model, "before_delete", _refuse_delete)
