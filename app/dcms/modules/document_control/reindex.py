"""
Batch re-indexing: re-extract file text, refresh keywords/tags and cross-references.

Each document is processed inside its own SAVEPOINT so one failure never rolls
back the documents already indexed in the same batch.
"""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.dcms.audit import record_event
from app.dcms.storage import Storage, StorageError
from app.dcms.utils import dedupe, iso, utcnow

from .constants import INDEXABLE_CONTENT_TYPES
from .errors import DependencyError, DocumentControlError, PreconditionFailedError
from .extraction import TextExtractor
from .lifecycle import flush_or_conflict, load_document
from .models import Company, Document
from .reference import company_prefix
from .text_utils import clean_extracted_text, extract_keywords, find_control_numbers

if TYPE_CHECKING:
    from app.dcms.models import User

logger = logging.getLogger(__name__)

KEYWORD_LIMIT = 15
MIN_INDEXED_TEXT_LENGTH = 50


@dataclass
class ReindexResult:
    document_id: str
    control_number: str
    success: bool
    skipped: bool = False
    pages: int | None = None
    text_length: int | None = None
    keywords: list[str] = field(default_factory=list)
    references: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "control_number": self.control_number,
            "success": self.success,
            "skipped": self.skipped,
            "pages": self.pages,
            "text_length": self.text_length,
            "keywords": self.keywords,
            "references": self.references,
            "error": self.error,
        }


@dataclass
class ReindexSummary:
    total: int
    successful: int
    failed: int
    skipped: int
    cancelled: bool
    results: list[ReindexResult]
    started_at: datetime
    completed_at: datetime
    duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "results": [r.to_dict() for r in self.results],
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
            "duration_ms": self.duration_ms,
        }


ProgressCallback = Callable[[int, int, ReindexResult], None]


def _indexable_query(company_id: str):
    return select(Document).where(
        Document.company_id == company_id,
        Document.file_path.is_not(None),
        Document.file_type.in_(sorted(INDEXABLE_CONTENT_TYPES)),
    )


def _prefix_for(s: Session, company_id: str) -> str:
    return company_prefix(s.get(Company, company_id))


def _index_one(s: Session, doc: Document, *, extractor: TextExtractor, storage: Storage, prefix: str) -> ReindexResult:
    """Download, extract and write back. Raises on any failure."""
    if not doc.file_path:
        raise PreconditionFailedError("No file attached to document", entity_id=doc.id, operation="reindex_document")
    if doc.file_type not in INDEXABLE_CONTENT_TYPES:
        raise PreconditionFailedError(
            f"Unsupported file type: {doc.file_type}", entity_id=doc.id, operation="reindex_document"
        )

    try:
        data = storage.get_bytes(doc.file_path)
    except (StorageError, OSError) as e:
        raise DependencyError(f"Download failed: {e}", entity_id=doc.id, operation="reindex_document") from e

    try:
        extraction = extractor.extract(data, content_type=doc.file_type, filename=doc.file_name)
    except Exception as e:
        raise DependencyError(
            f"Extraction failed: {str(e) or type(e).__name__}", entity_id=doc.id, operation="reindex_document"
        ) from e
    if not extraction.success:
        raise DependencyError(extraction.error or "Extraction failed", entity_id=doc.id, operation="reindex_document")

    text = clean_extracted_text(extraction.text)
    keywords = extract_keywords(text, KEYWORD_LIMIT)
    own = (doc.control_number or "").upper()
    references = [cn for cn in find_control_numbers(text, prefix) if cn != own]

    doc.extracted_text = text
    doc.page_count = extraction.page_count
    doc.indexed_at = utcnow()
    doc.referenced_control_numbers = references
    doc.tags = dedupe(list(doc.tags or []) + keywords)
    flush_or_conflict(s, entity_id=doc.id, operation="reindex_document")

    return ReindexResult(
        document_id=doc.id,
        control_number=doc.control_number,
        success=True,
        pages=extraction.page_count,
        text_length=len(text),
        keywords=keywords,
        references=references,
    )


def reindex_document(
    s: Session,
    document_id: str,
    *,
    extractor: TextExtractor,
    storage: Storage,
    user: User | None = None,
) -> ReindexResult:
    """Single-document variant. Errors propagate as typed DocumentControlErrors."""
    doc = load_document(s, document_id, operation="reindex_document", refresh=True)
    result = _index_one(s, doc, extractor=extractor, storage=storage, prefix=_prefix_for(s, doc.company_id))
    record_event(
        s,
        actor=user,
        action="doc_control.reindex.document",
        entity_type="Document",
        entity_id=doc.id,
        metadata={"control_number": doc.control_number, "pages": result.pages, "text_length": result.text_length},
    )
    return result


def reindex_documents(
    s: Session,
    company_id: str,
    *,
    extractor: TextExtractor,
    storage: Storage,
    force: bool = False,
    only_empty: bool = False,
    document_types: list[str] | None = None,
    limit: int | None = None,
    offset: int = 0,
    delay_seconds: float = 0.1,
    on_progress: ProgressCallback | None = None,
    cancel_event: threading.Event | None = None,
    user: User | None = None,
) -> ReindexSummary:
    """
    Re-index a company's indexable documents sequentially, newest first.

    - documents that already have text are skipped unless force or only_empty
    - a failure is recorded on that item's result and the batch continues
    - on_progress(completed, total, result) is called after every item
    - setting cancel_event stops the batch before the next item
    """
    started = utcnow()
    clock = time.monotonic()

    stmt = _indexable_query(company_id)
    if only_empty:
        stmt = stmt.where(or_(Document.extracted_text.is_(None), Document.extracted_text == ""))
    if document_types:
        stmt = stmt.where(Document.document_type_code.in_([t.upper() for t in document_types]))
    stmt = stmt.order_by(Document.created_at.desc(), Document.control_number.asc())
    if offset:
        stmt = stmt.offset(offset)
    if limit:
        stmt = stmt.limit(limit)
    documents = list(s.scalars(stmt))

    total = len(documents)
    prefix = _prefix_for(s, company_id)
    results: list[ReindexResult] = []
    successful = failed = skipped = 0
    cancelled = False

    logger.info("Reindex started: company=%s documents=%s force=%s only_empty=%s", company_id, total, force, only_empty)

    for idx, doc in enumerate(documents):
        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
            logger.info("Reindex cancelled after %s of %s documents", idx, total)
            break

        if doc.extracted_text and not force and not only_empty:
            result = ReindexResult(
                document_id=doc.id,
                control_number=doc.control_number,
                success=True,
                skipped=True,
                text_length=len(doc.extracted_text),
            )
            skipped += 1
        else:
            try:
                with s.begin_nested():
                    result = _index_one(s, doc, extractor=extractor, storage=storage, prefix=prefix)
                successful += 1
            except Exception as e:
                # Whatever one item raises stays on that item's result.
                message = e.message if isinstance(e, DocumentControlError) else (str(e) or type(e).__name__)
                result = ReindexResult(
                    document_id=doc.id,
                    control_number=doc.control_number,
                    success=False,
                    error=message,
                )
                failed += 1
                logger.warning("Failed to re-index %s: %s", doc.control_number, message)

        results.append(result)
        if on_progress is not None:
            on_progress(idx + 1, total, result)

        if delay_seconds and idx + 1 < total:
            time.sleep(delay_seconds)

    completed = utcnow()
    summary = ReindexSummary(
        total=total,
        successful=successful,
        failed=failed,
        skipped=skipped,
        cancelled=cancelled,
        results=results,
        started_at=started,
        completed_at=completed,
        duration_ms=int((time.monotonic() - clock) * 1000),
    )
    logger.info(
        "Reindex finished: company=%s total=%s successful=%s failed=%s skipped=%s cancelled=%s",
        company_id,
        total,
        successful,
        failed,
        skipped,
        cancelled,
    )
    record_event(
        s,
        actor=user,
        action="doc_control.reindex.batch",
        entity_type="Company",
        entity_id=company_id,
        metadata={
            "total": total,
            "successful": successful,
            "failed": failed,
            "skipped": skipped,
            "cancelled": cancelled,
            "duration_ms": summary.duration_ms,
        },
    )
    return summary


@dataclass
class ReindexCandidate:
    document_id: str
    control_number: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"document_id": self.document_id, "control_number": self.control_number, "reason": self.reason}


def documents_needing_reindex(s: Session, company_id: str) -> list[ReindexCandidate]:
    out: list[ReindexCandidate] = []
    for doc in s.scalars(_indexable_query(company_id).order_by(Document.control_number.asc())):
        if not doc.extracted_text:
            out.append(ReindexCandidate(doc.id, doc.control_number, "No extracted text"))
        elif len(doc.extracted_text.strip()) < MIN_INDEXED_TEXT_LENGTH:
            out.append(ReindexCandidate(doc.id, doc.control_number, "Extracted text too short (may have failed)"))
    return out
