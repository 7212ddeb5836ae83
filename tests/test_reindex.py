import threading

import pytest
from sqlalchemy import select

from app.dcms.db import session_scope
from app.dcms.models import AuditEvent
from app.dcms.modules.document_control.errors import DependencyError, PreconditionFailedError
from app.dcms.modules.document_control.extraction import DefaultTextExtractor, ExtractionResult, TextExtractor
from app.dcms.modules.document_control.models import Document
from app.dcms.modules.document_control.reindex import documents_needing_reindex, reindex_document, reindex_documents
from app.dcms.modules.document_control.service import attach_file, create_document
from app.dcms.storage import LocalStorage


class FakeExtractor(TextExtractor):
    """Returns canned text; files named in `broken` fail."""

    def __init__(self, broken=()):
        self.broken = set(broken)
        self.calls = []

    def extract(self, data, *, content_type, filename=None):
        self.calls.append(filename)
        if filename in self.broken:
            return ExtractionResult(success=False, error="Corrupt file")
        text = data.decode("utf-8")
        return ExtractionResult(success=True, text=f"{text}\n\n{text}", page_count=2)


@pytest.fixture()
def storage(tmp_path):
    return LocalStorage(root=tmp_path / "files")


def _seed(app, company_id, storage, count=5):
    ids = []
    with session_scope(app) as s:
        for n in range(1, count + 1):
            doc = create_document(s, company_id, document_type_code="SWP", title=f"Procedure {n}", user=None)
            body = f"Scaffold erection procedure {n}. Guardrail inspection before use. See ACME-FRM-00{n}."
            attach_file(
                s,
                doc.id,
                data=body.encode("utf-8"),
                filename=f"doc-{n}.txt",
                content_type="text/plain",
                storage=storage,
                user=None,
            )
            ids.append(doc.id)
    return ids


def test_batch_continues_past_failures(app, company_id, storage):
    _seed(app, company_id, storage)
    progress = []

    with session_scope(app) as s:
        summary = reindex_documents(
            s,
            company_id,
            extractor=FakeExtractor(broken={"doc-3.txt"}),
            storage=storage,
            delay_seconds=0,
            on_progress=lambda done, total, result: progress.append((done, total, result.success)),
        )

    assert (summary.total, summary.successful, summary.failed, summary.skipped) == (5, 4, 1, 0)
    assert not summary.cancelled
    assert [p[:2] for p in progress] == [(n, 5) for n in range(1, 6)]
    failed = [r for r in summary.results if not r.success]
    assert [(r.control_number, r.error) for r in failed] == [("ACME-SWP-003", "Corrupt file")]

    with session_scope(app) as s:
        docs = {d.control_number: d for d in s.scalars(select(Document))}
        assert docs["ACME-SWP-003"].extracted_text is None
        indexed = docs["ACME-SWP-001"]
        assert indexed.page_count == 2
        assert indexed.indexed_at is not None
        assert indexed.referenced_control_numbers == ["ACME-FRM-001"]
        assert {"scaffold", "guardrail"} <= set(indexed.tags)

        needing = documents_needing_reindex(s, company_id)
        assert [(c.control_number, c.reason) for c in needing] == [("ACME-SWP-003", "No extracted text")]

        batch_event = s.scalar(select(AuditEvent).where(AuditEvent.action == "doc_control.reindex.batch"))
        assert batch_event.entity_id == company_id


def test_rerun_skips_indexed_documents_unless_forced(app, company_id, storage):
    _seed(app, company_id, storage, count=3)
    with session_scope(app) as s:
        reindex_documents(s, company_id, extractor=FakeExtractor(), storage=storage, delay_seconds=0)

    with session_scope(app) as s:
        extractor = FakeExtractor()
        again = reindex_documents(s, company_id, extractor=extractor, storage=storage, delay_seconds=0)
        assert (again.successful, again.skipped) == (0, 3)
        assert extractor.calls == []

        forced = reindex_documents(s, company_id, extractor=extractor, storage=storage, force=True, delay_seconds=0)
        assert (forced.successful, forced.skipped) == (3, 0)

        only_empty = reindex_documents(s, company_id, extractor=extractor, storage=storage, only_empty=True, delay_seconds=0)
        assert only_empty.total == 0


def test_cancel_stops_before_next_item(app, company_id, storage):
    _seed(app, company_id, storage, count=4)
    cancel = threading.Event()

    def on_progress(done, total, result):
        if done == 2:
            cancel.set()

    with session_scope(app) as s:
        summary = reindex_documents(
            s,
            company_id,
            extractor=FakeExtractor(),
            storage=storage,
            delay_seconds=0,
            on_progress=on_progress,
            cancel_event=cancel,
        )
    assert summary.cancelled
    assert (summary.total, len(summary.results), summary.successful) == (4, 2, 2)


def test_limit_offset_and_type_filter(app, company_id, storage):
    _seed(app, company_id, storage, count=4)
    with session_scope(app) as s:
        page = reindex_documents(s, company_id, extractor=FakeExtractor(), storage=storage, limit=2, offset=1, delay_seconds=0)
        assert page.total == 2
        other_type = reindex_documents(
            s, company_id, extractor=FakeExtractor(), storage=storage, document_types=["pol"], delay_seconds=0
        )
        assert other_type.total == 0


def test_single_document_errors_are_typed(app, company_id, storage):
    (doc_id,) = _seed(app, company_id, storage, count=1)
    with session_scope(app) as s:
        bare = create_document(s, company_id, document_type_code="FRM", title="No file", user=None)
        with pytest.raises(PreconditionFailedError):
            reindex_document(s, bare.id, extractor=FakeExtractor(), storage=storage)
        with pytest.raises(DependencyError):
            reindex_document(s, doc_id, extractor=FakeExtractor(broken={"doc-1.txt"}), storage=storage)

    with session_scope(app) as s:
        result = reindex_document(s, doc_id, extractor=FakeExtractor(), storage=storage)
        assert result.success
        assert result.text_length > 0


def test_missing_file_is_a_dependency_failure(app, company_id, storage, tmp_path):
    (doc_id,) = _seed(app, company_id, storage, count=1)
    with session_scope(app) as s:
        with pytest.raises(DependencyError):
            reindex_document(s, doc_id, extractor=FakeExtractor(), storage=LocalStorage(root=tmp_path / "elsewhere"))


def test_default_extractor_handles_plain_text_and_unknown_types():
    extractor = DefaultTextExtractor()
    ok = extractor.extract(b"Hello crew", content_type="text/plain")
    assert (ok.success, ok.text, ok.page_count) == (True, "Hello crew", 1)
    assert not extractor.extract(b"", content_type="text/plain").success
    assert not extractor.extract(b"GIF89a", content_type="image/gif", filename="x.gif").success


class CrashingExtractor(FakeExtractor):
    """Raises instead of reporting failure, like a third-party extractor blowing up."""

    def extract(self, data, *, content_type, filename=None):
        if filename in self.broken:
            raise RuntimeError("extraction service crashed")
        return super().extract(data, content_type=content_type, filename=filename)


def test_batch_survives_an_extractor_that_raises(app, company_id, storage):
    _seed(app, company_id, storage)
    with session_scope(app) as s:
        summary = reindex_documents(
            s, company_id, extractor=CrashingExtractor(broken={"doc-3.txt"}), storage=storage, delay_seconds=0
        )
    assert (summary.successful, summary.failed) == (4, 1)
    (failed,) = [r for r in summary.results if not r.success]
    assert failed.control_number == "ACME-SWP-003"
    assert failed.error == "Extraction failed: extraction service crashed"

    # The rest of the batch was committed.
    with session_scope(app) as s:
        indexed = [d.control_number for d in s.scalars(select(Document)) if d.extracted_text]
        assert sorted(indexed) == ["ACME-SWP-001", "ACME-SWP-002", "ACME-SWP-004", "ACME-SWP-005"]


def test_single_document_wraps_extractor_exceptions(app, company_id, storage):
    (doc_id,) = _seed(app, company_id, storage, count=1)
    with session_scope(app) as s:
        with pytest.raises(DependencyError) as exc:
            reindex_document(s, doc_id, extractor=CrashingExtractor(broken={"doc-1.txt"}), storage=storage)
        assert exc.value.retryable
        assert exc.value.operation == "reindex_document"
