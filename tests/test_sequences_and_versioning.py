from datetime import date

import pytest
from sqlalchemy import select

from app.dcms.db import session_scope
from app.dcms.models import AuditEvent, User
from app.dcms.modules.document_control.errors import ConflictError, ImmutableRecordError, PreconditionFailedError
from app.dcms.modules.document_control.models import Document, DocumentRevision, DocumentSequence
from app.dcms.modules.document_control.reference import company_initials, company_prefix, create_company
from app.dcms.modules.document_control.sequences import allocate_control_number, format_control_number
from app.dcms.modules.document_control.service import create_document
from app.dcms.modules.document_control.versioning import create_revision, list_revisions, next_version


def _admin(s):
    return s.scalar(select(User).where(User.email == "admin@example.com"))


def test_control_numbers_are_sequential_per_company_and_type(app, company_id):
    with session_scope(app) as s:
        u = _admin(s)
        p1 = create_document(s, company_id, document_type_code="POL", title="Health and Safety Policy", user=u)
        p2 = create_document(s, company_id, document_type_code="pol", title="Drug and Alcohol Policy", user=u)
        f1 = create_document(s, company_id, document_type_code="FRM", title="Incident Report Form", user=u)

        assert p1.control_number == "ACME-POL-001"
        assert p2.control_number == "ACME-POL-002"
        assert f1.control_number == "ACME-FRM-001"
        assert (p1.sequence_number, p2.sequence_number, f1.sequence_number) == (1, 2, 1)

    with session_scope(app) as s:
        other = create_company(s, name="Northern Steel Works")
        doc = create_document(s, other.id, document_type_code="POL", title="Policy", user=None)
        # Counters are per company; prefix falls back to the initials.
        assert doc.control_number == "NSW-POL-001"


def test_prefix_and_format_helpers():
    assert company_initials("Acme Industrial Safety Group Ltd") == "AISG"
    assert company_initials("") == "DOC"
    assert company_prefix(None) == "DOC"
    assert format_control_number("{company}-{type}-{sequence}", prefix="ACME", type_code="SWP", sequence=4) == "ACME-SWP-004"
    assert format_control_number("{company}-{type}-{sequence}", prefix="ACME", type_code="SWP", sequence=1234) == "ACME-SWP-1234"
    with pytest.raises(PreconditionFailedError):
        format_control_number("{company}-{nope}", prefix="ACME", type_code="SWP", sequence=1)


def test_allocation_never_reuses_a_number(app, company_id):
    with session_scope(app) as s:
        numbers = [allocate_control_number(s, company_id, "CHK")[0] for _ in range(5)]
    assert numbers == [f"ACME-CHK-{n:03d}" for n in range(1, 6)]

    with session_scope(app) as s:
        # A later transaction continues where the counter left off.
        assert allocate_control_number(s, company_id, "CHK") == ("ACME-CHK-006", 6)


def test_create_document_defaults(app, company_id):
    with session_scope(app) as s:
        u = _admin(s)
        doc = create_document(
            s,
            company_id,
            document_type_code="FRM",
            title="  Daily Vehicle Checklist ",
            user=u,
            tags=["fleet", "fleet", ""],
            audit_elements=[9, 7, 9],
            today=date(2026, 1, 31),
        )
        assert doc.status == "draft"
        assert doc.version == "1.0"
        assert doc.title == "Daily Vehicle Checklist"
        assert doc.tags == ["fleet"]
        assert doc.audit_elements == [7, 9]
        assert doc.applicable_to == ["all_workers"]
        # FRM reviews yearly.
        assert doc.next_review_date == date(2027, 1, 31)
        assert doc.audit_trail[0]["action"] == "created"
        doc_id = doc.id

    with session_scope(app) as s:
        ev = s.scalar(select(AuditEvent).where(AuditEvent.action == "doc_control.document.create"))
        assert ev is not None
        assert ev.entity_id == doc_id


def _rewind_sequence(s, company_id, type_code, value):
    row = s.get(DocumentSequence, (company_id, type_code))
    row.current_sequence = value
    s.flush()


def test_create_document_retries_once_on_control_number_collision(app, company_id):
    with session_scope(app) as s:
        for title in ("Form A", "Form B"):
            create_document(s, company_id, document_type_code="FRM", title=title, user=None)

    with session_scope(app) as s:
        # The counter lags behind the stored rows, so the first allocation collides.
        _rewind_sequence(s, company_id, "FRM", 1)
        doc = create_document(s, company_id, document_type_code="FRM", title="Form C", user=None)
        assert doc.control_number == "ACME-FRM-003"

    with pytest.raises(ConflictError) as exc:
        with session_scope(app) as s:
            _rewind_sequence(s, company_id, "FRM", 0)
            create_document(s, company_id, document_type_code="FRM", title="Form D", user=None)
    assert exc.value.retryable
    assert exc.value.operation == "create_document"

    with session_scope(app) as s:
        assert s.scalar(select(DocumentSequence.current_sequence).where(DocumentSequence.document_type_code == "FRM")) == 3


def test_create_document_rejects_bad_input(app, company_id):
    with session_scope(app) as s:
        with pytest.raises(PreconditionFailedError):
            create_document(s, company_id, document_type_code="FRM", title="   ", user=None)
        with pytest.raises(PreconditionFailedError):
            create_document(
                s,
                company_id,
                document_type_code="FRM",
                title="Bad dates",
                user=None,
                effective_date=date(2026, 5, 1),
                expiry_date=date(2026, 4, 1),
            )
        with pytest.raises(PreconditionFailedError):
            create_document(s, company_id, document_type_code="FRM", title="Elements", user=None, audit_elements=[15])


def test_next_version_rules():
    assert next_version("2.3", "minor_edit") == "2.4"
    assert next_version("2.3", "major_revision") == "3.0"
    assert next_version("2.3", "complete_rewrite") == "3.0"
    assert next_version("9.9", "initial") == "1.0"
    with pytest.raises(PreconditionFailedError):
        next_version("v2", "minor_edit")
    with pytest.raises(PreconditionFailedError):
        next_version("1.0", "cosmetic")


def test_revision_bumps_version_and_snapshots(app, company_id):
    with session_scope(app) as s:
        u = _admin(s)
        doc = create_document(s, company_id, document_type_code="FRM", title="Inspection Form", user=u, tags=["site"])
        doc_id = doc.id
        r1 = create_revision(s, doc_id, change_type="minor_edit", summary="Typo fixes", user=u)
        r2 = create_revision(s, doc_id, change_type="major_revision", summary="New section", user=u)

        assert (r1.revision_number, r1.previous_version, r1.version) == (1, "1.0", "1.1")
        assert (r2.revision_number, r2.previous_version, r2.version) == (2, "1.1", "2.0")
        assert r1.tags == ["site"]
        assert r1.metadata_snapshot["control_number"] == "ACME-FRM-001"

    with session_scope(app) as s:
        doc = s.get(Document, doc_id)
        assert doc.version == "2.0"
        assert doc.status == "under_revision"
        assert [r.revision_number for r in list_revisions(s, doc_id)] == [2, 1]


def test_revisions_are_write_once(app, company_id):
    with session_scope(app) as s:
        doc = create_document(s, company_id, document_type_code="FRM", title="Form", user=None)
        create_revision(s, doc.id, change_type="minor_edit", summary="Edit", user=None)

    with session_scope(app) as s:
        rev = s.scalar(select(DocumentRevision))
        rev.change_summary = "rewritten history"
        with pytest.raises(ImmutableRecordError):
            s.flush()
        s.rollback()

    with session_scope(app) as s:
        rev = s.scalar(select(DocumentRevision))
        s.delete(rev)
        with pytest.raises(ImmutableRecordError):
            s.flush()
        s.rollback()


def test_terminal_documents_cannot_be_revised(app, company_id):
    with session_scope(app) as s:
        doc = create_document(s, company_id, document_type_code="FRM", title="Old Form", user=None)
        doc.status = "obsolete"
        s.flush()
        with pytest.raises(PreconditionFailedError):
            create_revision(s, doc.id, change_type="minor_edit", summary="Too late", user=None)
