from datetime import date, timedelta

import pytest
from sqlalchemy import select

from app.dcms.db import session_scope
from app.dcms.models import User
from app.dcms.modules.document_control.errors import PreconditionFailedError
from app.dcms.modules.document_control.evidence import (
    auto_link_document,
    detect_relevant_audit_elements,
    find_potential_evidence,
    generate_element_evidence_report,
    generate_full_evidence_report,
    link_document_to_element,
    unlink_document_from_element,
    validate_document_for_audit,
)
from app.dcms.modules.document_control.models import Document
from app.dcms.modules.document_control.service import activate_document, change_status, create_document

HAZARD_TEXT = "Hazard identification and risk assessment for all crews. See ACME-FRM-002."


def _admin(s):
    return s.scalar(select(User).where(User.email == "admin@example.com"))


def _active(s, company_id, type_code, title):
    doc = create_document(s, company_id, document_type_code=type_code, title=title, user=None)
    change_status(s, doc.id, "approved", user=None)
    activate_document(s, doc.id, user=None)
    return doc


def test_detection_scores():
    doc = Document(document_type_code="POL", title="Health and Safety Policy", control_number="ACME-POL-001")
    matches = detect_relevant_audit_elements(doc)
    assert [(m.element, m.confidence) for m in matches] == [(1, 90), (5, 60), (13, 60)]

    matches = detect_relevant_audit_elements(doc, HAZARD_TEXT)
    assert [(m.element, m.confidence) for m in matches] == [(1, 90), (5, 60), (13, 60), (2, 50), (14, 40)]
    assert matches[-1].reason == "References 1 other documents"


def test_detection_ignores_own_control_number():
    doc = Document(document_type_code="MIN", title="Crew Notes", control_number="ACME-MIN-001")
    matches = detect_relevant_audit_elements(doc, "Minutes ACME-MIN-001 filed.")
    assert [(m.element, m.confidence) for m in matches] == [(14, 60)]


def test_auto_link_is_idempotent(app, company_id):
    with session_scope(app) as s:
        doc = create_document(s, company_id, document_type_code="POL", title="Health and Safety Policy", user=None)
        qualifying = auto_link_document(s, doc.id, text=HAZARD_TEXT, user=_admin(s))
        assert [m.element for m in qualifying] == [1, 5, 13, 2]
        assert doc.audit_elements == [1, 2, 5, 13]
        trail_length = len(doc.audit_trail)

        auto_link_document(s, doc.id, text=HAZARD_TEXT, user=_admin(s))
        assert doc.audit_elements == [1, 2, 5, 13]
        assert len(doc.audit_trail) == trail_length

        auto_link_document(s, doc.id, text=HAZARD_TEXT, min_confidence=40, user=None)
        assert doc.audit_elements == [1, 2, 5, 13, 14]


def test_manual_link_and_unlink(app, company_id):
    with session_scope(app) as s:
        doc = create_document(s, company_id, document_type_code="FRM", title="Form", user=None)
        link_document_to_element(s, doc.id, 8, user=None)
        link_document_to_element(s, doc.id, 8, user=None)
        assert doc.audit_elements == [8]
        unlink_document_from_element(s, doc.id, 8, user=None)
        assert doc.audit_elements == []
        with pytest.raises(PreconditionFailedError):
            link_document_to_element(s, doc.id, 15, user=None)


def test_validation_flags():
    today = date(2026, 6, 15)
    assert validate_document_for_audit(Document(status="active", next_review_date=today), today=today).issues == []

    draft = validate_document_for_audit(Document(status="draft"), today=today)
    assert draft.is_valid
    assert [i.type for i in draft.issues] == ["wrong_status"]

    obsolete = validate_document_for_audit(Document(status="obsolete"), today=today)
    assert not obsolete.is_valid

    slightly_late = Document(status="active", next_review_date=today - timedelta(days=90))
    assert validate_document_for_audit(slightly_late, today=today).issues[0].severity == "warning"
    very_late = Document(status="active", next_review_date=today - timedelta(days=91))
    result = validate_document_for_audit(very_late, today=today)
    assert not result.is_valid
    assert result.issues[0].message == "Document review is overdue by 91 days"


def test_element_report_with_required_types_override(app, company_id):
    with session_scope(app) as s:
        _active(s, company_id, "POL", "Health and Safety Policy")
        report = generate_element_evidence_report(s, company_id, 1, required_types=["POL", "SWP"])
        assert report.coverage_percentage == 50
        assert report.missing_types == ["SWP"]
        assert report.status == "partial"
        assert [d.document_type_code for d in report.found_documents] == ["POL"]
        assert report.to_dict()["element_name"] == "Health & Safety Policy"


def test_element_report_statuses(app, company_id):
    with session_scope(app) as s:
        empty = generate_element_evidence_report(s, company_id, 11)
        assert (empty.status, empty.missing_types, empty.coverage_percentage) == ("missing", ["PLN"], 0)

        _active(s, company_id, "PLN", "Emergency Response Plan")
        complete = generate_element_evidence_report(s, company_id, 11)
        assert (complete.status, complete.coverage_percentage) == ("complete", 100)

        # Linked drafts are not evidence.
        draft = create_document(s, company_id, document_type_code="FRM", title="Drill Log", user=None)
        link_document_to_element(s, draft.id, 11, user=None)
        assert [d.document_type_code for d in generate_element_evidence_report(s, company_id, 11).found_documents] == ["PLN"]


def test_full_report_collects_critical_issues(app, company_id):
    with session_scope(app) as s:
        _active(s, company_id, "POL", "Health and Safety Policy")
        report = generate_full_evidence_report(s, company_id)
        assert len(report.elements) == 14
        assert 0 < report.overall_coverage < 100
        assert any(msg.startswith("Element 11 (Emergency Preparedness)") for msg in report.critical_issues)
        assert report.to_dict()["generated_on"] == date.today().isoformat()


def test_potential_evidence_needs_text_and_skips_linked(app, company_id):
    with session_scope(app) as s:
        form = _active(s, company_id, "FRM", "Site Form")
        form.extracted_text = "Emergency evacuation drill schedule and fire warden list."
        other = _active(s, company_id, "FRM", "Blank Form")
        s.flush()

        candidates = find_potential_evidence(s, company_id, 11)
        assert [c.document.id for c in candidates] == [form.id]
        assert candidates[0].confidence == 50
        assert other.id not in [c.document.id for c in candidates]

        link_document_to_element(s, form.id, 11, user=None)
        assert find_potential_evidence(s, company_id, 11) == []
