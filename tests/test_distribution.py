from datetime import date, timedelta

import pytest
from sqlalchemy import select

from app.dcms.db import session_scope
from app.dcms.models import User
from app.dcms.modules.document_control.distribution import (
    acknowledge_distribution,
    acknowledge_document,
    acknowledge_document_by_worker,
    acknowledgment_summary,
    create_acknowledgment_requirements,
    distribute_document,
    distribution_summary,
    document_acknowledgments,
    exempt_from_acknowledgment,
    send_acknowledgment_reminder,
    send_distribution_reminder,
    unacknowledged_distributions,
    update_overdue_acknowledgments,
    worker_acknowledgments,
)
from app.dcms.modules.document_control.errors import PreconditionFailedError
from app.dcms.modules.document_control.models import DocumentAcknowledgment
from app.dcms.modules.document_control.service import create_document

TODAY = date(2026, 6, 15)


def _admin(s):
    return s.scalar(select(User).where(User.email == "admin@example.com"))


def _form(s, company_id, **kwargs):
    return create_document(s, company_id, document_type_code="FRM", title="Lockout Checklist", user=None, **kwargs)


def test_distribution_skips_existing_recipients(app, company_id):
    with session_scope(app) as s:
        doc = _form(s, company_id)
        first = distribute_document(s, doc.id, ["w-1", "w-2", "w-2", " "], user=_admin(s))
        assert sorted(d.distributed_to for d in first) == ["w-1", "w-2"]
        assert all(d.document_version == "1.0" for d in first)

        second = distribute_document(s, doc.id, ["w-2", "w-3"], method="email", user=_admin(s))
        assert [d.distributed_to for d in second] == ["w-3"]

        assert distribute_document(s, doc.id, ["w-1"], user=None) == []
        assert distribution_summary(s, doc.id).total == 3

        with pytest.raises(PreconditionFailedError):
            distribute_document(s, doc.id, [], user=None)
        with pytest.raises(PreconditionFailedError):
            distribute_document(s, doc.id, ["w-9"], method="carrier_pigeon", user=None)


def test_quiz_distribution_requires_score(app, company_id):
    with session_scope(app) as s:
        doc = _form(s, company_id)
        pass_row, fail_row = distribute_document(s, doc.id, ["w-1", "w-2"], quiz_required=True, user=None)

        with pytest.raises(PreconditionFailedError):
            acknowledge_distribution(s, pass_row.id)
        with pytest.raises(PreconditionFailedError):
            acknowledge_distribution(s, pass_row.id, method="quiz", quiz_score=101)

        acknowledge_distribution(s, pass_row.id, method="quiz", quiz_score=80)
        acknowledge_distribution(s, fail_row.id, method="quiz", quiz_score=79)
        assert (pass_row.quiz_passed, fail_row.quiz_passed) == (True, False)

        summary = distribution_summary(s, doc.id)
        assert (summary.acknowledged, summary.quiz_passed, summary.quiz_failed) == (2, 1, 1)
        assert summary.acknowledgment_rate == 100


def test_distribution_reminders_and_outstanding_list(app, company_id):
    with session_scope(app) as s:
        doc = _form(s, company_id)
        a, b = distribute_document(s, doc.id, ["w-1", "w-2"], user=None)
        acknowledge_distribution(s, a.id, signature="W1")
        send_distribution_reminder(s, b.id)
        send_distribution_reminder(s, b.id)
        assert b.reminder_count == 2
        assert [d.id for d in unacknowledged_distributions(s, company_id)] == [b.id]
        assert unacknowledged_distributions(s, company_id, recipient="w-1") == []
        with pytest.raises(PreconditionFailedError):
            send_distribution_reminder(s, a.id)


def test_acknowledgment_requirements_and_summary(app, company_id):
    with session_scope(app) as s:
        doc = _form(s, company_id, acknowledgment_required=True, acknowledgment_deadline_days=10)
        rows = create_acknowledgment_requirements(s, doc.id, ["w-1", "w-2", "w-3", "w-4"], user=_admin(s), today=TODAY)
        assert {r.required_by_date for r in rows} == {TODAY + timedelta(days=10)}

        acknowledge_document(s, rows[0].id, method="signature", signature="sig")
        summary = acknowledgment_summary(s, doc.id)
        assert (summary.total, summary.acknowledged, summary.pending) == (4, 1, 3)
        assert summary.completion_rate == 25
        doc_id = doc.id

    with session_scope(app) as s:
        empty = _form(s, company_id)
        assert acknowledgment_summary(s, empty.id).completion_rate == 100
        assert len(document_acknowledgments(s, doc_id, status="pending")) == 3


def test_overdue_sweep_and_refresh(app, company_id):
    with session_scope(app) as s:
        doc = _form(s, company_id)
        rows = create_acknowledgment_requirements(s, doc.id, ["w-1", "w-2"], deadline_days=5, user=None, today=TODAY)
        acknowledge_document(s, rows[1].id)
        doc_id, overdue_id, done_id = doc.id, rows[0].id, rows[1].id

    with session_scope(app) as s:
        assert update_overdue_acknowledgments(s, company_id=company_id, today=TODAY + timedelta(days=5)) == 0
        assert update_overdue_acknowledgments(s, company_id=company_id, today=TODAY + timedelta(days=6)) == 1

    with session_scope(app) as s:
        assert s.get(DocumentAcknowledgment, overdue_id).status == "overdue"
        assert acknowledgment_summary(s, doc_id).overdue == 1
        assert send_acknowledgment_reminder(s, overdue_id).reminder_count == 1
        with pytest.raises(PreconditionFailedError):
            send_acknowledgment_reminder(s, done_id)

        # Re-requiring resets the deadline of outstanding rows and leaves acknowledged ones alone.
        later = TODAY + timedelta(days=30)
        create_acknowledgment_requirements(s, doc_id, ["w-1", "w-2"], deadline_days=7, user=None, today=later)
        refreshed = s.get(DocumentAcknowledgment, overdue_id)
        done = s.get(DocumentAcknowledgment, done_id)
        assert (refreshed.status, refreshed.required_by_date) == ("pending", later + timedelta(days=7))
        assert done.status == "acknowledged"
        assert done.required_by_date == TODAY + timedelta(days=5)


def test_exemption_and_worker_views(app, company_id):
    with session_scope(app) as s:
        doc = _form(s, company_id)
        ack, other = create_acknowledgment_requirements(s, doc.id, ["w-1", "w-2"], user=None, today=TODAY)

        with pytest.raises(PreconditionFailedError):
            exempt_from_acknowledgment(s, ack.id, reason="  ", user=None)
        exempt_from_acknowledgment(s, ack.id, reason="Office staff only", user=_admin(s))
        assert ack.status == "exempt"
        with pytest.raises(PreconditionFailedError):
            acknowledge_document(s, ack.id)

        acknowledge_document(s, other.id)
        with pytest.raises(PreconditionFailedError):
            exempt_from_acknowledgment(s, other.id, reason="Too late", user=None)

        # Default deadline is 14 days when neither call nor document sets one.
        assert other.required_by_date == TODAY + timedelta(days=14)
        assert acknowledgment_summary(s, doc.id).exempt == 1

        assert worker_acknowledgments(s, company_id, "w-2") == []
        assert len(worker_acknowledgments(s, company_id, "w-2", include_completed=True)) == 1


def test_acknowledge_by_worker_creates_missing_row(app, company_id):
    with session_scope(app) as s:
        doc = _form(s, company_id)
        ack = acknowledge_document_by_worker(s, doc.id, "walk-in", method="verbal")
        assert ack.status == "acknowledged"
        assert ack.acknowledgment_method == "verbal"
        assert ack.required_by_date is None

        again = acknowledge_document_by_worker(s, doc.id, "walk-in")
        assert again.id == ack.id

        with pytest.raises(PreconditionFailedError):
            acknowledge_document_by_worker(s, doc.id, "  ")
