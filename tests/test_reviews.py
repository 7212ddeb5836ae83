from datetime import date, timedelta

import pytest
from sqlalchemy import select

from app.dcms.db import session_scope
from app.dcms.models import User
from app.dcms.modules.document_control.errors import PreconditionFailedError
from app.dcms.modules.document_control.models import Document, DocumentReview
from app.dcms.modules.document_control.reviews import (
    cancel_review,
    classify_review_date,
    complete_review,
    create_review,
    documents_due_for_review,
    mark_overdue_reviews,
    start_review,
)
from app.dcms.modules.document_control.service import activate_document, change_status, create_document

TODAY = date(2026, 6, 15)


def _admin(s):
    return s.scalar(select(User).where(User.email == "admin@example.com"))


def _active_form(s, company_id, title, next_review):
    doc = create_document(s, company_id, document_type_code="FRM", title=title, user=None)
    change_status(s, doc.id, "approved", user=None)
    activate_document(s, doc.id, user=None, today=TODAY - timedelta(days=400))
    doc.next_review_date = next_review
    s.flush()
    return doc


def test_classification_boundaries():
    assert classify_review_date(TODAY - timedelta(days=1), today=TODAY, days_ahead=30) == "overdue"
    assert classify_review_date(TODAY, today=TODAY, days_ahead=30) == "due_soon"
    assert classify_review_date(TODAY + timedelta(days=30), today=TODAY, days_ahead=30) == "due_soon"
    assert classify_review_date(TODAY + timedelta(days=31), today=TODAY, days_ahead=30) == "scheduled"


def test_due_list_is_ranked_and_tagged(app, company_id):
    with session_scope(app) as s:
        _active_form(s, company_id, "Later", TODAY + timedelta(days=90))
        _active_form(s, company_id, "Today", TODAY)
        _active_form(s, company_id, "Yesterday", TODAY - timedelta(days=1))
        # Drafts are not part of the review schedule.
        create_document(s, company_id, document_type_code="FRM", title="Draft", user=None)

    with session_scope(app) as s:
        items = documents_due_for_review(s, company_id, days_ahead=30, today=TODAY)
        assert [(i.document.title, i.review_status, i.days_until_due) for i in items] == [
            ("Yesterday", "overdue", -1),
            ("Today", "due_soon", 0),
            ("Later", "scheduled", 90),
        ]
        near = documents_due_for_review(s, company_id, days_ahead=30, today=TODAY, include_scheduled=False)
        assert [i.document.title for i in near] == ["Yesterday", "Today"]


def test_complete_review_writes_next_review_date_back(app, company_id):
    with session_scope(app) as s:
        doc = _active_form(s, company_id, "Ladder Checklist", TODAY - timedelta(days=10))
        review = create_review(s, doc.id, user=_admin(s))
        assert review.due_date == TODAY - timedelta(days=10)
        start_review(s, review.id, user=_admin(s))
        assert review.status == "in_progress"
        assert review.assigned_to_user_id == _admin(s).id

        complete_review(
            s,
            review.id,
            outcome="minor_update",
            next_review_date=date(2027, 6, 15),
            user=_admin(s),
            notes="Updated contact list",
            action_items=["Reprint posters", "  "],
        )
        doc_id, review_id = doc.id, review.id

    with session_scope(app) as s:
        doc = s.get(Document, doc_id)
        review = s.get(DocumentReview, review_id)
        assert doc.next_review_date == date(2027, 6, 15)
        assert doc.last_reviewed_at is not None
        assert review.status == "completed"
        assert review.action_items == ["Reprint posters"]

        items = documents_due_for_review(s, company_id, today=TODAY)
        assert items[0].review_status == "scheduled"

        with pytest.raises(PreconditionFailedError):
            complete_review(s, review_id, outcome="no_change", next_review_date=date(2028, 1, 1), user=None)
        with pytest.raises(PreconditionFailedError):
            cancel_review(s, review_id, user=None)


def test_invalid_outcome_and_type(app, company_id):
    with session_scope(app) as s:
        doc = create_document(s, company_id, document_type_code="FRM", title="Form", user=None)
        with pytest.raises(PreconditionFailedError):
            create_review(s, doc.id, review_type="surprise", user=None)
        review = create_review(s, doc.id, due_date=TODAY, user=None)
        with pytest.raises(PreconditionFailedError):
            complete_review(s, review.id, outcome="shrug", next_review_date=TODAY, user=None)


def test_overdue_sweep_only_touches_scheduled_reviews(app, company_id):
    with session_scope(app) as s:
        doc = create_document(s, company_id, document_type_code="FRM", title="Form", user=None)
        past = create_review(s, doc.id, due_date=TODAY - timedelta(days=3), user=None)
        future = create_review(s, doc.id, due_date=TODAY + timedelta(days=3), user=None)
        cancelled = create_review(s, doc.id, due_date=TODAY - timedelta(days=3), user=None)
        cancel_review(s, cancelled.id, user=None, reason="Duplicate")
        ids = (past.id, future.id, cancelled.id)

    with session_scope(app) as s:
        assert mark_overdue_reviews(s, company_id=company_id, today=TODAY) == 1
        assert mark_overdue_reviews(s, company_id=company_id, today=TODAY) == 0

    with session_scope(app) as s:
        assert [s.get(DocumentReview, i).status for i in ids] == ["overdue", "scheduled", "cancelled"]
        # Overdue reviews can still be started.
        assert start_review(s, ids[0], user=None).status == "in_progress"
