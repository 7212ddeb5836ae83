import random
from datetime import date

import pytest
from sqlalchemy import select

from app.dcms.db import session_scope
from app.dcms.models import User
from app.dcms.modules.document_control.approvals import (
    create_approval_workflow,
    delegate_approval,
    list_approvals,
    pending_approvals,
    submit_approval,
)
from app.dcms.modules.document_control.errors import PreconditionFailedError
from app.dcms.modules.document_control.lifecycle import can_transition_to
from app.dcms.modules.document_control.models import Document, DocumentApproval
from app.dcms.modules.document_control.service import (
    activate_document,
    create_document,
    obsolete_document,
    submit_for_review,
    supersede_document,
)


def _user(s, email="admin@example.com"):
    return s.scalar(select(User).where(User.email == email))


def _policy(app, company_id, roles=("supervisor", "manager")):
    with session_scope(app) as s:
        doc = create_document(s, company_id, document_type_code="POL", title="Health and Safety Policy", user=_user(s))
        create_approval_workflow(s, doc.id, list(roles), user=_user(s))
        return doc.id


def test_policy_gets_default_workflow_on_create(app, company_id):
    with session_scope(app) as s:
        doc = create_document(s, company_id, document_type_code="POL", title="Policy", user=_user(s))
        rows = list_approvals(s, doc.id)
        assert [r.approver_role for r in rows] == ["management", "safety_manager"]
        assert all(r.status == "pending" and r.cycle == 1 for r in rows)

        form = create_document(s, company_id, document_type_code="FRM", title="Form", user=_user(s))
        assert list_approvals(s, form.id) == []


def test_all_required_approvals_approve_then_activate(app, company_id):
    doc_id = _policy(app, company_id)

    with session_scope(app) as s:
        supervisor, manager = list_approvals(s, doc_id)
        assert (supervisor.approver_role, manager.approver_role) == ("supervisor", "manager")
        assert supervisor.cycle == 2

        submit_approval(s, supervisor.id, "approved", user=_user(s))
        assert s.get(Document, doc_id).status == "draft"

        submit_approval(s, manager.id, "approved", user=_user(s, "approver@example.com"), comments="Looks good")
        doc = s.get(Document, doc_id)
        assert doc.status == "approved"
        assert doc.approved_at is not None

    with session_scope(app) as s:
        doc = activate_document(s, doc_id, user=_user(s), today=date(2026, 3, 1))
        assert doc.status == "active"
        assert doc.effective_date == date(2026, 3, 1)
        # POL reviews every 36 months from the effective date.
        assert doc.next_review_date == date(2029, 3, 1)


def test_rejection_returns_document_to_draft(app, company_id):
    doc_id = _policy(app, company_id)

    with session_scope(app) as s:
        submit_for_review(s, doc_id, user=_user(s))
        assert s.get(Document, doc_id).status == "pending_review"

        supervisor, _ = list_approvals(s, doc_id)
        approval = submit_approval(s, supervisor.id, "rejected", user=_user(s), comments="Missing scope section")
        assert approval.rejection_reason == "Missing scope section"
        doc = s.get(Document, doc_id)
        assert doc.status == "draft"
        assert doc.audit_trail[-1]["to_status"] == "draft"


def test_required_approval_cannot_be_skipped(app, company_id):
    doc_id = _policy(app, company_id)
    with session_scope(app) as s:
        first, _ = list_approvals(s, doc_id)
        with pytest.raises(PreconditionFailedError):
            submit_approval(s, first.id, "skipped", user=_user(s))
        with pytest.raises(PreconditionFailedError):
            submit_approval(s, first.id, "maybe", user=_user(s))


def test_new_cycle_skips_open_approvals_of_previous_cycle(app, company_id):
    doc_id = _policy(app, company_id)

    with session_scope(app) as s:
        stale_id = list_approvals(s, doc_id)[0].id
        create_approval_workflow(s, doc_id, ["director"], user=_user(s))

    with session_scope(app) as s:
        stale = s.get(DocumentApproval, stale_id)
        assert stale.status == "skipped"
        with pytest.raises(PreconditionFailedError):
            submit_approval(s, stale_id, "approved", user=_user(s))

        current = list_approvals(s, doc_id)
        assert [a.approver_role for a in current] == ["director"]
        assert current[0].cycle == 3

        all_rows = list_approvals(s, doc_id, all_cycles=True)
        assert len(all_rows) == 5

        open_rows = pending_approvals(s, company_id)
        assert [a.id for a in open_rows] == [current[0].id]


def test_decision_can_be_resubmitted(app, company_id):
    doc_id = _policy(app, company_id, roles=("manager",))
    with session_scope(app) as s:
        (only,) = list_approvals(s, doc_id)
        submit_approval(s, only.id, "approved", user=_user(s))
        assert s.get(Document, doc_id).status == "approved"

        submit_approval(s, only.id, "rejected", user=_user(s), rejection_reason="Wrong template")
        assert s.get(Document, doc_id).status == "draft"


def test_delegation_reassigns_open_approval(app, company_id):
    doc_id = _policy(app, company_id)
    with session_scope(app) as s:
        first, _ = list_approvals(s, doc_id)
        approver = _user(s, "approver@example.com")
        delegated = delegate_approval(s, first.id, approver.id, user=_user(s), reason="On leave")
        assert delegated.status == "delegated"
        assert delegated.approver_user_id == approver.id
        assert [a.id for a in pending_approvals(s, company_id, approver_user_id=approver.id)] == [first.id]

        submit_approval(s, first.id, "approved", user=approver)
        with pytest.raises(PreconditionFailedError):
            delegate_approval(s, first.id, approver.id, user=_user(s))


def test_transition_rules():
    draft = Document(status="draft")
    assert can_transition_to(draft, "pending_review") == (True, [])
    ok, errors = can_transition_to(draft, "active")
    assert not ok
    assert "Cannot transition from 'draft' to 'active'" in errors[0]

    assert can_transition_to(Document(status="pending_review"), "draft")[0]
    assert not can_transition_to(Document(status="obsolete"), "draft")[0]
    assert not can_transition_to(Document(status="archived"), "active")[0]


def test_activation_requires_approved(app, company_id):
    with session_scope(app) as s:
        doc = create_document(s, company_id, document_type_code="FRM", title="Form", user=None)
        with pytest.raises(PreconditionFailedError):
            activate_document(s, doc.id, user=None)


def test_supersede_obsoletes_old_document(app, company_id):
    with session_scope(app) as s:
        old = create_document(s, company_id, document_type_code="FRM", title="Old Form", user=None)
        new = create_document(s, company_id, document_type_code="FRM", title="New Form", user=None)
        new_doc, old_doc = supersede_document(s, new.id, old.id, user=_user(s), reason="Replaced")
        assert new_doc.supersedes_document_id == old.id
        assert old_doc.superseded_by_document_id == new.id
        assert old_doc.status == "obsolete"

        with pytest.raises(PreconditionFailedError):
            obsolete_document(s, old.id, user=None)
        with pytest.raises(PreconditionFailedError):
            supersede_document(s, new.id, new.id, user=None)


ROLE_POOL = ("supervisor", "manager", "safety_manager", "director", "hr")


@pytest.mark.parametrize("seed", range(25))
def test_random_decisions_keep_status_in_step_with_approvals(app, company_id, seed):
    rng = random.Random(seed)
    roles = rng.sample(ROLE_POOL, rng.randint(1, len(ROLE_POOL)))

    with session_scope(app) as s:
        user = _user(s)
        doc = create_document(s, company_id, document_type_code="FRM", title=f"Form {seed}", user=user)
        if rng.random() < 0.5:
            submit_for_review(s, doc.id, user=user)
        expected = doc.status
        rows = create_approval_workflow(s, doc.id, roles, user=user)

        decisions: dict[str, str] = {}
        # Every role is decided at least once, some several times, in shuffled order.
        order = [r.id for r in rows] + [rng.choice(rows).id for _ in range(rng.randint(0, 6))]
        rng.shuffle(order)
        for approval_id in order:
            decision = rng.choice(("approved", "rejected"))
            submit_approval(s, approval_id, decision, user=user)
            decisions[approval_id] = decision

            if "rejected" in decisions.values():
                expected = "draft"
            elif len(decisions) == len(rows):
                expected = "approved"

            status = s.get(Document, doc.id).status
            all_approved = len(decisions) == len(rows) and set(decisions.values()) == {"approved"}
            assert (status == "approved") == all_approved
            if "rejected" in decisions.values():
                assert status == "draft"
            assert status == expected


def test_rejection_after_activation_is_refused_and_rolled_back(app, company_id):
    doc_id = _policy(app, company_id, roles=("manager",))
    with session_scope(app) as s:
        (only,) = list_approvals(s, doc_id)
        submit_approval(s, only.id, "approved", user=_user(s))
        activate_document(s, doc_id, user=_user(s))
        approval_id = only.id

    with session_scope(app) as s:
        with pytest.raises(PreconditionFailedError) as exc:
            submit_approval(s, approval_id, "rejected", user=_user(s), rejection_reason="Too late")
        assert exc.value.entity_id == doc_id
        assert "cannot be applied" in exc.value.message

        # Neither the decision nor the audit entry survive.
        assert s.get(DocumentApproval, approval_id).status == "approved"
        doc = s.get(Document, doc_id)
        assert doc.status == "active"
        assert doc.audit_trail[-1]["action"] != "approval_decision"

        # Re-confirming an approval on an active document is harmless.
        submit_approval(s, approval_id, "approved", user=_user(s), comments="Confirmed")
        assert s.get(Document, doc_id).status == "active"
