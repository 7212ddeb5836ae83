"""
JSON API for document control, mounted at /api/document-control.

Handlers parse input, call the service layer and commit. Typed service errors are
turned into JSON responses by the blueprint error handlers below.
"""
from __future__ import annotations

import logging
from datetime import date
from typing import Any

from flask import Blueprint, current_app, g, jsonify, request

from app.dcms.db import db_session
from app.dcms.models import User
from app.dcms.rbac import require_permission
from app.dcms.storage import storage_from_config
from app.dcms.utils import parse_iso_date

from . import approvals as approvals_svc
from . import archive as archive_svc
from . import distribution as dist_svc
from . import evidence as evidence_svc
from . import folders as folders_svc
from . import reindex as reindex_svc
from . import reviews as reviews_svc
from . import service as doc_svc
from . import suggestions as suggestions_svc
from . import versioning as versioning_svc
from .errors import (
    ConflictError,
    DependencyError,
    DocumentControlError,
    ImmutableRecordError,
    NotFoundError,
    PreconditionFailedError,
)
from .extraction import DefaultTextExtractor, TextExtractor
from .models import Document
from .reference import list_document_types
from .serializers import document_to_dict, row_to_dict, rows_to_list

logger = logging.getLogger(__name__)

bp = Blueprint("doc_control", __name__)

_STATUS_CODES: list[tuple[type[DocumentControlError], int]] = [
    (NotFoundError, 404),
    (PreconditionFailedError, 422),
    (ConflictError, 409),
    (ImmutableRecordError, 409),
    (DependencyError, 502),
]


@bp.errorhandler(DocumentControlError)
def _handle_document_control_error(e: DocumentControlError):
    db_session().rollback()
    code = next((c for cls, c in _STATUS_CODES if isinstance(e, cls)), 400)
    if code >= 500:
        logger.warning("Document control dependency failure (request_id=%s): %s", getattr(g, "request_id", None), e)
    return jsonify(e.to_dict()), code


class BadRequest(ValueError):
    pass


@bp.errorhandler(BadRequest)
def _handle_bad_request(e: BadRequest):
    db_session().rollback()
    return jsonify({"error": "BadRequest", "message": str(e)}), 400


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return request.form.to_dict()
    if not isinstance(data, dict):
        raise BadRequest("JSON body must be an object.")
    return data


def _company_id(payload: dict[str, Any] | None = None) -> str:
    """Users bound to a company always act within it; unbound admins pass company_id explicitly."""
    u = _current_user()
    if u.company_id:
        return u.company_id
    cid = (payload or {}).get("company_id") or request.args.get("company_id")
    if not cid:
        raise BadRequest("company_id is required.")
    return str(cid)


def _scoped_document(s, document_id: str) -> Document:
    doc = doc_svc.get_document(s, document_id)
    u = _current_user()
    if u.company_id and doc.company_id != u.company_id:
        raise NotFoundError(f"Document not found: {document_id}", entity_id=document_id, operation="get_document")
    return doc


def _date(value: Any, field: str) -> date | None:
    if value in (None, ""):
        return None
    try:
        return parse_iso_date(str(value))
    except ValueError:
        raise BadRequest(f"{field} must be an ISO date (YYYY-MM-DD).") from None


def _int(value: Any, field: str, default: int | None = None) -> int | None:
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise BadRequest(f"{field} must be an integer.") from None


def _bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def _list(value: Any) -> list:
    if value in (None, ""):
        return []
    if isinstance(value, list):
        return value
    return [v.strip() for v in str(value).split(",") if v.strip()]


def _required(payload: dict[str, Any], *fields: str) -> None:
    missing = [f for f in fields if payload.get(f) in (None, "", [])]
    if missing:
        raise BadRequest(f"Missing required field(s): {', '.join(missing)}")


def _extractor() -> TextExtractor:
    return current_app.extensions.get("dcms_text_extractor") or DefaultTextExtractor()


def _commit():
    db_session().commit()


# ---------------------------------------------------------------------------
# Reference data & documents
# ---------------------------------------------------------------------------


@bp.get("/document-types")
@require_permission("docs.view")
def document_types():
    s = db_session()
    return jsonify({"document_types": rows_to_list(list_document_types(s))})


@bp.get("/documents")
@require_permission("docs.view")
def documents_list():
    s = db_session()
    args = request.args
    docs, total = doc_svc.list_documents(
        s,
        _company_id(),
        document_type_code=args.get("type") or None,
        status=_list(args.get("status")) or None,
        department=args.get("department") or None,
        audit_elements=[_int(v, "element") for v in _list(args.get("elements"))] or None,
        tags=_list(args.get("tags")) or None,
        applicable_to=args.get("applicable_to") or None,
        review_due_before=_date(args.get("review_due_before"), "review_due_before"),
        folder_id=args.get("folder_id") or None,
        query=args.get("q") or None,
        limit=_int(args.get("limit"), "limit", 50),
        offset=_int(args.get("offset"), "offset", 0),
    )
    return jsonify({"documents": [document_to_dict(d) for d in docs], "total": total})


@bp.post("/documents")
@require_permission("docs.create")
def documents_create():
    s = db_session()
    u = _current_user()
    p = _payload()
    _required(p, "document_type_code", "title")
    doc = doc_svc.create_document(
        s,
        _company_id(p),
        document_type_code=str(p["document_type_code"]),
        title=str(p["title"]),
        user=u,
        description=p.get("description"),
        tags=_list(p.get("tags")),
        audit_elements=_list(p.get("audit_elements")),
        applicable_to=_list(p.get("applicable_to")) or None,
        department=p.get("department"),
        category=p.get("category"),
        effective_date=_date(p.get("effective_date"), "effective_date"),
        expiry_date=_date(p.get("expiry_date"), "expiry_date"),
        folder_id=p.get("folder_id") or None,
        is_critical=_bool(p.get("is_critical")),
        acknowledgment_required=_bool(p.get("acknowledgment_required")),
        acknowledgment_deadline_days=_int(p.get("acknowledgment_deadline_days"), "acknowledgment_deadline_days"),
    )
    _commit()
    return jsonify({"document": document_to_dict(doc, detail=True)}), 201


@bp.post("/documents/suggest-metadata")
@require_permission("docs.create")
def documents_suggest_metadata():
    """
    Suggest metadata before a document is created. Accepts an uploaded `file`
    (its text is extracted), a single {filename, text}, or {files: [{filename, text}, ...]}.
    """
    s = db_session()
    p = _payload()
    upload = request.files.get("file")
    if upload and upload.filename:
        extraction = _extractor().extract(upload.read(), content_type=upload.mimetype, filename=upload.filename)
        files = [(upload.filename, extraction.text if extraction.success else None)]
    else:
        raw = p.get("files") or [p]
        if not isinstance(raw, list) or not all(isinstance(f, dict) for f in raw):
            raise BadRequest("files must be a list of {filename, text} objects.")
        for f in raw:
            _required(f, "filename")
        files = [(str(f["filename"]), f.get("text")) for f in raw]
    suggestions = suggestions_svc.suggest_metadata_for_company(s, _company_id(p), files)
    return jsonify({"suggestions": [m.to_dict() for m in suggestions.values()]})


@bp.get("/documents/<document_id>")
@require_permission("docs.view")
def documents_get(document_id: str):
    s = db_session()
    return jsonify({"document": document_to_dict(_scoped_document(s, document_id), detail=True)})


@bp.get("/documents/by-control-number/<control_number>")
@require_permission("docs.view")
def documents_by_control_number(control_number: str):
    s = db_session()
    doc = doc_svc.get_document_by_control_number(s, _company_id(), control_number)
    return jsonify({"document": document_to_dict(doc, detail=True)})


@bp.patch("/documents/<document_id>")
@require_permission("docs.edit")
def documents_update(document_id: str):
    s = db_session()
    u = _current_user()
    p = _payload()
    reason = p.pop("reason", None)
    p.pop("csrf_token", None)
    p.pop("company_id", None)
    updates = dict(p)
    for field in ("effective_date", "expiry_date", "next_review_date"):
        if field in updates:
            updates[field] = _date(updates[field], field)
    _scoped_document(s, document_id)
    doc = doc_svc.update_document(s, document_id, updates, user=u, reason=reason)
    _commit()
    return jsonify({"document": document_to_dict(doc, detail=True)})


@bp.get("/search")
@require_permission("docs.view")
def documents_search():
    s = db_session()
    hits = doc_svc.search_documents(
        s,
        _company_id(),
        request.args.get("q") or "",
        document_types=_list(request.args.get("types")) or None,
        limit=_int(request.args.get("limit"), "limit", 50),
        offset=_int(request.args.get("offset"), "offset", 0),
    )
    return jsonify(
        {"results": [{"document": document_to_dict(h.document), "score": h.score, "snippet": h.snippet} for h in hits]}
    )


@bp.get("/stats")
@require_permission("docs.view")
def registry_stats():
    s = db_session()
    return jsonify(doc_svc.registry_stats(s, _company_id()))


@bp.post("/documents/<document_id>/status")
@require_permission("docs.edit")
def documents_change_status(document_id: str):
    s = db_session()
    u = _current_user()
    p = _payload()
    _required(p, "status")
    _scoped_document(s, document_id)
    new_status = str(p["status"])
    reason = p.get("reason")
    if new_status == "active":
        doc = doc_svc.activate_document(s, document_id, user=u, reason=reason)
    elif new_status == "obsolete":
        doc = doc_svc.obsolete_document(s, document_id, user=u, reason=reason)
    else:
        doc = doc_svc.change_status(s, document_id, new_status, user=u, reason=reason)
    _commit()
    return jsonify({"document": document_to_dict(doc)})


@bp.post("/documents/<document_id>/submit")
@require_permission("docs.edit")
def documents_submit(document_id: str):
    s = db_session()
    _scoped_document(s, document_id)
    doc = doc_svc.submit_for_review(s, document_id, user=_current_user(), reason=_payload().get("reason"))
    _commit()
    return jsonify({"document": document_to_dict(doc)})


@bp.post("/documents/<document_id>/activate")
@require_permission("docs.approve")
def documents_activate(document_id: str):
    s = db_session()
    _scoped_document(s, document_id)
    doc = doc_svc.activate_document(s, document_id, user=_current_user(), reason=_payload().get("reason"))
    _commit()
    return jsonify({"document": document_to_dict(doc)})


@bp.post("/documents/<document_id>/obsolete")
@require_permission("docs.obsolete")
def documents_obsolete(document_id: str):
    s = db_session()
    _scoped_document(s, document_id)
    doc = doc_svc.obsolete_document(s, document_id, user=_current_user(), reason=_payload().get("reason"))
    _commit()
    return jsonify({"document": document_to_dict(doc)})


@bp.post("/documents/<document_id>/supersede")
@require_permission("docs.obsolete")
def documents_supersede(document_id: str):
    """document_id is the new document; body names the one it replaces."""
    s = db_session()
    p = _payload()
    _required(p, "old_document_id")
    _scoped_document(s, document_id)
    _scoped_document(s, str(p["old_document_id"]))
    new_doc, old_doc = doc_svc.supersede_document(
        s, document_id, str(p["old_document_id"]), user=_current_user(), reason=p.get("reason")
    )
    _commit()
    return jsonify({"document": document_to_dict(new_doc), "superseded": document_to_dict(old_doc)})


@bp.post("/documents/<document_id>/file")
@require_permission("docs.edit")
def documents_upload(document_id: str):
    s = db_session()
    _scoped_document(s, document_id)
    f = request.files.get("file")
    if not f or not f.filename:
        raise BadRequest("A file upload named 'file' is required.")
    doc = doc_svc.attach_file(
        s,
        document_id,
        data=f.read(),
        filename=f.filename,
        content_type=f.mimetype,
        storage=storage_from_config(current_app.config),
        user=_current_user(),
    )
    _commit()
    return jsonify({"document": document_to_dict(doc)})


# ---------------------------------------------------------------------------
# Revisions
# ---------------------------------------------------------------------------


@bp.get("/documents/<document_id>/revisions")
@require_permission("docs.view")
def revisions_list(document_id: str):
    s = db_session()
    _scoped_document(s, document_id)
    return jsonify({"revisions": rows_to_list(versioning_svc.list_revisions(s, document_id))})


@bp.post("/documents/<document_id>/revisions")
@require_permission("docs.edit")
def revisions_create(document_id: str):
    s = db_session()
    p = _payload()
    _required(p, "change_type", "summary")
    _scoped_document(s, document_id)
    rev = versioning_svc.create_revision(
        s,
        document_id,
        change_type=str(p["change_type"]),
        summary=str(p["summary"]),
        details=p.get("details"),
        user=_current_user(),
    )
    _commit()
    return jsonify({"revision": row_to_dict(rev)}), 201


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------


@bp.get("/documents/<document_id>/approvals")
@require_permission("docs.view")
def approvals_list(document_id: str):
    s = db_session()
    _scoped_document(s, document_id)
    rows = approvals_svc.list_approvals(s, document_id, all_cycles=_bool(request.args.get("all_cycles")))
    return jsonify({"approvals": rows_to_list(rows)})


@bp.post("/documents/<document_id>/approvals")
@require_permission("docs.edit")
def approvals_create(document_id: str):
    s = db_session()
    p = _payload()
    _required(p, "roles")
    _scoped_document(s, document_id)
    rows = approvals_svc.create_approval_workflow(s, document_id, _list(p["roles"]), user=_current_user())
    _commit()
    return jsonify({"approvals": rows_to_list(rows)}), 201


@bp.get("/approvals/pending")
@require_permission("docs.approve")
def approvals_pending():
    s = db_session()
    rows = approvals_svc.pending_approvals(
        s,
        _company_id(),
        role=request.args.get("role") or None,
        approver_user_id=_int(request.args.get("approver_user_id"), "approver_user_id"),
    )
    return jsonify({"approvals": rows_to_list(rows)})


@bp.post("/approvals/<approval_id>/decision")
@require_permission("docs.approve")
def approvals_decide(approval_id: str):
    s = db_session()
    p = _payload()
    _required(p, "decision")
    approval = approvals_svc.get_approval(s, approval_id)
    _scoped_document(s, approval.document_id)
    approval = approvals_svc.submit_approval(
        s,
        approval_id,
        str(p["decision"]),
        user=_current_user(),
        comments=p.get("comments"),
        rejection_reason=p.get("rejection_reason"),
        signature_data=p.get("signature_data"),
        signature_type=p.get("signature_type"),
    )
    doc = doc_svc.get_document(s, approval.document_id)
    _commit()
    return jsonify({"approval": row_to_dict(approval), "document_status": doc.status})


@bp.post("/approvals/<approval_id>/delegate")
@require_permission("docs.approve")
def approvals_delegate(approval_id: str):
    s = db_session()
    p = _payload()
    _required(p, "delegate_to_user_id")
    approval = approvals_svc.get_approval(s, approval_id)
    _scoped_document(s, approval.document_id)
    approval = approvals_svc.delegate_approval(
        s,
        approval_id,
        _int(p["delegate_to_user_id"], "delegate_to_user_id"),
        user=_current_user(),
        reason=p.get("reason"),
    )
    _commit()
    return jsonify({"approval": row_to_dict(approval)})


# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------


@bp.get("/documents/<document_id>/reviews")
@require_permission("docs.view")
def reviews_list(document_id: str):
    s = db_session()
    _scoped_document(s, document_id)
    return jsonify({"reviews": rows_to_list(reviews_svc.list_reviews(s, document_id))})


@bp.post("/documents/<document_id>/reviews")
@require_permission("docs.review")
def reviews_create(document_id: str):
    s = db_session()
    p = _payload()
    _scoped_document(s, document_id)
    review = reviews_svc.create_review(
        s,
        document_id,
        due_date=_date(p.get("due_date"), "due_date"),
        review_type=p.get("review_type") or "scheduled",
        assigned_to_user_id=_int(p.get("assigned_to_user_id"), "assigned_to_user_id"),
        user=_current_user(),
    )
    _commit()
    return jsonify({"review": row_to_dict(review)}), 201


@bp.post("/reviews/<review_id>/start")
@require_permission("docs.review")
def reviews_start(review_id: str):
    s = db_session()
    _scoped_document(s, reviews_svc.get_review(s, review_id).document_id)
    review = reviews_svc.start_review(s, review_id, user=_current_user())
    _commit()
    return jsonify({"review": row_to_dict(review)})


@bp.post("/reviews/<review_id>/cancel")
@require_permission("docs.review")
def reviews_cancel(review_id: str):
    s = db_session()
    _scoped_document(s, reviews_svc.get_review(s, review_id).document_id)
    review = reviews_svc.cancel_review(s, review_id, user=_current_user(), reason=_payload().get("reason"))
    _commit()
    return jsonify({"review": row_to_dict(review)})


@bp.post("/reviews/<review_id>/complete")
@require_permission("docs.review")
def reviews_complete(review_id: str):
    s = db_session()
    p = _payload()
    _required(p, "outcome", "next_review_date")
    _scoped_document(s, reviews_svc.get_review(s, review_id).document_id)
    review = reviews_svc.complete_review(
        s,
        review_id,
        outcome=str(p["outcome"]),
        next_review_date=_date(p["next_review_date"], "next_review_date"),
        user=_current_user(),
        notes=p.get("notes"),
        action_items=_list(p.get("action_items")),
    )
    _commit()
    return jsonify({"review": row_to_dict(review)})


@bp.get("/reviews/due")
@require_permission("docs.view")
def reviews_due():
    s = db_session()
    days_ahead = _int(request.args.get("days_ahead"), "days_ahead", current_app.config.get("DOC_REVIEW_WINDOW_DAYS", 30))
    items = reviews_svc.documents_due_for_review(
        s,
        _company_id(),
        days_ahead=days_ahead,
        include_scheduled=not _bool(request.args.get("due_only")),
    )
    return jsonify(
        {
            "items": [
                {
                    "document": document_to_dict(i.document),
                    "review_status": i.review_status,
                    "days_until_due": i.days_until_due,
                }
                for i in items
            ]
        }
    )


@bp.post("/reviews/sweep")
@require_permission("docs.review")
def reviews_sweep():
    s = db_session()
    count = reviews_svc.mark_overdue_reviews(s, company_id=_company_id(_payload()))
    _commit()
    return jsonify({"updated": count})


# ---------------------------------------------------------------------------
# Distribution & acknowledgment
# ---------------------------------------------------------------------------


@bp.get("/documents/<document_id>/distributions")
@require_permission("docs.view")
def distributions_list(document_id: str):
    s = db_session()
    _scoped_document(s, document_id)
    return jsonify(
        {
            "distributions": rows_to_list(dist_svc.list_distributions(s, document_id)),
            "summary": dist_svc.distribution_summary(s, document_id).to_dict(),
        }
    )


@bp.post("/documents/<document_id>/distributions")
@require_permission("docs.distribute")
def distributions_create(document_id: str):
    s = db_session()
    p = _payload()
    _required(p, "recipients")
    _scoped_document(s, document_id)
    rows = dist_svc.distribute_document(
        s,
        document_id,
        _list(p["recipients"]),
        method=p.get("method") or "system_notification",
        quiz_required=_bool(p.get("quiz_required")),
        notes=p.get("notes"),
        user=_current_user(),
    )
    _commit()
    return jsonify({"distributions": rows_to_list(rows)}), 201


@bp.post("/distributions/<distribution_id>/acknowledge")
@require_permission("docs.view")
def distributions_acknowledge(distribution_id: str):
    s = db_session()
    p = _payload()
    _scoped_document(s, dist_svc.get_distribution(s, distribution_id).document_id)
    dist = dist_svc.acknowledge_distribution(
        s,
        distribution_id,
        method=p.get("method") or "checkbox",
        signature=p.get("signature"),
        quiz_score=_int(p.get("quiz_score"), "quiz_score"),
        user=_current_user(),
    )
    _commit()
    return jsonify({"distribution": row_to_dict(dist)})


@bp.post("/distributions/<distribution_id>/remind")
@require_permission("docs.distribute")
def distributions_remind(distribution_id: str):
    s = db_session()
    _scoped_document(s, dist_svc.get_distribution(s, distribution_id).document_id)
    dist = dist_svc.send_distribution_reminder(s, distribution_id, user=_current_user())
    _commit()
    return jsonify({"distribution": row_to_dict(dist)})


@bp.get("/distributions/unacknowledged")
@require_permission("docs.distribute")
def distributions_unacknowledged():
    s = db_session()
    rows = dist_svc.unacknowledged_distributions(
        s,
        _company_id(),
        document_id=request.args.get("document_id") or None,
        recipient=request.args.get("recipient") or None,
    )
    return jsonify({"distributions": rows_to_list(rows)})


@bp.get("/documents/<document_id>/acknowledgments")
@require_permission("docs.view")
def acknowledgments_list(document_id: str):
    s = db_session()
    _scoped_document(s, document_id)
    rows = dist_svc.document_acknowledgments(s, document_id, status=request.args.get("status") or None)
    return jsonify(
        {
            "acknowledgments": rows_to_list(rows),
            "summary": dist_svc.acknowledgment_summary(s, document_id).to_dict(),
        }
    )


@bp.post("/documents/<document_id>/acknowledgments")
@require_permission("docs.distribute")
def acknowledgments_require(document_id: str):
    s = db_session()
    p = _payload()
    _required(p, "worker_ids")
    doc = _scoped_document(s, document_id)
    deadline_days = _int(p.get("deadline_days"), "deadline_days")
    if deadline_days is None and doc.acknowledgment_deadline_days is None:
        deadline_days = current_app.config.get("DOC_ACK_DEADLINE_DAYS")
    rows = dist_svc.create_acknowledgment_requirements(
        s,
        document_id,
        _list(p["worker_ids"]),
        deadline_days=deadline_days,
        notes=p.get("notes"),
        user=_current_user(),
    )
    _commit()
    return jsonify({"acknowledgments": rows_to_list(rows)}), 201


@bp.post("/documents/<document_id>/acknowledge")
@require_permission("docs.view")
def acknowledgments_by_worker(document_id: str):
    s = db_session()
    p = _payload()
    _required(p, "worker_id")
    _scoped_document(s, document_id)
    ack = dist_svc.acknowledge_document_by_worker(
        s,
        document_id,
        str(p["worker_id"]),
        method=p.get("method") or "checkbox",
        signature=p.get("signature"),
        notes=p.get("notes"),
        user=_current_user(),
    )
    _commit()
    return jsonify({"acknowledgment": row_to_dict(ack)})


@bp.post("/acknowledgments/<ack_id>/acknowledge")
@require_permission("docs.view")
def acknowledgments_acknowledge(ack_id: str):
    s = db_session()
    p = _payload()
    _scoped_document(s, dist_svc.get_acknowledgment(s, ack_id).document_id)
    ack = dist_svc.acknowledge_document(
        s,
        ack_id,
        method=p.get("method") or "checkbox",
        signature=p.get("signature"),
        notes=p.get("notes"),
        user=_current_user(),
    )
    _commit()
    return jsonify({"acknowledgment": row_to_dict(ack)})


@bp.post("/acknowledgments/<ack_id>/exempt")
@require_permission("docs.distribute")
def acknowledgments_exempt(ack_id: str):
    s = db_session()
    p = _payload()
    _required(p, "reason")
    _scoped_document(s, dist_svc.get_acknowledgment(s, ack_id).document_id)
    ack = dist_svc.exempt_from_acknowledgment(s, ack_id, reason=str(p["reason"]), user=_current_user())
    _commit()
    return jsonify({"acknowledgment": row_to_dict(ack)})


@bp.post("/acknowledgments/<ack_id>/remind")
@require_permission("docs.distribute")
def acknowledgments_remind(ack_id: str):
    s = db_session()
    _scoped_document(s, dist_svc.get_acknowledgment(s, ack_id).document_id)
    ack = dist_svc.send_acknowledgment_reminder(s, ack_id, user=_current_user())
    _commit()
    return jsonify({"acknowledgment": row_to_dict(ack)})


@bp.get("/workers/<worker_id>/acknowledgments")
@require_permission("docs.view")
def acknowledgments_for_worker(worker_id: str):
    s = db_session()
    rows = dist_svc.worker_acknowledgments(
        s, _company_id(), worker_id, include_completed=_bool(request.args.get("include_completed"))
    )
    return jsonify({"acknowledgments": rows_to_list(rows)})


@bp.post("/acknowledgments/sweep")
@require_permission("docs.distribute")
def acknowledgments_sweep():
    s = db_session()
    count = dist_svc.update_overdue_acknowledgments(s, company_id=_company_id(_payload()))
    _commit()
    return jsonify({"updated": count})


# ---------------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------------


def _archive_kwargs(p: dict[str, Any], default_reason: str) -> dict[str, Any]:
    years = _int(p.get("retention_years"), "retention_years")
    if years is None:
        years = current_app.config.get("DOC_RETENTION_YEARS")
    return {
        "reason": p.get("reason") or default_reason,
        "notes": p.get("notes"),
        "retention_years": years,
        "destruction_hold": _bool(p.get("destruction_hold")),
        "hold_reason": p.get("hold_reason"),
        "user": _current_user(),
    }


@bp.post("/documents/<document_id>/archive")
@require_permission("docs.archive")
def archives_create(document_id: str):
    s = db_session()
    _scoped_document(s, document_id)
    archive = archive_svc.archive_document(s, document_id, **_archive_kwargs(_payload(), "manual"))
    _commit()
    return jsonify({"archive": row_to_dict(archive)}), 201


@bp.post("/revisions/<revision_id>/archive")
@require_permission("docs.archive")
def archives_create_for_revision(revision_id: str):
    s = db_session()
    _scoped_document(s, versioning_svc.get_revision(s, revision_id).document_id)
    archive = archive_svc.archive_version(s, revision_id, **_archive_kwargs(_payload(), "superseded"))
    _commit()
    return jsonify({"archive": row_to_dict(archive)}), 201


@bp.get("/archives")
@require_permission("docs.archive")
def archives_list():
    s = db_session()
    rows = archive_svc.list_archives(s, _company_id(), document_id=request.args.get("document_id") or None)
    return jsonify({"archives": rows_to_list(rows, exclude={"extracted_text"})})


@bp.get("/archives/destruction-eligible")
@require_permission("docs.archive")
def archives_destruction_eligible():
    s = db_session()
    rows = archive_svc.archives_eligible_for_destruction(s, _company_id())
    return jsonify({"archives": rows_to_list(rows, exclude={"extracted_text"})})


@bp.get("/archives/<archive_id>")
@require_permission("docs.archive")
def archives_get(archive_id: str):
    s = db_session()
    archive = archive_svc.get_archive(s, archive_id)
    u = _current_user()
    if u.company_id and archive.company_id != u.company_id:
        raise NotFoundError(f"Archive not found: {archive_id}", entity_id=archive_id, operation="get_archive")
    return jsonify({"archive": row_to_dict(archive)})


# ---------------------------------------------------------------------------
# Folders
# ---------------------------------------------------------------------------


def _scoped_folder(s, folder_id: str):
    folder = folders_svc.get_folder(s, folder_id)
    u = _current_user()
    if u.company_id and folder.company_id != u.company_id:
        raise NotFoundError(f"Folder not found: {folder_id}", entity_id=folder_id, operation="get_folder")
    return folder


@bp.get("/folders/tree")
@require_permission("docs.view")
def folders_tree():
    s = db_session()
    company_id = _company_id()
    tree = folders_svc.get_folder_tree(s, company_id, include_hidden=_bool(request.args.get("include_hidden")))
    return jsonify({"tree": [n.to_dict() for n in tree], "stats": folders_svc.folder_stats(s, company_id)})


@bp.post("/folders")
@require_permission("docs.folders")
def folders_create():
    s = db_session()
    p = _payload()
    _required(p, "name")
    folder = folders_svc.create_folder(
        s,
        _company_id(p),
        name=str(p["name"]),
        user=_current_user(),
        parent_folder_id=p.get("parent_folder_id") or None,
        description=p.get("description"),
        folder_code=p.get("folder_code"),
        icon=p.get("icon"),
        color=p.get("color"),
        sort_order=_int(p.get("sort_order"), "sort_order", 0),
        linked_document_types=_list(p.get("linked_document_types")),
        linked_audit_elements=[_int(v, "linked_audit_elements") for v in _list(p.get("linked_audit_elements"))],
        accessible_to=_list(p.get("accessible_to")) or None,
        is_hidden=_bool(p.get("is_hidden")),
    )
    _commit()
    return jsonify({"folder": row_to_dict(folder)}), 201


@bp.post("/folders/initialize")
@require_permission("docs.folders")
def folders_initialize():
    s = db_session()
    created = folders_svc.initialize_company_folders(s, _company_id(_payload()), user=_current_user())
    _commit()
    return jsonify({"created": created})


@bp.patch("/folders/<folder_id>")
@require_permission("docs.folders")
def folders_update(folder_id: str):
    s = db_session()
    p = _payload()
    p.pop("csrf_token", None)
    p.pop("company_id", None)
    _scoped_folder(s, folder_id)
    folder = folders_svc.update_folder(s, folder_id, p, user=_current_user())
    _commit()
    return jsonify({"folder": row_to_dict(folder)})


@bp.post("/folders/<folder_id>/move")
@require_permission("docs.folders")
def folders_move(folder_id: str):
    s = db_session()
    p = _payload()
    _scoped_folder(s, folder_id)
    folder = folders_svc.move_folder(s, folder_id, p.get("parent_folder_id") or None, user=_current_user())
    _commit()
    return jsonify({"folder": row_to_dict(folder)})


@bp.delete("/folders/<folder_id>")
@require_permission("docs.folders")
def folders_delete(folder_id: str):
    s = db_session()
    _scoped_folder(s, folder_id)
    removed = folders_svc.delete_folder(s, folder_id, user=_current_user())
    _commit()
    return jsonify({"deleted": removed})


@bp.get("/folders/<folder_id>/documents")
@require_permission("docs.view")
def folders_documents(folder_id: str):
    s = db_session()
    _scoped_folder(s, folder_id)
    docs = folders_svc.documents_in_folder(
        s,
        folder_id,
        include_subfolders=_bool(request.args.get("include_subfolders")),
        statuses=_list(request.args.get("status")) or None,
    )
    return jsonify({"documents": [document_to_dict(d) for d in docs]})


@bp.post("/documents/<document_id>/folder")
@require_permission("docs.folders")
def documents_move_to_folder(document_id: str):
    s = db_session()
    p = _payload()
    _scoped_document(s, document_id)
    doc = folders_svc.move_document_to_folder(s, document_id, p.get("folder_id") or None, user=_current_user())
    _commit()
    return jsonify({"document": document_to_dict(doc)})


@bp.get("/documents/<document_id>/suggested-folder")
@require_permission("docs.view")
def documents_suggested_folder(document_id: str):
    s = db_session()
    doc = _scoped_document(s, document_id)
    folder = folders_svc.suggest_folder_for_document(s, doc.company_id, doc.document_type_code)
    return jsonify({"folder": row_to_dict(folder) if folder else None})


# ---------------------------------------------------------------------------
# Audit evidence
# ---------------------------------------------------------------------------


@bp.get("/documents/<document_id>/evidence")
@require_permission("docs.audit")
def evidence_detect(document_id: str):
    s = db_session()
    doc = _scoped_document(s, document_id)
    matches = evidence_svc.detect_relevant_audit_elements(doc, doc.extracted_text)
    validation = evidence_svc.validate_document_for_audit(doc)
    return jsonify({"matches": [m.to_dict() for m in matches], "validation": validation.to_dict()})


@bp.post("/documents/<document_id>/evidence/auto-link")
@require_permission("docs.audit")
def evidence_auto_link(document_id: str):
    s = db_session()
    p = _payload()
    _scoped_document(s, document_id)
    min_confidence = _int(
        p.get("min_confidence"), "min_confidence", current_app.config.get("DOC_AUTO_LINK_MIN_CONFIDENCE", 50)
    )
    matches = evidence_svc.auto_link_document(s, document_id, min_confidence=min_confidence, user=_current_user())
    doc = doc_svc.get_document(s, document_id)
    _commit()
    return jsonify({"linked": [m.to_dict() for m in matches], "audit_elements": doc.audit_elements})


@bp.post("/documents/<document_id>/evidence/<int:element>")
@require_permission("docs.audit")
def evidence_link(document_id: str, element: int):
    s = db_session()
    _scoped_document(s, document_id)
    doc = evidence_svc.link_document_to_element(s, document_id, element, user=_current_user())
    _commit()
    return jsonify({"audit_elements": doc.audit_elements})


@bp.delete("/documents/<document_id>/evidence/<int:element>")
@require_permission("docs.audit")
def evidence_unlink(document_id: str, element: int):
    s = db_session()
    _scoped_document(s, document_id)
    doc = evidence_svc.unlink_document_from_element(s, document_id, element, user=_current_user())
    _commit()
    return jsonify({"audit_elements": doc.audit_elements})


@bp.get("/evidence/report")
@require_permission("docs.audit")
def evidence_full_report():
    s = db_session()
    report = evidence_svc.generate_full_evidence_report(s, _company_id())
    return jsonify(report.to_dict())


@bp.get("/evidence/elements/<int:element>")
@require_permission("docs.audit")
def evidence_element_report(element: int):
    s = db_session()
    report = evidence_svc.generate_element_evidence_report(s, _company_id(), element)
    return jsonify(report.to_dict())


@bp.get("/evidence/elements/<int:element>/candidates")
@require_permission("docs.audit")
def evidence_candidates(element: int):
    s = db_session()
    candidates = evidence_svc.find_potential_evidence(
        s,
        _company_id(),
        element,
        min_confidence=_int(request.args.get("min_confidence"), "min_confidence", evidence_svc.DEFAULT_MIN_SUGGEST_CONFIDENCE),
    )
    return jsonify({"candidates": [c.to_dict() for c in candidates]})


# ---------------------------------------------------------------------------
# Reindex
# ---------------------------------------------------------------------------


@bp.post("/documents/<document_id>/reindex")
@require_permission("docs.reindex")
def reindex_single(document_id: str):
    s = db_session()
    _scoped_document(s, document_id)
    result = reindex_svc.reindex_document(
        s,
        document_id,
        extractor=_extractor(),
        storage=storage_from_config(current_app.config),
        user=_current_user(),
    )
    _commit()
    return jsonify(result.to_dict())


@bp.post("/reindex")
@require_permission("docs.reindex")
def reindex_batch():
    """Synchronous batch; callers page through large libraries with limit/offset."""
    s = db_session()
    p = _payload()
    summary = reindex_svc.reindex_documents(
        s,
        _company_id(p),
        extractor=_extractor(),
        storage=storage_from_config(current_app.config),
        force=_bool(p.get("force")),
        only_empty=_bool(p.get("only_empty")),
        document_types=_list(p.get("document_types")) or None,
        limit=_int(p.get("limit"), "limit", current_app.config.get("DOC_REINDEX_BATCH_SIZE", 50)),
        offset=_int(p.get("offset"), "offset", 0),
        delay_seconds=(current_app.config.get("DOC_REINDEX_DELAY_MS", 100) or 0) / 1000.0,
        user=_current_user(),
    )
    _commit()
    return jsonify(summary.to_dict())


@bp.get("/reindex/needed")
@require_permission("docs.reindex")
def reindex_needed():
    s = db_session()
    rows = reindex_svc.documents_needing_reindex(s, _company_id())
    return jsonify({"documents": [r.to_dict() for r in rows]})
