import io

from sqlalchemy import select

from app.dcms.db import session_scope
from app.dcms.models import AuditEvent
from app.dcms.modules.document_control.models import Document

API = "/api/document-control"


def _login(client, email="admin@example.com", password="pw"):
    r = client.post("/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200
    return {"X-CSRF-Token": r.get_json()["csrf_token"]}


def test_health_and_index(client):
    assert client.get("/health").get_json() == {"ok": True}
    assert client.get("/healthz").data == b"ok"
    assert client.get("/").get_json()["api"] == API


def test_login_failures(client):
    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "wrong"})
    assert r.status_code == 401
    assert r.get_json()["error"] == "Unauthorized"
    assert client.get("/auth/me").status_code == 401

    with session_scope(client.application) as s:
        assert s.scalar(select(AuditEvent).where(AuditEvent.action == "auth.login_failed")) is not None


def test_requires_login_and_permission(client):
    assert client.get(f"{API}/documents").status_code == 401

    headers = _login(client, "viewer@example.com")
    assert client.get(f"{API}/documents").status_code == 200
    r = client.post(f"{API}/documents", json={"document_type_code": "FRM", "title": "Form"}, headers=headers)
    assert r.status_code == 403
    assert r.get_json()["error"] == "Forbidden"


def test_writes_need_csrf_token(client):
    _login(client)
    r = client.post(f"{API}/documents", json={"document_type_code": "FRM", "title": "Form"})
    assert r.status_code == 400
    assert "CSRF" in r.get_json()["message"]


def test_document_lifecycle_over_http(client):
    h = _login(client)

    r = client.post(
        f"{API}/documents",
        json={"document_type_code": "POL", "title": "Health and Safety Policy", "tags": "core,annual"},
        headers=h,
    )
    assert r.status_code == 201
    doc = r.get_json()["document"]
    assert doc["control_number"] == "ACME-POL-001"
    assert doc["status"] == "draft"
    assert doc["tags"] == ["core", "annual"]
    doc_id = doc["id"]

    r = client.get(f"{API}/documents/by-control-number/acme-pol-001")
    assert r.get_json()["document"]["id"] == doc_id

    # Draft documents cannot be activated.
    r = client.post(f"{API}/documents/{doc_id}/status", json={"status": "active"}, headers=h)
    assert r.status_code == 422
    assert r.get_json()["error"] == "PreconditionFailedError"

    approvals = client.get(f"{API}/documents/{doc_id}/approvals").get_json()["approvals"]
    assert [a["approver_role"] for a in approvals] == ["management", "safety_manager"]

    for a in approvals:
        r = client.post(f"{API}/approvals/{a['id']}/decision", json={"decision": "approved"}, headers=h)
        assert r.status_code == 200
    assert r.get_json()["document_status"] == "approved"

    r = client.post(f"{API}/documents/{doc_id}/activate", json={}, headers=h)
    assert r.get_json()["document"]["status"] == "active"

    r = client.post(
        f"{API}/documents/{doc_id}/revisions", json={"change_type": "minor_edit", "summary": "Contact update"}, headers=h
    )
    assert r.status_code == 201
    assert r.get_json()["revision"]["version"] == "1.1"

    stats = client.get(f"{API}/stats").get_json()
    assert stats["total_documents"] == 1
    assert stats["by_status"]["under_revision"] == 1

    r = client.post(f"{API}/documents/{doc_id}/archive", json={"reason": "manual"}, headers=h)
    assert r.status_code == 201
    r = client.post(f"{API}/documents/{doc_id}/revisions", json={"change_type": "minor_edit", "summary": "x"}, headers=h)
    assert r.status_code == 422


def test_not_found_and_bad_request(client):
    h = _login(client)
    r = client.get(f"{API}/documents/does-not-exist")
    assert r.status_code == 404
    assert r.get_json()["error"] == "NotFoundError"

    r = client.post(f"{API}/documents", json={"title": "No type"}, headers=h)
    assert r.status_code == 400
    assert "document_type_code" in r.get_json()["message"]

    r = client.post(f"{API}/documents", json={"document_type_code": "XYZ", "title": "Bad type"}, headers=h)
    assert r.status_code == 404

    assert client.get("/no-such-page").status_code == 404


def test_upload_and_reindex(client):
    h = _login(client)
    doc_id = client.post(
        f"{API}/documents", json={"document_type_code": "FRM", "title": "Pre-use Inspection"}, headers=h
    ).get_json()["document"]["id"]

    body = b"Inspection checklist for ladders. Inspection before every shift. Ladders tagged when damaged."
    r = client.post(
        f"{API}/documents/{doc_id}/file",
        data={"file": (io.BytesIO(body), "inspection.txt", "text/plain")},
        content_type="multipart/form-data",
        headers=h,
    )
    assert r.status_code == 200
    assert r.get_json()["document"]["file_size_bytes"] == len(body)

    needed = client.get(f"{API}/reindex/needed").get_json()["documents"]
    assert [d["document_id"] for d in needed] == [doc_id]

    r = client.post(f"{API}/documents/{doc_id}/reindex", json={}, headers=h)
    assert r.status_code == 200
    assert r.get_json()["success"] is True

    with session_scope(client.application) as s:
        doc = s.get(Document, doc_id)
        assert "inspection" in doc.tags
        assert doc.extracted_text.startswith("Inspection checklist")

    # Search only covers documents in force.
    assert client.get(f"{API}/search", query_string={"q": "ladders"}).get_json()["results"] == []
    for status in ("approved", "active"):
        r = client.post(f"{API}/documents/{doc_id}/status", json={"status": status}, headers=h)
        assert r.status_code == 200
    results = client.get(f"{API}/search", query_string={"q": "ladders"}).get_json()["results"]
    assert [r["document"]["id"] for r in results] == [doc_id]
    assert "ladders" in results[0]["snippet"]


def test_folders_over_http(client):
    h = _login(client)
    r = client.post(f"{API}/folders/initialize", json={}, headers=h)
    assert r.get_json()["created"] == 7

    tree = client.get(f"{API}/folders/tree").get_json()["tree"]
    policies = next(f for f in tree if f["slug"] == "policies")
    r = client.delete(f"{API}/folders/{policies['id']}", headers=h)
    assert r.status_code == 422


def test_suggest_metadata_over_http(client):
    h = _login(client)
    r = client.post(f"{API}/documents/suggest-metadata", json={"filename": "Emergency_Response_Plan.pdf"}, headers=h)
    assert r.status_code == 200
    (suggestion,) = r.get_json()["suggestions"]
    assert suggestion["document_type_code"] == "PLN"
    assert suggestion["title"] == "Emergency Response Plan"

    r = client.post(
        f"{API}/documents/suggest-metadata",
        json={"files": [{"filename": "SWP_ladders.pdf"}, {"filename": "Quality Policy.docx", "text": None}]},
        headers=h,
    )
    assert [m["document_type_code"] for m in r.get_json()["suggestions"]] == ["SWP", "POL"]

    r = client.post(f"{API}/documents/suggest-metadata", json={"text": "no name"}, headers=h)
    assert r.status_code == 400
    assert "filename" in r.get_json()["message"]
