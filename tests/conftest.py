import pytest
from sqlalchemy import select
from werkzeug.security import generate_password_hash

from app.dcms import create_app
from app.dcms.db import session_scope
from app.dcms.models import Base, Permission, Role, User
from app.dcms.modules.document_control.models import Company
from app.dcms.modules.document_control.reference import create_company, seed_document_types

DOC_PERMISSION_KEYS = [
    "docs.view",
    "docs.create",
    "docs.edit",
    "docs.approve",
    "docs.review",
    "docs.distribute",
    "docs.archive",
    "docs.obsolete",
    "docs.folders",
    "docs.audit",
    "docs.reindex",
]


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed_document_types(s)
        company = create_company(s, name="Acme Corp", doc_prefix="ACME")
        perms = [Permission(key=k, name=k) for k in DOC_PERMISSION_KEYS]
        admin_role = Role(key="admin", name="Administrator")
        admin_role.permissions.extend(perms)
        viewer_role = Role(key="viewer", name="Viewer")
        viewer_role.permissions.extend([p for p in perms if p.key == "docs.view"])
        admin = User(
            email="admin@example.com",
            password_hash=generate_password_hash("pw"),
            is_active=True,
            company_id=company.id,
        )
        admin.roles.append(admin_role)
        approver = User(
            email="approver@example.com",
            password_hash=generate_password_hash("pw"),
            is_active=True,
            company_id=company.id,
        )
        approver.roles.append(admin_role)
        viewer = User(
            email="viewer@example.com",
            password_hash=generate_password_hash("pw"),
            is_active=True,
            company_id=company.id,
        )
        viewer.roles.append(viewer_role)
        s.add_all(perms + [admin_role, viewer_role, admin, approver, viewer])

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def company_id(app):
    with session_scope(app) as s:
        return s.scalar(select(Company.id).where(Company.doc_prefix == "ACME"))
