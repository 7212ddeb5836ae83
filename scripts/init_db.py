import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.dcms.models import Permission, Role, User
from app.dcms.modules.document_control.folders import initialize_company_folders
from app.dcms.modules.document_control.models import Company
from app.dcms.modules.document_control.reference import create_company, seed_document_types
from scripts._db_utils import database_url_from_env, script_session

DOC_PERMISSIONS: tuple[tuple[str, str], ...] = (
    ("docs.view", "Docs: view"),
    ("docs.create", "Docs: create"),
    ("docs.edit", "Docs: edit"),
    ("docs.approve", "Docs: approve"),
    ("docs.review", "Docs: periodic review"),
    ("docs.distribute", "Docs: distribute and track acknowledgment"),
    ("docs.archive", "Docs: archive"),
    ("docs.obsolete", "Docs: obsolete / supersede"),
    ("docs.folders", "Docs: manage folders"),
    ("docs.audit", "Docs: audit evidence"),
    ("docs.reindex", "Docs: re-index text"),
)


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions, admin role/user, and document types in an idempotent way.
    Does NOT overwrite an existing admin user's password.

    When COMPANY_NAME is set, also ensures that company exists, binds the admin to it
    and creates its default folder tree.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    company_name = (os.environ.get("COMPANY_NAME") or "").strip()
    company_prefix = (os.environ.get("COMPANY_DOC_PREFIX") or "").strip() or None

    db_url = database_url or database_url_from_env()

    with script_session(db_url) as s:
        def ensure_perm(key: str, name: str) -> Permission:
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            return p

        perms = [ensure_perm(key, name) for key, name in DOC_PERMISSIONS]

        role_admin = s.query(Role).filter(Role.key == "admin").one_or_none()
        if not role_admin:
            role_admin = Role(key="admin", name="Administrator")
            s.add(role_admin)
        for p in perms:
            if p not in role_admin.permissions:
                role_admin.permissions.append(p)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(email=admin_email, password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if role_admin not in user.roles:
            user.roles.append(role_admin)
        s.flush()

        added_types = seed_document_types(s)

        if company_name:
            company = s.query(Company).filter(Company.name == company_name).one_or_none()
            if not company:
                company = create_company(s, name=company_name, doc_prefix=company_prefix, user=user)
            if not user.company_id:
                user.company_id = company.id
            created_folders = initialize_company_folders(s, company.id, user=user)
            print(f"Company: {company.name} ({company.id}); folders created: {created_folders}")

    print("Initialized database (seed_only).")
    print(f"Document types added: {added_types}")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
