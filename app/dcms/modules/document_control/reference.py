"""
Reference data: companies and document types.
"""
from __future__ import annotations

import re
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.dcms.audit import record_event

from .constants import DEFAULT_COMPANY_PREFIX, DEFAULT_DOCUMENT_TYPES, DEFAULT_PREFIX_FORMAT
from .errors import NotFoundError, PreconditionFailedError
from .models import Company, DocumentType

if TYPE_CHECKING:
    from app.dcms.models import User


def company_initials(name: str | None) -> str:
    """First letter of each word, uppercase, at most 4 characters."""
    words = re.findall(r"[A-Za-z0-9]+", name or "")
    initials = "".join(w[0] for w in words).upper()[:4]
    return initials or DEFAULT_COMPANY_PREFIX


def company_prefix(company: Company | None) -> str:
    if company is None:
        return DEFAULT_COMPANY_PREFIX
    if company.doc_prefix and company.doc_prefix.strip():
        return company.doc_prefix.strip().upper()
    return company_initials(company.name)


def create_company(s: Session, *, name: str, doc_prefix: str | None = None, user: User | None = None) -> Company:
    name = (name or "").strip()
    if not name:
        raise PreconditionFailedError("Company name is required.", operation="create_company")
    company = Company(name=name, doc_prefix=doc_prefix.strip().upper() if doc_prefix else None)
    s.add(company)
    s.flush()
    record_event(
        s,
        actor=user,
        action="doc_control.company.create",
        entity_type="Company",
        entity_id=company.id,
        metadata={"name": company.name, "prefix": company_prefix(company)},
    )
    return company


def get_company(s: Session, company_id: str) -> Company:
    company = s.get(Company, company_id)
    if not company:
        raise NotFoundError(f"Company not found: {company_id}", entity_id=company_id, operation="get_company")
    return company


def list_document_types(s: Session, *, include_inactive: bool = False) -> list[DocumentType]:
    stmt = select(DocumentType).order_by(DocumentType.code.asc())
    if not include_inactive:
        stmt = stmt.where(DocumentType.is_active.is_(True))
    return list(s.scalars(stmt))


def get_document_type(s: Session, code: str) -> DocumentType:
    code = (code or "").strip().upper()
    dt = s.get(DocumentType, code)
    if not dt or not dt.is_active:
        raise NotFoundError(f"Unknown document type: {code}", entity_id=code, operation="get_document_type")
    return dt


def seed_document_types(s: Session) -> int:
    """Insert any missing standard document types. Existing rows are left untouched."""
    existing = set(s.scalars(select(DocumentType.code)))
    added = 0
    for code, (name, requires_approval, roles, review_months) in DEFAULT_DOCUMENT_TYPES.items():
        if code in existing:
            continue
        s.add(
            DocumentType(
                code=code,
                name=name,
                requires_approval=requires_approval,
                approval_roles=list(roles),
                review_frequency_months=review_months,
                prefix_format=DEFAULT_PREFIX_FORMAT,
                is_active=True,
            )
        )
        added += 1
    s.flush()
    return added
