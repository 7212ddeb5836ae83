"""
Control-number allocation.

Sequence exclusivity is delegated to the database: a single upsert-increment
statement per allocation, so concurrent callers can never receive the same value.
"""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.dcms.utils import utcnow

from .errors import PreconditionFailedError
from .models import DocumentSequence
from .reference import company_prefix, get_company, get_document_type

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


def next_sequence_value(s: Session, company_id: str, type_code: str) -> int:
    """Atomically increment and return the (company, type) counter."""
    dialect = s.get_bind().dialect.name
    now = utcnow()
    insert_fn = _UPSERT_DIALECTS.get(dialect)
    if insert_fn is not None:
        table = DocumentSequence.__table__
        stmt = (
            insert_fn(table)
            .values(company_id=company_id, document_type_code=type_code, current_sequence=1, updated_at=now)
            .on_conflict_do_update(
                index_elements=["company_id", "document_type_code"],
                set_={"current_sequence": table.c.current_sequence + 1, "updated_at": now},
            )
            .returning(table.c.current_sequence)
        )
        return int(s.execute(stmt).scalar_one())

    # Other backends: row lock on the counter.
    row = s.execute(
        select(DocumentSequence)
        .where(DocumentSequence.company_id == company_id, DocumentSequence.document_type_code == type_code)
        .with_for_update()
    ).scalar_one_or_none()
    if row is None:
        row = DocumentSequence(company_id=company_id, document_type_code=type_code, current_sequence=0)
        s.add(row)
    row.current_sequence += 1
    row.updated_at = now
    s.flush()
    return row.current_sequence


def format_control_number(prefix_format: str, *, prefix: str, type_code: str, sequence: int) -> str:
    try:
        return prefix_format.format(company=prefix, type=type_code, sequence=f"{sequence:03d}")
    except (KeyError, IndexError, ValueError) as e:
        raise PreconditionFailedError(
            f"Invalid control-number format {prefix_format!r}: {e}",
            entity_id=type_code,
            operation="format_control_number",
        ) from e


def allocate_control_number(s: Session, company_id: str, type_code: str) -> tuple[str, int]:
    """
    Returns (control_number, sequence_number), e.g. ("ACME-POL-007", 7).
    """
    doc_type = get_document_type(s, type_code)
    company = get_company(s, company_id)
    seq = next_sequence_value(s, company.id, doc_type.code)
    control_number = format_control_number(
        doc_type.prefix_format,
        prefix=company_prefix(company),
        type_code=doc_type.code,
        sequence=seq,
    )
    logger.debug("Allocated control number %s (company=%s)", control_number, company.id)
    return control_number, seq
