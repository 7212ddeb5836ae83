"""
JSON shapes for the document-control API.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import inspect

from .models import Document


def row_to_dict(obj: Any, *, exclude: frozenset[str] | set[str] = frozenset()) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for attr in inspect(obj).mapper.column_attrs:
        if attr.key in exclude:
            continue
        value = getattr(obj, attr.key)
        if isinstance(value, (date, datetime)):
            value = value.isoformat()
        out[attr.key] = value
    return out


_DOCUMENT_HEAVY_FIELDS = frozenset({"extracted_text", "audit_trail", "row_version"})


def document_to_dict(doc: Document, *, detail: bool = False) -> dict[str, Any]:
    """List views omit the extracted text and the audit trail."""
    data = row_to_dict(doc, exclude=frozenset() if detail else _DOCUMENT_HEAVY_FIELDS)
    data["is_terminal"] = doc.is_terminal
    if detail:
        data["document_type"] = row_to_dict(doc.document_type) if doc.document_type else None
    return data


def rows_to_list(rows, **kwargs) -> list[dict[str, Any]]:
    return [row_to_dict(r, **kwargs) for r in rows]
