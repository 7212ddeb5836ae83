"""
Audit-evidence linking.

Documents carry the set of audit-framework elements (1-14) they serve as evidence
for in Document.audit_elements. Elements get there manually or through the
confidence-scored detector below; evidence reports then measure coverage per element.

Scoring (0-100):
- document type maps to the element: 60
- title keywords: +10 each on an existing hit, otherwise 40 + 10 per keyword
- two or more content keywords: +15 on an existing hit, otherwise 50
- text references other control numbers: element 14 at 40
All sums are capped at 100.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.dcms.audit import record_event
from app.dcms.utils import iso

from .errors import PreconditionFailedError
from .lifecycle import append_audit_entry, flush_or_conflict, load_document
from .models import Document
from .text_utils import find_control_numbers

if TYPE_CHECKING:
    from app.dcms.models import User

logger = logging.getLogger(__name__)

AUDIT_ELEMENT_NAMES: dict[int, str] = {
    1: "Health & Safety Policy",
    2: "Hazard Assessment",
    3: "Safe Work Practices",
    4: "Safe Job Procedures",
    5: "Company Safety Rules",
    6: "Personal Protective Equipment",
    7: "Preventative Maintenance",
    8: "Training & Communication",
    9: "Workplace Inspections",
    10: "Incident Investigation",
    11: "Emergency Preparedness",
    12: "Statistics & Records",
    13: "Legislation & Compliance",
    14: "Management Review",
}

DOCUMENT_TYPE_AUDIT_ELEMENTS: dict[str, tuple[int, ...]] = {
    "POL": (1, 5, 13),
    "SWP": (3, 4),
    "FRM": (2, 9, 10, 12),
    "SJP": (4,),
    "MAN": (1, 8),
    "PLN": (11,),
    "RPT": (10, 12, 14),
    "CHK": (6, 7, 9),
    "REG": (6, 7, 12),
    "TRN": (8,),
    "MIN": (14,),
    "AUD": (9, 14),
    "CRT": (8, 13),
    "DWG": (4, 7),
    "PRC": (1, 3),
    "WI": (3, 4),
}

AUDIT_ELEMENT_KEYWORDS: dict[int, tuple[str, ...]] = {
    1: ("policy", "health", "safety", "management", "commitment", "objective"),
    2: ("hazard", "risk", "assessment", "identification", "jha", "job hazard"),
    3: ("safe work", "practice", "procedure", "swp", "standard"),
    4: ("job procedure", "sjp", "task", "step", "lockout", "tagout"),
    5: ("rule", "discipline", "violation", "enforcement", "conduct"),
    6: ("ppe", "protective", "equipment", "helmet", "gloves", "safety glasses"),
    7: ("maintenance", "equipment", "inspection", "preventive", "repair"),
    8: ("training", "orientation", "competency", "toolbox", "education"),
    9: ("inspection", "workplace", "audit", "walkthrough", "checklist"),
    10: ("incident", "accident", "investigation", "near miss", "injury"),
    11: ("emergency", "evacuation", "drill", "fire", "first aid", "response"),
    12: ("statistics", "record", "log", "data", "tracking", "metrics"),
    13: ("legislation", "regulation", "compliance", "legal", "osha", "wsib"),
    14: ("review", "management", "annual", "meeting", "continuous improvement"),
}

TYPE_HIT_CONFIDENCE = 60
TITLE_KEYWORD_BONUS = 10
TITLE_ONLY_BASE = 40
CONTENT_KEYWORD_BONUS = 15
CONTENT_ONLY_CONFIDENCE = 50
CONTENT_MIN_KEYWORDS = 2
REFERENCE_CONFIDENCE = 40
REFERENCE_ELEMENT = 14
MAX_CONFIDENCE = 100

DEFAULT_MIN_LINK_CONFIDENCE = 50
DEFAULT_MIN_SUGGEST_CONFIDENCE = 40
CRITICAL_OVERDUE_DAYS = 90

EVIDENCE_STATUSES = ("active", "approved")


def _check_element(element: int, *, entity_id: str | None = None, operation: str) -> int:
    try:
        n = int(element)
    except (TypeError, ValueError):
        raise PreconditionFailedError(f"Invalid audit element: {element!r}", entity_id=entity_id, operation=operation) from None
    if n not in AUDIT_ELEMENT_NAMES:
        raise PreconditionFailedError(f"Invalid audit element: {element}", entity_id=entity_id, operation=operation)
    return n


def required_types_for_element(element: int) -> list[str]:
    return [code for code, elements in DOCUMENT_TYPE_AUDIT_ELEMENTS.items() if element in elements]


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


@dataclass
class ElementMatch:
    element: int
    confidence: int
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "element": self.element,
            "element_name": AUDIT_ELEMENT_NAMES.get(self.element),
            "confidence": self.confidence,
            "reason": self.reason,
        }


def _matched(keywords: tuple[str, ...], haystack: str) -> list[str]:
    return [kw for kw in keywords if kw in haystack]


def detect_relevant_audit_elements(document: Document, text: str | None = None) -> list[ElementMatch]:
    """Ranked element matches for a document, highest confidence first, one per element."""
    matches: list[ElementMatch] = []
    by_element: dict[int, ElementMatch] = {}

    for element in DOCUMENT_TYPE_AUDIT_ELEMENTS.get((document.document_type_code or "").upper(), ()):
        m = ElementMatch(element, TYPE_HIT_CONFIDENCE, f"Document type {document.document_type_code} maps to element {element}")
        matches.append(m)
        by_element[element] = m

    title = (document.title or "").lower()
    for element, keywords in AUDIT_ELEMENT_KEYWORDS.items():
        hits = _matched(keywords, title)
        if not hits:
            continue
        existing = by_element.get(element)
        if existing:
            existing.confidence = min(MAX_CONFIDENCE, existing.confidence + TITLE_KEYWORD_BONUS * len(hits))
            existing.reason += f"; title contains: {', '.join(hits)}"
        else:
            m = ElementMatch(
                element,
                min(MAX_CONFIDENCE, TITLE_ONLY_BASE + TITLE_KEYWORD_BONUS * len(hits)),
                f"Title contains keywords: {', '.join(hits)}",
            )
            matches.append(m)
            by_element[element] = m

    if text:
        content = text.lower()
        for element, keywords in AUDIT_ELEMENT_KEYWORDS.items():
            hits = _matched(keywords, content)
            if len(hits) < CONTENT_MIN_KEYWORDS:
                continue
            existing = by_element.get(element)
            if existing:
                existing.confidence = min(MAX_CONFIDENCE, existing.confidence + CONTENT_KEYWORD_BONUS)
                existing.reason += "; content contains relevant keywords"
            else:
                m = ElementMatch(element, CONTENT_ONLY_CONFIDENCE, f"Content contains keywords: {', '.join(hits[:3])}")
                matches.append(m)
                by_element[element] = m

        own = (document.control_number or "").upper()
        references = [cn for cn in find_control_numbers(text) if cn != own]
        if references:
            matches.append(
                ElementMatch(REFERENCE_ELEMENT, REFERENCE_CONFIDENCE, f"References {len(references)} other documents")
            )

    # stable sort keeps the earlier (more specific) reason on ties
    ranked = sorted(matches, key=lambda m: -m.confidence)
    seen: set[int] = set()
    out = []
    for m in ranked:
        if m.element in seen:
            continue
        seen.add(m.element)
        out.append(m)
    return out


# ---------------------------------------------------------------------------
# Linking
# ---------------------------------------------------------------------------


def _set_elements(s: Session, doc: Document, elements: list[int], *, user: User | None, action: str, details: dict) -> None:
    doc.audit_elements = sorted(set(elements))
    doc.updated_by_user_id = user.id if user else None
    append_audit_entry(doc, action=action, user=user, details=details)
    flush_or_conflict(s, entity_id=doc.id, operation=action)


def auto_link_document(
    s: Session,
    document_id: str,
    *,
    text: str | None = None,
    min_confidence: int = DEFAULT_MIN_LINK_CONFIDENCE,
    user: User | None = None,
) -> list[ElementMatch]:
    """
    Link every detected element at or above min_confidence. The stored set only
    grows by union, so running this twice changes nothing the second time.
    Returns the qualifying matches.
    """
    doc = load_document(s, document_id, operation="auto_link_document", refresh=True)
    detected = detect_relevant_audit_elements(doc, text if text is not None else doc.extracted_text)
    qualifying = [m for m in detected if m.confidence >= min_confidence]

    current = set(doc.audit_elements or [])
    added = sorted({m.element for m in qualifying} - current)
    if added:
        _set_elements(
            s,
            doc,
            list(current) + added,
            user=user,
            action="audit_elements_auto_linked",
            details={"added": added, "min_confidence": min_confidence},
        )
        record_event(
            s,
            actor=user,
            action="doc_control.evidence.auto_link",
            entity_type="Document",
            entity_id=doc.id,
            metadata={"control_number": doc.control_number, "added": added, "min_confidence": min_confidence},
        )
    return qualifying


def link_document_to_element(s: Session, document_id: str, element: int, *, user: User | None) -> Document:
    element = _check_element(element, entity_id=document_id, operation="link_document_to_element")
    doc = load_document(s, document_id, operation="link_document_to_element", refresh=True)
    current = list(doc.audit_elements or [])
    if element in current:
        return doc
    _set_elements(s, doc, current + [element], user=user, action="audit_element_linked", details={"element": element})
    record_event(
        s,
        actor=user,
        action="doc_control.evidence.link",
        entity_type="Document",
        entity_id=doc.id,
        metadata={"control_number": doc.control_number, "element": element},
    )
    return doc


def unlink_document_from_element(s: Session, document_id: str, element: int, *, user: User | None) -> Document:
    element = _check_element(element, entity_id=document_id, operation="unlink_document_from_element")
    doc = load_document(s, document_id, operation="unlink_document_from_element", refresh=True)
    current = list(doc.audit_elements or [])
    if element not in current:
        return doc
    _set_elements(
        s, doc, [e for e in current if e != element], user=user, action="audit_element_unlinked", details={"element": element}
    )
    record_event(
        s,
        actor=user,
        action="doc_control.evidence.unlink",
        entity_type="Document",
        entity_id=doc.id,
        metadata={"control_number": doc.control_number, "element": element},
    )
    return doc


def documents_for_element(s: Session, company_id: str, element: int) -> list[Document]:
    """Active/approved documents explicitly linked to an element."""
    element = _check_element(element, operation="documents_for_element")
    stmt = (
        select(Document)
        .where(Document.company_id == company_id, Document.status.in_(EVIDENCE_STATUSES))
        .order_by(Document.control_number.asc())
    )
    return [d for d in s.scalars(stmt) if element in (d.audit_elements or [])]


# ---------------------------------------------------------------------------
# Validation & reports
# ---------------------------------------------------------------------------


@dataclass
class ValidationIssue:
    type: str  # obsolete | wrong_status | expired_review
    message: str
    severity: str  # critical | warning

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "message": self.message, "severity": self.severity}


@dataclass
class DocumentValidation:
    document: Document
    is_valid: bool
    issues: list[ValidationIssue] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document.id,
            "control_number": self.document.control_number,
            "is_valid": self.is_valid,
            "issues": [i.to_dict() for i in self.issues],
        }


def validate_document_for_audit(document: Document, *, today: date | None = None) -> DocumentValidation:
    today = today or date.today()
    issues: list[ValidationIssue] = []

    if document.status == "obsolete":
        issues.append(ValidationIssue("obsolete", "Document is obsolete and should not be used as evidence", "critical"))
    elif document.status == "archived":
        issues.append(ValidationIssue("obsolete", "Document has been archived", "critical"))
    elif document.status not in EVIDENCE_STATUSES:
        issues.append(
            ValidationIssue(
                "wrong_status",
                f'Document status is "{document.status}"; only active documents should be used as evidence',
                "warning",
            )
        )

    if document.next_review_date and document.next_review_date < today:
        days_overdue = (today - document.next_review_date).days
        issues.append(
            ValidationIssue(
                "expired_review",
                f"Document review is overdue by {days_overdue} days",
                "critical" if days_overdue > CRITICAL_OVERDUE_DAYS else "warning",
            )
        )

    return DocumentValidation(
        document=document,
        is_valid=not any(i.severity == "critical" for i in issues),
        issues=issues,
    )


@dataclass
class ElementEvidenceReport:
    element: int
    element_name: str
    required_types: list[str]
    found_documents: list[Document]
    missing_types: list[str]
    invalid_documents: list[DocumentValidation]
    coverage_percentage: float
    status: str  # complete | partial | missing

    def to_dict(self) -> dict[str, Any]:
        return {
            "element": self.element,
            "element_name": self.element_name,
            "required_types": self.required_types,
            "found_documents": [
                {"id": d.id, "control_number": d.control_number, "document_type_code": d.document_type_code, "status": d.status}
                for d in self.found_documents
            ],
            "missing_types": self.missing_types,
            "invalid_documents": [v.to_dict() for v in self.invalid_documents],
            "coverage_percentage": self.coverage_percentage,
            "status": self.status,
        }


def generate_element_evidence_report(
    s: Session,
    company_id: str,
    element: int,
    *,
    today: date | None = None,
    required_types: list[str] | None = None,
) -> ElementEvidenceReport:
    """
    Merge linked documents with active documents of the element's required types,
    validate each, and measure type coverage.
    required_types overrides the default type mapping for the element.
    """
    element = _check_element(element, operation="generate_element_evidence_report")
    today = today or date.today()
    required = [t.upper() for t in required_types] if required_types is not None else required_types_for_element(element)

    found: dict[str, Document] = {d.id: d for d in documents_for_element(s, company_id, element)}
    if required:
        typed = s.scalars(
            select(Document)
            .where(
                Document.company_id == company_id,
                Document.document_type_code.in_(required),
                Document.status == "active",
            )
            .order_by(Document.control_number.asc())
        )
        for d in typed:
            found.setdefault(d.id, d)
    documents = list(found.values())

    found_types = {d.document_type_code for d in documents}
    missing = [t for t in required if t not in found_types]
    validations = [validate_document_for_audit(d, today=today) for d in documents]
    invalid = [v for v in validations if not v.is_valid or v.issues]
    valid_count = sum(1 for v in validations if v.is_valid)

    coverage = (len(required) - len(missing)) / len(required) * 100 if required else 100.0
    if valid_count == 0:
        status = "missing"
    elif coverage < 100 or invalid:
        status = "partial"
    else:
        status = "complete"

    return ElementEvidenceReport(
        element=element,
        element_name=AUDIT_ELEMENT_NAMES[element],
        required_types=required,
        found_documents=documents,
        missing_types=missing,
        invalid_documents=invalid,
        coverage_percentage=coverage,
        status=status,
    )


@dataclass
class FullEvidenceReport:
    elements: list[ElementEvidenceReport]
    overall_coverage: float
    critical_issues: list[str]
    generated_on: date

    def to_dict(self) -> dict[str, Any]:
        return {
            "elements": [r.to_dict() for r in self.elements],
            "overall_coverage": self.overall_coverage,
            "critical_issues": self.critical_issues,
            "generated_on": iso(self.generated_on),
        }


def generate_full_evidence_report(s: Session, company_id: str, *, today: date | None = None) -> FullEvidenceReport:
    today = today or date.today()
    reports: list[ElementEvidenceReport] = []
    critical: list[str] = []
    for element in sorted(AUDIT_ELEMENT_NAMES):
        report = generate_element_evidence_report(s, company_id, element, today=today)
        reports.append(report)
        if report.status == "missing":
            critical.append(f"Element {element} ({report.element_name}): No valid documents found")
        for v in report.invalid_documents:
            messages = [i.message for i in v.issues if i.severity == "critical"]
            if messages:
                critical.append(f"Element {element}: {v.document.control_number} - {'; '.join(messages)}")

    overall = sum(r.coverage_percentage for r in reports) / len(reports)
    logger.info("Evidence report for company %s: coverage %.1f%%, %s critical issue(s)", company_id, overall, len(critical))
    return FullEvidenceReport(elements=reports, overall_coverage=overall, critical_issues=critical, generated_on=today)


@dataclass
class EvidenceCandidate:
    document: Document
    element: int
    confidence: int
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document.id,
            "control_number": self.document.control_number,
            "title": self.document.title,
            "element": self.element,
            "confidence": self.confidence,
            "reason": self.reason,
        }


def find_potential_evidence(
    s: Session,
    company_id: str,
    element: int,
    *,
    min_confidence: int = DEFAULT_MIN_SUGGEST_CONFIDENCE,
) -> list[EvidenceCandidate]:
    """Indexed active/approved documents that look relevant to an element but are not linked to it yet."""
    element = _check_element(element, operation="find_potential_evidence")
    stmt = select(Document).where(
        Document.company_id == company_id,
        Document.status.in_(EVIDENCE_STATUSES),
        Document.extracted_text.is_not(None),
    )
    out: list[EvidenceCandidate] = []
    for doc in s.scalars(stmt):
        if element in (doc.audit_elements or []):
            continue
        hit = next((m for m in detect_relevant_audit_elements(doc, doc.extracted_text) if m.element == element), None)
        if hit and hit.confidence >= min_confidence:
            out.append(EvidenceCandidate(document=doc, element=element, confidence=hit.confidence, reason=hit.reason))
    out.sort(key=lambda c: (-c.confidence, c.document.control_number))
    return out
