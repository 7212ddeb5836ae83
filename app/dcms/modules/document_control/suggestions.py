"""
Metadata suggestions for incoming files.

Given a filename and (optionally) the extracted text, propose a title, document
type, tags, audience, audit elements and a control number found in the text.
Nothing is written; the upload form shows the suggestion and the user decides.

Confidence (0-100):
- filename matches a rule: 40
- content rule decides the type (no filename match): 30
- content carries audit-element keywords: 15
- more than one audience detected: 10
- a control number is found: 20
"""
from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.dcms.utils import dedupe

from .evidence import (
    AUDIT_ELEMENT_KEYWORDS,
    CONTENT_MIN_KEYWORDS,
    DEFAULT_MIN_LINK_CONFIDENCE,
    detect_relevant_audit_elements,
)
from .folders import suggest_folder_for_document
from .models import Document
from .text_utils import extract_keywords, find_control_numbers

DEFAULT_SUGGESTED_TYPE = "FRM"
UNTITLED = "Untitled Document"
MAX_TAGS = 10
KEYWORD_TAGS = 5

FILENAME_MATCH_CONFIDENCE = 40
CONTENT_TYPE_CONFIDENCE = 30
CONTENT_ELEMENTS_CONFIDENCE = 15
AUDIENCE_CONFIDENCE = 10
CONTROL_NUMBER_CONFIDENCE = 20


@dataclass(frozen=True)
class FilenameRule:
    pattern: re.Pattern[str]
    document_type: str
    tags: tuple[str, ...]


@dataclass(frozen=True)
class ContentRule:
    keywords: tuple[str, ...]
    document_type: str
    tags: tuple[str, ...]


def _rule(pattern: str, document_type: str, *tags: str) -> FilenameRule:
    return FilenameRule(re.compile(pattern), document_type, tags)


# First match wins, so specific rules sit above the generic ones of the same type.
FILENAME_RULES: tuple[FilenameRule, ...] = (
    _rule(r"\bh\s*&\s*s\s*policy\b|health.*safety.*policy", "POL", "health-safety", "policy"),
    _rule(r"drug.*alcohol|\bsubstance", "POL", "drug-alcohol", "policy"),
    _rule(r"disciplin", "POL", "disciplinary", "policy"),
    _rule(r"\bpolic(?:y|ies)\b", "POL", "policy"),
    _rule(r"\bswps?\b|safe\s*work", "SWP", "swp", "procedure"),
    _rule(r"\bsjps?\b|safe\s*job", "SJP", "sjp", "procedure"),
    _rule(r"\bsops?\b|standard\s*operating", "PRC", "sop", "procedure"),
    _rule(r"work\s*instruction", "WI", "work-instruction"),
    _rule(r"\bforms?\b", "FRM", "form"),
    _rule(r"check\s*list", "CHK", "checklist"),
    _rule(r"inspection", "CHK", "inspection", "checklist"),
    _rule(r"incident|accident", "FRM", "incident", "form"),
    _rule(r"\bjha\b|job\s*hazard", "FRM", "jha", "hazard"),
    _rule(r"toolbox|tailgate", "FRM", "toolbox", "meeting"),
    _rule(r"training|orientation", "TRN", "training"),
    _rule(r"competenc", "TRN", "competency", "training"),
    _rule(r"emergency|\beap\b|\berp\b", "PLN", "emergency", "plan"),
    _rule(r"evacuation", "PLN", "evacuation", "emergency"),
    _rule(r"rescue", "PLN", "rescue", "emergency"),
    _rule(r"\b(?:h\s*&\s*s|ohs)\s*manual\b|health.*safety.*manual", "MAN", "health-safety", "manual"),
    _rule(r"manual|handbook", "MAN", "manual"),
    _rule(r"audit|assessment", "AUD", "audit"),
    _rule(r"certificat", "CRT", "certificate"),
    _rule(r"report", "RPT", "report"),
    _rule(r"minutes|meeting", "MIN", "meeting", "minutes"),
    _rule(r"drawing|diagram|schematic", "DWG", "drawing"),
    _rule(r"register|\blogs?\b", "REG", "register"),
)

# Every keyword of a rule must appear in the text.
CONTENT_RULES: tuple[ContentRule, ...] = (
    ContentRule(("lockout", "tagout", "loto"), "SWP", ("lockout-tagout", "electrical")),
    ContentRule(("confined space", "permit required"), "SWP", ("confined-space",)),
    ContentRule(("fall protection", "fall arrest", "guardrail"), "SWP", ("fall-protection", "working-at-heights")),
    ContentRule(("excavation", "trenching", "shoring"), "SWP", ("excavation",)),
    ContentRule(("ppe", "personal protective equipment"), "SWP", ("ppe",)),
    ContentRule(("hazard assessment", "risk assessment"), "FRM", ("hazard-assessment",)),
    ContentRule(("whmis", "sds", "msds", "material safety"), "TRN", ("whmis", "chemical")),
    ContentRule(("first aid", "cpr", "aed"), "TRN", ("first-aid", "training")),
    ContentRule(("fire extinguisher", "fire drill", "fire warden"), "PLN", ("fire", "emergency")),
    ContentRule(("muster point", "assembly area"), "PLN", ("emergency", "evacuation")),
    ContentRule(("management commitment", "senior management"), "POL", ("management", "commitment")),
    ContentRule(("roles and responsibilities", "accountabilities"), "POL", ("responsibilities",)),
    ContentRule(("joint health and safety", "jhsc", "health and safety committee"), "MIN", ("jhsc", "committee")),
)

APPLICABLE_TO_KEYWORDS: MappingProxyType[str, tuple[str, ...]] = MappingProxyType(
    {
        "all_workers": ("all workers", "all employees", "all personnel", "everyone"),
        "supervisors": ("supervisor", "foreman", "lead hand", "team lead", "manager"),
        "management": ("management", "executive", "senior", "director", "officer"),
        "contractors": ("contractor", "subcontractor", "third party", "vendor"),
        "visitors": ("visitor", "guest", "tour"),
        "office_workers": ("office", "administrative", "clerical"),
        "field_workers": ("field", "site", "outdoor", "construction"),
        "drivers": ("driver", "operator", "vehicle", "transportation"),
        "heavy_equipment": ("heavy equipment", "crane", "loader", "excavator", "forklift"),
    }
)

SAFETY_TAG_KEYWORDS: tuple[str, ...] = (
    "electrical", "chemical", "mechanical", "biological",
    "ergonomic", "noise", "vibration", "radiation",
    "concrete", "steel", "welding", "grinding",
    "lifting", "rigging", "scaffolding", "ladder",
    "hot work", "cold work", "night work",
    "mobile equipment", "vehicle", "truck", "crane",
)

_EXTENSION_RE = re.compile(r"\.[^/.]+$")
_SEPARATORS_RE = re.compile(r"[-_.]+")
_CONTROL_NUMBER_IN_NAME_RE = re.compile(r"\b[A-Z]{2,6}-[A-Z]{2,3}-\d{3,4}\b", re.IGNORECASE)
_DATE_RE = re.compile(r"\b(?:\d{4}-\d{2}-\d{2}|\d{2}-\d{2}-\d{4})\b")
_REVISION_RE = re.compile(r"\b(?:revision|rev)\s*\d*\b", re.IGNORECASE)
_VERSION_RE = re.compile(r"\bv?\d+(?:\.\d+)*\b", re.IGNORECASE)


@dataclass
class SuggestedMetadata:
    filename: str
    title: str
    document_type_code: str = DEFAULT_SUGGESTED_TYPE
    tags: list[str] = field(default_factory=list)
    audit_elements: list[int] = field(default_factory=list)
    applicable_to: list[str] = field(default_factory=lambda: ["all_workers"])
    confidence: int = 0
    extracted_control_number: str | None = None
    folder_id: str | None = None
    folder_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "title": self.title,
            "document_type_code": self.document_type_code,
            "tags": self.tags,
            "audit_elements": self.audit_elements,
            "applicable_to": self.applicable_to,
            "confidence": self.confidence,
            "extracted_control_number": self.extracted_control_number,
            "folder_id": self.folder_id,
            "folder_path": self.folder_path,
        }


def _stem(filename: str) -> str:
    # Underscores are word characters; spaces let \b see the token edges.
    return _EXTENSION_RE.sub("", (filename or "").strip()).replace("_", " ")


def title_from_filename(filename: str) -> str:
    """'ACME-SWP-004_fall-protection_v2.1.pdf' -> 'Fall Protection'."""
    title = _stem(filename)
    title = _CONTROL_NUMBER_IN_NAME_RE.sub(" ", title)
    title = _DATE_RE.sub(" ", title)
    title = _SEPARATORS_RE.sub(" ", title)
    title = _REVISION_RE.sub(" ", title)
    title = _VERSION_RE.sub(" ", title)
    words = [w[:1].upper() + w[1:].lower() for w in title.split()]
    return " ".join(words) or UNTITLED


def match_filename_rule(filename: str) -> FilenameRule | None:
    name = _SEPARATORS_RE.sub(" ", _stem(filename)).lower()
    for rule in FILENAME_RULES:
        if rule.pattern.search(name):
            return rule
    return None


def match_content_rules(text: str) -> list[ContentRule]:
    lower = text.lower()
    return [rule for rule in CONTENT_RULES if all(kw in lower for kw in rule.keywords)]


def detect_applicable_to(text: str) -> list[str]:
    lower = text.lower()
    return [group for group, keywords in APPLICABLE_TO_KEYWORDS.items() if any(kw in lower for kw in keywords)]


def _safety_tags(filename: str, text: str | None) -> list[str]:
    combined = f"{filename} {text or ''}".lower()
    return [kw.replace(" ", "-") for kw in SAFETY_TAG_KEYWORDS if kw in combined]


def _has_element_keywords(text: str) -> bool:
    lower = text.lower()
    return any(
        sum(1 for kw in keywords if kw in lower) >= CONTENT_MIN_KEYWORDS for keywords in AUDIT_ELEMENT_KEYWORDS.values()
    )


def _pick_control_number(filename: str, text: str | None, existing: Iterable[str] | None) -> str | None:
    found = dedupe(find_control_numbers(_stem(filename)) + find_control_numbers(text))
    if not found:
        return None
    known = {cn.upper() for cn in existing or ()}
    for cn in found:
        if cn in known:
            return cn
    return found[0]


def suggest_metadata(
    filename: str,
    text: str | None = None,
    existing_control_numbers: Iterable[str] | None = None,
) -> SuggestedMetadata:
    suggestion = SuggestedMetadata(filename=filename, title=title_from_filename(filename))
    confidence = 0
    tags: list[str] = []
    applicable_to = ["all_workers"]

    rule = match_filename_rule(filename)
    if rule is not None:
        suggestion.document_type_code = rule.document_type
        tags.extend(rule.tags)
        confidence += FILENAME_MATCH_CONFIDENCE

    if text:
        content_rules = match_content_rules(text)
        if content_rules and rule is None:
            suggestion.document_type_code = content_rules[0].document_type
            confidence += CONTENT_TYPE_CONFIDENCE
        for content_rule in content_rules:
            tags.extend(content_rule.tags)

        if _has_element_keywords(text):
            confidence += CONTENT_ELEMENTS_CONFIDENCE

        audience = detect_applicable_to(text)
        applicable_to = dedupe(applicable_to + audience)
        if len(audience) > 1:
            confidence += AUDIENCE_CONFIDENCE

    suggestion.extracted_control_number = _pick_control_number(filename, text, existing_control_numbers)
    if suggestion.extracted_control_number:
        confidence += CONTROL_NUMBER_CONFIDENCE

    tags.extend(_safety_tags(filename, text))
    tags.extend(extract_keywords(text, KEYWORD_TAGS))
    suggestion.tags = dedupe(tags)[:MAX_TAGS]
    suggestion.applicable_to = applicable_to

    # Same detector and threshold as auto-linking, so accepted suggestions agree with it.
    candidate = Document(
        document_type_code=suggestion.document_type_code,
        title=suggestion.title,
        control_number=suggestion.extracted_control_number,
    )
    suggestion.audit_elements = sorted(
        m.element for m in detect_relevant_audit_elements(candidate, text) if m.confidence >= DEFAULT_MIN_LINK_CONFIDENCE
    )
    suggestion.confidence = min(100, confidence)
    return suggestion


def batch_suggest_metadata(
    files: Iterable[tuple[str, str | None]],
    existing_control_numbers: Iterable[str] | None = None,
) -> dict[str, SuggestedMetadata]:
    """Suggestions keyed by filename; a repeated filename keeps the last one."""
    existing = list(existing_control_numbers or ())
    return {filename: suggest_metadata(filename, text, existing) for filename, text in files}


def suggest_metadata_for_company(
    s: Session,
    company_id: str,
    files: Iterable[tuple[str, str | None]],
) -> dict[str, SuggestedMetadata]:
    """Batch suggestions that also prefer the company's own control numbers and propose a folder."""
    existing = list(s.scalars(select(Document.control_number).where(Document.company_id == company_id)))
    suggestions = batch_suggest_metadata(files, existing)
    folders: dict[str, Any] = {}
    for suggestion in suggestions.values():
        code = suggestion.document_type_code
        if code not in folders:
            folders[code] = suggest_folder_for_document(s, company_id, code)
        folder = folders[code]
        if folder is not None:
            suggestion.folder_id = folder.id
            suggestion.folder_path = folder.path
    return suggestions
