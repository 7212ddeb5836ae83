"""
Document-control reference tables and behavioural constants.
"""
from __future__ import annotations

DOCUMENT_STATUSES = (
    "draft",
    "pending_review",
    "under_review",
    "approved",
    "active",
    "under_revision",
    "obsolete",
    "archived",
)
TERMINAL_STATUSES = frozenset({"obsolete", "archived"})

# Allowed lifecycle transitions. Terminal states have none.
STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    "draft": frozenset({"pending_review", "approved", "under_revision", "obsolete", "archived"}),
    "pending_review": frozenset({"under_review", "approved", "draft", "under_revision", "obsolete", "archived"}),
    "under_review": frozenset({"approved", "draft", "under_revision", "obsolete", "archived"}),
    "approved": frozenset({"active", "draft", "under_revision", "obsolete", "archived"}),
    "active": frozenset({"under_revision", "obsolete", "archived"}),
    "under_revision": frozenset({"pending_review", "approved", "draft", "obsolete", "archived"}),
    "obsolete": frozenset(),
    "archived": frozenset(),
}

CHANGE_TYPES = ("initial", "minor_edit", "major_revision", "complete_rewrite")

APPROVAL_STATUSES = ("pending", "approved", "rejected", "delegated", "skipped")
APPROVAL_DECISIONS = frozenset({"approved", "rejected", "skipped"})

REVIEW_STATUSES = ("scheduled", "in_progress", "completed", "overdue", "cancelled")
REVIEW_OUTCOMES = ("no_change", "minor_update", "major_revision", "obsolete", "extend_review")
REVIEW_TYPES = ("scheduled", "triggered", "manual")

DISTRIBUTION_METHODS = ("email", "in_person", "posted", "system_notification", "training_session")
ACKNOWLEDGMENT_METHODS = ("checkbox", "signature", "quiz", "verbal", "in_person")
ACKNOWLEDGMENT_STATUSES = ("pending", "acknowledged", "overdue", "exempt")

ARCHIVE_REASONS = ("superseded", "obsolete", "expired", "regulatory_change", "manual")

DEFAULT_REVIEW_FREQUENCY_MONTHS = 12
DEFAULT_RETENTION_YEARS = 7
DEFAULT_ACK_DEADLINE_DAYS = 14
DEFAULT_PREFIX_FORMAT = "{company}-{type}-{sequence}"
DEFAULT_COMPANY_PREFIX = "DOC"

QUIZ_PASS_SCORE = 80

# Reference data seed: code -> (name, requires_approval, approval_roles, review_frequency_months)
DEFAULT_DOCUMENT_TYPES: dict[str, tuple[str, bool, tuple[str, ...], int | None]] = {
    "POL": ("Policy", True, ("management", "safety_manager"), 36),
    "SWP": ("Safe Work Practice", True, ("safety_manager",), 12),
    "SJP": ("Safe Job Procedure", True, ("safety_manager", "supervisor"), 12),
    "FRM": ("Form", False, (), 12),
    "CHK": ("Checklist", False, (), 12),
    "WI": ("Work Instruction", True, ("supervisor", "safety_manager"), 12),
    "PRC": ("Procedure", True, ("management",), 24),
    "MAN": ("Manual", True, ("management", "safety_manager"), 24),
    "PLN": ("Plan", True, ("safety_manager", "management"), 12),
    "REG": ("Register", False, (), 12),
    "TRN": ("Training Material", True, ("safety_manager",), 12),
    "RPT": ("Report", False, (), None),
    "MIN": ("Meeting Minutes", False, (), None),
    "CRT": ("Certificate", False, (), None),
    "DWG": ("Drawing", True, ("engineer", "supervisor"), 24),
    "AUD": ("Audit Document", True, ("internal_auditor", "management"), 12),
}
DOCUMENT_TYPE_CODES = frozenset(DEFAULT_DOCUMENT_TYPES)

# Content types the reindex pipeline can extract text from.
INDEXABLE_CONTENT_TYPES = frozenset(
    {
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "text/plain",
    }
)
