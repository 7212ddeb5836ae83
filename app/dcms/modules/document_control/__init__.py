"""
Document control: controlled-document registry.

Control numbers, lifecycle, revisions, approvals, periodic reviews, distribution and
acknowledgment, archival with retention, folders, audit-evidence linking and text re-indexing.
Service functions take a Session, flush, and leave the commit to the caller.
"""
