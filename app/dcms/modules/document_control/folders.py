"""
Folder organizer: a per-company classification tree, independent of lifecycle.

Each folder stores its materialized path ("/policies/fire-safety/") and depth.
Parents are plain identifiers; moves are checked so the tree stays acyclic.
"""
from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from app.dcms.audit import record_event

from .errors import NotFoundError, PreconditionFailedError
from .lifecycle import flush_or_conflict
from .models import Document, DocumentFolder

if TYPE_CHECKING:
    from app.dcms.models import User

# (name, slug, description, icon, color, folder_type, linked types, linked elements, sort order)
SYSTEM_FOLDERS: tuple[tuple[str, str, str, str, str, str, tuple[str, ...], tuple[int, ...], int], ...] = (
    ("Policies", "policies", "Company-wide policies and statements", "scroll", "#6366f1", "policies", ("POL",), (1, 2), 1),
    ("Procedures", "procedures", "Standard operating procedures", "clipboard-list", "#8b5cf6", "procedures", ("PRC",), (3, 4), 2),
    ("Safe Work Procedures", "safe-work-procedures", "Task-specific safety procedures", "shield-check", "#10b981", "swp", ("SWP", "SJP", "WI"), (3, 4, 5), 3),
    ("Forms & Templates", "forms-templates", "Fillable forms and document templates", "file-text", "#f59e0b", "forms", ("FRM", "CHK"), tuple(range(5, 15)), 4),
    ("Training Materials", "training-materials", "Training documents and resources", "graduation-cap", "#ec4899", "training", ("TRN",), (6, 7), 5),
    ("Health & Safety Manual", "health-safety-manual", "Complete health and safety manual sections", "book-open", "#0ea5e9", "manual", ("MAN",), tuple(range(1, 15)), 6),
    ("Emergency Procedures", "emergency-procedures", "Emergency response plans and procedures", "alert-triangle", "#ef4444", "emergency", ("PLN",), (9,), 7),
)

UPDATABLE_FOLDER_FIELDS = frozenset(
    {
        "name",
        "description",
        "folder_code",
        "icon",
        "color",
        "sort_order",
        "linked_document_types",
        "linked_audit_elements",
        "accessible_to",
        "is_hidden",
        "is_active",
    }
)


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").strip().lower()).strip("-")
    return slug or "folder"


def _child_path(parent: DocumentFolder | None, slug: str) -> str:
    return f"{parent.path}{slug}/" if parent else f"/{slug}/"


def get_folder(s: Session, folder_id: str) -> DocumentFolder:
    folder = s.get(DocumentFolder, folder_id)
    if not folder:
        raise NotFoundError(f"Folder not found: {folder_id}", entity_id=folder_id, operation="get_folder")
    return folder


def get_folder_by_path(s: Session, company_id: str, path: str) -> DocumentFolder | None:
    path = path if path.endswith("/") else f"{path}/"
    return s.scalar(select(DocumentFolder).where(DocumentFolder.company_id == company_id, DocumentFolder.path == path))


def list_folders(s: Session, company_id: str, *, include_hidden: bool = False) -> list[DocumentFolder]:
    stmt = select(DocumentFolder).where(DocumentFolder.company_id == company_id, DocumentFolder.is_active.is_(True))
    if not include_hidden:
        stmt = stmt.where(DocumentFolder.is_hidden.is_(False))
    stmt = stmt.order_by(DocumentFolder.sort_order.asc(), DocumentFolder.name.asc())
    return list(s.scalars(stmt))


def _descendants(s: Session, folder: DocumentFolder) -> list[DocumentFolder]:
    stmt = select(DocumentFolder).where(
        DocumentFolder.company_id == folder.company_id,
        DocumentFolder.path.startswith(folder.path, autoescape=True),
        DocumentFolder.id != folder.id,
    )
    return list(s.scalars(stmt))


def _ensure_path_free(s: Session, company_id: str, path: str, *, exclude_id: str | None = None) -> None:
    stmt = select(DocumentFolder.id).where(DocumentFolder.company_id == company_id, DocumentFolder.path == path)
    if exclude_id:
        stmt = stmt.where(DocumentFolder.id != exclude_id)
    if s.scalar(stmt):
        raise PreconditionFailedError(f"A folder already exists at {path}", entity_id=path, operation="folder_path")


def create_folder(
    s: Session,
    company_id: str,
    *,
    name: str,
    user: User | None,
    parent_folder_id: str | None = None,
    description: str | None = None,
    folder_code: str | None = None,
    folder_type: str = "custom",
    icon: str | None = None,
    color: str | None = None,
    sort_order: int = 0,
    linked_document_types: list[str] | None = None,
    linked_audit_elements: list[int] | None = None,
    accessible_to: list[str] | None = None,
    is_hidden: bool = False,
    is_system_folder: bool = False,
) -> DocumentFolder:
    name = (name or "").strip()
    if not name:
        raise PreconditionFailedError("Folder name is required", operation="create_folder")

    parent = get_folder(s, parent_folder_id) if parent_folder_id else None
    if parent is not None and parent.company_id != company_id:
        raise PreconditionFailedError("Parent folder belongs to a different company.", entity_id=parent.id, operation="create_folder")

    slug = slugify(name)
    path = _child_path(parent, slug)
    _ensure_path_free(s, company_id, path)

    folder = DocumentFolder(
        company_id=company_id,
        parent_folder_id=parent.id if parent else None,
        name=name,
        slug=slug,
        description=description,
        path=path,
        depth=parent.depth + 1 if parent else 0,
        folder_code=folder_code,
        folder_type=folder_type or "custom",
        icon=icon or "folder",
        color=color or "#6366f1",
        sort_order=sort_order,
        is_system_folder=is_system_folder,
        is_hidden=is_hidden,
        linked_document_types=[c.upper() for c in (linked_document_types or [])],
        linked_audit_elements=sorted({int(e) for e in (linked_audit_elements or [])}),
        accessible_to=list(accessible_to or ["all_workers"]),
        created_by_user_id=user.id if user else None,
    )
    s.add(folder)
    flush_or_conflict(s, entity_id=path, operation="create_folder")

    record_event(
        s,
        actor=user,
        action="doc_control.folder.create",
        entity_type="DocumentFolder",
        entity_id=folder.id,
        metadata={"path": folder.path, "system": is_system_folder},
    )
    return folder


def _rebase(s: Session, folder: DocumentFolder, new_path: str, new_depth: int) -> None:
    """Move folder (and its subtree and filed documents) from its current path to new_path."""
    old_path = folder.path
    depth_delta = new_depth - folder.depth
    for child in _descendants(s, folder):
        child.path = new_path + child.path[len(old_path):]
        child.depth += depth_delta
    docs = s.scalars(
        select(Document).where(
            Document.company_id == folder.company_id,
            Document.folder_path.startswith(old_path, autoescape=True),
        )
    )
    for doc in docs:
        doc.folder_path = new_path + doc.folder_path[len(old_path):]
    folder.path = new_path
    folder.depth = new_depth


def update_folder(
    s: Session,
    folder_id: str,
    updates: dict[str, Any],
    *,
    user: User | None,
) -> DocumentFolder:
    unknown = sorted(set(updates) - UPDATABLE_FOLDER_FIELDS)
    if unknown:
        raise PreconditionFailedError(f"Fields cannot be updated: {', '.join(unknown)}", entity_id=folder_id, operation="update_folder")

    folder = get_folder(s, folder_id)
    changes: dict[str, Any] = {}
    for key, value in updates.items():
        if key == "name":
            value = (value or "").strip()
            if not value:
                raise PreconditionFailedError("Folder name is required", entity_id=folder.id, operation="update_folder")
        elif key == "linked_document_types":
            value = [c.upper() for c in (value or [])]
        elif key == "linked_audit_elements":
            value = sorted({int(e) for e in (value or [])})
        if getattr(folder, key) == value:
            continue
        changes[key] = {"from": getattr(folder, key), "to": value}
        setattr(folder, key, value)

    if "name" in changes:
        slug = slugify(folder.name)
        if slug != folder.slug:
            parent = get_folder(s, folder.parent_folder_id) if folder.parent_folder_id else None
            new_path = _child_path(parent, slug)
            _ensure_path_free(s, folder.company_id, new_path, exclude_id=folder.id)
            folder.slug = slug
            _rebase(s, folder, new_path, folder.depth)

    if not changes:
        return folder
    flush_or_conflict(s, entity_id=folder.id, operation="update_folder")
    record_event(
        s,
        actor=user,
        action="doc_control.folder.update",
        entity_type="DocumentFolder",
        entity_id=folder.id,
        metadata={"path": folder.path, "changes": changes},
    )
    return folder


def move_folder(
    s: Session,
    folder_id: str,
    new_parent_id: str | None,
    *,
    user: User | None,
) -> DocumentFolder:
    """Re-parent a folder. A folder cannot be moved under itself or one of its descendants."""
    folder = get_folder(s, folder_id)
    parent = get_folder(s, new_parent_id) if new_parent_id else None

    if parent is not None:
        if parent.company_id != folder.company_id:
            raise PreconditionFailedError("Target folder belongs to a different company.", entity_id=parent.id, operation="move_folder")
        if parent.id == folder.id or parent.path.startswith(folder.path):
            raise PreconditionFailedError(
                "Cannot move a folder into itself or one of its subfolders.",
                entity_id=folder.id,
                operation="move_folder",
            )

    if folder.parent_folder_id == (parent.id if parent else None):
        return folder

    old_path = folder.path
    new_path = _child_path(parent, folder.slug)
    _ensure_path_free(s, folder.company_id, new_path, exclude_id=folder.id)
    folder.parent_folder_id = parent.id if parent else None
    _rebase(s, folder, new_path, parent.depth + 1 if parent else 0)
    flush_or_conflict(s, entity_id=folder.id, operation="move_folder")

    record_event(
        s,
        actor=user,
        action="doc_control.folder.move",
        entity_type="DocumentFolder",
        entity_id=folder.id,
        metadata={"from": old_path, "to": new_path},
    )
    return folder


def delete_folder(s: Session, folder_id: str, *, user: User | None) -> int:
    """
    Delete a folder and its subfolders. Documents filed anywhere in the subtree become unfiled.
    Returns the number of folders removed.
    """
    folder = get_folder(s, folder_id)
    if folder.is_system_folder:
        raise PreconditionFailedError("Cannot delete system folders", entity_id=folder.id, operation="delete_folder")

    subtree = [folder, *_descendants(s, folder)]
    if any(f.is_system_folder for f in subtree[1:]):
        raise PreconditionFailedError("Folder contains system folders", entity_id=folder.id, operation="delete_folder")

    ids = [f.id for f in subtree]
    unfiled = 0
    for doc in s.scalars(select(Document).where(Document.folder_id.in_(ids))):
        doc.folder_id = None
        doc.folder_path = "/"
        unfiled += 1
    s.flush()

    path = folder.path
    # One statement; the parent FK cascades within it.
    s.execute(delete(DocumentFolder).where(DocumentFolder.id.in_(ids)).execution_options(synchronize_session=False))
    for f in subtree:
        s.expunge(f)

    record_event(
        s,
        actor=user,
        action="doc_control.folder.delete",
        entity_type="DocumentFolder",
        entity_id=folder_id,
        metadata={"path": path, "folders_removed": len(subtree), "documents_unfiled": unfiled},
    )
    return len(subtree)


@dataclass
class FolderNode:
    folder: DocumentFolder
    document_count: int = 0
    children: list["FolderNode"] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        f = self.folder
        return {
            "id": f.id,
            "name": f.name,
            "slug": f.slug,
            "path": f.path,
            "depth": f.depth,
            "folder_type": f.folder_type,
            "icon": f.icon,
            "color": f.color,
            "is_system_folder": f.is_system_folder,
            "linked_document_types": list(f.linked_document_types or []),
            "linked_audit_elements": list(f.linked_audit_elements or []),
            "document_count": self.document_count,
            "children": [c.to_dict() for c in self.children],
        }


def folder_stats(s: Session, company_id: str) -> dict[str, int]:
    """Live (non-archived, non-obsolete) document counts per folder id; "unfiled" for none."""
    rows = s.execute(
        select(Document.folder_id, func.count())
        .where(Document.company_id == company_id, Document.status.notin_(("archived", "obsolete")))
        .group_by(Document.folder_id)
    )
    return {(folder_id or "unfiled"): int(count) for folder_id, count in rows}


def get_folder_tree(s: Session, company_id: str, *, include_hidden: bool = False) -> list[FolderNode]:
    folders = list_folders(s, company_id, include_hidden=include_hidden)
    counts = folder_stats(s, company_id)
    nodes = {f.id: FolderNode(folder=f, document_count=counts.get(f.id, 0)) for f in folders}
    children: dict[str | None, list[FolderNode]] = defaultdict(list)
    for f in folders:
        # Children of a hidden/inactive parent surface at the root rather than disappearing.
        parent_key = f.parent_folder_id if f.parent_folder_id in nodes else None
        children[parent_key].append(nodes[f.id])
    for node in nodes.values():
        node.children = children.get(node.folder.id, [])
    return children.get(None, [])


def move_document_to_folder(
    s: Session,
    document_id: str,
    folder_id: str | None,
    *,
    user: User | None,
) -> Document:
    doc = s.get(Document, document_id)
    if not doc:
        raise NotFoundError(f"Document not found: {document_id}", entity_id=document_id, operation="move_document_to_folder")
    folder = get_folder(s, folder_id) if folder_id else None
    if folder is not None and folder.company_id != doc.company_id:
        raise PreconditionFailedError("Folder belongs to a different company.", entity_id=folder.id, operation="move_document_to_folder")

    old_path = doc.folder_path
    doc.folder_id = folder.id if folder else None
    doc.folder_path = folder.path if folder else "/"
    flush_or_conflict(s, entity_id=doc.id, operation="move_document_to_folder")

    record_event(
        s,
        actor=user,
        action="doc_control.document.move",
        entity_type="Document",
        entity_id=doc.id,
        metadata={"control_number": doc.control_number, "from": old_path, "to": doc.folder_path},
    )
    return doc


def move_documents_to_folder(
    s: Session,
    document_ids: list[str],
    folder_id: str | None,
    *,
    user: User | None,
) -> int:
    for document_id in document_ids:
        move_document_to_folder(s, document_id, folder_id, user=user)
    return len(document_ids)


def documents_in_folder(
    s: Session,
    folder_id: str,
    *,
    include_subfolders: bool = False,
    statuses: list[str] | None = None,
) -> list[Document]:
    folder = get_folder(s, folder_id)
    stmt = select(Document).where(Document.company_id == folder.company_id)
    if include_subfolders:
        stmt = stmt.where(Document.folder_path.startswith(folder.path, autoescape=True))
    else:
        stmt = stmt.where(Document.folder_id == folder.id)
    if statuses:
        stmt = stmt.where(Document.status.in_(statuses))
    stmt = stmt.order_by(Document.control_number.asc())
    return list(s.scalars(stmt))


def initialize_company_folders(s: Session, company_id: str, *, user: User | None = None) -> int:
    """Create the standard system folders that do not exist yet. Returns how many were created."""
    created = 0
    for name, slug, description, icon, color, folder_type, types, elements, order in SYSTEM_FOLDERS:
        if get_folder_by_path(s, company_id, f"/{slug}/") is not None:
            continue
        create_folder(
            s,
            company_id,
            name=name,
            user=user,
            description=description,
            folder_type=folder_type,
            icon=icon,
            color=color,
            sort_order=order,
            linked_document_types=list(types),
            linked_audit_elements=list(elements),
            is_system_folder=True,
        )
        created += 1
    return created


def suggest_folder_for_document(s: Session, company_id: str, document_type_code: str) -> DocumentFolder | None:
    """System folders first, then by sort order."""
    code = (document_type_code or "").upper()
    candidates = [f for f in list_folders(s, company_id) if code in (f.linked_document_types or [])]
    candidates.sort(key=lambda f: (not f.is_system_folder, f.sort_order, f.name))
    return candidates[0] if candidates else None
