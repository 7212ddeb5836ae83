import pytest
from sqlalchemy import select

from app.dcms.db import session_scope
from app.dcms.models import User
from app.dcms.modules.document_control.errors import PreconditionFailedError
from app.dcms.modules.document_control.folders import (
    create_folder,
    delete_folder,
    documents_in_folder,
    get_folder_by_path,
    get_folder_tree,
    initialize_company_folders,
    move_document_to_folder,
    move_folder,
    slugify,
    suggest_folder_for_document,
    update_folder,
)
from app.dcms.modules.document_control.models import Document, DocumentFolder
from app.dcms.modules.document_control.service import create_document


def _admin(s):
    return s.scalar(select(User).where(User.email == "admin@example.com"))


def test_slugify():
    assert slugify("Fire & Life Safety") == "fire-life-safety"
    assert slugify("  ") == "folder"


def test_system_folders_are_initialized_once(app, company_id):
    with session_scope(app) as s:
        assert initialize_company_folders(s, company_id, user=_admin(s)) == 7
    with session_scope(app) as s:
        assert initialize_company_folders(s, company_id) == 0
        policies = get_folder_by_path(s, company_id, "/policies/")
        assert policies.is_system_folder
        assert policies.linked_document_types == ["POL"]

        with pytest.raises(PreconditionFailedError):
            delete_folder(s, policies.id, user=None)

        assert suggest_folder_for_document(s, company_id, "sjp").path == "/safe-work-procedures/"
        assert suggest_folder_for_document(s, company_id, "RPT") is None


def test_nested_paths_and_depth(app, company_id):
    with session_scope(app) as s:
        root = create_folder(s, company_id, name="Site Operations", user=None)
        child = create_folder(s, company_id, name="Fire Safety", parent_folder_id=root.id, user=None)
        grandchild = create_folder(s, company_id, name="Extinguishers", parent_folder_id=child.id, user=None)
        assert (root.path, root.depth) == ("/site-operations/", 0)
        assert (child.path, child.depth) == ("/site-operations/fire-safety/", 1)
        assert (grandchild.path, grandchild.depth) == ("/site-operations/fire-safety/extinguishers/", 2)

        with pytest.raises(PreconditionFailedError):
            create_folder(s, company_id, name="fire safety", parent_folder_id=root.id, user=None)
        with pytest.raises(PreconditionFailedError):
            create_folder(s, company_id, name=" ", user=None)


def test_move_rebases_subtree_and_documents(app, company_id):
    with session_scope(app) as s:
        a = create_folder(s, company_id, name="A", user=None)
        b = create_folder(s, company_id, name="B", user=None)
        a1 = create_folder(s, company_id, name="A1", parent_folder_id=a.id, user=None)
        doc = create_document(s, company_id, document_type_code="FRM", title="Form", user=None, folder_id=a1.id)
        assert doc.folder_path == "/a/a1/"

        with pytest.raises(PreconditionFailedError):
            move_folder(s, a.id, a1.id, user=None)
        with pytest.raises(PreconditionFailedError):
            move_folder(s, a.id, a.id, user=None)

        move_folder(s, a.id, b.id, user=_admin(s))
        ids = (a.id, a1.id, doc.id)

    with session_scope(app) as s:
        a, a1, doc = s.get(DocumentFolder, ids[0]), s.get(DocumentFolder, ids[1]), s.get(Document, ids[2])
        assert (a.path, a.depth) == ("/b/a/", 1)
        assert (a1.path, a1.depth) == ("/b/a/a1/", 2)
        assert doc.folder_path == "/b/a/a1/"

        move_folder(s, a.id, None, user=None)
        assert (a1.path, a1.depth) == ("/a/a1/", 1)


def test_rename_updates_paths(app, company_id):
    with session_scope(app) as s:
        parent = create_folder(s, company_id, name="Forms", user=None)
        child = create_folder(s, company_id, name="Vehicles", parent_folder_id=parent.id, user=None)
        update_folder(s, parent.id, {"name": "Field Forms", "color": "#000000"}, user=None)
        assert parent.path == "/field-forms/"
        assert child.path == "/field-forms/vehicles/"
        with pytest.raises(PreconditionFailedError):
            update_folder(s, parent.id, {"path": "/hack/"}, user=None)


def test_delete_unfiles_documents_in_subtree(app, company_id):
    with session_scope(app) as s:
        top = create_folder(s, company_id, name="Projects", user=None)
        sub = create_folder(s, company_id, name="Tower Crane", parent_folder_id=top.id, user=None)
        doc = create_document(s, company_id, document_type_code="FRM", title="Lift Plan", user=None, folder_id=sub.id)
        assert delete_folder(s, top.id, user=None) == 2
        doc_id = doc.id

    with session_scope(app) as s:
        doc = s.get(Document, doc_id)
        assert (doc.folder_id, doc.folder_path) == (None, "/")
        assert s.scalar(select(DocumentFolder).where(DocumentFolder.company_id == company_id)) is None


def test_tree_counts_live_documents(app, company_id):
    with session_scope(app) as s:
        initialize_company_folders(s, company_id)
        forms = get_folder_by_path(s, company_id, "/forms-templates/")
        sub = create_folder(s, company_id, name="Vehicle", parent_folder_id=forms.id, user=None)
        d1 = create_document(s, company_id, document_type_code="FRM", title="One", user=None)
        d2 = create_document(s, company_id, document_type_code="FRM", title="Two", user=None)
        move_document_to_folder(s, d1.id, forms.id, user=None)
        move_document_to_folder(s, d2.id, sub.id, user=None)

        tree = get_folder_tree(s, company_id)
        assert [n.folder.slug for n in tree][:2] == ["policies", "procedures"]
        forms_node = next(n for n in tree if n.folder.id == forms.id)
        assert forms_node.document_count == 1
        assert forms_node.children[0].document_count == 1
        assert forms_node.to_dict()["children"][0]["path"] == "/forms-templates/vehicle/"

        assert [d.title for d in documents_in_folder(s, forms.id)] == ["One"]
        assert [d.title for d in documents_in_folder(s, forms.id, include_subfolders=True)] == ["One", "Two"]

        move_document_to_folder(s, d2.id, None, user=None)
        assert d2.folder_path == "/"
