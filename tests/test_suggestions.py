from app.dcms.db import session_scope
from app.dcms.modules.document_control.folders import initialize_company_folders
from app.dcms.modules.document_control.service import create_document
from app.dcms.modules.document_control.suggestions import (
    FILENAME_RULES,
    batch_suggest_metadata,
    match_filename_rule,
    suggest_metadata,
    suggest_metadata_for_company,
    title_from_filename,
)

CONFINED_SPACE_TEXT = (
    "Confined space entry. A permit required space must be assessed before entry. "
    "All workers and every supervisor and contractor must follow the permit. "
    "Use form ACME-FRM-002 and NSW-SWP-010."
)


def test_title_from_filename():
    assert title_from_filename("ACME-SWP-004_fall-protection_v2.1.pdf") == "Fall Protection"
    assert title_from_filename("2026-03-01_toolbox_meeting_minutes_rev3.docx") == "Toolbox Meeting Minutes"
    assert title_from_filename("annual-review.pdf") == "Annual Review"
    assert title_from_filename("v1.pdf") == "Untitled Document"
    assert title_from_filename("") == "Untitled Document"


def test_filename_rules_prefer_specific_patterns():
    assert match_filename_rule("Health_and_Safety_Policy.pdf").tags == ("health-safety", "policy")
    assert match_filename_rule("quality-policy.docx").tags == ("policy",)
    assert match_filename_rule("Incident Report Form.pdf").document_type == "FRM"
    assert match_filename_rule("Emergency_Response_Plan.pdf").document_type == "PLN"
    # "information" and "catalog" are not forms or logs.
    assert match_filename_rule("site information catalog.pdf") is None
    assert isinstance(FILENAME_RULES, tuple)


def test_filename_only_suggestion():
    s = suggest_metadata("Health_and_Safety_Policy.pdf")
    assert s.title == "Health And Safety Policy"
    assert s.document_type_code == "POL"
    assert s.tags == ["health-safety", "policy"]
    assert s.audit_elements == [1, 5, 13]
    assert s.applicable_to == ["all_workers"]
    assert s.extracted_control_number is None
    assert s.confidence == 40


def test_unmatched_file_without_text_falls_back_to_form():
    s = suggest_metadata("scan_0042.pdf")
    assert (s.title, s.document_type_code, s.confidence) == ("Scan", "FRM", 0)


def test_content_decides_type_audience_and_control_number():
    s = suggest_metadata("scan_0042.pdf", CONFINED_SPACE_TEXT, existing_control_numbers=["NSW-SWP-010"])
    assert s.document_type_code == "SWP"
    assert s.tags[0] == "confined-space"
    assert {"space", "entry", "permit"} <= set(s.tags)
    assert s.applicable_to == ["all_workers", "supervisors", "contractors"]
    # A number the registry already knows beats the first one in the text.
    assert s.extracted_control_number == "NSW-SWP-010"
    # References alone (element 14 at 40) stay below the auto-link threshold.
    assert s.audit_elements == [3, 4]
    # content type 30 + audience 10 + control number 20
    assert s.confidence == 60

    first_seen = suggest_metadata("scan_0042.pdf", CONFINED_SPACE_TEXT)
    assert first_seen.extracted_control_number == "ACME-FRM-002"


def test_tags_are_capped():
    text = " ".join(["welding grinding lifting rigging scaffolding ladder crane truck vehicle steel concrete noise"] * 2)
    s = suggest_metadata("misc.pdf", text)
    assert len(s.tags) == 10


def test_batch_is_keyed_by_filename():
    out = batch_suggest_metadata([("SWP_ladders.pdf", None), ("Toolbox Talk.docx", None)])
    assert list(out) == ["SWP_ladders.pdf", "Toolbox Talk.docx"]
    assert out["SWP_ladders.pdf"].document_type_code == "SWP"
    assert out["Toolbox Talk.docx"].document_type_code == "FRM"
    assert out["Toolbox Talk.docx"].to_dict()["tags"] == ["toolbox", "meeting"]


def test_company_suggestions_use_folders_and_known_numbers(app, company_id):
    with session_scope(app) as s:
        initialize_company_folders(s, company_id)
        create_document(s, company_id, document_type_code="SWP", title="Working at Heights", user=None)

    with session_scope(app) as s:
        out = suggest_metadata_for_company(
            s,
            company_id,
            [("Annual_Policy_Review.docx", None), ("ACME-SWP-001 Working at Heights.pdf", None), ("notes.txt", None)],
        )
        policy = out["Annual_Policy_Review.docx"]
        assert (policy.document_type_code, policy.folder_path) == ("POL", "/policies/")

        swp = out["ACME-SWP-001 Working at Heights.pdf"]
        assert swp.document_type_code == "SWP"
        assert swp.extracted_control_number == "ACME-SWP-001"
        assert swp.folder_path == "/safe-work-procedures/"
        assert swp.title == "Working At Heights"

        notes = out["notes.txt"]
        assert notes.document_type_code == "FRM"
        assert notes.folder_path == "/forms-templates/"
