from datetime import date

from app.dcms.modules.document_control.text_utils import clean_extracted_text, extract_keywords, find_control_numbers
from app.dcms.utils import add_months, add_years


def test_clean_extracted_text():
    raw = "  Line\r\n\r\n\r\n\r\nTwo\x07  words\t\tend "
    assert clean_extracted_text(raw) == "Line\n\nTwo words end"
    assert clean_extracted_text(None) == ""


def test_extract_keywords_needs_repeats_and_skips_stop_words():
    text = "Ladder ladder LADDER scaffold scaffold harness the the page page page"
    assert extract_keywords(text) == ["ladder", "scaffold"]
    assert extract_keywords(text, limit=1) == ["ladder"]
    assert extract_keywords("") == []


def test_find_control_numbers():
    text = "See acme-swp-004, ACME-SWP-004 and XYZ-POL-12 plus NSW-POL-010."
    assert find_control_numbers(text) == ["ACME-SWP-004", "NSW-POL-010"]
    assert find_control_numbers(text, "acme") == ["ACME-SWP-004"]
    assert find_control_numbers(None) == []


def test_calendar_helpers_clamp_month_end():
    assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
    assert add_months(date(2026, 11, 15), 3) == date(2027, 2, 15)
    assert add_years(date(2024, 2, 29), 1) == date(2025, 2, 28)
