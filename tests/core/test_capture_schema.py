from datetime import date

from src.jobtrack.core.capture_schema import (
    SHEET_COLUMNS,
    CaptureEntry,
    decode_link_formula,
    encode_link_formula,
    entry_to_sheet_row,
    format_calendar_date,
    normalize_sheet_row,
    relative_text_to_date_string,
    row_values_to_dict,
    sheet_row_to_entry,
)

TODAY = date(2025, 8, 20)


def test_sheet_columns_order_is_stable():
    assert SHEET_COLUMNS == (
        "Job Title",
        "Date Applied",
        "Company",
        "Location",
        "Date Posted",
        "Job Timeline",
        "Cover Letter",
        "Status",
        "Record ID",
    )


def test_capture_entry_from_dict_ignores_unknown_and_none():
    entry = CaptureEntry.from_dict({"job_title": "Engineer", "company": None, "extra": "x", "salary_text": 120})
    assert entry.job_title == "Engineer"
    assert entry.company == ""
    assert entry.salary_text == "120"
    assert "extra" not in entry.to_dict()


def test_encode_link_formula_doubles_quotes():
    out = encode_link_formula('Senior "Data" Engineer', "https://example.com/jobs?a=1")
    assert out == '=HYPERLINK("https://example.com/jobs?a=1","Senior ""Data"" Engineer")'


def test_encode_link_formula_without_url_returns_plain_title():
    assert encode_link_formula('Say "hi"', "") == 'Say "hi"'


def test_decode_link_formula_inverts_encode():
    title, url = decode_link_formula(encode_link_formula('A "quoted" title', 'https://x.test/"q"'))
    assert title == 'A "quoted" title'
    assert url == 'https://x.test/"q"'


def test_decode_link_formula_plain_cell():
    assert decode_link_formula("Plain title") == ("Plain title", None)
    assert decode_link_formula(None) == ("", None)


def test_format_calendar_date_ordinals():
    assert format_calendar_date(date(2025, 8, 1)) == "Aug 1st 2025"
    assert format_calendar_date(date(2025, 8, 2)) == "Aug 2nd 2025"
    assert format_calendar_date(date(2025, 8, 3)) == "Aug 3rd 2025"
    assert format_calendar_date(date(2025, 8, 11)) == "Aug 11th 2025"
    assert format_calendar_date(date(2025, 8, 12)) == "Aug 12th 2025"
    assert format_calendar_date(date(2025, 8, 13)) == "Aug 13th 2025"
    assert format_calendar_date(date(2025, 8, 22)) == "Aug 22nd 2025"


def test_relative_text_to_date_string_units():
    assert relative_text_to_date_string("2 days ago", today=TODAY) == "Aug 18th 2025"
    assert relative_text_to_date_string("1 week ago", today=TODAY) == "Aug 13th 2025"
    assert relative_text_to_date_string("Reposted 3 months ago", today=TODAY) == "May 22nd 2025"
    assert relative_text_to_date_string("Just now", today=TODAY) == "Aug 20th 2025"
    assert relative_text_to_date_string("5 hours ago", today=TODAY) == "Aug 20th 2025"


def test_relative_text_to_date_string_unknown_text_is_blank():
    assert relative_text_to_date_string("", today=TODAY) == ""
    assert relative_text_to_date_string("yesterday", today=TODAY) == ""


def test_entry_to_sheet_row_defaults_options_and_links_title():
    entry = CaptureEntry(
        job_title="Engineer",
        company="Acme",
        job_posting_url="https://acme.test/job/1",
        date_applied="2025-08-20",
        posted_relative="2 days ago",
        status="Bogus",
        record_id="h:abc",
    )
    row = entry_to_sheet_row(entry, today=TODAY)
    assert list(row) == list(SHEET_COLUMNS)
    assert row["Job Title"] == '=HYPERLINK("https://acme.test/job/1","Engineer")'
    assert row["Date Posted"] == "Aug 18th 2025"
    assert row["Status"] == "Applied"
    assert row["Cover Letter"] == "Not set"
    assert row["Record ID"] == "h:abc"


def test_row_values_to_dict_first_label_wins_and_pads():
    header = ["Job Title", "Status", "Company", "Status"]
    out = row_values_to_dict(header, ["Engineer", "Interviewing"])
    assert out == {"Job Title": "Engineer", "Status": "Interviewing", "Company": ""}


def test_normalize_sheet_row_fills_every_column():
    out = normalize_sheet_row({"Company": "Acme", "Status": None})
    assert list(out) == list(SHEET_COLUMNS)
    assert out["Company"] == "Acme"
    assert out["Status"] == ""


def test_sheet_row_to_entry_splits_link_formula():
    entry = sheet_row_to_entry(
        {
            "Job Title": '=HYPERLINK("https://acme.test/job/1","Engineer")',
            "Company": "Acme",
            "Date Posted": "Aug 18th 2025",
            "Status": "Rejected",
            "Record ID": "wd:R-12345",
        }
    )
    assert entry.job_title == "Engineer"
    assert entry.job_posting_url == "https://acme.test/job/1"
    assert entry.listing_posted_date == "Aug 18th 2025"
    assert entry.status == "Rejected"
    assert entry.cover_letter is None
    assert entry.record_id == "wd:R-12345"
