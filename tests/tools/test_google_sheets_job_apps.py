from __future__ import annotations

from datetime import date

import pytest

from src.jobtrack.core.capture_schema import SHEET_COLUMNS, CaptureEntry
from src.jobtrack.tools.kernel.google_auth import TokenManager
from src.jobtrack.tools.kernel.google_sheets_job_apps import (
    RecordNotFoundError,
    SheetLayoutError,
    SheetsApiError,
    SheetsTableClient,
    _column_letters,
    create_spreadsheet,
)

SHEET_ID = "sheet-123"
TODAY = date(2025, 8, 20)


@pytest.fixture()
def auth(local_store, oauth_settings, sheets_transport) -> TokenManager:
    return TokenManager(local_store, oauth_settings, transport=sheets_transport, clock=lambda: 1_700_000_000)


@pytest.fixture()
def table(auth) -> SheetsTableClient:
    return SheetsTableClient(auth, SHEET_ID, today=lambda: TODAY)


def _entry(**overrides) -> CaptureEntry:
    values = {
        "job_title": 'Senior "Data" Engineer',
        "company": "Acme",
        "location": "Remote",
        "job_posting_url": "https://careers.example.com/External/job/Remote/SWE_R-12345",
        "date_applied": "2025-08-20",
        "posted_relative": "2 days ago",
        "record_id": "wd:R-12345",
    }
    values.update(overrides)
    return CaptureEntry(**values)


def test_column_letters():
    assert _column_letters(1) == "A"
    assert _column_letters(9) == "I"
    assert _column_letters(26) == "Z"
    assert _column_letters(27) == "AA"
    with pytest.raises(ValueError):
        _column_letters(0)


def test_client_rejects_blank_spreadsheet_id(auth):
    with pytest.raises(ValueError):
        SheetsTableClient(auth, "   ")


@pytest.mark.asyncio
async def test_ensure_header_writes_canonical_header_and_validation(table, sheets_backend):
    header = await table.ensure_header()

    assert header == list(SHEET_COLUMNS)
    assert sheets_backend.header == list(SHEET_COLUMNS)
    assert sheets_backend.validations[6] == ["Not set", "Yes", "No"]
    assert sheets_backend.validations[7] == ["Applied", "Interviewing", "Accepted", "Rejected", "Withdrawn"]
    assert len(sheets_backend.conditional_formats) == 5


@pytest.mark.asyncio
async def test_ensure_header_is_idempotent(table, sheets_backend):
    await table.ensure_header()
    await table.ensure_header()

    assert sheets_backend.header == list(SHEET_COLUMNS)
    assert len(sheets_backend.conditional_formats) == 5


@pytest.mark.asyncio
async def test_ensure_header_removes_duplicate_columns(table, sheets_backend):
    sheets_backend.set_rows(
        [
            list(SHEET_COLUMNS) + ["Cover Letter", "Status"],
            ["Engineer", "2025-08-01", "Acme", "", "", "", "Yes", "Applied", "li:1", "dup", "dup"],
        ]
    )

    await table.ensure_header()

    assert sheets_backend.header == list(SHEET_COLUMNS)
    assert sheets_backend.grid[1] == ["Engineer", "2025-08-01", "Acme", "", "", "", "Yes", "Applied", "li:1"]
    deleted = [req["deleteDimension"]["range"]["startIndex"] for req in sheets_backend.batch_requests if "deleteDimension" in req]
    assert deleted == [10, 9]


@pytest.mark.asyncio
async def test_ensure_header_logs_formatting_failure(table, sheets_backend, monkeypatch: pytest.MonkeyPatch):
    async def broken_formatting(header):
        raise SheetsApiError(400, "invalid rule", action="Validation/formatting")

    monkeypatch.setattr(table, "_apply_validation_and_formatting", broken_formatting)

    assert await table.ensure_header() == list(SHEET_COLUMNS)
    assert sheets_backend.header == list(SHEET_COLUMNS)


@pytest.mark.asyncio
async def test_ensure_header_propagates_styling_failure(table, sheets_backend):
    sheets_backend.fail_next("batch", 503, "unavailable")

    with pytest.raises(SheetsApiError) as excinfo:
        await table.ensure_header()
    assert excinfo.value.status == 503


@pytest.mark.asyncio
async def test_append_then_read_all_round_trips(table, sheets_backend):
    await table.ensure_header()

    updated_range = await table.append_row(_entry())
    snapshot = await table.read_all()

    assert updated_range == "Sheet1!A2"
    assert snapshot.header == list(SHEET_COLUMNS)
    assert len(snapshot.entries) == 1
    entry = snapshot.entries[0]
    assert entry.job_title == 'Senior "Data" Engineer'
    assert entry.job_posting_url == "https://careers.example.com/External/job/Remote/SWE_R-12345"
    assert entry.company == "Acme"
    assert entry.location == "Remote"
    assert entry.date_applied == "2025-08-20"
    assert entry.listing_posted_date == "Aug 18th 2025"
    assert entry.status == "Applied"
    assert entry.cover_letter == "Not set"
    assert entry.record_id == "wd:R-12345"

    append_request = next(req for req in sheets_backend.requests if req.url.path.endswith(":append"))
    assert append_request.url.params["valueInputOption"] == "USER_ENTERED"
    assert append_request.url.params["insertDataOption"] == "INSERT_ROWS"


@pytest.mark.asyncio
async def test_append_follows_current_column_order(table, sheets_backend):
    sheets_backend.set_rows([["Company", "Record ID", "Job Title"]])

    await table.append_row(_entry(job_posting_url="", job_title="Engineer"))

    assert sheets_backend.grid[1] == ["Acme", "wd:R-12345", "Engineer"]


@pytest.mark.asyncio
async def test_append_failure_raises_sheets_api_error(table, sheets_backend):
    sheets_backend.fail_next("append", 500, "backend error")

    with pytest.raises(SheetsApiError) as excinfo:
        await table.append_row(_entry())
    assert excinfo.value.status == 500
    assert excinfo.value.body == "backend error"


@pytest.mark.asyncio
async def test_read_raw_version_prefers_etag(table, sheets_backend):
    await table.ensure_header()
    hashed = (await table.read_raw()).version
    assert len(hashed) == 64

    await table.append_row(_entry())
    assert (await table.read_raw()).version != hashed

    sheets_backend.etag = '"etag-1"'
    assert (await table.read_raw()).version == '"etag-1"'


@pytest.mark.asyncio
async def test_update_by_record_id_rewrites_row(table, sheets_backend):
    await table.ensure_header()
    await table.append_row(_entry(record_id="li:1", job_title="First", job_posting_url=""))
    await table.append_row(_entry(record_id="li:2", job_title="Second", job_posting_url=""))

    row_number = await table.update_by_record_id("li:2", {"status": "Interviewing", "Cover Letter": "Yes"})

    assert row_number == 3
    row = dict(zip(sheets_backend.header, sheets_backend.grid[2]))
    assert row["Status"] == "Interviewing"
    assert row["Cover Letter"] == "Yes"
    assert row["Job Title"] == "Second"
    assert dict(zip(sheets_backend.header, sheets_backend.grid[1]))["Status"] == "Applied"


@pytest.mark.asyncio
async def test_update_by_record_id_relinks_title(table, sheets_backend):
    await table.ensure_header()
    await table.append_row(_entry())

    await table.update_by_record_id("wd:R-12345", {"job_title": "Staff Engineer"})

    title_cell = sheets_backend.grid[1][0]
    assert title_cell == '=HYPERLINK("https://careers.example.com/External/job/Remote/SWE_R-12345","Staff Engineer")'


@pytest.mark.asyncio
async def test_update_falls_back_to_legacy_row_and_backfills_id(table, sheets_backend):
    sheets_backend.set_rows(
        [
            list(SHEET_COLUMNS),
            ["Other", "2025-08-01", "Globex", "", "", "", "Not set", "Applied", ""],
            ["Engineer", "2025-08-01", "Acme", "", "", "", "Not set", "Applied", ""],
        ]
    )

    row_number = await table.update_by_record_id(
        "h:abc",
        {"job_title": "Engineer", "company": "Acme", "date_applied": "2025-08-01", "status": "Rejected"},
    )

    assert row_number == 3
    row = dict(zip(sheets_backend.header, sheets_backend.grid[2]))
    assert row["Record ID"] == "h:abc"
    assert row["Status"] == "Rejected"
    assert sheets_backend.grid[1][-1] == ""


@pytest.mark.asyncio
async def test_update_missing_record_raises_not_found(table):
    await table.ensure_header()

    with pytest.raises(RecordNotFoundError):
        await table.update_by_record_id("li:404", {"status": "Rejected"})
    with pytest.raises(ValueError):
        await table.update_by_record_id("  ", {"status": "Rejected"})


@pytest.mark.asyncio
async def test_delete_by_record_id_removes_row(table, sheets_backend):
    await table.ensure_header()
    await table.append_row(_entry(record_id="li:1", job_title="First", job_posting_url=""))
    await table.append_row(_entry(record_id="li:2", job_title="Second", job_posting_url=""))

    row_number = await table.delete_by_record_id("li:1")

    assert row_number == 2
    assert len(sheets_backend.grid) == 2
    assert sheets_backend.grid[1][0] == "Second"
    with pytest.raises(RecordNotFoundError):
        await table.delete_by_record_id("li:1")


@pytest.mark.asyncio
async def test_missing_tab_raises_layout_error(auth, sheets_backend):
    sheets_backend.sheet_name = "Other"
    client = SheetsTableClient(auth, SHEET_ID)

    with pytest.raises(SheetLayoutError):
        await client.ensure_header()


@pytest.mark.asyncio
async def test_create_spreadsheet_returns_id(auth, sheets_backend):
    spreadsheet_id = await create_spreadsheet(auth, title="My Applications")

    assert spreadsheet_id == SHEET_ID
    assert sheets_backend.created_titles == ["My Applications"]
