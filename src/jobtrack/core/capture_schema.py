"""Canonical schema contract for captured job applications and their sheet rows."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, fields
from datetime import date, timedelta
from typing import Any, Mapping

DEFAULT_STATUS = "Applied"
STATUS_OPTIONS = ("Applied", "Interviewing", "Accepted", "Rejected", "Withdrawn")
DEFAULT_COVER_LETTER = "Not set"
COVER_LETTER_OPTIONS = ("Not set", "Yes", "No")

TITLE_COLUMN = "Job Title"
RECORD_ID_COLUMN = "Record ID"
SHEET_COLUMNS = (
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
# Legacy sheets carried these labels twice; only the left-most copy survives.
DEDUPLICATED_COLUMNS = ("Cover Letter", "Status")
COLUMN_WIDTHS = (320, 140, 220, 220, 140, 180, 120, 140, 160)

ENTRY_TO_SHEET_COLUMN = {
    "job_title": "Job Title",
    "date_applied": "Date Applied",
    "company": "Company",
    "location": "Location",
    "listing_posted_date": "Date Posted",
    "job_timeline": "Job Timeline",
    "cover_letter": "Cover Letter",
    "status": "Status",
    "record_id": "Record ID",
}
SHEET_TO_ENTRY_FIELD = {sheet_col: field_name for field_name, sheet_col in ENTRY_TO_SHEET_COLUMN.items()}

_HYPERLINK_RE = re.compile(r'^=HYPERLINK\(\s*"((?:[^"]|"")*)"\s*[,;]\s*"((?:[^"]|"")*)"\s*\)$', re.IGNORECASE)
_RELATIVE_RECENT_RE = re.compile(r"^(just\s*now|\d+\s*minute|\d+\s*hour)")
_RELATIVE_AGO_RE = re.compile(r"(\d+)\s*(day|week|month|year)s?\s*ago")
_UNIT_DAYS = {"day": 1, "week": 7, "month": 30, "year": 365}


@dataclass(slots=True)
class CaptureEntry:
    """One detected job-application action, as handed over by a site extractor."""

    job_title: str = ""
    company: str = ""
    location: str = ""
    job_posting_url: str = ""
    date_applied: str = ""
    listing_posted_date: str = ""
    job_timeline: str = ""
    salary_text: str = ""
    posted_relative: str | None = None
    cover_letter: str | None = None
    status: str | None = None
    record_id: str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CaptureEntry":
        known = {item.name for item in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in payload.items():
            if key not in known or value is None:
                continue
            values[key] = value if isinstance(value, str) else str(value)
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def escape_formula_text(value: str) -> str:
    return value.replace('"', '""')


def encode_link_formula(title: str, url: str | None) -> str:
    """Return a HYPERLINK formula for the title cell, or the bare title when there is no URL."""
    if not url:
        return title or ""
    return f'=HYPERLINK("{escape_formula_text(url)}","{escape_formula_text(title or "")}")'


def decode_link_formula(cell: Any) -> tuple[str, str | None]:
    """Split a title cell into `(display_text, url)`; plain cells have no URL."""
    text = str(cell) if cell is not None else ""
    match = _HYPERLINK_RE.match(text.strip())
    if not match:
        return text, None
    url = match.group(1).replace('""', '"')
    title = match.group(2).replace('""', '"')
    return title, url or None


def _ordinal_suffix(day: int) -> str:
    if day % 10 == 1 and day % 100 != 11:
        return "st"
    if day % 10 == 2 and day % 100 != 12:
        return "nd"
    if day % 10 == 3 and day % 100 != 13:
        return "rd"
    return "th"


def format_calendar_date(value: date) -> str:
    """Format like `Aug 14th 2025`."""
    return f"{value.strftime('%b')} {value.day}{_ordinal_suffix(value.day)} {value.year}"


def relative_text_to_date_string(relative: str | None, *, today: date | None = None) -> str:
    """Convert text such as `2 days ago` into a calendar date string; unknown text yields ``""``."""
    if not relative:
        return ""
    text = relative.strip().lower()
    current = today or date.today()
    if _RELATIVE_RECENT_RE.match(text):
        return format_calendar_date(current)
    match = _RELATIVE_AGO_RE.search(text)
    if not match:
        return ""
    days = int(match.group(1)) * _UNIT_DAYS[match.group(2)]
    return format_calendar_date(current - timedelta(days=days))


def _option_or_default(value: str | None, options: tuple[str, ...], default: str) -> str:
    candidate = (value or "").strip()
    return candidate if candidate in options else default


def entry_to_sheet_row(entry: CaptureEntry, *, today: date | None = None) -> dict[str, str]:
    """Map an entry onto canonical sheet labels."""
    posted_text = (entry.posted_relative or entry.listing_posted_date or "").strip()
    return {
        "Job Title": encode_link_formula(entry.job_title, entry.job_posting_url),
        "Date Applied": entry.date_applied,
        "Company": entry.company,
        "Location": entry.location or "",
        "Date Posted": relative_text_to_date_string(posted_text, today=today),
        "Job Timeline": entry.job_timeline,
        "Cover Letter": _option_or_default(entry.cover_letter, COVER_LETTER_OPTIONS, DEFAULT_COVER_LETTER),
        "Status": _option_or_default(entry.status, STATUS_OPTIONS, DEFAULT_STATUS),
        "Record ID": entry.record_id or "",
    }


def row_values_to_dict(header: list[str], row_values: list[Any]) -> dict[str, str]:
    """Key a positional row by header label; short rows are padded with empty strings."""
    out: dict[str, str] = {}
    for index, label in enumerate(header):
        if not label or label in out:
            continue
        value = row_values[index] if index < len(row_values) else ""
        out[label] = str(value) if value is not None else ""
    return out


def normalize_sheet_row(row: Mapping[str, Any]) -> dict[str, str]:
    """Return sheet row with canonical keys and string values."""
    out: dict[str, str] = {}
    for column in SHEET_COLUMNS:
        value = row.get(column, "") if isinstance(row, Mapping) else ""
        out[column] = str(value) if value is not None else ""
    return out


def sheet_row_to_entry(row: Mapping[str, Any]) -> CaptureEntry:
    """Decode a label-keyed sheet row back into a capture entry."""
    normalized = normalize_sheet_row(row)
    title, url = decode_link_formula(normalized[TITLE_COLUMN])
    return CaptureEntry(
        job_title=title,
        company=normalized["Company"],
        location=normalized["Location"],
        job_posting_url=url or "",
        date_applied=normalized["Date Applied"],
        listing_posted_date=normalized["Date Posted"],
        job_timeline=normalized["Job Timeline"],
        cover_letter=normalized["Cover Letter"] or None,
        status=normalized["Status"] or None,
        record_id=normalized[RECORD_ID_COLUMN] or None,
    )
