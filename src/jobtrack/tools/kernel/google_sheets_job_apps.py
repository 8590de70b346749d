"""Google Sheets client that treats one tab as a label-addressed job applications table."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Mapping
from urllib.parse import quote

import httpx

from src.jobtrack.core.capture_schema import (
    COLUMN_WIDTHS,
    COVER_LETTER_OPTIONS,
    DEDUPLICATED_COLUMNS,
    ENTRY_TO_SHEET_COLUMN,
    RECORD_ID_COLUMN,
    SHEET_COLUMNS,
    SHEET_TO_ENTRY_FIELD,
    STATUS_OPTIONS,
    TITLE_COLUMN,
    CaptureEntry,
    decode_link_formula,
    encode_link_formula,
    entry_to_sheet_row,
    row_values_to_dict,
    sheet_row_to_entry,
)
from src.jobtrack.core.config_loader import DEFAULT_SHEET_NAME, DEFAULT_SHEETS_BASE_URL
from src.jobtrack.tools.kernel.google_auth import TokenManager

logger = logging.getLogger(__name__)

DEFAULT_SPREADSHEET_TITLE = "Job Applications"
VALIDATION_MAX_ROWS = 5000
STATUS_COLORS: dict[str, dict[str, Any]] = {
    "Applied": {"bg": {"red": 0.85, "green": 0.85, "blue": 0.85}},
    "Interviewing": {"bg": {"red": 1.0, "green": 0.95, "blue": 0.6}},
    "Accepted": {"bg": {"red": 0.75, "green": 0.93, "blue": 0.76}},
    "Rejected": {"bg": {"red": 0.97, "green": 0.73, "blue": 0.73}},
    "Withdrawn": {"bg": {"red": 0.0, "green": 0.0, "blue": 0.0}, "white_text": True},
}


class SheetsApiError(RuntimeError):
    """Non-2xx response from the Sheets API."""

    def __init__(self, status: int, body: str, *, action: str = "Sheets request") -> None:
        super().__init__(f"{action} failed: {status} {body}")
        self.status = status
        self.body = body


class RecordNotFoundError(LookupError):
    """No row matched the record id (nor the legacy fallback fields)."""


class SheetLayoutError(RuntimeError):
    """The tab or a required column is missing."""


@dataclass(slots=True)
class SheetSnapshot:
    header: list[str]
    rows: list[list[str]]
    version: str
    entries: list[CaptureEntry] = field(default_factory=list)


def _column_letters(one_based_index: int) -> str:
    if one_based_index <= 0:
        raise ValueError("one_based_index must be >= 1")
    out: list[str] = []
    value = one_based_index
    while value > 0:
        value, remainder = divmod(value - 1, 26)
        out.append(chr(ord("A") + remainder))
    return "".join(reversed(out))


def _encode_range(range_name: str) -> str:
    return quote(range_name, safe="!:$")


def _cell(row: list[Any], index: int) -> str:
    if index < 0 or index >= len(row) or row[index] is None:
        return ""
    return str(row[index])


def _version_token(response: httpx.Response, values: list[Any]) -> str:
    etag = response.headers.get("etag")
    if etag:
        return etag
    body = json.dumps(values, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def _patch_to_columns(patch: Mapping[str, Any]) -> dict[str, str]:
    """Translate entry-field (or label) keys into sheet labels; title/url/id handled separately."""
    out: dict[str, str] = {}
    for key, value in patch.items():
        field_name = SHEET_TO_ENTRY_FIELD.get(key, key)
        if field_name in {"job_title", "job_posting_url", "record_id"}:
            continue
        column = ENTRY_TO_SHEET_COLUMN.get(field_name)
        if column is None:
            continue
        out[column] = "" if value is None else str(value)
    return out


def _patch_value(patch: Mapping[str, Any], field_name: str) -> str | None:
    for key in (field_name, ENTRY_TO_SHEET_COLUMN.get(field_name, field_name)):
        if key in patch:
            value = patch[key]
            return "" if value is None else str(value)
    return None


def _is_status_color_rule(rule: Any, status_idx: int) -> bool:
    if not isinstance(rule, dict):
        return False
    ranges = rule.get("ranges")
    if not isinstance(ranges, list) or len(ranges) != 1 or not isinstance(ranges[0], dict):
        return False
    if ranges[0].get("startColumnIndex") != status_idx:
        return False
    condition = (rule.get("booleanRule") or {}).get("condition") or {}
    if condition.get("type") != "TEXT_EQ":
        return False
    values = condition.get("values") or []
    return len(values) == 1 and isinstance(values[0], dict) and values[0].get("userEnteredValue") in STATUS_COLORS


async def create_spreadsheet(
    auth: TokenManager,
    *,
    title: str = DEFAULT_SPREADSHEET_TITLE,
    sheet_name: str = DEFAULT_SHEET_NAME,
    base_url: str = DEFAULT_SHEETS_BASE_URL,
) -> str:
    """Create a new spreadsheet with one tab and return its id."""
    response = await auth.request_with_auth(
        "POST",
        f"{base_url}/spreadsheets",
        json={"properties": {"title": title}, "sheets": [{"properties": {"title": sheet_name}}]},
    )
    if response.status_code >= 400:
        raise SheetsApiError(response.status_code, response.text, action="Spreadsheet create")
    payload = response.json()
    spreadsheet_id = payload.get("spreadsheetId") if isinstance(payload, dict) else None
    if not isinstance(spreadsheet_id, str) or not spreadsheet_id:
        raise ValueError("Spreadsheet create response missing spreadsheetId.")
    return spreadsheet_id


class SheetsTableClient:
    """Append/read/update/delete rows of one tab addressed by header label.

    None of the read-then-write sequences are transactional; a concurrent
    editor can change the sheet between the read and the write.
    """

    def __init__(
        self,
        auth: TokenManager,
        spreadsheet_id: str,
        *,
        sheet_name: str = DEFAULT_SHEET_NAME,
        base_url: str = DEFAULT_SHEETS_BASE_URL,
        today: Callable[[], date] = date.today,
        timeout_sec: float | None = None,
    ) -> None:
        if not spreadsheet_id.strip():
            raise ValueError("spreadsheet_id must be non-empty.")
        self._auth = auth
        self._spreadsheet_id = spreadsheet_id.strip()
        self._sheet_name = sheet_name
        self._base_url = base_url.rstrip("/")
        self._today = today
        self._timeout_sec = timeout_sec

    @property
    def spreadsheet_id(self) -> str:
        return self._spreadsheet_id

    def _spreadsheet_url(self, suffix: str = "") -> str:
        return f"{self._base_url}/spreadsheets/{quote(self._spreadsheet_id, safe='')}{suffix}"

    def _values_url(self, range_name: str, suffix: str = "") -> str:
        return self._spreadsheet_url(f"/values/{_encode_range(range_name)}{suffix}")

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        action: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> tuple[dict[str, Any], httpx.Response]:
        kwargs: dict[str, Any] = {}
        if params:
            kwargs["params"] = params
        if body is not None:
            kwargs["json"] = body
        if self._timeout_sec:
            kwargs["timeout"] = self._timeout_sec
        response = await self._auth.request_with_auth(method, url, **kwargs)
        if response.status_code >= 400:
            raise SheetsApiError(response.status_code, response.text, action=action)
        if not response.content:
            return {}, response
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("Google Sheets response must be a JSON object.")
        return payload, response

    async def _batch_update(self, requests: list[dict[str, Any]], *, action: str) -> None:
        if not requests:
            return
        await self._request_json("POST", self._spreadsheet_url(":batchUpdate"), action=action, body={"requests": requests})

    async def _sheet_properties(self) -> tuple[int, list[dict[str, Any]]]:
        payload, _ = await self._request_json(
            "GET",
            self._spreadsheet_url(),
            action="Spreadsheet metadata read",
            params={"fields": "sheets(properties(sheetId,title),conditionalFormats)"},
        )
        sheets = payload.get("sheets")
        for item in sheets if isinstance(sheets, list) else []:
            if not isinstance(item, dict):
                continue
            props = item.get("properties")
            if not isinstance(props, dict) or props.get("title") != self._sheet_name:
                continue
            sheet_id = props.get("sheetId")
            if isinstance(sheet_id, int):
                rules = item.get("conditionalFormats")
                return sheet_id, rules if isinstance(rules, list) else []
        raise SheetLayoutError(f"Sheet tab not found: {self._sheet_name}")

    async def get_header(self) -> list[str]:
        payload, _ = await self._request_json(
            "GET",
            self._values_url(f"{self._sheet_name}!1:1"),
            action="Header read",
            params={"majorDimension": "ROWS"},
        )
        values = payload.get("values")
        first = values[0] if isinstance(values, list) and values and isinstance(values[0], list) else []
        return [str(value).strip() for value in first]

    async def ensure_header(self) -> list[str]:
        """Reassert the canonical header and its styling; existing data rows are untouched."""
        header = list(SHEET_COLUMNS)
        await self._request_json(
            "PUT",
            self._values_url(f"{self._sheet_name}!A1"),
            action="Header write",
            params={"valueInputOption": "USER_ENTERED"},
            body={"range": f"{self._sheet_name}!A1", "values": [header]},
        )
        grid_id, _ = await self._sheet_properties()
        await self._remove_duplicate_columns(grid_id, DEDUPLICATED_COLUMNS)
        await self._apply_header_styling(grid_id, header)
        try:
            await self._apply_validation_and_formatting(header)
        except (SheetsApiError, SheetLayoutError, httpx.HTTPError) as exc:
            logger.warning("Failed to apply validation/formatting: %s", exc)
        return header

    async def _remove_duplicate_columns(self, grid_id: int, labels: tuple[str, ...]) -> list[int]:
        header = await self.get_header()
        to_delete: list[int] = []
        for label in labels:
            matches = [idx for idx, value in enumerate(header) if value.lower() == label.lower()]
            # Keep the left-most occurrence.
            to_delete.extend(matches[1:])
        if not to_delete:
            return []
        # Right-to-left so earlier indices stay valid.
        to_delete.sort(reverse=True)
        logger.info("Removing duplicate header columns at %s", to_delete)
        await self._batch_update(
            [
                {
                    "deleteDimension": {
                        "range": {"sheetId": grid_id, "dimension": "COLUMNS", "startIndex": idx, "endIndex": idx + 1}
                    }
                }
                for idx in to_delete
            ],
            action="Duplicate column delete",
        )
        return to_delete

    async def _apply_header_styling(self, grid_id: int, header: list[str]) -> None:
        requests: list[dict[str, Any]] = [
            {
                "repeatCell": {
                    "range": {
                        "sheetId": grid_id,
                        "startRowIndex": 0,
                        "endRowIndex": 1,
                        "startColumnIndex": 0,
                        "endColumnIndex": len(header),
                    },
                    "cell": {"userEnteredFormat": {"textFormat": {"bold": True}}},
                    "fields": "userEnteredFormat.textFormat.bold",
                }
            },
            {
                "updateSheetProperties": {
                    "properties": {"sheetId": grid_id, "gridProperties": {"frozenRowCount": 1}},
                    "fields": "gridProperties.frozenRowCount",
                }
            },
        ]
        for idx, width in enumerate(COLUMN_WIDTHS[: len(header)]):
            requests.append(
                {
                    "updateDimensionProperties": {
                        "range": {"sheetId": grid_id, "dimension": "COLUMNS", "startIndex": idx, "endIndex": idx + 1},
                        "properties": {"pixelSize": width},
                        "fields": "pixelSize",
                    }
                }
            )
        await self._batch_update(requests, action="Header styling")

    async def _apply_validation_and_formatting(self, header: list[str]) -> None:
        cover_idx = header.index("Cover Letter") if "Cover Letter" in header else -1
        status_idx = header.index("Status") if "Status" in header else -1
        if cover_idx == -1 and status_idx == -1:
            return
        # Re-read: column deletes above may have shifted existing rules.
        grid_id, existing_rules = await self._sheet_properties()

        def build_range(col_idx: int) -> dict[str, int]:
            return {
                "sheetId": grid_id,
                "startRowIndex": 1,
                "endRowIndex": VALIDATION_MAX_ROWS,
                "startColumnIndex": col_idx,
                "endColumnIndex": col_idx + 1,
            }

        def dropdown(col_idx: int, options: tuple[str, ...]) -> dict[str, Any]:
            return {
                "setDataValidation": {
                    "range": build_range(col_idx),
                    "rule": {
                        "condition": {"type": "ONE_OF_LIST", "values": [{"userEnteredValue": v} for v in options]},
                        "strict": True,
                        "showCustomUi": True,
                    },
                }
            }

        requests: list[dict[str, Any]] = []
        if cover_idx != -1:
            requests.append(dropdown(cover_idx, COVER_LETTER_OPTIONS))
        if status_idx != -1:
            stale = [idx for idx, rule in enumerate(existing_rules) if _is_status_color_rule(rule, status_idx)]
            for idx in sorted(stale, reverse=True):
                requests.append({"deleteConditionalFormatRule": {"sheetId": grid_id, "index": idx}})
            requests.append(dropdown(status_idx, STATUS_OPTIONS))
            for value, colors in STATUS_COLORS.items():
                fmt: dict[str, Any] = {"backgroundColor": colors["bg"]}
                if colors.get("white_text"):
                    fmt["textFormat"] = {"foregroundColor": {"red": 1, "green": 1, "blue": 1}}
                requests.append(
                    {
                        "addConditionalFormatRule": {
                            "rule": {
                                "ranges": [build_range(status_idx)],
                                "booleanRule": {
                                    "condition": {"type": "TEXT_EQ", "values": [{"userEnteredValue": value}]},
                                    "format": fmt,
                                },
                            },
                            "index": 0,
                        }
                    }
                )
        await self._batch_update(requests, action="Validation/formatting")

    async def append_row(self, entry: CaptureEntry) -> str | None:
        """Append `entry` in the sheet's current column order; returns the updated range."""
        header = await self.get_header()
        if not header:
            header = list(SHEET_COLUMNS)
        row_map = entry_to_sheet_row(entry, today=self._today())
        values = [[row_map.get(label, "") for label in header]]
        logger.debug("Appending row for record %s", entry.record_id)

        end_col = _column_letters(len(header))
        payload, _ = await self._request_json(
            "POST",
            self._values_url(f"{self._sheet_name}!A1:{end_col}1", ":append"),
            action="Sheets append",
            params={"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
            body={"values": values},
        )
        updates = payload.get("updates")
        updated_range = updates.get("updatedRange") if isinstance(updates, dict) else None
        return updated_range if isinstance(updated_range, str) else None

    async def read_raw(self) -> SheetSnapshot:
        """Bulk-read header and data rows with formulas preserved."""
        payload, response = await self._request_json(
            "GET",
            self._values_url(self._sheet_name),
            action="Sheets read",
            params={"majorDimension": "ROWS", "valueRenderOption": "FORMULA"},
        )
        values = payload.get("values")
        values_rows = values if isinstance(values, list) else []
        header = [str(value).strip() for value in values_rows[0]] if values_rows and isinstance(values_rows[0], list) else []
        rows = [
            ["" if cell is None else str(cell) for cell in row] if isinstance(row, list) else []
            for row in values_rows[1:]
        ]
        return SheetSnapshot(header=header, rows=rows, version=_version_token(response, values_rows))

    async def read_all(self) -> SheetSnapshot:
        """`read_raw` plus rows decoded into entries (link formulas split into title and URL)."""
        snapshot = await self.read_raw()
        snapshot.entries = [sheet_row_to_entry(row_values_to_dict(snapshot.header, row)) for row in snapshot.rows]
        return snapshot

    @staticmethod
    def _find_record_row(snapshot: SheetSnapshot, record_id: str) -> int | None:
        if RECORD_ID_COLUMN not in snapshot.header:
            return None
        id_idx = snapshot.header.index(RECORD_ID_COLUMN)
        for idx, row in enumerate(snapshot.rows):
            if _cell(row, id_idx).strip() == record_id:
                # Data starts at row 2 because row 1 is the header.
                return idx + 2
        return None

    @staticmethod
    def _find_legacy_row(snapshot: SheetSnapshot, patch: Mapping[str, Any]) -> int | None:
        title = _patch_value(patch, "job_title")
        company = _patch_value(patch, "company")
        date_applied = _patch_value(patch, "date_applied")
        if not title or not company or not date_applied:
            return None
        header = snapshot.header
        if TITLE_COLUMN not in header or "Company" not in header or "Date Applied" not in header:
            return None
        title_idx = header.index(TITLE_COLUMN)
        company_idx = header.index("Company")
        date_idx = header.index("Date Applied")
        id_idx = header.index(RECORD_ID_COLUMN) if RECORD_ID_COLUMN in header else -1
        for idx, row in enumerate(snapshot.rows):
            if _cell(row, id_idx).strip():
                continue
            row_title, _ = decode_link_formula(_cell(row, title_idx))
            if (
                row_title.strip() == title.strip()
                and _cell(row, company_idx).strip() == company.strip()
                and _cell(row, date_idx).strip() == date_applied.strip()
            ):
                return idx + 2
        return None

    async def update_by_record_id(self, record_id: str, patch: Mapping[str, Any]) -> int:
        """Rewrite the matching row with `patch` applied; returns the sheet row number."""
        key = record_id.strip()
        if not key:
            raise ValueError("record_id must be non-empty.")
        await self.ensure_header()
        snapshot = await self.read_raw()

        backfill = False
        row_number = self._find_record_row(snapshot, key)
        if row_number is None:
            row_number = self._find_legacy_row(snapshot, patch)
            backfill = row_number is not None
        if row_number is None:
            raise RecordNotFoundError(f"Record not found: {key}")

        header = snapshot.header
        current = list(snapshot.rows[row_number - 2])
        current.extend([""] * (len(header) - len(current)))
        row_map = row_values_to_dict(header, current)
        row_map.update(_patch_to_columns(patch))

        new_title = _patch_value(patch, "job_title")
        new_url = _patch_value(patch, "job_posting_url")
        if new_title is not None or new_url is not None:
            old_title, old_url = decode_link_formula(row_map.get(TITLE_COLUMN, ""))
            row_map[TITLE_COLUMN] = encode_link_formula(
                new_title if new_title is not None else old_title,
                new_url if new_url is not None else old_url,
            )
        if backfill:
            logger.info("Backfilling record id %s into legacy row %s", key, row_number)
            row_map[RECORD_ID_COLUMN] = key

        seen_labels: set[str] = set()
        values: list[str] = []
        for idx, label in enumerate(header):
            if label and label not in seen_labels:
                seen_labels.add(label)
                values.append(row_map.get(label, ""))
            else:
                values.append(current[idx])

        end_col = _column_letters(max(1, len(header)))
        await self._request_json(
            "PUT",
            self._values_url(f"{self._sheet_name}!A{row_number}:{end_col}{row_number}"),
            action="Sheets row update",
            params={"valueInputOption": "USER_ENTERED"},
            body={"values": [values]},
        )
        return row_number

    async def delete_by_record_id(self, record_id: str) -> int:
        """Structurally delete the row holding `record_id`; returns the deleted row number."""
        key = record_id.strip()
        if not key:
            raise ValueError("record_id must be non-empty.")
        await self.ensure_header()
        snapshot = await self.read_raw()
        if RECORD_ID_COLUMN not in snapshot.header:
            raise SheetLayoutError("Record ID column missing")
        row_number = self._find_record_row(snapshot, key)
        if row_number is None:
            raise RecordNotFoundError(f"Record not found: {key}")

        grid_id, _ = await self._sheet_properties()
        await self._batch_update(
            [
                {
                    "deleteDimension": {
                        "range": {
                            "sheetId": grid_id,
                            "dimension": "ROWS",
                            "startIndex": row_number - 1,
                            "endIndex": row_number,
                        }
                    }
                }
            ],
            action="Sheets row delete",
        )
        logger.info("Deleted record %s at row %s", key, row_number)
        return row_number
