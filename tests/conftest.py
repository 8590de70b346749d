from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import httpx
import pytest

from src.jobtrack.core.local_store import LocalStore

SHEET_ID = "sheet-123"
GRID_ID = 777
TOKEN_URI = "https://oauth2.example.test/token"
BASE_URL = "https://sheets.googleapis.com/v4"

_CELL_RE = re.compile(r"^([A-Z]+)?(\d+)?$")


def _col_index(letters: str) -> int:
    value = 0
    for char in letters:
        value = value * 26 + (ord(char) - ord("A") + 1)
    return value - 1


def _parse_range(range_name: str) -> tuple[str, int, int]:
    """Return `(sheet, start_row_index, start_col_index)` for A1 ranges used by the client."""
    sheet, _, cells = range_name.partition("!")
    start = cells.split(":")[0] if cells else "A1"
    match = _CELL_RE.match(start)
    letters = match.group(1) if match and match.group(1) else "A"
    digits = match.group(2) if match and match.group(2) else "1"
    return sheet, int(digits) - 1, _col_index(letters)


class FakeSheetsBackend:
    """In-memory stand-in for the OAuth token endpoint and the Sheets v4 API."""

    def __init__(self, *, sheet_name: str = "Sheet1") -> None:
        self.sheet_name = sheet_name
        self.grid: list[list[str]] = []
        self.conditional_formats: list[dict[str, Any]] = []
        self.validations: dict[int, list[str]] = {}
        self.requests: list[httpx.Request] = []
        self.batch_requests: list[dict[str, Any]] = []
        self.failures: dict[str, list[tuple[int, str]]] = {}
        self.unauthorized_tokens: set[str] = set()
        self.token_calls = 0
        self.issued_tokens: list[str] = []
        self.etag: str | None = None
        self.created_titles: list[str] = []

    @property
    def spreadsheet_url(self) -> str:
        return f"{BASE_URL}/spreadsheets/{SHEET_ID}"

    def fail_next(self, kind: str, status: int = 500, body: str = "boom") -> None:
        self.failures.setdefault(kind, []).append((status, body))

    def set_rows(self, rows: list[list[str]]) -> None:
        self.grid = [list(row) for row in rows]

    @property
    def header(self) -> list[str]:
        return list(self.grid[0]) if self.grid else []

    def _trimmed(self) -> list[list[str]]:
        rows = [list(row) for row in self.grid]
        for row in rows:
            while row and row[-1] == "":
                row.pop()
        while rows and not rows[-1]:
            rows.pop()
        return rows

    def _write(self, row_idx: int, col_idx: int, values: list[list[Any]]) -> None:
        for r_offset, row_values in enumerate(values):
            target = row_idx + r_offset
            while len(self.grid) <= target:
                self.grid.append([])
            row = self.grid[target]
            for c_offset, value in enumerate(row_values):
                col = col_idx + c_offset
                while len(row) <= col:
                    row.append("")
                row[col] = "" if value is None else str(value)

    def _json(self, status: int, payload: dict[str, Any], headers: dict[str, str] | None = None) -> httpx.Response:
        return httpx.Response(status, json=payload, headers=headers)

    def _apply_batch(self, requests: list[dict[str, Any]]) -> None:
        for req in requests:
            self.batch_requests.append(req)
            if "deleteDimension" in req:
                rng = req["deleteDimension"]["range"]
                start, end = rng["startIndex"], rng["endIndex"]
                if rng["dimension"] == "ROWS":
                    del self.grid[start:end]
                else:
                    for row in self.grid:
                        del row[start:end]
            elif "addConditionalFormatRule" in req:
                rule_req = req["addConditionalFormatRule"]
                self.conditional_formats.insert(rule_req.get("index", 0), rule_req["rule"])
            elif "deleteConditionalFormatRule" in req:
                del self.conditional_formats[req["deleteConditionalFormatRule"]["index"]]
            elif "setDataValidation" in req:
                rule_req = req["setDataValidation"]
                values = rule_req["rule"]["condition"]["values"]
                self.validations[rule_req["range"]["startColumnIndex"]] = [v["userEnteredValue"] for v in values]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = request.url
        if str(url).startswith(TOKEN_URI):
            self.token_calls += 1
            token = f"token-{self.token_calls}"
            self.issued_tokens.append(token)
            return self._json(200, {"access_token": token, "expires_in": 3600, "token_type": "Bearer"})

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token in self.unauthorized_tokens:
            return httpx.Response(401, text="unauthorized")

        path = url.path.removeprefix("/v4")
        body = json.loads(request.content) if request.content else {}

        if path == "/spreadsheets" and request.method == "POST":
            if self.failures.get("create"):
                status, text = self.failures["create"].pop(0)
                return httpx.Response(status, text=text)
            self.created_titles.append(body["properties"]["title"])
            return self._json(200, {"spreadsheetId": SHEET_ID})

        prefix = f"/spreadsheets/{SHEET_ID}"
        if not path.startswith(prefix):
            return httpx.Response(404, text="spreadsheet not found")
        rest = path[len(prefix):]

        if rest == "" and request.method == "GET":
            return self._json(
                200,
                {
                    "sheets": [
                        {
                            "properties": {"sheetId": GRID_ID, "title": self.sheet_name},
                            "conditionalFormats": list(self.conditional_formats),
                        }
                    ]
                },
            )
        if rest == ":batchUpdate":
            if self.failures.get("batch"):
                status, text = self.failures["batch"].pop(0)
                return httpx.Response(status, text=text)
            self._apply_batch(body["requests"])
            return self._json(200, {"replies": [{} for _ in body["requests"]]})

        if rest.startswith("/values/"):
            range_name = rest[len("/values/"):]
            if range_name.endswith(":append"):
                if self.failures.get("append"):
                    status, text = self.failures["append"].pop(0)
                    return httpx.Response(status, text=text)
                next_row = len(self._trimmed())
                self._write(next_row, 0, body["values"])
                return self._json(200, {"updates": {"updatedRange": f"{self.sheet_name}!A{next_row + 1}"}})
            if request.method == "PUT":
                if self.failures.get("put"):
                    status, text = self.failures["put"].pop(0)
                    return httpx.Response(status, text=text)
                _, row_idx, col_idx = _parse_range(range_name)
                self._write(row_idx, col_idx, body["values"])
                return self._json(200, {"updatedRange": range_name, "updatedRows": len(body["values"])})
            if request.method == "GET":
                if self.failures.get("read"):
                    status, text = self.failures["read"].pop(0)
                    return httpx.Response(status, text=text)
                rows = self._trimmed()
                if range_name.endswith("!1:1"):
                    payload: dict[str, Any] = {"values": rows[:1]} if rows else {}
                else:
                    payload = {"values": rows} if rows else {}
                headers = {"ETag": self.etag} if self.etag else None
                return self._json(200, payload, headers=headers)

        return httpx.Response(400, text=f"unhandled {request.method} {path}")


@pytest.fixture()
def sheets_backend() -> FakeSheetsBackend:
    return FakeSheetsBackend()


@pytest.fixture()
def sheets_transport(sheets_backend: FakeSheetsBackend) -> httpx.MockTransport:
    return httpx.MockTransport(sheets_backend.handler)


@pytest.fixture()
def local_store(tmp_path: Path) -> LocalStore:
    return LocalStore(tmp_path / "state.json")


@pytest.fixture()
def oauth_settings() -> dict[str, Any]:
    return {
        "client_id": "test-client-id.apps.googleusercontent.com",
        "client_secret": "test-client-secret",
        "refresh_token": "refresh-config-token",
        "token_uri": TOKEN_URI,
        "auth_uri": "https://accounts.example.test/o/oauth2/auth",
        "redirect_uri": "https://app.example.test/oauth2",
        "scopes": ["https://www.googleapis.com/auth/spreadsheets"],
        "timeout_sec": 5,
    }
