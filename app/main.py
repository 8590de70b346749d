"""Local HTTP command surface for capture extractors and the settings UI."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI
from pydantic import BaseModel, Field

from src.jobtrack.runtime.service import get_runtime_service

app = FastAPI(title="JobTrack Capture Sync")


class CommandRequest(BaseModel):
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)


class CaptureEntryPayload(BaseModel):
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


class AppendEntryRequest(BaseModel):
    entry: CaptureEntryPayload
    source: str | None = None


class WorkdayCaptureRequest(BaseModel):
    entry: CaptureEntryPayload


class SaveSettingsRequest(BaseModel):
    settings: dict[str, Any]


class DeleteRecordRequest(BaseModel):
    recordId: str


class SheetUpdateRequest(BaseModel):
    recordId: str
    patch: dict[str, Any]


class CreateSheetRequest(BaseModel):
    title: str | None = None


@app.on_event("startup")
def _init_runtime() -> None:
    get_runtime_service().start(source="app")


@app.on_event("shutdown")
async def _drain_runtime() -> None:
    await get_runtime_service().stop(source="app")


@app.get("/health")
def health() -> dict:
    return get_runtime_service().health()


@app.post("/api/commands")
async def dispatch_command(req: CommandRequest) -> dict:
    return await get_runtime_service().handle_command(req.type, req.payload)


@app.post("/api/test-connection")
async def test_connection() -> dict:
    return await get_runtime_service().handle_command("test-connection")


@app.post("/api/append-entry")
async def append_entry(req: AppendEntryRequest) -> dict:
    return await get_runtime_service().handle_command(
        "append-entry",
        {"entry": req.entry.model_dump(), "source": req.source},
    )


@app.post("/api/workday-capture")
async def workday_capture(req: WorkdayCaptureRequest) -> dict:
    return await get_runtime_service().handle_command("workday-capture", {"entry": req.entry.model_dump()})


@app.get("/api/settings")
async def get_settings() -> dict:
    return await get_runtime_service().handle_command("get-settings")


@app.post("/api/settings")
async def save_settings(req: SaveSettingsRequest) -> dict:
    return await get_runtime_service().handle_command("save-settings", {"settings": req.settings})


@app.get("/api/recent")
async def get_recent(limit: int = 10) -> dict:
    safe_limit = max(1, min(50, int(limit)))
    return await get_runtime_service().handle_command("get-recent", {"limit": safe_limit})


@app.post("/api/delete-record")
async def delete_record(req: DeleteRecordRequest) -> dict:
    return await get_runtime_service().handle_command("delete-record", {"recordId": req.recordId})


@app.get("/api/sheet")
async def sheet_pull() -> dict:
    return await get_runtime_service().handle_command("sheet-pull")


@app.post("/api/sheet/update")
async def sheet_update(req: SheetUpdateRequest) -> dict:
    return await get_runtime_service().handle_command("sheet-update", {"recordId": req.recordId, "patch": req.patch})


@app.post("/api/create-sheet")
async def create_sheet(req: CreateSheetRequest) -> dict:
    return await get_runtime_service().handle_command("create-sheet", {"title": req.title})
