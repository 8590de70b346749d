"""Shared runtime ownership facade and command dispatch for daemon/app entrypoints."""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Mapping

import httpx

from src.jobtrack.core.capture_orchestrator import CaptureOrchestrator
from src.jobtrack.core.capture_schema import CaptureEntry
from src.jobtrack.core.config_loader import (
    get_dedup_config,
    get_google_oauth_config,
    get_google_sheets_config,
    get_state_path,
    load_config,
)
from src.jobtrack.core.dedup_cache import DedupCache, InflightLocks
from src.jobtrack.core.local_store import (
    LocalStore,
    get_recent_entries,
    get_settings,
    remove_recent_entry,
    save_settings,
)
from src.jobtrack.core.logging_config import configure_logging
from src.jobtrack.tools.kernel.google_auth import AuthError, ConsentHandler, TokenManager
from src.jobtrack.tools.kernel.google_sheets_job_apps import (
    RecordNotFoundError,
    SheetLayoutError,
    SheetsApiError,
    SheetsTableClient,
    create_spreadsheet,
)

logger = logging.getLogger(__name__)

SOURCE = "runtime_service"
RECENT_EVENTS_MAX = 50

CommandHandler = Callable[[Mapping[str, Any]], Awaitable[dict[str, Any]]]


class CommandError(ValueError):
    """A command payload was missing a required field."""


def _error_payload(command: str, message: str, *, error_code: str, **extra: Any) -> dict[str, Any]:
    return {
        "ok": False,
        "source": SOURCE,
        "command": command,
        "error": message,
        "error_code": error_code,
        **extra,
    }


def _ok_payload(command: str, **extra: Any) -> dict[str, Any]:
    return {"ok": True, "source": SOURCE, "command": command, "error": None, **extra}


def _record_id_from(payload: Mapping[str, Any]) -> str:
    raw = payload.get("recordId", payload.get("record_id"))
    record_id = str(raw).strip() if raw is not None else ""
    if not record_id:
        raise CommandError("recordId must be non-empty.")
    return record_id


class RuntimeService:
    """Single authority for capture state and app-facing commands."""

    def __init__(
        self,
        *,
        config: dict[str, Any] | None = None,
        store: LocalStore | None = None,
        consent_handler: ConsentHandler | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if config is None:
            try:
                config = load_config()
            except (FileNotFoundError, ValueError):
                config = {}
        self._sheets_config = get_google_sheets_config(config)
        dedup_config = get_dedup_config(config)

        self._store = store or LocalStore(get_state_path(config))
        self._auth = TokenManager(
            self._store,
            get_google_oauth_config(config),
            consent_handler=consent_handler,
            transport=transport,
            clock=clock,
        )
        self._dedup = DedupCache(
            self._store,
            ttl_sec=dedup_config["ttl_sec"],
            max_entries=dedup_config["max_entries"],
            clock=clock,
        )
        self._locks = InflightLocks(window_sec=dedup_config["lock_window_sec"], clock=clock)
        self._orchestrator = CaptureOrchestrator(
            store=self._store,
            dedup=self._dedup,
            locks=self._locks,
            table_factory=self.table_client,
        )
        self._events: deque[dict[str, Any]] = deque(maxlen=RECENT_EVENTS_MAX)
        self._orchestrator.add_listener(self._events.append)
        self._started = False
        self._handlers: dict[str, CommandHandler] = {
            "test-connection": self._test_connection,
            "append-entry": self._append_entry,
            "workday-capture": self._workday_capture,
            "get-settings": self._get_settings,
            "save-settings": self._save_settings,
            "get-recent": self._get_recent,
            "delete-record": self._delete_record,
            "sheet-pull": self._sheet_pull,
            "sheet-update": self._sheet_update,
            "create-sheet": self._create_sheet,
        }

    @property
    def store(self) -> LocalStore:
        return self._store

    @property
    def auth(self) -> TokenManager:
        return self._auth

    @property
    def orchestrator(self) -> CaptureOrchestrator:
        return self._orchestrator

    @property
    def commands(self) -> list[str]:
        return sorted(self._handlers)

    def table_client(self, sheet_id: str) -> SheetsTableClient:
        return SheetsTableClient(
            self._auth,
            sheet_id,
            sheet_name=self._sheets_config["sheet_name"],
            base_url=self._sheets_config["base_url"],
            timeout_sec=self._sheets_config["timeout_sec"],
        )

    def start(self, *, source: str = "runtime") -> dict[str, Any]:
        configure_logging()
        already_started = self._started
        self._started = True
        logger.info("runtime started by %s (state file %s)", source, self._store.path)
        return {"ok": True, "source": SOURCE, "already_started": already_started, "start_source": source}

    async def stop(self, *, source: str = "runtime") -> dict[str, Any]:
        pending = self._orchestrator.pending_count
        await self._orchestrator.drain()
        self._started = False
        return {"ok": True, "source": SOURCE, "stopped": True, "stop_source": source, "drained": pending}

    def health(self) -> dict[str, Any]:
        return {
            "ok": True,
            "source": SOURCE,
            "runtime": {"started": self._started, "pending_syncs": self._orchestrator.pending_count},
            "recent_events": list(self._events),
        }

    async def handle_command(self, command: str, payload: Mapping[str, Any] | None = None) -> dict[str, Any]:
        handler = self._handlers.get(command)
        if handler is None:
            return _error_payload(command, f"Unknown command: {command}", error_code="unknown_command")
        try:
            return await handler(payload or {})
        except RecordNotFoundError as exc:
            return _error_payload(command, str(exc), error_code="not_found")
        except SheetsApiError as exc:
            return _error_payload(command, str(exc), error_code="sheets_http_error", status=exc.status, body=exc.body)
        except AuthError as exc:
            return _error_payload(command, f"Google auth failed: {exc}", error_code=exc.error_code or "auth_error")
        except SheetLayoutError as exc:
            return _error_payload(command, str(exc), error_code="sheet_layout_error")
        except httpx.HTTPError as exc:
            return _error_payload(command, f"Network error: {exc}", error_code="network_error")
        except ValueError as exc:
            return _error_payload(command, str(exc), error_code="invalid_request")
        except Exception as exc:
            logger.exception("command %s failed", command)
            return _error_payload(command, f"Internal error: {exc}", error_code="internal_error")

    async def _require_sheet_id(self, command: str) -> str | dict[str, Any]:
        settings = await get_settings(self._store)
        if not settings.sheet_id:
            return _error_payload(command, "Sheet ID not set", error_code="not_configured")
        return settings.sheet_id

    async def _test_connection(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        sheet_id = await self._require_sheet_id("test-connection")
        if isinstance(sheet_id, dict):
            return sheet_id
        header = await self.table_client(sheet_id).ensure_header()
        return _ok_payload("test-connection", header=header)

    async def _capture(self, command: str, payload: Mapping[str, Any], source: str | None) -> dict[str, Any]:
        raw_entry = payload.get("entry")
        if not isinstance(raw_entry, Mapping):
            raise CommandError("entry must be an object.")
        outcome = await self._orchestrator.capture(CaptureEntry.from_dict(raw_entry), source=source)
        return _ok_payload(command, **outcome.to_dict())

    async def _append_entry(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        source = payload.get("source")
        return await self._capture("append-entry", payload, source if isinstance(source, str) else None)

    async def _workday_capture(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        return await self._capture("workday-capture", payload, "workday")

    async def _get_settings(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        settings = await get_settings(self._store)
        return _ok_payload("get-settings", settings=settings.to_dict())

    async def _save_settings(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        updates = payload.get("settings")
        if not isinstance(updates, Mapping):
            raise CommandError("settings must be an object.")
        settings = await save_settings(self._store, updates)
        return _ok_payload("save-settings", settings=settings.to_dict())

    async def _get_recent(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        limit = payload.get("limit")
        entries = await get_recent_entries(self._store, limit if isinstance(limit, int) and limit > 0 else 10)
        return _ok_payload("get-recent", recent=[entry.to_dict() for entry in entries])

    async def _delete_record(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        record_id = _record_id_from(payload)
        removed = await remove_recent_entry(self._store, record_id)
        sheet_id = await self._require_sheet_id("delete-record")
        if isinstance(sheet_id, dict):
            return sheet_id
        row_number = await self.table_client(sheet_id).delete_by_record_id(record_id)
        return _ok_payload("delete-record", record_id=record_id, deleted_row_number=row_number, removed_recent=removed)

    async def _sheet_pull(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        sheet_id = await self._require_sheet_id("sheet-pull")
        if isinstance(sheet_id, dict):
            return sheet_id
        snapshot = await self.table_client(sheet_id).read_all()
        return _ok_payload(
            "sheet-pull",
            header=snapshot.header,
            rows=snapshot.rows,
            version=snapshot.version,
            entries=[entry.to_dict() for entry in snapshot.entries],
        )

    async def _sheet_update(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        record_id = _record_id_from(payload)
        patch = payload.get("patch")
        if not isinstance(patch, Mapping) or not patch:
            raise CommandError("patch must be a non-empty object.")
        sheet_id = await self._require_sheet_id("sheet-update")
        if isinstance(sheet_id, dict):
            return sheet_id
        table = self.table_client(sheet_id)
        row_number = await table.update_by_record_id(record_id, patch)
        # TODO: compare a caller-supplied version before writing once conflict policy is decided.
        snapshot = await table.read_raw()
        return _ok_payload("sheet-update", record_id=record_id, row_number=row_number, version=snapshot.version)

    async def _create_sheet(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        title = payload.get("title")
        spreadsheet_id = await create_spreadsheet(
            self._auth,
            title=title.strip() if isinstance(title, str) and title.strip() else "Job Applications",
            sheet_name=self._sheets_config["sheet_name"],
            base_url=self._sheets_config["base_url"],
        )
        await save_settings(self._store, {"sheet_id": spreadsheet_id})
        await self.table_client(spreadsheet_id).ensure_header()
        logger.info("created spreadsheet %s", spreadsheet_id)
        return _ok_payload("create-sheet", sheetId=spreadsheet_id)


_RUNTIME_SERVICE: RuntimeService | None = None


def get_runtime_service() -> RuntimeService:
    global _RUNTIME_SERVICE
    if _RUNTIME_SERVICE is None:
        _RUNTIME_SERVICE = RuntimeService()
    return _RUNTIME_SERVICE


def reset_runtime_service(service: RuntimeService | None = None) -> None:
    """Swap the process-wide runtime (tests and re-configuration)."""
    global _RUNTIME_SERVICE
    _RUNTIME_SERVICE = service
