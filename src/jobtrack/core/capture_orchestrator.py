"""Per-capture pipeline: identify, lock, dedup, commit locally, then sync the sheet in the background.

Success is acknowledged right after the local commit. If the remote append
later fails, the dedup entry is rolled back so a new capture of the same
record can go through again.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Callable

from src.jobtrack.core.capture_schema import CaptureEntry
from src.jobtrack.core.dedup_cache import DedupCache, InflightError, InflightLocks
from src.jobtrack.core.identity import resolve_identity
from src.jobtrack.core.local_store import LocalStore, get_settings, push_recent_entry
from src.jobtrack.tools.kernel.google_sheets_job_apps import SheetsTableClient

logger = logging.getLogger(__name__)

NOT_CONFIGURED_REASON = "No Sheet ID configured"

CaptureListener = Callable[[dict[str, Any]], Any]
TableFactory = Callable[[str], SheetsTableClient]


class CaptureState(str, Enum):
    RECEIVED = "received"
    IDENTIFIED = "identified"
    LOCK_CHECK = "lock-check"
    DEDUP_CHECK = "dedup-check"
    OPTIMISTIC_COMMITTED = "optimistic-committed"
    REMOTE_PENDING = "remote-pending"
    REMOTE_CONFIRMED = "remote-confirmed"
    REMOTE_FAILED = "remote-failed"
    NOT_CONFIGURED = "not-configured"
    SOURCE_DISABLED = "source-disabled"
    IN_FLIGHT = "in-flight"
    DUPLICATE = "duplicate"


@dataclass(slots=True)
class CaptureOutcome:
    appended: bool
    state: CaptureState
    record_id: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"appended": self.appended, "record_id": self.record_id}
        if self.reason:
            out["reason"] = self.reason
        return out


def _resolve(ack: asyncio.Future[CaptureOutcome], outcome: CaptureOutcome) -> None:
    # the caller may have gone away; the background sync still runs
    if not ack.done():
        ack.set_result(outcome)


class CaptureOrchestrator:
    """Owns the process-wide capture state: lock table, dedup cache and pending syncs."""

    def __init__(
        self,
        *,
        store: LocalStore,
        dedup: DedupCache,
        locks: InflightLocks,
        table_factory: TableFactory,
    ) -> None:
        self._store = store
        self._dedup = dedup
        self._locks = locks
        self._table_factory = table_factory
        self._listeners: list[CaptureListener] = []
        self._pending: set[asyncio.Task[None]] = set()

    def add_listener(self, listener: CaptureListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: CaptureListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def capture(self, entry: CaptureEntry, *, source: str | None = None) -> CaptureOutcome:
        settings = await get_settings(self._store)
        record_id = resolve_identity(entry)
        if not settings.sheet_id:
            return CaptureOutcome(False, CaptureState.NOT_CONFIGURED, record_id, NOT_CONFIGURED_REASON)
        if not settings.source_enabled(source):
            return CaptureOutcome(False, CaptureState.SOURCE_DISABLED, record_id, f"Source disabled: {source}")

        loop = asyncio.get_running_loop()
        ack: asyncio.Future[CaptureOutcome] = loop.create_future()
        task = loop.create_task(self._pipeline(entry, record_id, settings.sheet_id, ack))
        self._pending.add(task)
        task.add_done_callback(partial(self._on_pipeline_done, ack))
        return await asyncio.shield(ack)

    def _on_pipeline_done(self, ack: asyncio.Future[CaptureOutcome], task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if not ack.done():
            ack.cancel()

    async def _pipeline(
        self,
        entry: CaptureEntry,
        record_id: str,
        sheet_id: str,
        ack: asyncio.Future[CaptureOutcome],
    ) -> None:
        try:
            with self._locks.hold(record_id):
                outcome = await self._commit_locally(entry, record_id)
                _resolve(ack, outcome)
                if outcome.appended:
                    await self._sync_remote(entry, record_id, sheet_id)
        except InflightError:
            logger.info("dedup: inflight skip id=%s", record_id)
            _resolve(ack, CaptureOutcome(False, CaptureState.IN_FLIGHT, record_id, "in-flight"))
        except Exception as exc:
            if ack.done():
                raise
            ack.set_exception(exc)

    async def _commit_locally(self, entry: CaptureEntry, record_id: str) -> CaptureOutcome:
        seen = await self._dedup.load()
        await self._dedup.check_health()
        logger.debug("dedup: load size=%s", len(seen))
        if record_id in seen:
            logger.info("dedup: skip id=%s", record_id)
            return CaptureOutcome(False, CaptureState.DUPLICATE, record_id, "duplicate")

        await self._dedup.mark_seen(record_id)
        await push_recent_entry(self._store, entry)
        logger.info("dedup: optimistic commit id=%s", record_id)
        return CaptureOutcome(True, CaptureState.OPTIMISTIC_COMMITTED, record_id)

    async def _sync_remote(self, entry: CaptureEntry, record_id: str, sheet_id: str) -> CaptureState:
        try:
            table = self._table_factory(sheet_id)
            await table.ensure_header()
            await table.append_row(entry)
        except Exception as exc:
            logger.warning("remote append failed id=%s: %s", record_id, exc)
            await self._dedup.forget(record_id)
            logger.info("dedup: rolled back id=%s", record_id)
            await self._notify({"type": "append-failed", "record_id": record_id, "error": str(exc)})
            return CaptureState.REMOTE_FAILED

        logger.info("remote append confirmed id=%s", record_id)
        await self._notify({"type": "append-confirmed", "record_id": record_id})
        return CaptureState.REMOTE_CONFIRMED

    async def _notify(self, event: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("capture listener failed for %s", event.get("type"))

    async def drain(self) -> None:
        """Wait for every background sheet sync started so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
