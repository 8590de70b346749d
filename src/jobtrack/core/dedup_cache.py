"""TTL'd seen-record cache and short-lived per-record in-flight locks."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from src.jobtrack.core.config_loader import (
    DEFAULT_DEDUP_MAX_ENTRIES,
    DEFAULT_DEDUP_TTL_DAYS,
    DEFAULT_LOCK_WINDOW_SEC,
)
from src.jobtrack.core.local_store import LocalStore

logger = logging.getLogger(__name__)

DEDUP_CACHE_KEY = "dedup_cache"
CACHE_VERSION = 2


class InflightError(RuntimeError):
    """Raised when a capture for the same record id is already being processed."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Capture already in flight: {record_id}")
        self.record_id = record_id


@dataclass(frozen=True, slots=True)
class CacheHealth:
    healthy: bool
    size: int
    version: Any
    problems: tuple[str, ...] = field(default_factory=tuple)


class DedupCache:
    """Persisted map of record id -> first-seen epoch seconds.

    Expired entries are dropped lazily on `load`; the filtered map is only
    written back by the next `save`.
    """

    def __init__(
        self,
        store: LocalStore,
        *,
        ttl_sec: int = DEFAULT_DEDUP_TTL_DAYS * 24 * 60 * 60,
        max_entries: int = DEFAULT_DEDUP_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._ttl_sec = ttl_sec
        self._max_entries = max_entries
        self._clock = clock

    async def _read_payload(self) -> dict[str, Any]:
        raw = await self._store.get(DEDUP_CACHE_KEY, {})
        return raw if isinstance(raw, dict) else {}

    def _live_entries(self, payload: Any) -> dict[str, float]:
        seen = payload.get("seen") if isinstance(payload, dict) else None
        if not isinstance(seen, dict):
            return {}
        cutoff = self._clock() - self._ttl_sec
        out: dict[str, float] = {}
        for record_id, first_seen in seen.items():
            if not isinstance(first_seen, (int, float)):
                continue
            if first_seen >= cutoff:
                out[str(record_id)] = float(first_seen)
        return out

    def _envelope(self, seen: dict[str, float]) -> dict[str, Any]:
        return {
            "version": CACHE_VERSION,
            "seen": dict(seen),
            "health_checked_at": self._clock(),
        }

    async def load(self) -> dict[str, float]:
        return self._live_entries(await self._read_payload())

    async def save(self, seen: dict[str, float]) -> None:
        await self._store.set(DEDUP_CACHE_KEY, self._envelope(seen))

    def health_check(self, payload: dict[str, Any]) -> CacheHealth:
        seen = payload.get("seen")
        size = len(seen) if isinstance(seen, dict) else 0
        version = payload.get("version")
        problems: list[str] = []
        if payload and version != CACHE_VERSION:
            problems.append(f"version mismatch: {version!r} != {CACHE_VERSION}")
        if size > self._max_entries:
            problems.append(f"implausible size: {size} > {self._max_entries}")
        return CacheHealth(healthy=not problems, size=size, version=version, problems=tuple(problems))

    async def check_health(self) -> CacheHealth:
        """Compute and log a verdict; no corrective action is taken."""
        verdict = self.health_check(await self._read_payload())
        if not verdict.healthy:
            logger.warning("dedup cache unhealthy: %s", "; ".join(verdict.problems))
        return verdict

    async def mark_seen(self, record_id: str) -> None:
        def _add(payload: Any) -> dict[str, Any]:
            seen = self._live_entries(payload)
            seen[record_id] = self._clock()
            return self._envelope(seen)

        await self._store.update(DEDUP_CACHE_KEY, _add, {})

    async def forget(self, record_id: str) -> bool:
        existed = False

        def _drop(payload: Any) -> dict[str, Any]:
            nonlocal existed
            seen = self._live_entries(payload)
            existed = seen.pop(record_id, None) is not None
            return self._envelope(seen)

        await self._store.update(DEDUP_CACHE_KEY, _drop, {})
        return existed


class InflightLocks:
    """In-process lock table: record id -> lock-expiry epoch seconds."""

    def __init__(
        self,
        *,
        window_sec: float = DEFAULT_LOCK_WINDOW_SEC,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._window_sec = window_sec
        self._clock = clock
        self._expiry: dict[str, float] = {}

    def is_held(self, record_id: str) -> bool:
        return self._expiry.get(record_id, 0.0) > self._clock()

    def acquire(self, record_id: str) -> None:
        if self.is_held(record_id):
            raise InflightError(record_id)
        self._expiry[record_id] = self._clock() + self._window_sec

    def release(self, record_id: str) -> None:
        self._expiry.pop(record_id, None)

    @contextmanager
    def hold(self, record_id: str) -> Iterator[None]:
        self.acquire(record_id)
        try:
            yield
        finally:
            self.release(record_id)
