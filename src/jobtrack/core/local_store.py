"""Persisted local key-value state: settings, recent entries, dedup cache, token bundle."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Callable, Mapping

from src.jobtrack.core.capture_schema import CaptureEntry

logger = logging.getLogger(__name__)

SETTINGS_KEY = "settings"
RECENT_ENTRIES_KEY = "recent_entries"
RECENT_ENTRIES_MAX = 50
RECENT_ENTRIES_DEFAULT_LIMIT = 10
_LEGACY_SETTINGS_KEYS = ("oauthClientId", "oauth_client_id")


def _read_state_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        logger.warning("Local state file unreadable, starting empty: %s", path)
        return {}
    return payload if isinstance(payload, dict) else {}


def _write_state_file_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f"{path.name}.tmp")
    temp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    temp_path.replace(path)


class LocalStore:
    """JSON-file key-value store.

    Every mutation rewrites the file atomically, so the process can be killed
    between any two awaits without leaving a torn file behind.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._lock:
            payload = await asyncio.to_thread(_read_state_file, self._path)
        return payload.get(key, default)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            payload = await asyncio.to_thread(_read_state_file, self._path)
            payload[key] = value
            await asyncio.to_thread(_write_state_file_atomic, self._path, payload)

    async def update(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        """Read `key`, apply `fn` and write the result back under one lock.

        `fn` must be synchronous; the returned value is what was stored.
        """
        async with self._lock:
            payload = await asyncio.to_thread(_read_state_file, self._path)
            value = fn(payload.get(key, default))
            payload[key] = value
            await asyncio.to_thread(_write_state_file_atomic, self._path, payload)
        return value

    async def remove(self, key: str) -> None:
        async with self._lock:
            payload = await asyncio.to_thread(_read_state_file, self._path)
            if key not in payload:
                return
            payload.pop(key)
            await asyncio.to_thread(_write_state_file_atomic, self._path, payload)


_TRUE_STRINGS = frozenset({"true", "1", "yes", "on"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "off", ""})


def _parse_flag(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ValueError(f"Setting {key} must be a boolean, got {value!r}")


@dataclass(slots=True)
class Settings:
    sheet_id: str = ""
    enable_linkedin: bool = True
    enable_workday: bool = True
    enable_greenhouse: bool = True
    enable_lever: bool = True
    enable_oracle_taleo: bool = True
    enable_generic: bool = True
    show_toast: bool = True

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Settings":
        known = {item.name: item for item in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in payload.items():
            if key not in known:
                continue
            if key == "sheet_id":
                values[key] = str(value).strip() if value is not None else ""
            else:
                values[key] = _parse_flag(key, value)
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def source_enabled(self, source: str | None) -> bool:
        if not source:
            return True
        flag = f"enable_{source.strip().lower().replace('-', '_')}"
        return bool(getattr(self, flag, True))


def _settings_payload(raw: Any) -> dict[str, Any]:
    payload = dict(raw) if isinstance(raw, dict) else {}
    for key in _LEGACY_SETTINGS_KEYS:
        payload.pop(key, None)
    return payload


def _recent_items(raw: Any) -> list[Any]:
    return list(raw) if isinstance(raw, list) else []


async def get_settings(store: LocalStore) -> Settings:
    raw = await store.get(SETTINGS_KEY, {})
    if isinstance(raw, dict) and any(key in raw for key in _LEGACY_SETTINGS_KEYS):
        raw = await store.update(SETTINGS_KEY, _settings_payload, {})
    return Settings.from_dict(_settings_payload(raw))


async def save_settings(store: LocalStore, updates: Mapping[str, Any]) -> Settings:
    """Merge `updates` over the current settings and persist the result.

    Raises ValueError for a flag that is not a recognizable boolean; nothing is written then.
    """
    Settings.from_dict(updates)

    def _merge(raw: Any) -> dict[str, Any]:
        current = Settings.from_dict(_settings_payload(raw))
        return Settings.from_dict({**current.to_dict(), **dict(updates)}).to_dict()

    return Settings.from_dict(await store.update(SETTINGS_KEY, _merge, {}))


async def get_recent_entries(store: LocalStore, limit: int = RECENT_ENTRIES_DEFAULT_LIMIT) -> list[CaptureEntry]:
    items = _recent_items(await store.get(RECENT_ENTRIES_KEY, []))
    return [CaptureEntry.from_dict(item) for item in items[: max(0, limit)] if isinstance(item, dict)]


async def push_recent_entry(store: LocalStore, entry: CaptureEntry) -> None:
    def _push(raw: Any) -> list[Any]:
        items = _recent_items(raw)
        items.insert(0, entry.to_dict())
        return items[:RECENT_ENTRIES_MAX]

    await store.update(RECENT_ENTRIES_KEY, _push, [])


async def remove_recent_entry(store: LocalStore, record_id: str) -> int:
    """Drop entries with `record_id` from the recent list; returns how many were removed."""
    removed = 0

    def _drop(raw: Any) -> list[Any]:
        nonlocal removed
        items = _recent_items(raw)
        kept = [item for item in items if not (isinstance(item, dict) and (item.get("record_id") or "") == record_id)]
        removed = len(items) - len(kept)
        return kept

    await store.update(RECENT_ENTRIES_KEY, _drop, [])
    return removed
