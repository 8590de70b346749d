"""Load and query JobTrack JSON config files."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("config/config.json")
DEFAULT_STATE_PATH = Path("data/state.json")
DEFAULT_SHEET_NAME = "Sheet1"
DEFAULT_SHEETS_BASE_URL = "https://sheets.googleapis.com/v4"
DEFAULT_TIMEOUT_SEC = 15
DEFAULT_DEDUP_TTL_DAYS = 90
DEFAULT_DEDUP_MAX_ENTRIES = 5000
DEFAULT_LOCK_WINDOW_SEC = 10
_CONFIG_CACHE: dict[Path, tuple[int, dict[str, Any]]] = {}


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[3]


def _resolve_repo_relative_path(raw_path: str | Path) -> Path:
    path = Path(raw_path)
    if not path.is_absolute():
        path = _repo_root() / path
    return path.resolve()


def resolve_config_path(config_path: str | Path | None = None) -> Path:
    """Resolve config path against repo root.

    Priority:
    1. explicit function argument
    2. `JOBTRACK_CONFIG_PATH` environment variable
    3. default `config/config.json`
    """
    raw_path: str | Path | None = config_path or os.getenv("JOBTRACK_CONFIG_PATH")
    candidate = Path(raw_path) if raw_path else DEFAULT_CONFIG_PATH
    return _resolve_repo_relative_path(candidate)


def load_config(config_path: str | Path | None = None, *, use_cache: bool = True) -> dict[str, Any]:
    """Load config JSON as a dictionary."""
    resolved = resolve_config_path(config_path)
    if not resolved.exists():
        raise FileNotFoundError(f"Config file not found: {resolved}")

    mtime_ns = resolved.stat().st_mtime_ns
    if use_cache and resolved in _CONFIG_CACHE:
        cached_mtime_ns, cached_payload = _CONFIG_CACHE[resolved]
        if cached_mtime_ns == mtime_ns:
            return cached_payload

    try:
        payload = json.loads(resolved.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in config file: {resolved}") from exc

    if not isinstance(payload, dict):
        raise ValueError(f"Config root must be a JSON object: {resolved}")

    _CONFIG_CACHE[resolved] = (mtime_ns, payload)
    return payload


def clear_config_cache() -> None:
    """Clear in-memory config cache."""
    _CONFIG_CACHE.clear()


def _load_or_empty(config: dict[str, Any] | None) -> dict[str, Any]:
    if config is not None:
        return config
    try:
        return load_config()
    except (FileNotFoundError, ValueError):
        return {}


def _section(payload: dict[str, Any], name: str) -> dict[str, Any]:
    block = payload.get(name)
    return block if isinstance(block, dict) else {}


def _positive_int(value: Any, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def get_google_oauth_config(config: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return the `google_oauth` block with string-typed fields only."""
    block = _section(_load_or_empty(config), "google_oauth")

    def _text(key: str) -> str | None:
        value = block.get(key)
        return value.strip() if isinstance(value, str) and value.strip() else None

    scopes = block.get("scopes")
    return {
        "client_id": _text("client_id"),
        "client_secret": _text("client_secret"),
        "refresh_token": _text("refresh_token"),
        "token_uri": _text("token_uri"),
        "auth_uri": _text("auth_uri"),
        "redirect_uri": _text("redirect_uri"),
        "scopes": [scope for scope in scopes if isinstance(scope, str) and scope.strip()] if isinstance(scopes, list) else [],
        "timeout_sec": _positive_int(block.get("timeout_sec"), DEFAULT_TIMEOUT_SEC),
    }


def get_google_sheets_config(config: dict[str, Any] | None = None) -> dict[str, Any]:
    block = _section(_load_or_empty(config), "google_sheets")
    sheet_name = block.get("sheet_name")
    base_url = block.get("base_url")
    return {
        "sheet_name": sheet_name.strip() if isinstance(sheet_name, str) and sheet_name.strip() else DEFAULT_SHEET_NAME,
        "base_url": base_url.rstrip("/") if isinstance(base_url, str) and base_url.strip() else DEFAULT_SHEETS_BASE_URL,
        "timeout_sec": _positive_int(block.get("timeout_sec"), DEFAULT_TIMEOUT_SEC),
    }


def get_state_path(config: dict[str, Any] | None = None) -> Path:
    """Return the local state file path, resolved against repo root."""
    block = _section(_load_or_empty(config), "state")
    raw_path = block.get("path")
    if isinstance(raw_path, str) and raw_path.strip():
        return _resolve_repo_relative_path(raw_path.strip())
    return _resolve_repo_relative_path(DEFAULT_STATE_PATH)


def get_dedup_config(config: dict[str, Any] | None = None) -> dict[str, int]:
    block = _section(_load_or_empty(config), "dedup")
    return {
        "ttl_sec": _positive_int(block.get("ttl_days"), DEFAULT_DEDUP_TTL_DAYS) * 24 * 60 * 60,
        "max_entries": _positive_int(block.get("max_entries"), DEFAULT_DEDUP_MAX_ENTRIES),
        "lock_window_sec": _positive_int(block.get("lock_window_sec"), DEFAULT_LOCK_WINDOW_SEC),
    }


def get_log_level(config: dict[str, Any] | None = None) -> str:
    block = _section(_load_or_empty(config), "logging")
    level = block.get("level")
    return level.strip().upper() if isinstance(level, str) and level.strip() else "INFO"
