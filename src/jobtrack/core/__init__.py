"""Core capture utilities for JobTrack."""

from .capture_schema import CaptureEntry, SHEET_COLUMNS, decode_link_formula, encode_link_formula
from .config_loader import (
    clear_config_cache,
    get_dedup_config,
    get_google_oauth_config,
    get_google_sheets_config,
    get_state_path,
    load_config,
    resolve_config_path,
)
from .dedup_cache import DedupCache, InflightError, InflightLocks
from .identity import compute_record_id, resolve_identity
from .local_store import LocalStore, Settings

__all__ = [
    "CaptureEntry",
    "DedupCache",
    "InflightError",
    "InflightLocks",
    "LocalStore",
    "SHEET_COLUMNS",
    "Settings",
    "clear_config_cache",
    "compute_record_id",
    "decode_link_formula",
    "encode_link_formula",
    "get_dedup_config",
    "get_google_oauth_config",
    "get_google_sheets_config",
    "get_state_path",
    "load_config",
    "resolve_config_path",
    "resolve_identity",
]
