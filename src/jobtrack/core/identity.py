"""Deterministic record-id derivation for captured entries.

Rules are evaluated in priority order; the first rule whose predicate accepts
the entry and whose extractor yields an id wins. The content-hash fallback
always produces an id, so resolution never fails.

The requisition rule rewrites ``entry.job_posting_url`` to its cleaned form
when it matches. No other rule mutates the entry besides attaching
``record_id``.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Callable
from urllib.parse import parse_qs, urlsplit, urlunsplit

from src.jobtrack.core.capture_schema import CaptureEntry

_LINKEDIN_VIEW_RE = re.compile(r"/jobs/view/(\d+)")
_LINKEDIN_QUERY_KEYS = ("currentJobId", "postApplyJobId", "jobId")
_LOCALE_PREFIX_RE = re.compile(r"^/[a-z]{2}[-_][A-Za-z]{2}(?=/|$)")
_APPLY_SUFFIX_RE = re.compile(r"/apply(?:/.*)?$", re.IGNORECASE)
_REPEATED_SLASH_RE = re.compile(r"/{2,}")
_REQUISITION_RE = re.compile(r"(?:^|[^A-Za-z0-9])(R[-_]?\d{4,})(?![0-9])", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class IdentityRule:
    name: str
    predicate: Callable[[CaptureEntry], bool]
    extractor: Callable[[CaptureEntry], str | None]


def _host(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def _path_parts(url: str) -> list[str]:
    try:
        path = urlsplit(url).path
    except ValueError:
        return []
    return [part for part in path.split("/") if part]


def _is_linkedin(entry: CaptureEntry) -> bool:
    host = _host(entry.job_posting_url)
    return host == "linkedin.com" or host.endswith(".linkedin.com")


def _linkedin_id(entry: CaptureEntry) -> str | None:
    parts = urlsplit(entry.job_posting_url)
    match = _LINKEDIN_VIEW_RE.search(parts.path)
    if match:
        return f"li:{match.group(1)}"
    query = parse_qs(parts.query)
    for key in _LINKEDIN_QUERY_KEYS:
        values = query.get(key) or []
        if values and values[0].isdigit():
            return f"li:{values[0]}"
    return None


def _is_greenhouse(entry: CaptureEntry) -> bool:
    return _host(entry.job_posting_url).endswith("greenhouse.io")


def _greenhouse_id(entry: CaptureEntry) -> str | None:
    parts = _path_parts(entry.job_posting_url)
    if "jobs" not in parts:
        return None
    idx = parts.index("jobs")
    if idx == 0 or idx + 1 >= len(parts):
        return None
    return f"gh:{parts[idx - 1].lower()}/{parts[idx + 1]}"


def _is_lever(entry: CaptureEntry) -> bool:
    return _host(entry.job_posting_url) == "jobs.lever.co"


def _lever_id(entry: CaptureEntry) -> str | None:
    parts = _path_parts(entry.job_posting_url)
    if len(parts) < 2:
        return None
    return f"lever:{parts[0].lower()}/{parts[1]}"


def _is_requisition_url(entry: CaptureEntry) -> bool:
    url = entry.job_posting_url
    if "workday" in _host(url):
        return True
    try:
        return "/job/" in urlsplit(url).path
    except ValueError:
        return False


def clean_requisition_url(url: str) -> str:
    """Drop query, fragment, locale prefix and the `/apply` tail; collapse repeated slashes."""
    parts = urlsplit(url.strip())
    path = _REPEATED_SLASH_RE.sub("/", parts.path)
    path = _LOCALE_PREFIX_RE.sub("", path)
    path = _APPLY_SUFFIX_RE.sub("", path)
    path = _REPEATED_SLASH_RE.sub("/", path).rstrip("/")
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


def _requisition_id(entry: CaptureEntry) -> str | None:
    cleaned = clean_requisition_url(entry.job_posting_url)
    segments = _path_parts(cleaned)
    # Prefer the trailing segment, where boards put the title_REQ slug.
    for candidate in [segments[-1] if segments else "", urlsplit(cleaned).path]:
        match = _REQUISITION_RE.search(candidate)
        if match:
            entry.job_posting_url = cleaned
            return "wd:" + match.group(1).upper().replace("_", "-")
    return None


def content_hash_id(entry: CaptureEntry) -> str:
    base = f"{entry.job_title}|{entry.company}|{entry.job_posting_url}|{entry.date_applied}"
    return "h:" + hashlib.sha256(base.encode("utf-8")).hexdigest()


IDENTITY_RULES: tuple[IdentityRule, ...] = (
    IdentityRule("linkedin", _is_linkedin, _linkedin_id),
    IdentityRule("greenhouse", _is_greenhouse, _greenhouse_id),
    IdentityRule("lever", _is_lever, _lever_id),
    IdentityRule("requisition", _is_requisition_url, _requisition_id),
)


def compute_record_id(entry: CaptureEntry, rules: tuple[IdentityRule, ...] = IDENTITY_RULES) -> str:
    for rule in rules:
        if not rule.predicate(entry):
            continue
        record_id = rule.extractor(entry)
        if record_id:
            return record_id
    return content_hash_id(entry)


def resolve_identity(entry: CaptureEntry, rules: tuple[IdentityRule, ...] = IDENTITY_RULES) -> str:
    """Attach and return the entry's record id."""
    record_id = compute_record_id(entry, rules)
    entry.record_id = record_id
    return record_id
