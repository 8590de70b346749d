"""Google OAuth bearer-token lifecycle helpers."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx

from src.jobtrack.core.local_store import LocalStore

logger = logging.getLogger(__name__)

TOKEN_KEY = "token"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
DEFAULT_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
SPREADSHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
DEFAULT_TIMEOUT_SEC = 15
DEFAULT_EXPIRES_IN_SEC = 3600
EXPIRY_SKEW_SEC = 60

ConsentHandler = Callable[[str], Awaitable[str]]


class AuthError(RuntimeError):
    """No usable bearer token could be obtained."""

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code


def _iso_utc(epoch: int) -> str:
    return datetime.fromtimestamp(epoch, tz=UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _parse_expires_epoch(token_payload: dict[str, Any]) -> int | None:
    raw_epoch = token_payload.get("expires_at_epoch")
    if isinstance(raw_epoch, (int, float)):
        return int(raw_epoch)

    raw_iso = token_payload.get("expires_at")
    if isinstance(raw_iso, str) and raw_iso.strip():
        try:
            parsed = datetime.fromisoformat(raw_iso.replace("Z", "+00:00"))
        except ValueError:
            return None
        return int(parsed.timestamp())
    return None


def _token_is_usable(token_payload: dict[str, Any], *, now: float, skew_sec: int = EXPIRY_SKEW_SEC) -> bool:
    access_token = token_payload.get("access_token")
    if not isinstance(access_token, str) or not access_token.strip():
        return False
    expires_epoch = _parse_expires_epoch(token_payload)
    if expires_epoch is None:
        return False
    return expires_epoch > int(now) + skew_sec


def _safe_provider_error(response: httpx.Response) -> tuple[str, str]:
    error_code = "google_oauth_http_error"
    message = f"OAuth token request failed with HTTP {response.status_code}."

    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        raw_code = payload.get("error")
        if isinstance(raw_code, str) and raw_code:
            error_code = raw_code
        raw_desc = payload.get("error_description")
        if isinstance(raw_desc, str) and raw_desc:
            message = raw_desc

    if "invalid_grant" in error_code.lower():
        message = "Refresh token is invalid or expired. Re-authentication is required."

    return message, error_code


def parse_consent_redirect(redirect_url: str) -> tuple[str, int]:
    """Extract `(access_token, expires_in)` from an implicit-grant redirect fragment."""
    fragment = urlsplit(redirect_url or "").fragment
    params = parse_qs(fragment)
    if params.get("error"):
        raise AuthError(f"Consent was not granted: {params['error'][0]}", error_code="consent_denied")
    access_token = (params.get("access_token") or [""])[0]
    if not access_token:
        raise AuthError("Failed to obtain access token", error_code="invalid_response")
    try:
        expires_in = int((params.get("expires_in") or [DEFAULT_EXPIRES_IN_SEC])[0])
    except ValueError:
        expires_in = DEFAULT_EXPIRES_IN_SEC
    return access_token, expires_in if expires_in > 0 else DEFAULT_EXPIRES_IN_SEC


class TokenManager:
    """Acquire, cache and refresh the Sheets bearer token.

    Concurrent callers that find no valid cached token share one acquisition
    task, so at most one consent prompt or refresh request is outstanding.
    """

    def __init__(
        self,
        store: LocalStore,
        settings: dict[str, Any],
        *,
        consent_handler: ConsentHandler | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._settings = settings
        self._consent_handler = consent_handler
        self._transport = transport
        self._clock = clock
        self._inflight: asyncio.Task[str] | None = None

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        timeout = self._settings.get("timeout_sec") or DEFAULT_TIMEOUT_SEC
        return httpx.AsyncClient(timeout=timeout, transport=self._transport, **kwargs)

    async def _read_bundle(self) -> dict[str, Any]:
        raw = await self._store.get(TOKEN_KEY, {})
        return raw if isinstance(raw, dict) else {}

    async def get_cached_token(self) -> str | None:
        bundle = await self._read_bundle()
        if _token_is_usable(bundle, now=self._clock()):
            return str(bundle["access_token"])
        return None

    async def invalidate(self) -> None:
        """Forget the access token; a stored refresh token is kept."""

        def _keep_refresh(raw: Any) -> dict[str, Any]:
            refresh_token = raw.get("refresh_token") if isinstance(raw, dict) else None
            if isinstance(refresh_token, str) and refresh_token:
                return {"refresh_token": refresh_token}
            return {}

        await self._store.update(TOKEN_KEY, _keep_refresh, {})

    async def ensure_token(self, interactive: bool = True) -> str:
        cached = await self.get_cached_token()
        if cached:
            return cached
        if self._inflight is None:
            task = asyncio.ensure_future(self._acquire(interactive))
            self._inflight = task
            task.add_done_callback(self._clear_inflight)
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: asyncio.Task[str]) -> None:
        if self._inflight is task:
            self._inflight = None

    def build_auth_url(self) -> str:
        client_id = self._settings.get("client_id")
        redirect_uri = self._settings.get("redirect_uri")
        if not client_id or not redirect_uri:
            raise AuthError(
                "Interactive consent requires google_oauth.client_id and google_oauth.redirect_uri.",
                error_code="config_missing",
            )
        scopes = self._settings.get("scopes") or [SPREADSHEETS_SCOPE]
        query = urlencode(
            {
                "client_id": client_id,
                "redirect_uri": redirect_uri,
                "response_type": "token",
                "scope": " ".join(scopes),
                "prompt": "consent",
                "include_granted_scopes": "true",
            }
        )
        return f"{self._settings.get('auth_uri') or DEFAULT_AUTH_URI}?{query}"

    async def _acquire(self, interactive: bool) -> str:
        bundle = await self._read_bundle()
        refresh_token = bundle.get("refresh_token") or self._settings.get("refresh_token")
        if isinstance(refresh_token, str) and refresh_token.strip():
            logger.info("google auth: refreshing access token")
            return await self._refresh(refresh_token)

        if interactive and self._consent_handler is not None:
            auth_url = self.build_auth_url()
            logger.info("google auth: starting interactive consent")
            redirect_url = await self._consent_handler(auth_url)
            access_token, expires_in = parse_consent_redirect(redirect_url)
            return await self._persist(access_token=access_token, expires_in=expires_in)

        raise AuthError("No refresh token or interactive consent available.", error_code="token_unavailable")

    async def _refresh(self, refresh_token: str) -> str:
        if not self._settings.get("client_id") or not self._settings.get("client_secret"):
            raise AuthError(
                "Missing Google OAuth config fields: google_oauth.client_id, google_oauth.client_secret",
                error_code="config_missing",
            )
        form = {
            "client_id": self._settings["client_id"],
            "client_secret": self._settings["client_secret"],
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        scopes = self._settings.get("scopes")
        if scopes:
            form["scope"] = " ".join(scopes)

        try:
            async with self._client() as client:
                response = await client.post(
                    self._settings.get("token_uri") or DEFAULT_TOKEN_URI,
                    data=form,
                    headers={"Accept": "application/json"},
                )
        except httpx.RequestError as exc:
            raise AuthError("OAuth token request failed due to network error.", error_code="network_error") from exc

        if response.status_code >= 400:
            message, error_code = _safe_provider_error(response)
            raise AuthError(message, error_code=error_code)

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError("OAuth token response was not valid JSON.", error_code="invalid_response") from exc
        if not isinstance(payload, dict):
            raise AuthError("OAuth token response had invalid shape.", error_code="invalid_response")

        access_token = payload.get("access_token")
        expires_in = payload.get("expires_in")
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthError("OAuth token response missing access token.", error_code="invalid_response")
        if not isinstance(expires_in, int) or expires_in <= 0:
            raise AuthError("OAuth token response missing expires_in.", error_code="invalid_response")

        next_refresh_token = payload.get("refresh_token")
        if not isinstance(next_refresh_token, str) or not next_refresh_token.strip():
            next_refresh_token = refresh_token
        return await self._persist(
            access_token=access_token,
            expires_in=expires_in,
            refresh_token=next_refresh_token,
            token_type=payload.get("token_type"),
            scope=payload.get("scope"),
        )

    async def _persist(
        self,
        *,
        access_token: str,
        expires_in: int,
        refresh_token: str | None = None,
        token_type: str | None = None,
        scope: str | None = None,
    ) -> str:
        now = int(self._clock())
        expires_epoch = now + int(expires_in)
        bundle: dict[str, Any] = {
            "access_token": access_token,
            "token_type": token_type or "Bearer",
            "scope": scope,
            "expires_at": _iso_utc(expires_epoch),
            "expires_at_epoch": expires_epoch,
            "updated_at": _iso_utc(now),
        }
        if refresh_token:
            bundle["refresh_token"] = refresh_token
        await self._store.set(TOKEN_KEY, bundle)
        return access_token

    async def request_with_auth(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send an authorized request; a 401 triggers one retry with a fresh token."""
        response = await self._send(method, url, await self.ensure_token(True), **kwargs)
        if response.status_code != 401:
            return response
        logger.info("google auth: unauthorized response, retrying with a fresh token")
        await self.invalidate()
        return await self._send(method, url, await self.ensure_token(True), **kwargs)

    async def _send(self, method: str, url: str, access_token: str, **kwargs: Any) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        headers.update(kwargs.pop("headers", None) or {})
        async with self._client() as client:
            return await client.request(method, url, headers=headers, **kwargs)
