"""Cliente OAuth: PKCE y funciones de intercambio/refresco de tokens.

El intercambio del codigo y el refresco del token ocurren en funciones
del servidor; el cliente solo envia el codigo (con su verificador PKCE) o
un identificador opaco de usuario, y recibe un access token nuevo.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import httpx
from dateutil import parser as date_parser

from bitebudget.sync.errors import AuthenticationExpiredError, ProviderError

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
DRIVE_SCOPE = "https://www.googleapis.com/auth/drive.file"
INIT_FUNCTION = "google-oauth-init"
REFRESH_FUNCTION = "google-oauth-refresh"
REFRESH_BUFFER = timedelta(minutes=2)
DEFAULT_TIMEOUT = 20.0


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def generate_code_verifier() -> str:
    """Random PKCE verifier (64 urlsafe characters)."""
    return secrets.token_urlsafe(48)


def code_challenge(verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def authorization_url(
    client_id: str,
    redirect_uri: str,
    verifier: str,
    *,
    scope: str = DRIVE_SCOPE,
    state: str | None = None,
) -> str:
    """Build the authorization-code URL (offline access, PKCE S256)."""
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": scope,
        "access_type": "offline",
        "prompt": "consent",
        "code_challenge": code_challenge(verifier),
        "code_challenge_method": "S256",
    }
    if state:
        params["state"] = state
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


@dataclass(frozen=True)
class TokenState:
    """Current access token and its expiry."""

    access_token: str
    expires_at: datetime

    def is_expired(self, now: datetime, buffer: timedelta = REFRESH_BUFFER) -> bool:
        return now + buffer >= self.expires_at

    def minutes_remaining(self, now: datetime) -> int:
        return max(0, int((self.expires_at - now).total_seconds() // 60))


class OAuthClient:
    """Token broker client for the storage provider."""

    def __init__(
        self,
        functions_url: str,
        anon_key: str,
        user_id: str,
        *,
        client: httpx.AsyncClient | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._functions_url = functions_url.rstrip("/")
        self._anon_key = anon_key
        self._user_id = user_id
        self._client = client
        self._now = now
        self._token: TokenState | None = None
        self._lock = asyncio.Lock()

    @property
    def token(self) -> TokenState | None:
        return self._token

    def is_signed_in(self) -> bool:
        return self._token is not None and not self._token.is_expired(
            self._now(), timedelta(0)
        )

    def sign_out(self) -> None:
        self._token = None

    async def exchange_code(
        self, code: str, redirect_uri: str, code_verifier: str
    ) -> TokenState:
        """Exchange an authorization code (with PKCE verifier) for a token."""
        data = await self._call(
            INIT_FUNCTION,
            {
                "code": code,
                "redirectUri": redirect_uri,
                "codeVerifier": code_verifier,
                "userId": self._user_id,
            },
        )
        self._token = self._token_from(data)
        logger.info("OAuth code exchanged; token valid until %s", self._token.expires_at)
        return self._token

    async def refresh(self) -> TokenState:
        """Get a fresh access token using the server-held refresh token.

        Raises:
            AuthenticationExpiredError: Refresh token missing/revoked.
            ProviderError: Any other failure.
        """
        try:
            data = await self._call(REFRESH_FUNCTION, {"userId": self._user_id})
        except AuthenticationExpiredError:
            self._token = None
            raise
        self._token = self._token_from(data)
        logger.info("Access token refreshed; valid until %s", self._token.expires_at)
        return self._token

    async def ensure_valid_token(self) -> str:
        """Return an access token valid for at least the refresh buffer."""
        async with self._lock:
            token = self._token
            if token is None or token.is_expired(self._now()):
                token = await self.refresh()
            return token.access_token

    async def _call(self, function: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._functions_url}/{function}"
        headers = {
            "Authorization": f"Bearer {self._anon_key}",
            "apikey": self._anon_key,
        }
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as client:
                    resp = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise ProviderError(f"{function} request failed: {exc}") from exc

        if resp.status_code in (401, 404):
            logger.warning("%s rejected (%s): reconnect required", function, resp.status_code)
            raise AuthenticationExpiredError(
                "Refresh token expired or revoked. Please reconnect."
            )
        if resp.status_code >= 400:
            raise ProviderError(
                f"{function} failed with HTTP {resp.status_code}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(f"{function} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise ProviderError(f"{function} returned an unexpected payload")
        if "error" in data:
            raise ProviderError(f"{function} returned error: {data['error']}")
        return data

    def _token_from(self, data: dict[str, Any]) -> TokenState:
        access_token = data.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ProviderError("Token response has no access_token")

        expires_at: datetime | None = None
        raw_expiry = data.get("expires_at")
        if isinstance(raw_expiry, str):
            try:
                expires_at = date_parser.isoparse(raw_expiry)
            except (ValueError, OverflowError):
                expires_at = None
            if expires_at is not None and expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at is None:
            try:
                expires_in = float(data.get("expires_in", 3600))
            except (TypeError, ValueError):
                expires_in = 3600.0
            expires_at = self._now() + timedelta(seconds=expires_in)
        return TokenState(access_token=access_token, expires_at=expires_at)
