"""Google OAuth token endpoint helpers.

- :class:`GoogleTokenEndpoint` performs refresh-token and authorization-code
  exchanges against the provider token endpoint.
- :class:`RefreshTokenSource` turns a stored refresh token into cached,
  short-lived access tokens for server-side calls.
- :class:`StaticTokenSource` wraps the access token of a one-off exchange.
- :func:`build_authorization_url` renders the consent URL.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx

from ora.calendar.provider import redact_credential_values
from ora.errors import NoClientConfigError, OraError, SessionExpiredError, TokenExchangeError

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"

CALENDAR_READONLY_SCOPE = "https://www.googleapis.com/auth/calendar.readonly"
CALENDAR_EVENTS_SCOPE = "https://www.googleapis.com/auth/calendar.events"
CALENDAR_ACL_SCOPE = "https://www.googleapis.com/auth/calendar.acls"

FALLBACK_EXPIRES_IN_SECONDS = 3600


def coerce_expires_in_seconds(value: Any) -> int:
    """Return a positive ``expires_in``, falling back to one hour."""
    if isinstance(value, bool):
        return FALLBACK_EXPIRES_IN_SECONDS
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return FALLBACK_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        if value != value or value in (float("inf"), float("-inf")):
            return FALLBACK_EXPIRES_IN_SECONDS
        return int(value) if value > 0 else FALLBACK_EXPIRES_IN_SECONDS
    return FALLBACK_EXPIRES_IN_SECONDS


@dataclass(frozen=True)
class TokenGrant:
    """Successful token endpoint response.  Never log instances of this class."""

    access_token: str
    expires_in: int = FALLBACK_EXPIRES_IN_SECONDS
    refresh_token: str | None = None
    scope: str | None = None

    def __repr__(self) -> str:
        return (
            f"TokenGrant(access_token='[REDACTED]', expires_in={self.expires_in}, "
            f"refresh_token={'[REDACTED]' if self.refresh_token else None}, scope={self.scope!r})"
        )


def build_authorization_url(
    *,
    client_id: str,
    redirect_uri: str,
    scopes: list[str] | tuple[str, ...],
    state: str,
    prompt: str = "consent",
    access_type: str = "offline",
    login_hint: str | None = None,
) -> str:
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "access_type": access_type,
        "prompt": prompt,
        "include_granted_scopes": "true",
        "scope": " ".join(scopes),
        "state": state,
    }
    if login_hint:
        params["login_hint"] = login_hint
    return f"{GOOGLE_OAUTH_AUTHORIZE_URL}?{urlencode(params)}"


class GoogleTokenEndpoint:
    """Form-encoded exchanges against the Google OAuth token endpoint."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        client_id: str | None,
        client_secret: str | None,
        token_url: str = GOOGLE_OAUTH_TOKEN_URL,
    ) -> None:
        if not client_id or not client_secret:
            raise NoClientConfigError()
        self._http_client = http_client
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange *refresh_token* for a fresh access token."""
        return await self._post(
            {
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        """Exchange an authorization *code* for access and refresh tokens."""
        return await self._post(
            {
                "code": code,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            }
        )

    async def _post(self, form: dict[str, str]) -> TokenGrant:
        try:
            response = await self._http_client.post(
                self._token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TokenExchangeError(
                redact_credential_values(f"Token endpoint request failed: {exc}")
            ) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            payload = {}

        if response.status_code < 200 or response.status_code >= 300:
            error_code = payload.get("error") if isinstance(payload.get("error"), str) else None
            description = payload.get("error_description")
            message = (
                description
                if isinstance(description, str) and description.strip()
                else error_code or "Token exchange failed."
            )
            raise TokenExchangeError(
                " ".join(redact_credential_values(message).split())[:200],
                error_code=error_code,
            )

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise TokenExchangeError("Google did not return an access token.")

        refresh_token = payload.get("refresh_token")
        scope = payload.get("scope")
        return TokenGrant(
            access_token=access_token.strip(),
            expires_in=coerce_expires_in_seconds(payload.get("expires_in")),
            refresh_token=refresh_token.strip()
            if isinstance(refresh_token, str) and refresh_token.strip()
            else None,
            scope=scope if isinstance(scope, str) else None,
        )


class RefreshTokenSource:
    """Refresh-token backed access tokens with lightweight caching.

    Tokens are refreshed a minute early (never less than 30 seconds of
    lifetime) and concurrent refreshes are serialized.
    """

    refreshable = True

    def __init__(self, endpoint: GoogleTokenEndpoint, refresh_token: str) -> None:
        self._endpoint = endpoint
        self._refresh_token = refresh_token
        self._access_token: str | None = None
        self._expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        cached = None if force_refresh else self._fresh_token()
        if cached is not None:
            return cached

        async with self._refresh_lock:
            cached = None if force_refresh else self._fresh_token()
            if cached is not None:
                return cached

            grant = await self._endpoint.refresh(self._refresh_token)
            refresh_ttl_seconds = max(grant.expires_in - 60, 30)
            self._access_token = grant.access_token
            self._expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)
            return grant.access_token

    def _fresh_token(self) -> str | None:
        if self._access_token is None or self._expires_at is None:
            return None
        if datetime.now(UTC) >= self._expires_at:
            return None
        return self._access_token

    def handle_unauthorized(self) -> OraError:
        self._access_token = None
        self._expires_at = None
        logger.warning("Provider rejected a freshly refreshed access token")
        return SessionExpiredError()


class StaticTokenSource:
    """A single access token from a fresh code exchange; never refreshed."""

    refreshable = False

    def __init__(self, access_token: str) -> None:
        self._access_token = access_token

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        return self._access_token

    def handle_unauthorized(self) -> OraError:
        return SessionExpiredError()
