"""Unit tests for the OAuth token endpoint client and token sources."""

from __future__ import annotations

import asyncio
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from ora.calendar.oauth import (
    CALENDAR_READONLY_SCOPE,
    GoogleTokenEndpoint,
    RefreshTokenSource,
    StaticTokenSource,
    TokenGrant,
    build_authorization_url,
    coerce_expires_in_seconds,
)
from ora.errors import NoClientConfigError, SessionExpiredError, TokenExchangeError

pytestmark = pytest.mark.unit


def _endpoint(mock_http, handler) -> GoogleTokenEndpoint:
    return GoogleTokenEndpoint(mock_http(handler), client_id="cid", client_secret="csecret")


class TestGoogleTokenEndpoint:
    def test_requires_client_credentials(self, mock_http):
        with pytest.raises(NoClientConfigError):
            GoogleTokenEndpoint(
                mock_http(lambda r: httpx.Response(200)), client_id="cid", client_secret=""
            )

    async def test_refresh_posts_form_and_parses_grant(self, mock_http):
        forms: list[dict[str, list[str]]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            forms.append(parse_qs(request.content.decode()))
            return httpx.Response(200, json={"access_token": " at ", "expires_in": "1800"})

        grant = await _endpoint(mock_http, handler).refresh("rtok")

        assert grant == TokenGrant(access_token="at", expires_in=1800)
        assert forms[0]["grant_type"] == ["refresh_token"]
        assert forms[0]["refresh_token"] == ["rtok"]

    async def test_exchange_code_returns_refresh_token(self, mock_http):
        def handler(request: httpx.Request) -> httpx.Response:
            form = parse_qs(request.content.decode())
            assert form["redirect_uri"] == ["https://ora.example/api/calendar-consent-callback"]
            return httpx.Response(
                200, json={"access_token": "at", "refresh_token": "rt", "scope": "a b"}
            )

        grant = await _endpoint(mock_http, handler).exchange_code(
            "code-1", "https://ora.example/api/calendar-consent-callback"
        )

        assert grant.refresh_token == "rt"
        assert grant.scope == "a b"
        assert grant.expires_in == 3600

    async def test_error_response_carries_provider_code(self, mock_http):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "Token has been revoked."}
            )

        with pytest.raises(TokenExchangeError) as exc_info:
            await _endpoint(mock_http, handler).refresh("rtok")

        assert exc_info.value.error_code == "invalid_grant"
        assert exc_info.value.message == "Token has been revoked."

    async def test_missing_access_token_is_an_error(self, mock_http):
        with pytest.raises(TokenExchangeError, match="access token"):
            await _endpoint(mock_http, lambda r: httpx.Response(200, json={})).refresh("rtok")

    async def test_transport_failure_is_wrapped(self, mock_http):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        with pytest.raises(TokenExchangeError) as exc_info:
            await _endpoint(mock_http, handler).refresh("rtok")

        assert exc_info.value.error_code is None

    def test_grant_repr_hides_secrets(self):
        text = repr(TokenGrant(access_token="at-secret", refresh_token="rt-secret"))

        assert "at-secret" not in text
        assert "rt-secret" not in text


class TestCoerceExpiresIn:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(1800, 1800), ("900", 900), (0, 3600), (-5, 3600), (None, 3600), (True, 3600)],
    )
    def test_values(self, value, expected):
        assert coerce_expires_in_seconds(value) == expected


class TestTokenSources:
    async def test_refresh_source_caches_until_forced(self, mock_http):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"access_token": f"at-{calls}", "expires_in": 3600})

        source = RefreshTokenSource(_endpoint(mock_http, handler), "rtok")

        assert await source.get_access_token() == "at-1"
        assert await source.get_access_token() == "at-1"
        assert await source.get_access_token(force_refresh=True) == "at-2"
        assert calls == 2

    async def test_concurrent_callers_share_one_refresh(self, mock_http):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"access_token": f"at-{calls}", "expires_in": 3600})

        source = RefreshTokenSource(_endpoint(mock_http, handler), "rtok")

        tokens = await asyncio.gather(*(source.get_access_token() for _ in range(3)))

        assert tokens == ["at-1", "at-1", "at-1"]
        assert calls == 1

    async def test_refresh_source_unauthorized_drops_cache(self, mock_http):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"access_token": "at", "expires_in": 3600})

        source = RefreshTokenSource(_endpoint(mock_http, handler), "rtok")
        await source.get_access_token()

        assert isinstance(source.handle_unauthorized(), SessionExpiredError)
        await source.get_access_token()
        assert calls == 2

    async def test_static_source(self):
        source = StaticTokenSource("at")

        assert source.refreshable is False
        assert await source.get_access_token(force_refresh=True) == "at"
        assert isinstance(source.handle_unauthorized(), SessionExpiredError)


class TestAuthorizationUrl:
    def test_offline_consent_url(self):
        url = build_authorization_url(
            client_id="cid",
            redirect_uri="https://ora.example/api/calendar-consent-callback",
            scopes=[CALENDAR_READONLY_SCOPE],
            state="signed.state",
        )
        query = parse_qs(urlparse(url).query)

        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["include_granted_scopes"] == ["true"]
        assert query["scope"] == [CALENDAR_READONLY_SCOPE]
        assert query["state"] == ["signed.state"]
        assert "login_hint" not in query
