"""Tests for the Google OAuth client and the token manager."""

from __future__ import annotations

from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest
from conftest import NOW, FakeClock, google_connection, mock_http

from calbridge.calendar.tokens import GoogleOAuthClient, TokenManager
from calbridge.config import GoogleOAuthConfig
from calbridge.connections.models import GOOGLE_CALENDAR, ConnectionStatus
from calbridge.errors import AuthError, NotConnectedError, TransportError

pytestmark = pytest.mark.unit

TOKEN_URL = GoogleOAuthConfig().token_url


def _token_handler(calls: list[dict], status: int = 200, payload: dict | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == TOKEN_URL
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        calls.append(form)
        return httpx.Response(
            status,
            json=payload
            if payload is not None
            else {"access_token": "access-2", "expires_in": 3600, "token_type": "Bearer"},
        )

    return handler


def _manager(store, handler, clock: FakeClock, **kwargs) -> TokenManager:
    oauth = GoogleOAuthClient(mock_http(handler), GoogleOAuthConfig(), clock=clock)
    return TokenManager(store, oauth, GoogleOAuthConfig(), clock=clock, **kwargs)


class TestGoogleOAuthClient:
    async def test_refresh_posts_refresh_grant(self, clock):
        calls: list[dict] = []
        oauth = GoogleOAuthClient(
            mock_http(_token_handler(calls)), GoogleOAuthConfig(), clock=clock
        )

        grant = await oauth.refresh(client_id="cid", client_secret="cs", refresh_token="r1")

        assert calls == [
            {
                "grant_type": "refresh_token",
                "client_id": "cid",
                "client_secret": "cs",
                "refresh_token": "r1",
            }
        ]
        assert grant.access_token == "access-2"
        assert grant.refresh_token is None
        assert grant.expires_at == NOW + timedelta(seconds=3600)

    async def test_rejected_refresh_raises_auth_error_with_description(self, clock):
        handler = _token_handler(
            [],
            status=400,
            payload={"error": "invalid_grant", "error_description": "Token has been revoked."},
        )
        oauth = GoogleOAuthClient(mock_http(handler), GoogleOAuthConfig(), clock=clock)

        with pytest.raises(AuthError, match="Token has been revoked"):
            await oauth.refresh(client_id="cid", client_secret="cs", refresh_token="r1")

    async def test_missing_access_token_is_auth_error(self, clock):
        handler = _token_handler([], payload={"expires_in": 3600})
        oauth = GoogleOAuthClient(mock_http(handler), GoogleOAuthConfig(), clock=clock)

        with pytest.raises(AuthError, match="missing an access_token"):
            await oauth.refresh(client_id="cid", client_secret="cs", refresh_token="r1")

    async def test_network_failure_is_transport_error(self, clock):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("boom", request=request)

        oauth = GoogleOAuthClient(mock_http(handler), GoogleOAuthConfig(), clock=clock)

        with pytest.raises(TransportError):
            await oauth.refresh(client_id="cid", client_secret="cs", refresh_token="r1")

    async def test_exchange_code_keeps_refresh_token(self, clock):
        calls: list[dict] = []
        handler = _token_handler(
            calls,
            payload={"access_token": "a", "refresh_token": "r", "expires_in": 60},
        )
        oauth = GoogleOAuthClient(mock_http(handler), GoogleOAuthConfig(), clock=clock)

        grant = await oauth.exchange_code(
            client_id="cid", client_secret="cs", code="code-1", redirect_uri="https://x/cb"
        )

        assert calls[0]["grant_type"] == "authorization_code"
        assert calls[0]["code"] == "code-1"
        assert grant.refresh_token == "r"


class TestTokenManager:
    async def test_not_connected_without_row(self, store, clock):
        manager = _manager(store, _token_handler([]), clock)

        with pytest.raises(NotConnectedError):
            await manager.get_valid_context()

    async def test_pending_row_is_not_connected(self, store, clock):
        await store.create(google_connection(status=ConnectionStatus.pending))
        manager = _manager(store, _token_handler([]), clock)

        with pytest.raises(NotConnectedError):
            await manager.get_valid_context()

    async def test_missing_client_config_is_not_connected(self, store, clock):
        await store.create(google_connection(config={}))
        manager = _manager(store, _token_handler([]), clock)

        with pytest.raises(NotConnectedError, match="Missing Google OAuth client config"):
            await manager.get_valid_context()

    async def test_fresh_token_is_returned_without_refresh(self, store, clock):
        calls: list[dict] = []
        await store.create(google_connection())
        manager = _manager(store, _token_handler(calls), clock)

        context = await manager.get_valid_context()

        assert context.access_token == "access-1"
        assert context.calendar_id == "primary"
        assert calls == []

    async def test_calendar_id_defaults_to_primary(self, store, clock):
        await store.create(google_connection(config={"clientId": "cid", "clientSecret": "cs"}))
        manager = _manager(store, _token_handler([]), clock)

        assert (await manager.get_valid_context()).calendar_id == "primary"

    async def test_expired_token_is_refreshed_and_persisted(self, store, clock):
        calls: list[dict] = []
        await store.create(google_connection(token_expires_at=NOW - timedelta(minutes=5)))
        manager = _manager(store, _token_handler(calls), clock)

        context = await manager.get_valid_context()

        assert len(calls) == 1
        assert context.access_token == "access-2"
        assert context.expires_at > NOW
        row = await store.get(GOOGLE_CALENDAR)
        assert row.access_token == "access-2"
        # Google omits refresh_token on refresh; the old one is kept.
        assert row.refresh_token == "refresh-1"

    async def test_token_inside_skew_window_is_refreshed(self, store, clock):
        calls: list[dict] = []
        await store.create(google_connection(token_expires_at=NOW + timedelta(seconds=30)))
        manager = _manager(store, _token_handler(calls), clock, refresh_skew_s=60)

        await manager.get_valid_context()

        assert len(calls) == 1

    async def test_expired_without_refresh_token_is_auth_error(self, store, clock):
        await store.create(
            google_connection(refresh_token=None, token_expires_at=NOW - timedelta(seconds=1))
        )
        manager = _manager(store, _token_handler([]), clock)

        with pytest.raises(AuthError):
            await manager.get_valid_context()

    async def test_nearly_expired_without_refresh_token_is_used_as_is(self, store, clock):
        await store.create(
            google_connection(refresh_token=None, token_expires_at=NOW + timedelta(seconds=30))
        )
        manager = _manager(store, _token_handler([]), clock)

        assert (await manager.get_valid_context()).access_token == "access-1"

    async def test_unknown_expiry_is_assumed_valid(self, store, clock):
        calls: list[dict] = []
        await store.create(google_connection(token_expires_at=None))
        manager = _manager(store, _token_handler(calls), clock)

        await manager.get_valid_context()

        assert calls == []

    async def test_failed_refresh_leaves_row_untouched(self, store, clock):
        await store.create(google_connection(token_expires_at=NOW - timedelta(minutes=1)))
        before = await store.get(GOOGLE_CALENDAR)
        handler = _token_handler([], status=401, payload={"error": "invalid_client"})
        manager = _manager(store, handler, clock)

        with pytest.raises(AuthError):
            await manager.get_valid_context()

        after = await store.get(GOOGLE_CALENDAR)
        assert after.access_token == "access-1"
        assert after.updated_at == before.updated_at

    async def test_context_repr_hides_tokens(self, store, clock):
        await store.create(google_connection())
        manager = _manager(store, _token_handler([]), clock)

        text = repr(await manager.get_valid_context())

        assert "access-1" not in text
        assert "refresh-1" not in text
