"""Tests for the integration lifecycle endpoints."""

from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import pytest
from conftest import api_client, google_connection, mock_http

from calbridge.api.app import create_app
from calbridge.connections.models import GOOGLE_CALENDAR, TELEGRAM, ConnectionStatus

pytestmark = pytest.mark.unit


class Providers:
    """Stands in for Google OAuth, Calendar, and the Telegram Bot API."""

    def __init__(self) -> None:
        self.token_forms: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            self.token_forms.append(
                {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            )
            return httpx.Response(
                200,
                json={"access_token": "g-access", "refresh_token": "g-refresh", "expires_in": 3600},
            )
        if request.url.path.endswith("/users/me/calendarList"):
            return httpx.Response(
                200, json={"items": [{"id": "me@example.com", "summary": "Me", "primary": True}]}
            )
        if request.url.host == "api.telegram.org":
            if "bad" in request.url.path:
                return httpx.Response(401, json={"ok": False, "description": "Unauthorized"})
            return httpx.Response(
                200, json={"ok": True, "result": {"id": 123, "username": "cal_bot"}}
            )
        return httpx.Response(404)


@pytest.fixture
def providers() -> Providers:
    return Providers()


@pytest.fixture
def app(app_config, store, providers, chat_core):
    return create_app(
        app_config,
        store=store,
        http_client=mock_http(providers),
        chat_core=chat_core,
        configure_logs=False,
    )


class TestListAndGet:
    async def test_list_returns_every_provider(self, app):
        async with api_client(app) as client:
            resp = await client.get("/api/integrations")

        assert resp.status_code == 200
        body = resp.json()
        assert [row["provider"] for row in body["data"]] == [
            "google_calendar",
            "telegram",
            "whatsapp",
        ]
        assert all(row["status"] == "disconnected" for row in body["data"])
        assert body["meta"] == {}

    async def test_view_hides_tokens_and_secrets(self, app, store):
        await store.create(google_connection())

        async with api_client(app) as client:
            resp = await client.get("/api/integrations/google-calendar")

        data = resp.json()["data"]
        assert data["provider"] == "google_calendar"
        assert data["connected"] is True
        assert data["has_refresh_token"] is True
        assert "clientSecret" not in data["config"]
        assert "access-1" not in resp.text
        assert "refresh-1" not in resp.text
        assert "csecret" not in resp.text

    async def test_unknown_provider_is_404(self, app):
        async with api_client(app) as client:
            resp = await client.get("/api/integrations/myspace")

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"


class TestGoogleOAuthFlow:
    async def test_connect_then_callback(self, app, store, providers):
        async with api_client(app) as client:
            started = await client.post("/api/integrations/google-calendar/connect", json={})
            state = (await store.get(GOOGLE_CALENDAR)).config["oauthState"]
            finished = await client.get(
                "/api/integrations/google-calendar/callback",
                params={"code": "auth-code", "state": state},
            )

        assert started.status_code == 200
        started_data = started.json()["data"]
        assert started_data["integration"]["status"] == "pending"
        assert started_data["authorize_url"].startswith("https://accounts.google.com/")
        assert finished.status_code == 200
        assert finished.json()["data"]["integration"]["status"] == "connected"
        assert providers.token_forms[0]["code"] == "auth-code"
        row = await store.get(GOOGLE_CALENDAR)
        assert row.access_token == "g-access"
        assert row.config["calendarId"] == "me@example.com"

    async def test_callback_with_forged_state_is_rejected(self, app, store):
        async with api_client(app) as client:
            await client.post("/api/integrations/google-calendar/connect", json={})
            resp = await client.get(
                "/api/integrations/google-calendar/callback",
                params={"code": "auth-code", "state": "forged"},
            )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"
        assert (await store.get(GOOGLE_CALENDAR)).status == ConnectionStatus.error

    async def test_consent_denied_records_error(self, app, store):
        async with api_client(app) as client:
            resp = await client.get(
                "/api/integrations/google-calendar/callback", params={"error": "access_denied"}
            )

        assert resp.status_code == 400
        row = await store.get(GOOGLE_CALENDAR)
        assert row.status == ConnectionStatus.error
        assert "access_denied" in row.last_error

    async def test_callback_without_code(self, app):
        async with api_client(app) as client:
            resp = await client.get("/api/integrations/google-calendar/callback")

        assert resp.status_code == 400
        assert "authorization code" in resp.json()["error"]["message"]


class TestTelegramLifecycle:
    async def test_connect_test_scopes_disconnect(self, app, store):
        async with api_client(app) as client:
            connected = await client.post(
                "/api/integrations/telegram/connect", json={"botToken": "123:abc"}
            )
            tested = await client.post("/api/integrations/telegram/test")
            scoped = await client.put(
                "/api/integrations/telegram/scopes", json={"scopes": ["read", "write", "delete"]}
            )
            disconnected = await client.post("/api/integrations/telegram/disconnect")

        assert connected.json()["data"]["integration"]["external_account_label"] == "@cal_bot"
        assert connected.json()["data"]["authorize_url"] is None
        assert tested.json()["data"]["status"] == "connected"
        assert scoped.json()["data"]["granted_scopes"] == ["read", "write"]
        assert disconnected.json()["data"]["status"] == "disconnected"
        row = await store.get(TELEGRAM)
        assert row.access_token is None
        assert row.granted_scopes == ["read", "write"]

    async def test_rejected_token_is_502_and_recorded(self, app, store):
        async with api_client(app) as client:
            resp = await client.post(
                "/api/integrations/telegram/connect", json={"botToken": "1:bad"}
            )

        assert resp.status_code == 502
        error = resp.json()["error"]
        assert error["code"] == "PROVIDER_ERROR"
        assert error["provider"] == "telegram"
        assert "1:bad" not in resp.text
        assert (await store.get(TELEGRAM)).status == ConnectionStatus.error

    async def test_missing_token_is_400(self, app):
        async with api_client(app) as client:
            resp = await client.post("/api/integrations/telegram/connect")

        assert resp.status_code == 400

    async def test_testing_a_disconnected_integration_is_409(self, app):
        async with api_client(app) as client:
            resp = await client.post("/api/integrations/telegram/test")

        assert resp.status_code == 409
        error = resp.json()["error"]
        assert error["code"] == "INTEGRATION_NOT_CONNECTED"
        assert error["message"].endswith("Please reconnect the integration.")
