"""Shared fixtures for the calbridge test suite.

Covers:
- A controllable clock and an in-memory connection store
- Connection row factories for the three providers
- ``mock_http``: an ``httpx.AsyncClient`` backed by ``httpx.MockTransport``
- ``api_client``: an ASGI client with the app lifespan running
- A session-scoped PostgreSQL testcontainer (skipped without Docker)
"""

from __future__ import annotations

import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx
import pytest
from fastapi import FastAPI

from calbridge.channels.base import ChatReply
from calbridge.config import AppConfig
from calbridge.connections.models import (
    GOOGLE_CALENDAR,
    TELEGRAM,
    WHATSAPP,
    ConnectionStatus,
    IntegrationConnection,
)
from calbridge.connections.store import InMemoryConnectionStore

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def app_config() -> AppConfig:
    config = AppConfig()
    config.google.client_id = "cid"
    config.google.client_secret = "csecret"
    config.google.redirect_uri = "https://app.example.com/api/integrations/google-calendar/callback"
    return config


def google_connection(**overrides: Any) -> IntegrationConnection:
    values: dict[str, Any] = {
        "provider": GOOGLE_CALENDAR,
        "status": ConnectionStatus.connected,
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "token_expires_at": NOW + timedelta(hours=1),
        "config": {"clientId": "cid", "clientSecret": "csecret", "calendarId": "primary"},
        "granted_scopes": ["read", "write", "delete"],
    }
    values.update(overrides)
    return IntegrationConnection(**values)


def telegram_connection(**overrides: Any) -> IntegrationConnection:
    values: dict[str, Any] = {
        "provider": TELEGRAM,
        "status": ConnectionStatus.connected,
        "access_token": "123:bot-token",
        "config": {},
        "granted_scopes": ["read", "write"],
    }
    values.update(overrides)
    return IntegrationConnection(**values)


def whatsapp_connection(**overrides: Any) -> IntegrationConnection:
    values: dict[str, Any] = {
        "provider": WHATSAPP,
        "status": ConnectionStatus.connected,
        "access_token": "wa-token",
        "config": {"phoneNumberId": "1055", "verifyToken": "verify-me"},
        "granted_scopes": ["read", "write"],
    }
    values.update(overrides)
    return IntegrationConnection(**values)


@pytest.fixture
def store() -> InMemoryConnectionStore:
    return InMemoryConnectionStore()


class FakeChatCore:
    """Records chat turns and answers with a canned reply."""

    def __init__(self, reply: str = "Sure thing.", thread_id: str | None = "thread-0001") -> None:
        self.reply = reply
        self.thread_id = thread_id
        self.calls: list[dict[str, Any]] = []

    async def respond(
        self, message: str, *, mode: str | None = None, thread_id: str | None = None
    ) -> ChatReply:
        self.calls.append({"message": message, "mode": mode, "thread_id": thread_id})
        return ChatReply(reply=self.reply, thread_id=self.thread_id)


@pytest.fixture
def chat_core() -> FakeChatCore:
    return FakeChatCore()


def mock_http(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@asynccontextmanager
async def api_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Run the app lifespan and yield a client bound to it over ``ASGITransport``."""
    async with app.router.lifespan_context(app):
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            yield client


# ---------------------------------------------------------------------------
# PostgreSQL (testcontainers)
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh database and asyncpg pool for a single test usage.

    Tests should use this as:
        async with provisioned_postgres_pool() as pool:
            ...
    """
    from calbridge.db import Database

    @asynccontextmanager
    async def _provision(*, max_pool_size: int = 5) -> AsyncIterator[Pool]:
        db = Database(
            db_name=f"test_{uuid.uuid4().hex[:12]}",
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=1,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        pool = await db.connect()
        try:
            yield pool
        finally:
            await db.close()

    return _provision
