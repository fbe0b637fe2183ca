"""Integration API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that opens the connection store and the shared HTTP
  client, and wires every service onto ``app.state``
- Health endpoint at GET /api/health and Prometheus metrics at GET /metrics
- Routers for webhooks, integration lifecycle, and calendar operations
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from calbridge.api.deps import build_services
from calbridge.api.middleware import register_error_handlers
from calbridge.api.routers.calendar import router as calendar_router
from calbridge.api.routers.integrations import router as integrations_router
from calbridge.api.routers.webhooks import router as webhooks_router
from calbridge.channels.base import ChatCore
from calbridge.config import AppConfig, load_config
from calbridge.connections.store import ConnectionStore, PostgresConnectionStore
from calbridge.core.logging import configure_logging
from calbridge.core.telemetry import init_telemetry
from calbridge.crypto import SecretCodec
from calbridge.db import Database

logger = logging.getLogger(__name__)


async def _open_store(config: AppConfig) -> tuple[ConnectionStore, Database]:
    database = Database.from_env(config.db_name)
    await database.provision()
    pool = await database.connect()
    store = PostgresConnectionStore(pool, codec=SecretCodec.from_env())
    await store.ensure_schema()
    return store, database


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle for the store and the shared HTTP client.

    A store or HTTP client handed to :func:`create_app` is used as-is and
    left open on shutdown; anything created here is closed here.
    """
    config: AppConfig = app.state.config
    init_telemetry("calbridge")

    database: Database | None = None
    store: ConnectionStore | None = app.state.store_override
    if store is None:
        store, database = await _open_store(config)
        logger.info("Connection store ready (database=%s)", database.db_name)

    http_client: httpx.AsyncClient | None = app.state.http_client_override
    owns_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=config.calendar.request_timeout_s)

    app.state.services = build_services(
        config, store, http_client, chat_core=app.state.chat_core_override
    )

    try:
        yield
    finally:
        app.state.services = None
        if owns_client:
            await http_client.aclose()
        if database is not None:
            await database.close()


def create_app(
    config: AppConfig | None = None,
    *,
    store: ConnectionStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    chat_core: ChatCore | None = None,
    cors_origins: list[str] | None = None,
    configure_logs: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Application configuration.  Loaded with :func:`load_config` when omitted.
    store:
        Connection store to use instead of opening PostgreSQL on startup.
    http_client:
        Shared outbound client; tests pass one backed by ``httpx.MockTransport``.
    chat_core:
        Reply generator for the channel adapters.  Defaults to
        :class:`~calbridge.channels.base.HttpChatCore` against ``config.chat``.
    cors_origins:
        Allowed CORS origins. Defaults to ["http://localhost:3000"].
    configure_logs:
        Install the structlog handlers from ``config.logging``.
    """
    config = config or load_config()
    if configure_logs:
        configure_logging(config.logging.level, config.logging.format, config.logging.log_root)
    if cors_origins is None:
        cors_origins = ["http://localhost:3000"]

    app = FastAPI(
        title="calbridge",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.config = config
    app.state.store_override = store
    app.state.http_client_override = http_client
    app.state.chat_core_override = chat_core
    app.state.services = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(webhooks_router)
    app.include_router(integrations_router)
    app.include_router(calendar_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
