"""PostgreSQL provisioning and the asyncpg pool behind the connection store.

Connection parameters come from ``DATABASE_URL`` when it is set, otherwise
from the libpq-style ``POSTGRES_*`` variables.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import parse_qs, urlparse

import asyncpg

logger = logging.getLogger(__name__)

SSL_MODES = frozenset({"disable", "allow", "prefer", "require", "verify-ca", "verify-full"})
_DEFAULT_CREDENTIAL = "calbridge"
# asyncpg's error text when the server drops the connection during STARTTLS.
_STARTTLS_LOST = "unexpected connection_lost() call"

DbParams = dict[str, str | int | None]


def _sslmode(raw: str | None) -> str | None:
    mode = (raw or "").strip().lower()
    if not mode:
        return None
    if mode not in SSL_MODES:
        logger.warning("Ignoring unsupported sslmode %r", raw)
        return None
    return mode


def _params_from_url(database_url: str) -> DbParams:
    url = urlparse(database_url)
    query = parse_qs(url.query)
    return {
        "host": url.hostname or "localhost",
        "port": url.port or 5432,
        "user": url.username or _DEFAULT_CREDENTIAL,
        "password": url.password or _DEFAULT_CREDENTIAL,
        "database": url.path.lstrip("/") or None,
        "ssl": _sslmode(query.get("sslmode", [None])[0]),
    }


def db_params_from_env() -> DbParams:
    """Resolve connection parameters from ``DATABASE_URL`` or ``POSTGRES_*``."""
    if database_url := os.environ.get("DATABASE_URL"):
        return _params_from_url(database_url)
    env = os.environ
    return {
        "host": env.get("POSTGRES_HOST", "localhost"),
        "port": int(env.get("POSTGRES_PORT", "5432")),
        "user": env.get("POSTGRES_USER", _DEFAULT_CREDENTIAL),
        "password": env.get("POSTGRES_PASSWORD", _DEFAULT_CREDENTIAL),
        "database": env.get("POSTGRES_DB") or None,
        "ssl": _sslmode(env.get("POSTGRES_SSLMODE")),
    }


def should_retry_with_ssl_disable(exc: Exception, configured_ssl: str | None) -> bool:
    """True when no sslmode was configured and the server dropped the STARTTLS upgrade."""
    if configured_ssl is not None or not isinstance(exc, ConnectionError):
        return False
    return _STARTTLS_LOST in str(exc)


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class Database:
    """Owns the asyncpg pool backing the connection store."""

    def __init__(
        self,
        db_name: str,
        host: str = "localhost",
        port: int = 5432,
        user: str = "postgres",
        password: str = "postgres",
        ssl: str | None = None,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
    ) -> None:
        self.db_name = db_name
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.ssl = ssl
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(cls, db_name: str) -> Database:
        """Build from the environment; a database named there wins over *db_name*."""
        params = db_params_from_env()
        ssl = params["ssl"]
        return cls(
            db_name=str(params["database"] or db_name),
            host=str(params["host"]),
            port=int(params["port"] or 5432),
            user=str(params["user"]),
            password=str(params["password"]),
            ssl=ssl if isinstance(ssl, str) else None,
        )

    def _kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        return kwargs

    async def _open[R](self, opener: Callable[..., Awaitable[R]], kwargs: dict[str, Any]) -> R:
        """Call *opener*, retrying once with ``ssl=disable`` after a lost STARTTLS upgrade."""
        try:
            return await opener(**kwargs)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, self.ssl):
                raise
            logger.info("SSL upgrade lost for %s; retrying with ssl=disable", self.host)
            return await opener(**{**kwargs, "ssl": "disable"})

    async def provision(self) -> None:
        """Create the target database through the ``postgres`` maintenance database."""
        conn = await self._open(asyncpg.connect, self._kwargs("postgres"))
        try:
            found = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1", self.db_name
            )
            if found:
                logger.info("Database already exists: %s", self.db_name)
                return
            # Identifiers cannot be bound as parameters.
            await conn.execute(f"CREATE DATABASE {_quote_ident(self.db_name)} TEMPLATE template0")
            logger.info("Created database: %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        """Open (and remember) the pool for the target database."""
        kwargs = {
            **self._kwargs(self.db_name),
            "min_size": self.min_pool_size,
            "max_size": self.max_pool_size,
        }
        self.pool = await self._open(asyncpg.create_pool, kwargs)
        logger.info("Connection pool open for %s (max %d)", self.db_name, self.max_pool_size)
        return self.pool

    async def close(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None
        logger.info("Connection pool closed for %s", self.db_name)
