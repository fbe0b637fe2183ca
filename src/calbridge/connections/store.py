"""Persisted connection store.

The store is the sole coordination point for webhook reservations: every
write stamps ``updated_at`` with a fresh, strictly advancing value, and
:meth:`ConnectionStore.update_if_version` applies a change only when the
caller's last-read stamp is still current.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import asyncpg

from calbridge.connections.models import UPDATABLE_FIELDS, IntegrationConnection
from calbridge.crypto import SecretCodec

logger = logging.getLogger(__name__)

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS integration_connections (
    provider TEXT PRIMARY KEY,
    status TEXT NOT NULL DEFAULT 'disconnected',
    access_token TEXT,
    refresh_token TEXT,
    token_expires_at TIMESTAMPTZ,
    config TEXT,
    granted_scopes JSONB NOT NULL DEFAULT '[]'::jsonb,
    external_account_id TEXT,
    external_account_label TEXT,
    last_error TEXT,
    last_checked_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
)
"""


def _validate_changes(changes: Mapping[str, Any]) -> dict[str, Any]:
    unknown = sorted(set(changes) - UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown connection field(s): {', '.join(unknown)}")
    return dict(changes)


class ConnectionStore(abc.ABC):
    """Async persistence boundary for :class:`IntegrationConnection` rows."""

    @abc.abstractmethod
    async def get(self, provider: str) -> IntegrationConnection | None:
        """Return the row for *provider* or ``None``."""

    @abc.abstractmethod
    async def list(self) -> list[IntegrationConnection]:
        """Return every row ordered by provider."""

    @abc.abstractmethod
    async def create(self, connection: IntegrationConnection) -> IntegrationConnection:
        """Insert *connection*; an existing row for the provider is returned unchanged."""

    @abc.abstractmethod
    async def update(self, provider: str, changes: Mapping[str, Any]) -> IntegrationConnection:
        """Apply *changes* unconditionally; raises ``KeyError`` when the row is absent."""

    @abc.abstractmethod
    async def update_if_version(
        self,
        provider: str,
        expected_updated_at: datetime | None,
        changes: Mapping[str, Any],
    ) -> IntegrationConnection | None:
        """Apply *changes* only if ``updated_at`` still equals *expected_updated_at*.

        Returns the updated row, or ``None`` when the row moved on (or is gone).
        """

    @abc.abstractmethod
    async def delete(self, provider: str) -> bool:
        """Physically remove the row; returns whether one existed."""


class InMemoryConnectionStore(ConnectionStore):
    """Process-local store for tests and dry runs.

    Rows are copied on the way in and out so callers never alias stored
    state.  ``updated_at`` is strictly increasing even when the wall clock
    does not advance between two writes.
    """

    def __init__(self, rows: list[IntegrationConnection] | None = None) -> None:
        self._rows: dict[str, IntegrationConnection] = {}
        self._last_stamp: datetime | None = None
        self._lock = asyncio.Lock()
        for row in rows or []:
            stamp = self._next_stamp()
            self._rows[row.provider] = row.model_copy(
                deep=True,
                update={"created_at": row.created_at or stamp, "updated_at": stamp},
            )

    def _next_stamp(self) -> datetime:
        now = datetime.now(UTC)
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now

    async def get(self, provider: str) -> IntegrationConnection | None:
        row = self._rows.get(provider)
        return row.model_copy(deep=True) if row is not None else None

    async def list(self) -> list[IntegrationConnection]:
        return [self._rows[key].model_copy(deep=True) for key in sorted(self._rows)]

    async def create(self, connection: IntegrationConnection) -> IntegrationConnection:
        async with self._lock:
            existing = self._rows.get(connection.provider)
            if existing is not None:
                return existing.model_copy(deep=True)
            stamp = self._next_stamp()
            row = connection.model_copy(
                deep=True, update={"created_at": stamp, "updated_at": stamp}
            )
            self._rows[row.provider] = row
            return row.model_copy(deep=True)

    async def update(self, provider: str, changes: Mapping[str, Any]) -> IntegrationConnection:
        values = _validate_changes(changes)
        async with self._lock:
            current = self._rows.get(provider)
            if current is None:
                raise KeyError(f"No connection row for provider {provider!r}")
            return self._apply(current, values)

    async def update_if_version(
        self,
        provider: str,
        expected_updated_at: datetime | None,
        changes: Mapping[str, Any],
    ) -> IntegrationConnection | None:
        values = _validate_changes(changes)
        async with self._lock:
            current = self._rows.get(provider)
            if current is None or current.updated_at != expected_updated_at:
                return None
            return self._apply(current, values)

    async def delete(self, provider: str) -> bool:
        async with self._lock:
            return self._rows.pop(provider, None) is not None

    def _apply(
        self, current: IntegrationConnection, values: dict[str, Any]
    ) -> IntegrationConnection:
        copied = {k: _copy_value(v) for k, v in values.items()}
        row = IntegrationConnection.model_validate(
            {**current.model_dump(), **copied, "updated_at": self._next_stamp()}
        )
        self._rows[row.provider] = row
        return row.model_copy(deep=True)


def _copy_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _copy_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_copy_value(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value, handling potential double-encoding.

    asyncpg returns JSONB columns as Python strings when no custom codec is
    registered.  If the stored value was accidentally double-encoded (a JSON
    string containing JSON text), a second pass is needed.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected; applying second decode pass")
        try:
            val = json.loads(val)
        except ValueError:
            pass
    return val


class PostgresConnectionStore(ConnectionStore):
    """asyncpg-backed store over the ``integration_connections`` table.

    ``updated_at`` comes from ``clock_timestamp()`` so it advances per
    statement, not per transaction.  When a :class:`SecretCodec` is supplied,
    both tokens and the JSON-encoded ``config`` are encrypted on write and
    leniently decrypted on read.
    """

    def __init__(self, pool: asyncpg.Pool, codec: SecretCodec | None = None) -> None:
        self._pool = pool
        self._codec = codec

    async def ensure_schema(self) -> None:
        await self._pool.execute(CREATE_TABLE_SQL)

    # -- encoding -----------------------------------------------------------

    def _encrypt(self, value: str | None) -> str | None:
        if self._codec is None:
            return value
        return self._codec.encrypt_if_present(value)

    def _decrypt(self, value: str | None) -> str | None:
        if self._codec is None:
            return value
        return self._codec.decrypt_if_present(value)

    def _encode_column(self, column: str, value: Any) -> Any:
        if column in ("access_token", "refresh_token"):
            return self._encrypt(value)
        if column == "config":
            return self._encrypt(json.dumps(value or {}))
        if column == "granted_scopes":
            return json.dumps(list(value or []))
        if column == "status" and value is not None:
            return str(value)
        return value

    def _decode_config(self, raw: str | None) -> dict[str, Any]:
        if not raw:
            return {}
        plain = self._decrypt(raw)
        try:
            decoded = decode_jsonb(plain)
        except ValueError:
            logger.warning("Connection config is not valid JSON; treating as empty")
            return {}
        return decoded if isinstance(decoded, dict) else {}

    def _row_to_model(self, row: asyncpg.Record | None) -> IntegrationConnection | None:
        if row is None:
            return None
        return IntegrationConnection(
            provider=row["provider"],
            status=row["status"],
            access_token=self._decrypt(row["access_token"]),
            refresh_token=self._decrypt(row["refresh_token"]),
            token_expires_at=row["token_expires_at"],
            config=self._decode_config(row["config"]),
            granted_scopes=decode_jsonb(row["granted_scopes"]) or [],
            external_account_id=row["external_account_id"],
            external_account_label=row["external_account_label"],
            last_error=row["last_error"],
            last_checked_at=row["last_checked_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _set_clause(self, values: dict[str, Any], first_index: int) -> tuple[str, list[Any]]:
        assignments: list[str] = []
        args: list[Any] = []
        for offset, (column, value) in enumerate(sorted(values.items())):
            placeholder = f"${first_index + offset}"
            if column == "granted_scopes":
                placeholder += "::jsonb"
            assignments.append(f"{column} = {placeholder}")
            args.append(self._encode_column(column, value))
        assignments.append("updated_at = clock_timestamp()")
        return ", ".join(assignments), args

    # -- operations ---------------------------------------------------------

    async def get(self, provider: str) -> IntegrationConnection | None:
        row = await self._pool.fetchrow(
            "SELECT * FROM integration_connections WHERE provider = $1",
            provider,
        )
        return self._row_to_model(row)

    async def list(self) -> list[IntegrationConnection]:
        rows = await self._pool.fetch("SELECT * FROM integration_connections ORDER BY provider")
        return [self._row_to_model(row) for row in rows]  # type: ignore[misc]

    async def create(self, connection: IntegrationConnection) -> IntegrationConnection:
        row = await self._pool.fetchrow(
            """
            INSERT INTO integration_connections (
                provider, status, access_token, refresh_token, token_expires_at,
                config, granted_scopes, external_account_id, external_account_label,
                last_error, last_checked_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10, $11)
            ON CONFLICT (provider) DO NOTHING
            RETURNING *
            """,
            connection.provider,
            connection.status.value,
            self._encrypt(connection.access_token),
            self._encrypt(connection.refresh_token),
            connection.token_expires_at,
            self._encode_column("config", connection.config),
            self._encode_column("granted_scopes", connection.granted_scopes),
            connection.external_account_id,
            connection.external_account_label,
            connection.last_error,
            connection.last_checked_at,
        )
        if row is None:
            existing = await self.get(connection.provider)
            assert existing is not None
            return existing
        return self._row_to_model(row)  # type: ignore[return-value]

    async def update(self, provider: str, changes: Mapping[str, Any]) -> IntegrationConnection:
        values = _validate_changes(changes)
        set_clause, args = self._set_clause(values, first_index=2)
        row = await self._pool.fetchrow(
            f"UPDATE integration_connections SET {set_clause} WHERE provider = $1 RETURNING *",
            provider,
            *args,
        )
        if row is None:
            raise KeyError(f"No connection row for provider {provider!r}")
        return self._row_to_model(row)  # type: ignore[return-value]

    async def update_if_version(
        self,
        provider: str,
        expected_updated_at: datetime | None,
        changes: Mapping[str, Any],
    ) -> IntegrationConnection | None:
        if expected_updated_at is None:
            return None
        values = _validate_changes(changes)
        set_clause, args = self._set_clause(values, first_index=3)
        row = await self._pool.fetchrow(
            f"UPDATE integration_connections SET {set_clause} "
            "WHERE provider = $1 AND updated_at = $2 RETURNING *",
            provider,
            expected_updated_at,
            *args,
        )
        return self._row_to_model(row)

    async def delete(self, provider: str) -> bool:
        result = await self._pool.execute(
            "DELETE FROM integration_connections WHERE provider = $1",
            provider,
        )
        return result.endswith(" 1")
