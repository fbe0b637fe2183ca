"""Connection lifecycle: connect, health check, disconnect, scopes."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from calbridge.calendar.tokens import utcnow
from calbridge.connections.adapters import ProviderAdapter
from calbridge.connections.models import (
    PROVIDER_CATALOG,
    ConnectionStatus,
    IntegrationConnection,
    get_provider_spec,
)
from calbridge.connections.store import ConnectionStore
from calbridge.core.logging import provider_context
from calbridge.errors import (
    IntegrationError,
    NotConnectedError,
    ScopeDeniedError,
    sanitize_error_message,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectOutcome:
    connection: IntegrationConnection
    authorize_url: str | None = None


class IntegrationService:
    """Owns every status transition of the connection rows."""

    def __init__(
        self,
        store: ConnectionStore,
        adapters: Mapping[str, ProviderAdapter],
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._adapters = dict(adapters)
        self._clock = clock

    def _adapter(self, provider: str) -> ProviderAdapter:
        get_provider_spec(provider)
        try:
            return self._adapters[provider]
        except KeyError:
            raise KeyError(f"No adapter registered for provider {provider!r}") from None

    async def ensure_connection(self, provider: str) -> IntegrationConnection:
        """Return the row for *provider*, creating a ``disconnected`` one on first use."""
        spec = get_provider_spec(provider)
        existing = await self._store.get(provider)
        if existing is not None:
            return existing
        logger.info("Creating connection row for %s", provider)
        return await self._store.create(
            IntegrationConnection(
                provider=provider,
                status=ConnectionStatus.disconnected,
                granted_scopes=[scope.value for scope in spec.default_scopes],
            )
        )

    async def get(self, provider: str) -> IntegrationConnection:
        return await self.ensure_connection(provider)

    async def list(self) -> list[IntegrationConnection]:
        return [await self.ensure_connection(provider) for provider in PROVIDER_CATALOG]

    async def connect(
        self, provider: str, params: Mapping[str, Any] | None = None
    ) -> ConnectOutcome:
        adapter = self._adapter(provider)
        row = await self.ensure_connection(provider)
        with provider_context(provider):
            try:
                result = await adapter.connect(row, dict(params or {}))
            except IntegrationError as exc:
                await self.set_error(provider, str(exc))
                raise

            changes: dict[str, Any] = {
                "status": result.status,
                "config": result.config,
                "last_error": None,
                "last_checked_at": self._clock(),
            }
            if result.status == ConnectionStatus.connected:
                changes.update(
                    access_token=result.access_token,
                    refresh_token=result.refresh_token,
                    token_expires_at=result.token_expires_at,
                    external_account_id=result.external_account_id,
                    external_account_label=result.external_account_label,
                )
            connection = await self._store.update(provider, changes)
            logger.info("Connection %s is now %s", provider, connection.status.value)
            return ConnectOutcome(connection=connection, authorize_url=result.authorize_url)

    async def test(self, provider: str) -> IntegrationConnection:
        """Run the provider health check and record the result."""
        adapter = self._adapter(provider)
        row = await self.ensure_connection(provider)
        if row.status in (ConnectionStatus.disconnected, ConnectionStatus.pending):
            label = get_provider_spec(provider).label
            raise NotConnectedError(f"{label} integration is not connected.")

        with provider_context(provider):
            try:
                health = await adapter.health_check(row)
            except IntegrationError as exc:
                await self.set_error(provider, str(exc))
                raise

            changes: dict[str, Any] = {
                "status": ConnectionStatus.connected,
                "last_error": None,
                "last_checked_at": self._clock(),
                "external_account_id": health.external_account_id,
                "external_account_label": health.external_account_label,
            }
            if health.grant is not None:
                changes.update(
                    access_token=health.grant.access_token,
                    refresh_token=health.grant.refresh_token or row.refresh_token,
                    token_expires_at=health.grant.expires_at,
                )
            return await self._store.update(provider, changes)

    async def disconnect(self, provider: str) -> IntegrationConnection:
        await self.ensure_connection(provider)
        logger.info("Disconnecting %s", provider)
        return await self._store.update(
            provider,
            {
                "status": ConnectionStatus.disconnected,
                "access_token": None,
                "refresh_token": None,
                "token_expires_at": None,
                "config": {},
                "external_account_id": None,
                "external_account_label": None,
                "last_error": None,
                "last_checked_at": self._clock(),
            },
        )

    async def set_error(self, provider: str, message: str) -> IntegrationConnection:
        error = sanitize_error_message(message)
        await self.ensure_connection(provider)
        logger.warning("Marking %s connection as errored: %s", provider, error)
        return await self._store.update(
            provider,
            {
                "status": ConnectionStatus.error,
                "last_error": error,
                "last_checked_at": self._clock(),
            },
        )

    async def update_scopes(self, provider: str, scopes: Iterable[str]) -> IntegrationConnection:
        spec = get_provider_spec(provider)
        requested = {str(scope).strip().lower() for scope in scopes}
        granted = [scope.value for scope in spec.scopes if scope.value in requested]
        await self.ensure_connection(provider)
        return await self._store.update(provider, {"granted_scopes": granted})

    async def assert_scope(self, provider: str, scope: str) -> IntegrationConnection:
        spec = get_provider_spec(provider)
        row = await self._store.get(provider)
        if row is None or row.status != ConnectionStatus.connected:
            raise NotConnectedError(f"{spec.label} integration is not connected.")
        if scope not in row.granted_scopes:
            raise ScopeDeniedError(spec.label, scope)
        return row
