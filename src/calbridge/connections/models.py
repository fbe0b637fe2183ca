"""Connection records and the provider catalog."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

GOOGLE_CALENDAR = "google_calendar"
TELEGRAM = "telegram"
WHATSAPP = "whatsapp"


class ConnectionStatus(StrEnum):
    """Lifecycle state of one provider connection.

    ``disconnected -> pending -> connected``; ``connected -> error`` on a failed
    health check or refresh; ``error -> connected`` on the next successful
    check; any state returns to ``disconnected`` on explicit disconnect.
    """

    disconnected = "disconnected"
    pending = "pending"
    connected = "connected"
    error = "error"


class ProviderKind(StrEnum):
    calendar = "calendar"
    channel = "channel"


class Scope(StrEnum):
    read = "read"
    write = "write"
    delete = "delete"


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of a supported provider."""

    provider: str
    kind: ProviderKind
    label: str
    scopes: tuple[Scope, ...]
    default_scopes: tuple[Scope, ...]


PROVIDER_CATALOG: dict[str, ProviderSpec] = {
    GOOGLE_CALENDAR: ProviderSpec(
        provider=GOOGLE_CALENDAR,
        kind=ProviderKind.calendar,
        label="Google Calendar",
        scopes=(Scope.read, Scope.write, Scope.delete),
        default_scopes=(Scope.read,),
    ),
    TELEGRAM: ProviderSpec(
        provider=TELEGRAM,
        kind=ProviderKind.channel,
        label="Telegram",
        scopes=(Scope.read, Scope.write),
        default_scopes=(Scope.read,),
    ),
    WHATSAPP: ProviderSpec(
        provider=WHATSAPP,
        kind=ProviderKind.channel,
        label="WhatsApp",
        scopes=(Scope.read, Scope.write),
        default_scopes=(Scope.read,),
    ),
}


def get_provider_spec(provider: str) -> ProviderSpec:
    """Return the catalog entry for *provider*; raises ``KeyError`` when unknown."""
    try:
        return PROVIDER_CATALOG[provider]
    except KeyError:
        raise KeyError(f"Unknown integration provider: {provider!r}") from None


# Config keys holding secrets; never echoed back through the API.
SECRET_CONFIG_KEYS = frozenset({"clientSecret", "appSecret"})


class IntegrationConnection(BaseModel):
    """One persisted row per external provider.

    ``updated_at`` is assigned by the store on every write and doubles as the
    optimistic-concurrency token for webhook reservations.
    """

    model_config = ConfigDict(validate_assignment=True)

    provider: str
    status: ConnectionStatus = ConnectionStatus.disconnected
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    granted_scopes: list[str] = Field(default_factory=list)
    external_account_id: str | None = None
    external_account_label: str | None = None
    last_error: str | None = None
    last_checked_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_usable(self) -> bool:
        return self.status == ConnectionStatus.connected and bool(self.access_token)

    def public_view(self) -> dict[str, Any]:
        """Serializable view without tokens or secret config values."""
        spec = PROVIDER_CATALOG.get(self.provider)
        return {
            "provider": self.provider,
            "label": spec.label if spec else self.provider,
            "kind": spec.kind.value if spec else None,
            "status": self.status.value,
            "connected": self.status == ConnectionStatus.connected,
            "has_access_token": bool(self.access_token),
            "has_refresh_token": bool(self.refresh_token),
            "token_expires_at": self.token_expires_at,
            "granted_scopes": list(self.granted_scopes),
            "available_scopes": [s.value for s in spec.scopes] if spec else [],
            "config": {k: v for k, v in self.config.items() if k not in SECRET_CONFIG_KEYS},
            "external_account_id": self.external_account_id,
            "external_account_label": self.external_account_label,
            "last_error": self.last_error,
            "last_checked_at": self.last_checked_at,
            "updated_at": self.updated_at,
        }


# Fields a store write may change; ``provider`` and the timestamps are store-owned.
UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "access_token",
        "refresh_token",
        "token_expires_at",
        "config",
        "granted_scopes",
        "external_account_id",
        "external_account_label",
        "last_error",
        "last_checked_at",
    }
)
