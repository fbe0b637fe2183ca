"""Request/response models for the integration lifecycle endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from calbridge.connections.models import IntegrationConnection


class IntegrationView(BaseModel):
    """Public view of one connection row; never carries tokens or secrets."""

    provider: str
    label: str
    kind: str | None = None
    status: str
    connected: bool
    has_access_token: bool
    has_refresh_token: bool
    token_expires_at: datetime | None = None
    granted_scopes: list[str] = Field(default_factory=list)
    available_scopes: list[str] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)
    external_account_id: str | None = None
    external_account_label: str | None = None
    last_error: str | None = None
    last_checked_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_connection(cls, connection: IntegrationConnection) -> IntegrationView:
        return cls.model_validate(connection.public_view())


class ConnectRequest(BaseModel):
    """Provider-specific connect parameters (bot token, OAuth code, phone number id, ...)."""

    model_config = {"extra": "allow"}

    def params(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class ConnectResponse(BaseModel):
    integration: IntegrationView
    authorize_url: str | None = None


class ScopesRequest(BaseModel):
    scopes: list[str]
