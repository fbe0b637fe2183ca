"""Shared Pydantic response/request models for the integration API.

Every successful response is wrapped in ``{"data": ..., "meta": {...}}`` and
every failure in ``{"error": {"code", "message", ...}}``.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class ApiMeta(BaseModel):
    """Free-form response metadata (pagination, timing); unknown keys are kept."""

    model_config = {"extra": "allow"}


class ApiResponse[T](BaseModel):
    """Success envelope: ``{"data": T, "meta": {...}}``."""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Machine-readable ``code`` plus a display-safe ``message``."""

    code: str
    message: str
    provider: str | None = None
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Failure envelope produced by the error handlers."""

    error: ErrorDetail


__all__ = ["ApiMeta", "ApiResponse", "ErrorDetail", "ErrorResponse"]
