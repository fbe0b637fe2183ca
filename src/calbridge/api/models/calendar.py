"""Request models for the calendar endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class ResolveRequest(BaseModel):
    description: str
    time_min: datetime | None = None
    time_max: datetime | None = None


class DeleteResult(BaseModel):
    deleted: bool
    event_id: str
