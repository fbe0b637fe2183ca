"""Calendar data shapes shared by the client, resolver, and tool layer."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator

UNTITLED_EVENT = "(untitled)"
UNTITLED_CALENDAR = "(untitled calendar)"


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_google_datetime(value: str) -> datetime:
    """Parse an RFC 3339 ``dateTime`` or an all-day ``date`` into an aware datetime."""
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Invalid calendar timestamp: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


@dataclass(frozen=True, order=True)
class TimeSlot:
    """Half-open interval ``[start, end)``."""

    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: TimeSlot) -> bool:
        return self.start < other.end and other.start < self.end

    def to_dict(self) -> dict[str, str]:
        return {"start": google_rfc3339(self.start), "end": google_rfc3339(self.end)}


class CalendarEvent(BaseModel):
    """A provider event normalized to the fields the integration layer uses.

    ``start``/``end`` keep the provider's wire value: an RFC 3339 ``dateTime``
    for timed events or a ``YYYY-MM-DD`` ``date`` for all-day events.
    """

    id: str
    status: str | None = None
    summary: str = UNTITLED_EVENT
    description: str | None = None
    location: str | None = None
    start: str
    end: str
    all_day: bool = False
    html_link: str | None = None
    calendar_id: str | None = None
    calendar_name: str | None = None

    @property
    def start_at(self) -> datetime:
        return parse_google_datetime(self.start)


class CalendarInfo(BaseModel):
    id: str
    summary: str = UNTITLED_CALENDAR
    description: str | None = None
    primary: bool = False
    time_zone: str | None = None
    access_role: str | None = None


class EventCreate(BaseModel):
    """Input for creating an event; ``calendar_id`` defaults to the managed calendar."""

    summary: str
    start: datetime
    end: datetime
    description: str | None = None
    location: str | None = None
    time_zone: str = "UTC"
    attendees: list[str] = Field(default_factory=list)
    calendar_id: str | None = None

    @field_validator("summary")
    @classmethod
    def _strip_summary(cls, value: str) -> str:
        return value.strip()

    @field_validator("attendees")
    @classmethod
    def _clean_attendees(cls, value: list[str]) -> list[str]:
        return [email.strip() for email in value if email and email.strip()]


class EventPatch(BaseModel):
    """Partial update; only fields that are set end up in the request body."""

    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    time_zone: str | None = None
    attendees: list[str] | None = None

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {}
        for key in ("summary", "description", "location"):
            value = getattr(self, key)
            if value is not None:
                body[key] = value
        for key in ("start", "end"):
            value = getattr(self, key)
            if value is not None:
                boundary: dict[str, str] = {"dateTime": google_rfc3339(value)}
                if self.time_zone:
                    boundary["timeZone"] = self.time_zone
                body[key] = boundary
        if self.attendees is not None:
            body["attendees"] = [{"email": email} for email in self.attendees if email]
        return body


class CalendarAvailability(BaseModel):
    calendar_id: str
    time_min: datetime
    time_max: datetime
    duration_minutes: int
    busy: list[TimeSlot]
    free_slots: list[TimeSlot]

    def to_dict(self) -> dict[str, Any]:
        return {
            "calendar_id": self.calendar_id,
            "time_min": google_rfc3339(self.time_min),
            "time_max": google_rfc3339(self.time_max),
            "duration_minutes": self.duration_minutes,
            "busy": [slot.to_dict() for slot in self.busy],
            "free_slots": [slot.to_dict() for slot in self.free_slots],
        }


class ResolveStrategy(StrEnum):
    search_assisted = "search_assisted"
    exhaustive = "exhaustive"


class ResolvedEvent(BaseModel):
    id: str
    summary: str
    start: str
    end: str
    calendar_id: str
    calendar_name: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)


class ResolveResult(BaseModel):
    match: ResolvedEvent | None = None
    candidates: list[ResolvedEvent] = Field(default_factory=list)
    strategy: ResolveStrategy


def normalize_event(
    raw: Any,
    *,
    calendar_id: str | None = None,
    calendar_name: str | None = None,
) -> CalendarEvent | None:
    """Normalize one raw provider event; returns ``None`` for malformed entries."""
    if not isinstance(raw, dict):
        return None
    event_id = raw.get("id")
    if not isinstance(event_id, str) or not event_id:
        return None
    start_raw = raw.get("start")
    end_raw = raw.get("end")
    if not isinstance(start_raw, dict) or not isinstance(end_raw, dict):
        return None
    start = start_raw.get("dateTime") or start_raw.get("date")
    end = end_raw.get("dateTime") or end_raw.get("date")
    if not isinstance(start, str) or not isinstance(end, str):
        return None
    try:
        parse_google_datetime(start)
        parse_google_datetime(end)
    except ValueError:
        return None

    summary = raw.get("summary")
    return CalendarEvent(
        id=event_id,
        status=raw.get("status") if isinstance(raw.get("status"), str) else None,
        summary=summary.strip() if isinstance(summary, str) and summary.strip() else UNTITLED_EVENT,
        description=raw.get("description") if isinstance(raw.get("description"), str) else None,
        location=raw.get("location") if isinstance(raw.get("location"), str) else None,
        start=start,
        end=end,
        all_day="dateTime" not in start_raw,
        html_link=raw.get("htmlLink") if isinstance(raw.get("htmlLink"), str) else None,
        calendar_id=calendar_id,
        calendar_name=calendar_name,
    )


def normalize_calendar(raw: Any) -> CalendarInfo | None:
    if not isinstance(raw, dict):
        return None
    calendar_id = raw.get("id")
    if not isinstance(calendar_id, str) or not calendar_id:
        return None
    summary = raw.get("summary")
    return CalendarInfo(
        id=calendar_id,
        summary=summary if isinstance(summary, str) and summary.strip() else UNTITLED_CALENDAR,
        description=raw.get("description") if isinstance(raw.get("description"), str) else None,
        primary=raw.get("primary") is True,
        time_zone=raw.get("timeZone") if isinstance(raw.get("timeZone"), str) else None,
        access_role=raw.get("accessRole") if isinstance(raw.get("accessRole"), str) else None,
    )
