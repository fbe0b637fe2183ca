"""Free-slot computation over busy intervals (pure, no I/O)."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from calbridge.calendar.models import TimeSlot

MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 480
DEFAULT_DURATION_MINUTES = 60


def clamp_duration(minutes: Any, default: int = DEFAULT_DURATION_MINUTES) -> int:
    """Coerce *minutes* to an int in ``[15, 480]``; unusable input yields *default*."""
    if isinstance(minutes, bool) or minutes is None:
        value = default
    else:
        try:
            value = int(minutes)
        except (TypeError, ValueError):
            value = default
    return max(MIN_DURATION_MINUTES, min(MAX_DURATION_MINUTES, value))


def merge_intervals(intervals: Iterable[TimeSlot]) -> list[TimeSlot]:
    """Return *intervals* sorted with overlapping or touching entries merged.

    Empty and inverted intervals are dropped.
    """
    merged: list[TimeSlot] = []
    for slot in sorted(s for s in intervals if s.end > s.start):
        if merged and slot.start <= merged[-1].end:
            last = merged[-1]
            if slot.end > last.end:
                merged[-1] = TimeSlot(last.start, slot.end)
            continue
        merged.append(slot)
    return merged


def compute_free_slots(
    busy: Iterable[TimeSlot],
    time_min: datetime,
    time_max: datetime,
    min_duration_minutes: Any = DEFAULT_DURATION_MINUTES,
) -> list[TimeSlot]:
    """Return the gaps of at least *min_duration_minutes* between *busy* intervals.

    Single linear pass over the busy list sorted by start.  Each emitted gap
    is clipped to ``time_max`` before the length check, so every slot is
    at least the minimum duration and lies inside the window.
    """
    if time_max <= time_min:
        return []
    min_duration = timedelta(minutes=clamp_duration(min_duration_minutes))

    slots: list[TimeSlot] = []
    cursor = time_min
    for interval in sorted((b for b in busy if b.end > b.start), key=lambda b: b.start):
        if cursor >= time_max:
            break
        if interval.end <= cursor:
            continue
        slot_end = min(interval.start, time_max)
        if slot_end - cursor >= min_duration:
            slots.append(TimeSlot(cursor, slot_end))
        cursor = max(cursor, interval.end)

    if time_max - cursor >= min_duration:
        slots.append(TimeSlot(cursor, time_max))
    return slots
