"""Reserve-if-new: at-most-once handling of webhook-delivered messages.

Every channel adapter claims an inbound message id through
:func:`reserve_if_new` before doing anything with it.  Coordination happens
purely through the connection row: the dedup state lives in the row's
``config`` and every write is a compare-and-swap on ``updated_at``.  A lost
CAS re-reads the row and tries again (bounded), so any number of concurrent
deliveries of the same id produce exactly one acceptance.

Two dedup state shapes are supported:

- :class:`MonotonicIdStrategy`: a single high-water mark; ids less than or
  equal to it are duplicates (Telegram ``update_id``).
- :class:`BoundedIdSetStrategy`: a map of recently seen ids to the time they
  were claimed, pruned to the newest ``capacity`` entries (WhatsApp message
  ids, which carry no ordering).
"""

from __future__ import annotations

import abc
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from calbridge.connections.models import IntegrationConnection
from calbridge.connections.store import ConnectionStore
from calbridge.core.metrics import record_reservation
from calbridge.errors import ReservationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_ID_CAPACITY = 200


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Reservation:
    """Outcome of one reservation attempt.

    ``connection`` is the row as written by the winning CAS when accepted,
    or the row that proved the id a duplicate when rejected.
    """

    accepted: bool
    message_id: str
    connection: IntegrationConnection
    attempts: int

    @property
    def duplicate(self) -> bool:
        return not self.accepted


class DedupStrategy(abc.ABC):
    """How one channel records which message ids it has already claimed."""

    key: str

    def read(self, config: dict[str, Any]) -> Any:
        return config.get(self.key)

    @abc.abstractmethod
    def is_seen(self, state: Any, message_id: str) -> bool:
        """Return True when *message_id* was already claimed under *state*."""

    @abc.abstractmethod
    def advance(self, state: Any, message_id: str, now: datetime) -> Any:
        """Return the state after claiming *message_id*."""


class MonotonicIdStrategy(DedupStrategy):
    def __init__(self, key: str = "lastProcessedUpdateId") -> None:
        self.key = key

    @staticmethod
    def _as_int(value: Any) -> int | None:
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            return int(value.strip())
        return None

    def is_seen(self, state: Any, message_id: str) -> bool:
        last = self._as_int(state)
        current = self._as_int(message_id)
        if current is None:
            raise ValueError(f"Message id {message_id!r} is not an integer")
        return last is not None and current <= last

    def advance(self, state: Any, message_id: str, now: datetime) -> int:
        current = self._as_int(message_id)
        if current is None:
            raise ValueError(f"Message id {message_id!r} is not an integer")
        last = self._as_int(state)
        return current if last is None else max(last, current)


def _claimed_at(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, int | float):
        # Epoch milliseconds.
        return float(value) / 1000.0
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return 0.0
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.timestamp()
    return 0.0


class BoundedIdSetStrategy(DedupStrategy):
    def __init__(
        self, key: str = "processedMessageIds", capacity: int = DEFAULT_ID_CAPACITY
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.key = key
        self.capacity = capacity

    def read(self, config: dict[str, Any]) -> dict[str, Any]:
        state = config.get(self.key)
        return dict(state) if isinstance(state, dict) else {}

    def is_seen(self, state: Any, message_id: str) -> bool:
        return isinstance(state, dict) and message_id in state

    def advance(self, state: Any, message_id: str, now: datetime) -> dict[str, Any]:
        entries = dict(state) if isinstance(state, dict) else {}
        entries.pop(message_id, None)
        entries[message_id] = now.isoformat()
        if len(entries) <= self.capacity:
            return entries
        # Newest by claim time; insertion order breaks ties.
        ordered = sorted(
            enumerate(entries.items()),
            key=lambda item: (_claimed_at(item[1][1]), item[0]),
        )
        return dict(pair for _, pair in ordered[-self.capacity :])


async def reserve_if_new(
    store: ConnectionStore,
    provider: str,
    message_id: str | int,
    strategy: DedupStrategy,
    *,
    connection: IntegrationConnection | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    clock: Callable[[], datetime] = _utcnow,
) -> Reservation:
    """Claim *message_id* for *provider* unless it has already been claimed.

    *connection* may carry a row the caller just read, saving the first
    read.  Every write is conditional on the ``updated_at`` of the row the
    decision was made against; losing the race re-reads and re-decides.

    Raises
    ------
    ReservationError
        If the connection row does not exist, or every one of *max_attempts*
        conditional writes lost its race.
    """
    key = str(message_id)
    row = connection
    for attempt in range(1, max_attempts + 1):
        if row is None:
            row = await store.get(provider)
        if row is None:
            raise ReservationError(f"No connection row for provider {provider!r}")

        state = strategy.read(row.config)
        if strategy.is_seen(state, key):
            record_reservation(provider, "duplicate")
            logger.info("Duplicate %s message %s ignored", provider, key)
            return Reservation(accepted=False, message_id=key, connection=row, attempts=attempt)

        next_state = strategy.advance(state, key, clock())
        updated = await store.update_if_version(
            provider,
            row.updated_at,
            {"config": {**row.config, strategy.key: next_state}},
        )
        if updated is not None:
            record_reservation(provider, "accepted")
            return Reservation(accepted=True, message_id=key, connection=updated, attempts=attempt)

        logger.debug(
            "Reservation of %s message %s lost a concurrent write (attempt %d/%d)",
            provider,
            key,
            attempt,
            max_attempts,
        )
        row = None

    record_reservation(provider, "contention")
    logger.warning(
        "Could not reserve %s message %s after %d attempts", provider, key, max_attempts
    )
    raise ReservationError(
        f"Could not reserve {provider} message {key} after {max_attempts} attempts"
    )
