"""Tests for reserve-if-new message deduplication."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from conftest import NOW, telegram_connection, whatsapp_connection

from calbridge.connections.models import TELEGRAM, WHATSAPP
from calbridge.connections.store import InMemoryConnectionStore
from calbridge.errors import ReservationError
from calbridge.ingestion import (
    DEFAULT_ID_CAPACITY,
    BoundedIdSetStrategy,
    MonotonicIdStrategy,
    reserve_if_new,
)

pytestmark = pytest.mark.unit


class YieldingStore(InMemoryConnectionStore):
    """Yields to the event loop around reads and writes so coroutines interleave."""

    async def get(self, provider):
        await asyncio.sleep(0)
        row = await super().get(provider)
        await asyncio.sleep(0)
        return row

    async def update_if_version(self, provider, expected_updated_at, changes):
        await asyncio.sleep(0)
        return await super().update_if_version(provider, expected_updated_at, changes)


class AlwaysStaleStore(InMemoryConnectionStore):
    def __init__(self, rows=None) -> None:
        super().__init__(rows)
        self.writes = 0

    async def update_if_version(self, provider, expected_updated_at, changes):
        self.writes += 1
        return None


class TestMonotonicIdStrategy:
    def test_ids_at_or_below_high_water_mark_are_seen(self):
        strategy = MonotonicIdStrategy()

        assert strategy.is_seen(41, "41")
        assert strategy.is_seen(41, "40")
        assert not strategy.is_seen(41, "42")
        assert not strategy.is_seen(None, "1")

    def test_advance_never_moves_backwards(self):
        strategy = MonotonicIdStrategy()

        assert strategy.advance(None, "7", NOW) == 7
        assert strategy.advance(10, "7", NOW) == 10
        assert strategy.advance("10", "12", NOW) == 12

    def test_non_integer_id_is_rejected(self):
        with pytest.raises(ValueError):
            MonotonicIdStrategy().is_seen(1, "abc")


class TestBoundedIdSetStrategy:
    def test_membership(self):
        strategy = BoundedIdSetStrategy()

        assert strategy.is_seen({"wamid.1": NOW.isoformat()}, "wamid.1")
        assert not strategy.is_seen({}, "wamid.1")
        assert not strategy.is_seen(None, "wamid.1")

    def test_default_capacity(self):
        assert BoundedIdSetStrategy().capacity == DEFAULT_ID_CAPACITY == 200

    def test_prunes_to_newest_entries(self):
        strategy = BoundedIdSetStrategy(capacity=3)
        state: dict = {}
        for i in range(5):
            state = strategy.advance(state, f"m{i}", NOW + timedelta(seconds=i))

        assert list(state) == ["m2", "m3", "m4"]

    def test_accepts_epoch_millisecond_timestamps(self):
        strategy = BoundedIdSetStrategy(capacity=2)
        old_ms = int((NOW - timedelta(days=1)).timestamp() * 1000)
        state = {"old": old_ms, "older": old_ms - 1000}

        state = strategy.advance(state, "new", NOW)

        assert set(state) == {"old", "new"}

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            BoundedIdSetStrategy(capacity=0)


class TestReserveIfNew:
    async def test_first_delivery_is_accepted_and_recorded(self, clock):
        store = InMemoryConnectionStore([telegram_connection()])

        reservation = await reserve_if_new(store, TELEGRAM, 42, MonotonicIdStrategy(), clock=clock)

        assert reservation.accepted
        assert reservation.attempts == 1
        row = await store.get(TELEGRAM)
        assert row.config["lastProcessedUpdateId"] == 42

    async def test_redelivery_is_a_duplicate(self, clock):
        store = InMemoryConnectionStore([telegram_connection()])
        strategy = MonotonicIdStrategy()
        await reserve_if_new(store, TELEGRAM, 42, strategy, clock=clock)

        again = await reserve_if_new(store, TELEGRAM, 42, strategy, clock=clock)
        older = await reserve_if_new(store, TELEGRAM, 41, strategy, clock=clock)

        assert again.duplicate
        assert older.duplicate

    async def test_existing_config_is_preserved(self, clock):
        store = InMemoryConnectionStore([whatsapp_connection()])

        await reserve_if_new(store, WHATSAPP, "wamid.A", BoundedIdSetStrategy(), clock=clock)

        row = await store.get(WHATSAPP)
        assert row.config["verifyToken"] == "verify-me"
        assert row.config["processedMessageIds"] == {"wamid.A": NOW.isoformat()}

    async def test_concurrent_deliveries_accept_exactly_once(self, clock):
        store = YieldingStore([telegram_connection()])
        strategy = MonotonicIdStrategy()

        results = await asyncio.gather(
            *(
                reserve_if_new(store, TELEGRAM, 42, strategy, clock=clock, max_attempts=10)
                for _ in range(8)
            )
        )

        assert sum(r.accepted for r in results) == 1
        assert sum(r.duplicate for r in results) == 7
        assert (await store.get(TELEGRAM)).config["lastProcessedUpdateId"] == 42

    async def test_concurrent_distinct_ids_are_all_kept(self, clock):
        store = YieldingStore([whatsapp_connection()])
        strategy = BoundedIdSetStrategy()

        results = await asyncio.gather(
            *(
                reserve_if_new(
                    store, WHATSAPP, f"wamid.{i}", strategy, clock=clock, max_attempts=20
                )
                for i in range(5)
            )
        )

        assert all(r.accepted for r in results)
        row = await store.get(WHATSAPP)
        assert set(row.config["processedMessageIds"]) == {f"wamid.{i}" for i in range(5)}

    async def test_stale_connection_argument_is_re_read(self, clock):
        store = InMemoryConnectionStore([telegram_connection()])
        stale = await store.get(TELEGRAM)
        await store.update(TELEGRAM, {"last_error": None})

        reservation = await reserve_if_new(
            store, TELEGRAM, 5, MonotonicIdStrategy(), connection=stale, clock=clock
        )

        assert reservation.accepted
        assert reservation.attempts == 2

    async def test_persistent_contention_raises(self, clock):
        store = AlwaysStaleStore([telegram_connection()])

        with pytest.raises(ReservationError, match="after 3 attempts"):
            await reserve_if_new(
                store, TELEGRAM, 42, MonotonicIdStrategy(), max_attempts=3, clock=clock
            )
        assert store.writes == 3

    async def test_missing_row_raises(self, clock):
        with pytest.raises(ReservationError, match="No connection row"):
            await reserve_if_new(
                InMemoryConnectionStore(), TELEGRAM, 1, MonotonicIdStrategy(), clock=clock
            )
