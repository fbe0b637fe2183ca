"""Tests for event-resolution scoring and the two-pass resolver."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import NOW, FakeClock

from calbridge.calendar.models import CalendarEvent, CalendarInfo, ResolveStrategy
from calbridge.calendar.resolver import EventResolver, normalize_text, score_match, tokenize
from calbridge.config import ResolverConfig
from calbridge.errors import ValidationError

pytestmark = pytest.mark.unit


def _event(event_id: str, summary: str, calendar_id: str = "primary") -> CalendarEvent:
    return CalendarEvent(
        id=event_id,
        summary=summary,
        start="2026-03-05T18:00:00Z",
        end="2026-03-05T20:00:00Z",
        calendar_id=calendar_id,
        calendar_name="Personal",
    )


class TestNormalization:
    def test_strips_emoji_and_collapses_whitespace(self):
        assert normalize_text("🍰  Dessert\u200d  CRAWL ✨") == "dessert crawl"

    def test_keeps_accented_letters(self):
        assert normalize_text("Café Résumé") == "café résumé"

    def test_tokenize_drops_single_characters(self):
        assert tokenize("a dinner w/ sam") == ["dinner", "sam"]


class TestScoreMatch:
    def test_emoji_query_matches_decorated_summary(self):
        score = score_match("🍰 dessert crawl", "Dessert Crawl (Suggestion) - Ossington/Junction")

        assert score >= 0.5

    def test_substring_scores_one(self):
        assert score_match("dentist", "Dentist appointment") == 1.0

    def test_all_tokens_matched_out_of_order(self):
        assert score_match("crawl dessert", "Dessert night crawl") == pytest.approx(0.95)

    def test_zero_overlap_scores_zero(self):
        assert score_match("board meeting", "Yoga class") == 0.0

    def test_partial_overlap_is_weighted_and_capped(self):
        score = score_match("team lunch friday", "Lunch with parents")

        # matched=1, query=3, candidate=3 -> jaccard 1/5, coverage 1/3
        assert score == pytest.approx(0.5 * (1 / 5) + 0.5 * (1 / 3))
        assert score <= 0.9

    def test_weights_are_configurable(self):
        config = ResolverConfig(jaccard_weight=0.0, coverage_weight=1.0)

        assert score_match("team lunch friday", "Lunch with parents", config) == pytest.approx(
            1 / 3
        )

    def test_empty_inputs_score_zero(self):
        assert score_match("", "Anything") == 0.0
        assert score_match("🎉", "Party") == 0.0


def _resolver(search_hits, all_events, config: ResolverConfig | None = None):
    client = MagicMock()
    client.list_calendars = AsyncMock(
        return_value=[CalendarInfo(id="primary", summary="Personal", primary=True)]
    )
    client.list_events_multi = AsyncMock(side_effect=[search_hits, all_events])
    return EventResolver(client, config, clock=FakeClock()), client


class TestEventResolver:
    async def test_search_pass_hit_short_circuits(self):
        resolver, client = _resolver([_event("e1", "Dessert Crawl (Suggestion)")], [])

        result = await resolver.resolve("🍰 dessert crawl")

        assert result.strategy == ResolveStrategy.search_assisted
        assert result.match is not None and result.match.id == "e1"
        assert client.list_events_multi.await_count == 1
        call = client.list_events_multi.await_args_list[0]
        assert call.kwargs["query"] == "🍰 dessert crawl"
        # Default window is 30 days either side of now.
        assert call.args[1] == NOW - timedelta(days=30)
        assert call.args[2] == NOW + timedelta(days=30)

    async def test_falls_back_to_exhaustive_pass(self):
        resolver, client = _resolver([], [_event("e2", "Crawl for desserts downtown")])

        result = await resolver.resolve("dessert crawl")

        assert result.strategy == ResolveStrategy.exhaustive
        assert result.match is not None and result.match.id == "e2"
        assert client.list_events_multi.await_count == 2

    async def test_weak_candidates_without_match(self):
        events = [
            _event("a", "Lunch with parents"),
            _event("b", "Yoga class"),
            _event("c", "Friday standup"),
        ]
        resolver, _ = _resolver([], events)

        result = await resolver.resolve("team lunch friday")

        assert result.match is None
        assert {c.id for c in result.candidates} == {"a", "c"}
        assert all(0.2 <= c.confidence < 0.5 for c in result.candidates)

    async def test_candidates_are_capped_and_sorted(self):
        events = [_event(str(i), f"Dinner {i}") for i in range(6)]
        events.append(_event("best", "dinner"))
        resolver, _ = _resolver([], events)

        result = await resolver.resolve("dinner")

        assert len(result.candidates) == 3
        confidences = [c.confidence for c in result.candidates]
        assert confidences == sorted(confidences, reverse=True)

    async def test_duplicate_events_are_collapsed(self):
        hit = _event("dup", "Piano lesson")
        resolver, _ = _resolver([hit, hit], [])

        result = await resolver.resolve("piano lesson")

        assert [c.id for c in result.candidates] == ["dup"]

    async def test_blank_description_is_rejected(self):
        resolver, client = _resolver([], [])

        with pytest.raises(ValidationError):
            await resolver.resolve("   ")
        client.list_calendars.assert_not_awaited()

    async def test_inverted_window_is_rejected(self):
        resolver, _ = _resolver([], [])

        with pytest.raises(ValidationError):
            await resolver.resolve("x", time_min=NOW, time_max=NOW - timedelta(days=1))
