"""Natural-language event resolution across every readable calendar.

Two confidence-gated passes:

1. *search_assisted*: ask each calendar for events matching the raw
   description with the provider's full-text ``q`` filter and score the hits.
2. *exhaustive*: only when pass 1 has no confident match, re-list every
   calendar without a filter and score everything in the window.

Provider-side search is unreliable for emoji-prefixed or paraphrased titles,
so pass 2 catches what pass 1 misses at the cost of a full scan.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from calbridge.calendar.client import GoogleCalendarClient
from calbridge.calendar.models import (
    CalendarEvent,
    ResolvedEvent,
    ResolveResult,
    ResolveStrategy,
)
from calbridge.calendar.tokens import utcnow
from calbridge.config import ResolverConfig
from calbridge.errors import ValidationError

logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(r"[^\W_]+")
_STRIPPED_CATEGORIES = frozenset({"So", "Cs", "Co"})
_ZERO_WIDTH_JOINER = "\u200d"
_KEYCAP = "\u20e3"


def _is_emoji_component(char: str) -> bool:
    code = ord(char)
    if char in (_ZERO_WIDTH_JOINER, _KEYCAP):
        return True
    if 0xFE00 <= code <= 0xFE0F:  # variation selectors
        return True
    if 0x1F3FB <= code <= 0x1F3FF:  # skin-tone modifiers
        return True
    if 0xE0020 <= code <= 0xE007F:  # tag sequences
        return True
    return unicodedata.category(char) in _STRIPPED_CATEGORIES


def normalize_text(value: str) -> str:
    """Strip emoji, collapse whitespace, and lowercase."""
    stripped = "".join(" " if _is_emoji_component(ch) else ch for ch in value)
    return " ".join(stripped.split()).lower()


def tokenize(value: str) -> list[str]:
    return [token for token in _TOKEN_PATTERN.findall(value) if len(token) > 1]


def _tokens_match(a: str, b: str) -> bool:
    return a in b or b in a


def score_match(query: str, candidate: str, config: ResolverConfig | None = None) -> float:
    """Return a confidence in ``[0, 1]`` that *candidate* is the event *query* names.

    Substring containment either way scores 1.0.  If every query token
    contains or is contained in some candidate token the score is
    ``token_match_score``.  Otherwise it is a weighted sum of Jaccard overlap
    and query coverage, capped at ``partial_score_cap`` so partial overlap
    never outranks a substring hit.
    """
    cfg = config or ResolverConfig()
    q = normalize_text(query)
    c = normalize_text(candidate)
    if not q or not c:
        return 0.0
    if q in c or c in q:
        return 1.0

    query_tokens = set(tokenize(q))
    candidate_tokens = set(tokenize(c))
    if not query_tokens or not candidate_tokens:
        return 0.0

    matched = sum(
        1 for qt in query_tokens if any(_tokens_match(qt, ct) for ct in candidate_tokens)
    )
    if matched == len(query_tokens):
        return cfg.token_match_score

    union = len(query_tokens) + len(candidate_tokens) - matched
    jaccard = matched / union if union else 0.0
    coverage = matched / len(query_tokens)
    score = cfg.jaccard_weight * jaccard + cfg.coverage_weight * coverage
    return min(cfg.partial_score_cap, score)


class EventResolver:
    """Map a free-text description to at most one event, with ranked alternatives."""

    def __init__(
        self,
        client: GoogleCalendarClient,
        config: ResolverConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client = client
        self._config = config or ResolverConfig()
        self._clock = clock

    async def resolve(
        self,
        description: str,
        *,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
    ) -> ResolveResult:
        description = (description or "").strip()
        if not description:
            raise ValidationError("A description is required to resolve an event.")

        now = self._clock()
        window = timedelta(days=self._config.default_window_days)
        start = time_min or now - window
        end = time_max or now + window
        if end <= start:
            raise ValidationError("timeMax must be later than timeMin.")

        calendars = await self._client.list_calendars()

        hits = await self._client.list_events_multi(
            calendars,
            start,
            end,
            self._config.search_results_per_calendar,
            query=description,
        )
        ranked = self._rank(description, hits)
        if ranked and ranked[0].confidence >= self._config.match_threshold:
            logger.debug(
                "Resolved %r via provider search (%.2f)", description, ranked[0].confidence
            )
            return self._result(ranked, ResolveStrategy.search_assisted)

        events = await self._client.list_events_multi(
            calendars,
            start,
            end,
            self._config.exhaustive_results_per_calendar,
        )
        ranked = self._rank(description, events)
        result = self._result(ranked, ResolveStrategy.exhaustive)
        if result.match is None:
            logger.info(
                "No confident match for %r; %d candidate(s) offered",
                description,
                len(result.candidates),
            )
        return result

    def _rank(self, description: str, events: Iterable[CalendarEvent]) -> list[ResolvedEvent]:
        seen: set[tuple[str, str]] = set()
        ranked: list[ResolvedEvent] = []
        for event in events:
            key = (event.calendar_id or "", event.id)
            if key in seen:
                continue
            seen.add(key)
            confidence = score_match(description, event.summary, self._config)
            if confidence < self._config.candidate_threshold or confidence <= 0.0:
                continue
            ranked.append(
                ResolvedEvent(
                    id=event.id,
                    summary=event.summary,
                    start=event.start,
                    end=event.end,
                    calendar_id=event.calendar_id or "",
                    calendar_name=event.calendar_name,
                    confidence=round(confidence, 4),
                )
            )
        ranked.sort(key=lambda r: -r.confidence)
        return ranked

    def _result(self, ranked: list[ResolvedEvent], strategy: ResolveStrategy) -> ResolveResult:
        top = ranked[0] if ranked else None
        match = top if top is not None and top.confidence >= self._config.match_threshold else None
        return ResolveResult(
            match=match,
            candidates=ranked[: self._config.max_candidates],
            strategy=strategy,
        )
