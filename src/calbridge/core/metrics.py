"""Prometheus metrics for the integration layer.

Metrics exported:
- calbridge_webhook_reservations_total: Counter of reserve-if-new outcomes
- calbridge_calendar_requests_total: Counter of calendar API calls by final status
- calbridge_calendar_request_latency_seconds: Histogram of calendar API latency
- calbridge_token_refreshes_total: Counter of OAuth refresh-token exchanges
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import Counter, Histogram

webhook_reservations_total = Counter(
    "calbridge_webhook_reservations_total",
    "Total number of inbound message reservation decisions",
    labelnames=["provider", "outcome"],
)

calendar_requests_total = Counter(
    "calbridge_calendar_requests_total",
    "Total number of calendar API requests",
    labelnames=["method", "status"],
)

calendar_request_latency_seconds = Histogram(
    "calbridge_calendar_request_latency_seconds",
    "Latency of calendar API requests in seconds",
    labelnames=["method"],
    buckets=(0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

token_refreshes_total = Counter(
    "calbridge_token_refreshes_total",
    "Total number of OAuth refresh-token exchanges",
    labelnames=["outcome"],
)


def record_reservation(provider: str, outcome: str) -> None:
    """Record a reservation decision.

    Args:
        provider: Channel provider (e.g., "telegram", "whatsapp")
        outcome: "accepted", "duplicate", or "contention"
    """
    webhook_reservations_total.labels(provider=provider, outcome=outcome).inc()


def record_token_refresh(outcome: str) -> None:
    """Record a refresh-token exchange ("success", "rejected", "error")."""
    token_refreshes_total.labels(outcome=outcome).inc()


def record_calendar_request(method: str, status: str) -> None:
    calendar_requests_total.labels(method=method, status=status).inc()


@contextmanager
def track_calendar_latency(method: str) -> Iterator[None]:
    """Observe the wall-clock duration of the block under *method*."""
    start_time = time.perf_counter()
    try:
        yield
    finally:
        calendar_request_latency_seconds.labels(method=method).observe(
            time.perf_counter() - start_time
        )
