"""OpenTelemetry setup and the span helper used around provider calls.

Tracing is opt-in: without ``OTEL_EXPORTER_OTLP_ENDPOINT`` the global no-op
provider stays in place and spans cost nothing.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "calbridge"
OTLP_ENDPOINT_ENV = "OTEL_EXPORTER_OTLP_ENDPOINT"

# The SDK refuses to replace a global provider; the app factory may run many
# times per process (tests, reload), so only the first call installs one.
_tracer_provider_installed: bool = False


def _install_provider(service_name: str, endpoint: str) -> None:
    # Deferred so the gRPC stack is only imported when exporting.
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)


def init_telemetry(service_name: str) -> trace.Tracer:
    """Install an OTLP-exporting tracer provider once, when an endpoint is configured.

    Returns a tracer for *service_name* either way.
    """
    global _tracer_provider_installed

    endpoint = os.environ.get(OTLP_ENDPOINT_ENV)
    if not endpoint:
        logger.info("%s not set; tracing disabled", OTLP_ENDPOINT_ENV)
    elif _tracer_provider_installed:
        logger.debug("Tracer provider already installed; not replacing it")
    else:
        _install_provider(service_name, endpoint)
        _tracer_provider_installed = True
        logger.info("Exporting traces to %s", endpoint)
    return trace.get_tracer(service_name)


def get_tracer(name: str = _TRACER_NAME) -> trace.Tracer:
    return trace.get_tracer(name)


@contextmanager
def traced(span_name: str, **attributes: str | int | bool) -> Iterator[trace.Span]:
    """Run the block inside a span carrying *attributes*.

    Exceptions are recorded on the span and the status is set to ERROR before
    the exception is re-raised.
    """
    with get_tracer().start_as_current_span(span_name, record_exception=False) as span:
        for key, value in attributes.items():
            span.set_attribute(key, value)
        try:
            yield span
        except Exception as exc:
            span.set_status(trace.StatusCode.ERROR, str(exc))
            span.record_exception(exc)
            raise
