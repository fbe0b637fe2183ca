"""Structured logging for calbridge: provider-tagged, trace-correlated, redacted.

Call sites keep using ``logging.getLogger(__name__)``; :func:`configure_logging`
puts a structlog ``ProcessorFormatter`` on the root logger so every record,
including those from third-party libraries, goes through the same processors.

Formats:
- ``text``: coloured console output for local development
- ``json``: one JSON object per line for log shipping

With ``log_root`` set, JSON copies are also written to::

    logs/
      calbridge/calbridge.log   # application records
      uvicorn/calbridge.log     # ASGI server and outbound HTTP client records
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

from calbridge.errors import redact_secrets

# Provider being served by the current task (``google_calendar``, ``telegram``, ...).
_provider_context: ContextVar[str | None] = ContextVar("provider", default=None)

_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
)

_APP_DIR = "calbridge"
_TRANSPORT_DIR = "uvicorn"
_ZERO_TRACE_ID = "0" * 32
_ZERO_SPAN_ID = "0" * 16


def set_provider_context(provider: str | None) -> None:
    _provider_context.set(provider)


def get_provider_context() -> str | None:
    return _provider_context.get()


@contextmanager
def provider_context(provider: str) -> Iterator[None]:
    """Tag every log line emitted inside the block with *provider*."""
    token = _provider_context.set(provider)
    try:
        yield
    finally:
        _provider_context.reset(token)


def add_provider_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    event_dict["provider"] = _provider_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Add the active span's ids, or all-zero ids outside a recording span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = _ZERO_TRACE_ID
        event_dict["span_id"] = _ZERO_SPAN_ID
    return event_dict


def redact_event(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Scrub credential-looking values from the rendered event text."""
    event = event_dict.get("event")
    if isinstance(event, str):
        event_dict["event"] = redact_secrets(event)
    return event_dict


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_provider_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor, pre_chain: list[structlog.types.Processor]
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            redact_event,
            renderer,
        ],
        foreign_pre_chain=pre_chain,
    )


def _json_file_handler(path: Path) -> logging.FileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
    service_name: str = "calbridge",
) -> None:
    """Configure process-wide logging.

    Safe to call repeatedly: root handlers are replaced, not appended.

    Parameters
    ----------
    level:
        Root log level name.
    fmt:
        ``"text"`` for the coloured console renderer, ``"json"`` for JSON lines.
    log_root:
        Directory for the JSON log files; no files are written when ``None``.
    service_name:
        Base name of the log files.
    """
    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, pre_chain))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        root.addHandler(_json_file_handler(log_root / _APP_DIR / f"{service_name}.log"))
        transport = _json_file_handler(log_root / _TRANSPORT_DIR / f"{service_name}.log")
        for name in _NOISE_LOGGERS:
            logging.getLogger(name).addHandler(transport)

    # Direct structlog.get_logger() users share the stdlib pipeline.
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
