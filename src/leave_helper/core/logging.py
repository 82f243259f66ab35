"""Logging setup for leave-helper.

Call sites keep using ``logging.getLogger(__name__)`` with ``extra={...}``.
:func:`configure_logging` routes every stdlib record through structlog's
ProcessorFormatter, so those extras come out as structured fields next to
``service``, ``trace_id`` and ``span_id``.

``text`` renders for a terminal; ``json`` renders one object per line.  With a
log root, JSON copies are also written to::

    {log_root}/app/{service}.log       application records
    {log_root}/uvicorn/{service}.log   HTTP server and client transport records
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog
from opentelemetry import trace

DEFAULT_SERVICE_NAME = "leave-helper"

# Kept at WARNING on the console; their records go to uvicorn/ when a log root is set.
TRANSPORT_LOGGERS = ("uvicorn.access", "uvicorn.error", "httpx", "httpcore")

_APP_DIR = "app"
_TRANSPORT_DIR = "uvicorn"
_LOG_ROOT_DISABLED = {"", "none", "off", "0"}

_NO_TRACE_ID = "0" * 32
_NO_SPAN_ID = "0" * 16


class ServiceNameAdder:
    """Processor that stamps a fixed ``service`` field on every event."""

    def __init__(self, service_name: str) -> None:
        self.service_name = service_name

    def __call__(
        self,
        logger: logging.Logger,  # noqa: ARG002
        method_name: str,  # noqa: ARG002
        event_dict: dict,
    ) -> dict:
        event_dict.setdefault("service", self.service_name)
        return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject the current span's ``trace_id`` / ``span_id`` (zeros outside a span)."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = _NO_TRACE_ID
        event_dict["span_id"] = _NO_SPAN_ID
    return event_dict


def resolve_log_root(raw: str | Path | None) -> Path | None:
    """Resolve a configured log directory.

    ``None``, an empty string, or ``none``/``off``/``0`` disables file logging.
    """
    if raw is None or str(raw).strip().lower() in _LOG_ROOT_DISABLED:
        return None
    return Path(str(raw).strip())


def _pre_chain(service_name: str, *, time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        ServiceNameAdder(service_name),
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor,
    pre_chain: list[structlog.types.Processor],
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def _drop_file_handlers(target: logging.Logger) -> None:
    for handler in list(target.handlers):
        if isinstance(handler, logging.FileHandler):
            target.removeHandler(handler)
            handler.close()


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: str | Path | None = None,
    service_name: str = DEFAULT_SERVICE_NAME,
) -> None:
    """Install the console handler (and optional JSON files) on the root logger.

    Safe to call more than once: earlier handlers installed here are replaced.
    """
    if fmt == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        console_chain = _pre_chain(service_name, time_fmt="iso")
    else:
        renderer = structlog.dev.ConsoleRenderer()
        console_chain = _pre_chain(service_name, time_fmt="%H:%M:%S")

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(_formatter(renderer, console_chain))

    root = logging.getLogger()
    _drop_file_handlers(root)
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in TRANSPORT_LOGGERS:
        transport_logger = logging.getLogger(name)
        transport_logger.setLevel(logging.WARNING)
        _drop_file_handlers(transport_logger)

    if log_root is None:
        return

    log_root = Path(log_root)
    json_formatter = _formatter(
        structlog.processors.JSONRenderer(), _pre_chain(service_name, time_fmt="iso")
    )
    for subdir in (_APP_DIR, _TRANSPORT_DIR):
        (log_root / subdir).mkdir(parents=True, exist_ok=True)

    app_handler = logging.FileHandler(log_root / _APP_DIR / f"{service_name}.log")
    app_handler.setFormatter(json_formatter)
    root.addHandler(app_handler)

    transport_handler = logging.FileHandler(log_root / _TRANSPORT_DIR / f"{service_name}.log")
    transport_handler.setFormatter(json_formatter)
    for name in TRANSPORT_LOGGERS:
        logging.getLogger(name).addHandler(transport_handler)
