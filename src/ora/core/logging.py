"""Logging setup for ORA processes.

Call sites keep using ``logging.getLogger(__name__)``; :func:`configure_logging`
routes every stdlib record through structlog so console output is either
readable text or JSON lines.  Each record carries the uid bound with
:func:`uid_context` and, inside an OpenTelemetry span, its trace and span ids.
Only uids are logged.  Tokens and secrets stay out of records.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any

import structlog
from opentelemetry import trace

_current_uid: ContextVar[str | None] = ContextVar("ora_uid", default=None)

# Chatty per-request libraries; ORA's own loggers keep the configured level.
QUIET_LOGGERS = ("httpx", "httpcore", "asyncpg", "uvicorn.access")


@contextmanager
def uid_context(uid: str | None) -> Iterator[None]:
    """Tag log records emitted inside the block with *uid*."""
    token = _current_uid.set(uid)
    try:
        yield
    finally:
        _current_uid.reset(token)


def current_uid() -> str | None:
    return _current_uid.get()


def add_request_context(_logger: Any, _method: str, event_dict: dict) -> dict:
    """structlog processor adding ``uid`` and, when a span is active, trace ids."""
    uid = _current_uid.get()
    if uid is not None:
        event_dict.setdefault("uid", uid)
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    return event_dict


def _formatter(renderer: Any, timestamp_fmt: str) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt=timestamp_fmt, utc=True),
            add_request_context,
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_file: Path | str | None = None,
) -> None:
    """Install ORA's handlers on the root logger, replacing any existing ones.

    *fmt* is ``"text"`` or ``"json"`` for stderr.  *log_file*, when given,
    additionally receives every record as JSON lines.
    """
    if fmt == "json":
        console = _formatter(structlog.processors.JSONRenderer(), "iso")
    else:
        console = _formatter(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()), "%H:%M:%S")

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(console)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(stderr_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), "iso"))
        root.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.WARNING))
