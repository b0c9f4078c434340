"""
Structured logging setup (structlog).

Call ``setup_logging()`` once per process (worker start, scripts).
Everything else just does ``logger = get_logger(__name__)`` and logs
with keyword context::

    logger.info("Upload succeeded", work_record_id=42, attempt=2)

A trace id is kept in structlog's contextvars for the duration of a
task run so every log line and every audit Event written during that
run can be cross-referenced.
"""

from __future__ import annotations

import logging
import secrets
import sys

import structlog
from structlog.contextvars import bind_contextvars, get_contextvars, unbind_contextvars

TRACE_ID_KEY = "trace_id"


def setup_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure stdlib logging + structlog processors."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger tagged with the module name."""
    return structlog.get_logger(name, logger_name=name)


def new_trace_id() -> str:
    """20 hex chars, matching the audit table's trace_id width."""
    return secrets.token_hex(10)


def bind_trace_id(trace_id: str | None = None) -> str:
    """Bind a trace id for the current task run and return it."""
    trace_id = trace_id or new_trace_id()
    bind_contextvars(**{TRACE_ID_KEY: trace_id})
    return trace_id


def clear_trace_id() -> None:
    unbind_contextvars(TRACE_ID_KEY)


def current_trace_id() -> str:
    """Trace id bound for this run, or a fresh one for ad-hoc writes."""
    return get_contextvars().get(TRACE_ID_KEY) or new_trace_id()
