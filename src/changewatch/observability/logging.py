"""Structured logging configuration using structlog."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from bson import json_util
from structlog.types import EventDict, Processor, WrappedLogger

from changewatch.core.config import LogLevel, get_settings


# Keys structlog's own processors expect untouched
_RESERVED_KEYS = frozenset({"event", "exc_info", "stack_info", "timestamp", "level"})

_PLAIN_TYPES = (str, int, float, bool, type(None))


def render_bson_values(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Render resume tokens, stages and BSON scalars as relaxed extended JSON.

    Values json_util cannot encode are left for the renderer.
    """
    for key, value in event_dict.items():
        if key in _RESERVED_KEYS or isinstance(value, _PLAIN_TYPES):
            continue
        try:
            event_dict[key] = json_util.dumps(
                value, json_options=json_util.RELAXED_JSON_OPTIONS
            )
        except TypeError:
            pass
    return event_dict


def configure_logging(
    level: LogLevel | str | None = None,
    format_type: str | None = None,
    service_name: str | None = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        format_type: Output format ("json" or "console").
        service_name: Service name for log entries.
    """
    settings = get_settings()

    log_level = level or settings.observability.log_level
    if isinstance(log_level, str):
        log_level = LogLevel(log_level.upper())

    output_format = format_type or settings.observability.log_format
    svc_name = service_name or settings.observability.service_name

    numeric_level = getattr(logging, log_level.value, logging.INFO)

    # Log to stderr so stdout stays free for change documents
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=numeric_level,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        render_bson_values,
    ]

    if output_format == "json":
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=svc_name)


def get_logger(name: str | None = None, **initial_context: Any) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually module name).
        **initial_context: Initial context values to bind.

    Returns:
        A bound structlog logger.
    """
    logger = structlog.get_logger(name)
    if initial_context:
        logger = logger.bind(**initial_context)
    return logger


def get_stream_logger(namespace: str) -> structlog.BoundLogger:
    """Get a logger bound to a change stream's namespace."""
    return get_logger("changewatch.stream", namespace=namespace)
