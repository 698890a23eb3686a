"""Structured logging for threadpilot."""

import logging
import sys
from typing import TextIO

import structlog

from threadpilot.config import LoggingConfig, get_config


def configure_logging(stream: TextIO | None = None, settings: LoggingConfig | None = None) -> None:
    """Set up structlog from ``settings`` (defaults to the active config's ``logging`` section).

    Events go to ``stream`` or stderr, rendered for the console or as JSON lines.
    """
    settings = settings or get_config().logging
    level = getattr(logging, settings.level.upper(), logging.INFO)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Module logger; pass ``__name__``."""
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


def bind_thread(thread_id: str) -> None:
    """Tag every later log event of the current task with ``thread_id``."""
    structlog.contextvars.bind_contextvars(thread_id=thread_id)
