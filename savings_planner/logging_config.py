"""Structured logging configuration built on structlog."""

import logging
import sys
from typing import Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, merge_contextvars

from savings_planner.config import Settings

__all__ = [
    "configure_logging",
    "get_logger",
    "bind_contextvars",
    "clear_contextvars",
]


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure stdlib logging and structlog processors.

    Args:
        settings: Application settings. Defaults are used when omitted.
    """
    settings = settings or Settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
        force=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger.

    Args:
        name: Logger name, usually ``__name__``

    Returns:
        Bound structlog logger accepting keyword event fields
    """
    return structlog.get_logger(name)
