"""Structured logging configuration using structlog.

JSON lines in production, colored console output in debug. Every event
carries the app name, version and active store backend; chat turns add
their ``turn_id``/``user_id`` through contextvars so store-level warnings
can be traced back to the turn that caused them.
"""

import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from chatcache.core.config import Settings, get_settings

# Driver loggers that only repeat what our own warning events already say
QUIET_LOGGERS = ("redis", "asyncio", "fakeredis")


def add_app_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add application context to log events."""
    settings = get_settings()
    event_dict["app"] = settings.app_name
    event_dict["version"] = settings.app_version
    event_dict.setdefault("backend", "redis" if settings.redis_available else "local")
    return event_dict


def _processors(settings: Settings) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        add_app_context,
    ]
    if settings.debug:
        return [*processors, structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]
    return [
        *processors,
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ]


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog and route stdlib logging to stdout."""
    settings = settings or get_settings()

    structlog.configure(
        processors=_processors(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def turn_context(**values: str) -> Iterator[str]:
    """Bind a fresh ``turn_id`` plus ``values`` to every event in the block."""
    turn_id = uuid.uuid4().hex[:12]
    with structlog.contextvars.bound_contextvars(turn_id=turn_id, **values):
        yield turn_id


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
