"""Background task helper for periodic store maintenance."""

import asyncio
from collections.abc import Coroutine
from typing import Any

from chatcache.core.logging import get_logger

logger = get_logger(__name__)

# Strong references; the event loop only keeps weak ones
_running: set[asyncio.Task[Any]] = set()


def create_background_task(
    coro: Coroutine[Any, Any, Any], *, name: str = ""
) -> asyncio.Task[Any]:
    """Schedule ``coro``; a crash is logged instead of lost with the task."""
    task: asyncio.Task[Any] = asyncio.create_task(coro, name=name or None)
    _running.add(task)

    def _finished(t: asyncio.Task[Any]) -> None:
        _running.discard(t)
        if t.cancelled():
            logger.debug("Background task cancelled", task_name=t.get_name())
        elif (exc := t.exception()) is not None:
            logger.error("Background task crashed", task_name=t.get_name(), error=repr(exc))

    task.add_done_callback(_finished)
    return task
