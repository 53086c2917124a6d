"""Spawn and cancel asyncio background tasks with error logging."""
from __future__ import annotations

import asyncio
import logging
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Task callback that logs the exception of a failed task."""
    if task.cancelled():
        return
    exception = task.exception()
    if exception is not None:
        logger.error(
            f'Exception in background task (name="{task.get_name()}"): '
            f'{exception!r}',
            exc_info=exception,
        )


def spawn_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    name: str | None = None,
    **kwargs: Any,
) -> asyncio.Task[None]:
    """Run a coroutine in the background.

    Background tasks that are never awaited can fail without notice, so
    the task gets a done callback which logs the traceback of any
    exception raised by the coroutine. The exception is not propagated:
    a failing task only ends itself.

    Args:
        coro: Coroutine function to run as task.
        args: Positional arguments for the coroutine.
        name: Optional name of the task.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle.
    """
    task = asyncio.create_task(coro(*args, **kwargs), name=name)
    task.add_done_callback(_log_task_exception)
    return task


async def cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel a task and wait for it to finish.

    The current task is never cancelled so a task can safely call this on
    a group of tasks which includes itself.
    """
    if task is None or task is asyncio.current_task() or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
