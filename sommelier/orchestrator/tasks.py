from __future__ import annotations

import asyncio
from typing import Any, Awaitable


def spawn(tasks: set[asyncio.Task[Any]], awaitable: Awaitable[Any], name: str, logger: Any) -> asyncio.Task[Any]:
    """Start a background task that stays referenced in ``tasks`` until it finishes.

    Failures are logged when the task completes, since nobody awaits it.
    """
    task = asyncio.ensure_future(awaitable)
    task.set_name(name)
    tasks.add(task)

    def _done(finished: asyncio.Task[Any]) -> None:
        tasks.discard(finished)
        if finished.cancelled():
            return
        exc = finished.exception()
        if exc is not None:
            logger.error("task.failed", task=finished.get_name(), error=str(exc), kind=type(exc).__name__)

    task.add_done_callback(_done)
    return task


async def cancel_all(tasks: set[asyncio.Task[Any]]) -> None:
    pending = [task for task in tasks if task is not asyncio.current_task() and not task.done()]
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


__all__ = ["spawn", "cancel_all"]
