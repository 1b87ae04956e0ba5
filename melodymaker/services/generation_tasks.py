"""Registry of detached generation tasks.

The HTTP response for a generation request is decoupled from the Replicate
submission, but the submission is not optional: every spawned task is kept
alive by a strong reference here and the application lifespan awaits
``drain()`` on shutdown, so in-flight submissions finish (or fail into the
track record) instead of being dropped with the event loop.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)

# Background generation tasks keyed by track_id
_generation_tasks: dict[str, asyncio.Task[None]] = {}


def _on_done(track_id: str, task: asyncio.Task[None]) -> None:
    _generation_tasks.pop(track_id, None)
    if task.cancelled():
        logger.warning(f"⚠️ Generation task for track {track_id} was cancelled")
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            f"❌ Generation task for track {track_id} crashed: {exc}",
            exc_info=exc,
        )


def spawn(track_id: str, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
    """Run ``coro`` as a tracked background task for ``track_id``."""
    task: asyncio.Task[None] = asyncio.create_task(coro, name=f"generate-{track_id}")
    _generation_tasks[track_id] = task
    task.add_done_callback(lambda t: _on_done(track_id, t))
    return task


def pending_count() -> int:
    """Number of generation tasks still running."""
    return len(_generation_tasks)


async def drain(timeout: float | None = None) -> None:
    """Wait for every in-flight generation task to finish.

    Tasks still running after ``timeout`` seconds are left alone and logged.
    """
    tasks = list(_generation_tasks.values())
    if not tasks:
        return
    logger.info(f"Waiting for {len(tasks)} generation task(s) to finish")
    _, pending = await asyncio.wait(tasks, timeout=timeout)
    if pending:
        logger.warning(f"⚠️ {len(pending)} generation task(s) still running after {timeout}s")


def reset() -> None:
    """Forget all tracked tasks (for testing)."""
    _generation_tasks.clear()
