"""Utility functions for the playback core."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Coroutine
from typing import TypeVar

_T = TypeVar("_T")

logger = logging.getLogger(__name__)

# Check if eager_start is supported (Python 3.12+)
_SUPPORTS_EAGER_START = sys.version_info >= (3, 12)


def create_task(
    coro: Coroutine[None, None, _T],
    *,
    loop: asyncio.AbstractEventLoop | None = None,
    name: str | None = None,
    eager_start: bool = True,
) -> asyncio.Task[_T]:
    """Create an asyncio task with eager_start=True by default.

    Fetch, decode and control tasks start running immediately so that a
    freshly loaded track reaches the network without waiting for the next
    event loop iteration.

    Args:
        coro: The coroutine to run as a task.
        loop: Optional event loop to use. If None, uses the running loop.
        name: Optional name for the task (for debugging).
        eager_start: Whether to start the task eagerly (default: True).
                     Only used if Python version supports it.

    Returns:
        The created asyncio Task.
    """
    if loop is None:
        loop = asyncio.get_running_loop()

    if _SUPPORTS_EAGER_START and eager_start:
        return asyncio.Task(coro, loop=loop, name=name, eager_start=True)

    return loop.create_task(coro, name=name)


async def cancel_task(task: asyncio.Task[object] | None) -> None:
    """Cancel a task and wait for it to finish, ignoring its outcome."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        # Propagate if our own caller is being cancelled, not just the task
        current = asyncio.current_task()
        if current is not None and current.cancelling():
            raise
    except Exception:
        logger.exception("Task %s failed while being cancelled", task.get_name())


def clamp(value: int, lower: int, upper: int) -> int:
    """Clamp an integer to ``[lower, upper]``."""
    return max(lower, min(upper, value))


class GenerationCounter:
    """Monotonically increasing generation tokens for seek/track epochs."""

    __slots__ = ("_value",)

    def __init__(self) -> None:
        self._value = 0

    def next(self) -> int:
        """Issue a new generation, invalidating all previous ones."""
        self._value += 1
        return self._value
