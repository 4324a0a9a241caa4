from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight:
    """
    Owner of at most one in-flight asyncio task for a named operation.

    `launch` cancels whatever is running and starts the new coroutine, so a
    superseded operation can never commit its result. Cancelling the task is
    the cancellation token: the coroutine sees `CancelledError` at its next
    await (the only suspension points are network calls).
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def launch(self, coro: Coroutine[Any, Any, T]) -> "asyncio.Task[T]":
        self.cancel()
        task = asyncio.get_running_loop().create_task(coro, name=self.name)
        self._task = task
        task.add_done_callback(self._on_done)
        return task

    async def run(self, coro: Coroutine[Any, Any, T]) -> Optional[T]:
        """Launch and wait; returns None if the task was superseded or cancelled."""
        task = self.launch(coro)
        await asyncio.wait({task})
        if task.cancelled():
            return None
        return task.result()

    async def join(self) -> None:
        """Wait for the current task (if any) to finish, however it ends."""
        task = self._task
        if task is not None:
            await asyncio.wait({task})

    def cancel(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()

    def _on_done(self, task: asyncio.Task) -> None:
        if self._task is task:
            self._task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[flight:%s] task failed: %r", self.name, exc)
