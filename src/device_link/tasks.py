"""Cancellable delayed callbacks on the running event loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Union

logger = logging.getLogger(__name__)

Callback = Callable[[], Union[None, Awaitable[None]]]


class ScheduledTask:
    """Handle for a callback that runs once after ``delay`` seconds.

    Cancelling the handle before the delay elapses guarantees the callback
    never runs. Cancelling while an async callback is running cancels it.
    """

    def __init__(self, delay: float, callback: Callback, *, name: str | None = None) -> None:
        if delay < 0:
            raise ValueError("delay must not be negative")
        self._delay = float(delay)
        self._callback = callback
        self._name = name or getattr(callback, "__name__", "scheduled-task")
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name=self._name)

    @property
    def name(self) -> str:
        return self._name

    @property
    def delay(self) -> float:
        return self._delay

    def cancel(self) -> bool:
        """Cancel the task; return ``False`` if it had already finished."""

        if self._task.done():
            return False
        self._task.cancel()
        return True

    def cancelled(self) -> bool:
        return self._task.cancelled()

    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> None:
        """Wait for the task to finish, treating cancellation as completion."""

        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise

    async def _run(self) -> None:
        await asyncio.sleep(self._delay)
        try:
            result = self._callback()
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Scheduled task %s failed", self._name)


def schedule(delay: float, callback: Callback, *, name: str | None = None) -> ScheduledTask:
    """Run *callback* once after *delay* seconds on the running loop."""

    return ScheduledTask(delay, callback, name=name)


__all__ = ["Callback", "ScheduledTask", "schedule"]
