"""Repeating-task schedulers used by the trading engine.

``AsyncioScheduler`` runs each task as a background asyncio task that awaits
its callback, then sleeps for the interval, so runs of one task never
overlap. ``ManualScheduler`` keeps a virtual clock that tests move forward
with ``advance()``.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[None]]


class ScheduledTask:
    """Cancel handle returned by ``schedule()``."""

    def __init__(self, name: str, interval_ms: float, callback: Callback):
        self.name = name
        self.interval_ms = interval_ms
        self.callback = callback
        self.cancelled = False
        self._task: Optional[asyncio.Task] = None
        self.next_due_ms: float = interval_ms

    def cancel(self) -> None:
        self.cancelled = True
        if self._task is None or self._task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # Cancelled from inside its own callback: the loop exits on its own.
        if self._task is not current:
            self._task.cancel()


async def _run_callback(task: ScheduledTask) -> None:
    try:
        await task.callback()
    except asyncio.CancelledError:
        raise
    except Exception:
        # A failing run must not kill the repeating task.
        logger.exception("Scheduled task %s failed", task.name)


class AsyncioScheduler:
    def schedule(self, interval_ms: float, callback: Callback, name: str = "task") -> ScheduledTask:
        handle = ScheduledTask(name, interval_ms, callback)
        handle._task = asyncio.create_task(self._loop(handle), name=name)
        return handle

    @staticmethod
    async def _loop(handle: ScheduledTask) -> None:
        try:
            while not handle.cancelled:
                await asyncio.sleep(handle.interval_ms / 1000.0)
                if handle.cancelled:
                    break
                await _run_callback(handle)
        except asyncio.CancelledError:
            pass


class ManualScheduler:
    """Deterministic scheduler: nothing runs until ``advance()`` is awaited."""

    def __init__(self):
        self.now_ms: float = 0.0
        self.tasks: List[ScheduledTask] = []

    def schedule(self, interval_ms: float, callback: Callback, name: str = "task") -> ScheduledTask:
        handle = ScheduledTask(name, interval_ms, callback)
        handle.next_due_ms = self.now_ms + interval_ms
        self.tasks.append(handle)
        return handle

    def active(self) -> List[ScheduledTask]:
        return [t for t in self.tasks if not t.cancelled]

    async def advance(self, ms: float) -> None:
        """Move the clock by ``ms`` and run every callback that falls due, in time order."""
        target = self.now_ms + ms
        while True:
            due = [t for t in self.active() if t.next_due_ms <= target]
            if not due:
                break
            handle = min(due, key=lambda t: t.next_due_ms)
            self.now_ms = handle.next_due_ms
            handle.next_due_ms += handle.interval_ms
            await _run_callback(handle)
        self.now_ms = target
        self.tasks = self.active()
