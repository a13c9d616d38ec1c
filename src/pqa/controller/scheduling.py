"""Cancellable delayed callbacks for the queue controller.

The controller keeps at most one ``ScheduledTask`` at a time (next-dispatch
delay, retry delay, or dispatch timeout).  ``cancel`` only has an effect
before the task fires, so a callback that schedules its successor never
cancels itself.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[Any]]


class ScheduledTask:
    """Handle for one pending callback."""

    def __init__(self, name: str, delay_s: float) -> None:
        self.name = name
        self.delay_s = delay_s
        self.fired = False
        self.cancelled = False
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return not self.fired and not self.cancelled

    def cancel(self) -> bool:
        """Cancel the task if it has not fired yet.

        Returns:
            True if this call cancelled it, False if it had already fired or
            been cancelled.
        """
        if not self.pending:
            return False
        self.cancelled = True
        if self._handle is not None:
            self._handle.cancel()
        return True

    def __repr__(self) -> str:
        state = "fired" if self.fired else "cancelled" if self.cancelled else "pending"
        return f"ScheduledTask({self.name!r}, {self.delay_s:.1f}s, {state})"


class Scheduler(Protocol):
    """Something that can run an async callback after a delay."""

    def schedule(self, delay_s: float, callback: Callback, name: str = "") -> ScheduledTask: ...


class AsyncioScheduler:
    """Scheduler backed by ``loop.call_later``."""

    def __init__(self) -> None:
        self._running: set[asyncio.Task[Any]] = set()

    def schedule(self, delay_s: float, callback: Callback, name: str = "") -> ScheduledTask:
        loop = asyncio.get_running_loop()
        task = ScheduledTask(name, delay_s)

        def _fire() -> None:
            if task.cancelled:
                return
            task.fired = True
            running = loop.create_task(callback(), name=f"pqa-{name}" if name else None)
            self._running.add(running)
            running.add_done_callback(self._on_done)

        task._handle = loop.call_later(max(0.0, delay_s), _fire)
        return task

    def _on_done(self, running: asyncio.Task[Any]) -> None:
        self._running.discard(running)
        if running.cancelled():
            return
        exc = running.exception()
        if exc is not None:
            logger.error("Scheduled callback %s failed", running.get_name(), exc_info=exc)


class ManualScheduler:
    """Deterministic scheduler for tests: nothing fires until ``run_next``/``advance``."""

    def __init__(self) -> None:
        self.now = 0.0
        self._queue: list[tuple[float, int, ScheduledTask, Callback]] = []
        self._seq = 0
        self.history: list[ScheduledTask] = []

    def schedule(self, delay_s: float, callback: Callback, name: str = "") -> ScheduledTask:
        task = ScheduledTask(name, delay_s)
        self._seq += 1
        self._queue.append((self.now + max(0.0, delay_s), self._seq, task, callback))
        self.history.append(task)
        return task

    @property
    def pending(self) -> list[ScheduledTask]:
        """Tasks that have neither fired nor been cancelled, in due order."""
        return [entry[2] for entry in sorted(self._queue, key=lambda e: (e[0], e[1])) if entry[2].pending]

    async def run_next(self) -> ScheduledTask | None:
        """Fire the earliest pending task, advancing the clock to its due time."""
        live = sorted((e for e in self._queue if e[2].pending), key=lambda e: (e[0], e[1]))
        if not live:
            return None
        due, _seq, task, callback = live[0]
        self._queue = [e for e in self._queue if e[2] is not task]
        self.now = max(self.now, due)
        task.fired = True
        await callback()
        return task

    async def advance(self, seconds: float) -> int:
        """Move the clock forward, firing everything that becomes due."""
        target = self.now + seconds
        fired = 0
        while True:
            live = [e for e in self._queue if e[2].pending and e[0] <= target]
            if not live:
                break
            await self.run_next()
            fired += 1
        self.now = target
        return fired
