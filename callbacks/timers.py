"""Cancellable deferred tasks.

Reminders, reconnect backoff, subscribe timeouts and the realtime health
probe are all one-shot timers. They are armed through a ``TaskScheduler``
and return a ``ScheduledTask`` handle that can be cancelled at any time
before it fires.

Two schedulers:
  - AsyncioTaskScheduler  — production, one asyncio task per timer
  - ManualTaskScheduler   — virtual clock, advanced explicitly by tests
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

log = logging.getLogger("callbacks.timers")

TimerCallback = Callable[[], Awaitable[None]]


class ScheduledTask(ABC):
    """Handle for one armed timer."""

    def __init__(self, name: str, fire_at: datetime) -> None:
        self.name = name
        self.fire_at = fire_at
        self._cancelled = False
        self._fired = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def active(self) -> bool:
        return not (self._cancelled or self._fired)

    @abstractmethod
    def cancel(self) -> None:
        """Prevent the callback from running. No-op once fired."""


class TaskScheduler(ABC):
    """Arms one-shot callbacks against a clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""

    @abstractmethod
    def call_later(
        self, delay: float, callback: TimerCallback, name: str = "",
    ) -> ScheduledTask:
        """Run ``callback`` after ``delay`` seconds."""

    def call_at(
        self, when: datetime, callback: TimerCallback, name: str = "",
    ) -> ScheduledTask:
        """Run ``callback`` at ``when`` (immediately if already past)."""
        delay = max(0.0, (when - self.now()).total_seconds())
        return self.call_later(delay, callback, name=name)

    @abstractmethod
    async def aclose(self) -> None:
        """Cancel every pending timer."""


async def _run_callback(task: ScheduledTask, callback: TimerCallback) -> None:
    try:
        await callback()
    except Exception:
        log.exception("Timer %s failed", task.name or "<unnamed>")


# ── asyncio ──────────────────────────────────────────────────────────


class _AsyncioTask(ScheduledTask):
    def __init__(self, name: str, fire_at: datetime) -> None:
        super().__init__(name, fire_at)
        self._task: asyncio.Task | None = None

    def cancel(self) -> None:
        if not self.active:
            return
        self._cancelled = True
        if self._task is not None:
            self._task.cancel()


class AsyncioTaskScheduler(TaskScheduler):
    """Timers backed by ``asyncio.sleep`` on the running loop."""

    def __init__(self) -> None:
        self._pending: set[_AsyncioTask] = set()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(
        self, delay: float, callback: TimerCallback, name: str = "",
    ) -> ScheduledTask:
        handle = _AsyncioTask(name, self.now() + timedelta(seconds=delay))

        async def _runner() -> None:
            await asyncio.sleep(delay)
            if handle.cancelled:
                return
            # Once fired, cancel() must not interrupt the callback itself
            handle._fired = True
            await _run_callback(handle, callback)

        handle._task = asyncio.create_task(_runner(), name=name or None)
        self._pending.add(handle)
        handle._task.add_done_callback(lambda _t: self._pending.discard(handle))
        return handle

    @property
    def pending(self) -> list[ScheduledTask]:
        return [h for h in self._pending if h.active]

    async def aclose(self) -> None:
        handles = list(self._pending)
        for handle in handles:
            handle.cancel()
        tasks = [h._task for h in handles if h._task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()


# ── Virtual clock ────────────────────────────────────────────────────


class _ManualTask(ScheduledTask):
    def __init__(self, name: str, fire_at: datetime, seq: int, callback: TimerCallback) -> None:
        super().__init__(name, fire_at)
        self.seq = seq
        self.callback = callback

    def cancel(self) -> None:
        if self.active:
            self._cancelled = True


class ManualTaskScheduler(TaskScheduler):
    """Deterministic scheduler whose clock only moves on ``advance()``.

    Usage::

        clock = ManualTaskScheduler(datetime(2030, 1, 1, tzinfo=timezone.utc))
        clock.call_later(60, callback)
        await clock.advance(60)   # callback runs here
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2030, 1, 1, tzinfo=timezone.utc)
        self._tasks: list[_ManualTask] = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self._now

    def call_later(
        self, delay: float, callback: TimerCallback, name: str = "",
    ) -> ScheduledTask:
        handle = _ManualTask(
            name, self._now + timedelta(seconds=max(0.0, delay)), next(self._seq), callback,
        )
        self._tasks.append(handle)
        return handle

    @property
    def pending(self) -> list[ScheduledTask]:
        return sorted(
            (t for t in self._tasks if t.active), key=lambda t: (t.fire_at, t.seq),
        )

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, running every timer that comes due."""
        target = self._now + timedelta(seconds=seconds)
        while True:
            due = [t for t in self.pending if t.fire_at <= target]
            if not due:
                break
            task = due[0]
            self._now = max(self._now, task.fire_at)
            task._fired = True
            await _run_callback(task, task.callback)
        self._now = target
        self._tasks = [t for t in self._tasks if t.active]

    async def aclose(self) -> None:
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()
