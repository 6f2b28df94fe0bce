"""Cooperative scheduling primitives.

The playback engine never blocks and never spawns threads: every delay is
a callback registered on a :class:`Scheduler`.  Two implementations:

  * :class:`AsyncioScheduler` — wraps ``loop.call_later`` for the live
    service.  All callbacks run on the event loop thread, so engine state
    is only ever touched from one thread.
  * :class:`ManualScheduler` — a virtual clock advanced explicitly.  Used
    by tests and by headless replays where wall-clock time is irrelevant.

Time is expressed in milliseconds throughout the engine.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from typing import Callable, Protocol

Callback = Callable[[], None]


class TimerHandle:
    """Cancellable reference to a scheduled callback."""

    __slots__ = ("_cancelled", "_cancel_fn", "due", "fired")

    def __init__(self, due: float, cancel_fn: Callable[[], None] | None = None) -> None:
        self.due = due
        self.fired = False
        self._cancelled = False
        self._cancel_fn = cancel_fn

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        """True while the callback is still waiting to run."""
        return not (self._cancelled or self.fired)

    def cancel(self) -> None:
        if not self.active:
            return
        self._cancelled = True
        if self._cancel_fn is not None:
            self._cancel_fn()
            self._cancel_fn = None


class Scheduler(Protocol):
    """Minimal timer interface the engine depends on."""

    def now(self) -> float:
        """Current time in milliseconds (monotonic)."""
        ...

    def call_later(self, delay_ms: float, callback: Callback) -> TimerHandle:
        """Run ``callback`` once after ``delay_ms`` milliseconds."""
        ...


class AsyncioScheduler:
    """Scheduler backed by an asyncio event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop or asyncio.get_running_loop()

    def now(self) -> float:
        return self._loop.time() * 1000.0

    def call_later(self, delay_ms: float, callback: Callback) -> TimerHandle:
        delay_ms = max(0.0, delay_ms)
        timer = TimerHandle(self.now() + delay_ms)

        def _fire() -> None:
            timer.fired = True
            callback()

        timer._cancel_fn = self._loop.call_later(delay_ms / 1000.0, _fire).cancel
        return timer


class ManualScheduler:
    """Virtual-time scheduler.

    Callbacks due at the same instant run in registration order.  A
    callback may schedule further callbacks; those run during the same
    :meth:`advance` call if they fall due before its end.
    """

    def __init__(self, start_ms: float = 0.0) -> None:
        self._now = start_ms
        self._queue: list[tuple[float, int, TimerHandle, Callback]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay_ms: float, callback: Callback) -> TimerHandle:
        due = self._now + max(0.0, delay_ms)
        handle = TimerHandle(due)
        heapq.heappush(self._queue, (due, next(self._seq), handle, callback))
        return handle

    @property
    def pending(self) -> int:
        """Number of scheduled, not-yet-cancelled callbacks."""
        return sum(1 for _, _, h, _ in self._queue if h.active)

    def advance(self, ms: float) -> None:
        """Move the clock forward by ``ms``, firing every callback that falls due."""
        self.advance_to(self._now + ms)

    def advance_to(self, target_ms: float) -> None:
        while self._queue and self._queue[0][0] <= target_ms:
            due, _, handle, callback = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, due)
            handle.fired = True
            callback()
        self._now = max(self._now, target_ms)

    def run_until_idle(self, limit_ms: float = 3_600_000.0) -> None:
        """Fire callbacks until none remain or ``limit_ms`` of virtual time passes."""
        deadline = self._now + limit_ms
        while self._queue and self._queue[0][0] <= deadline:
            self.advance_to(self._queue[0][0])
