"""Cancellable timers for the detection engine.

Detectors never call ``time`` or ``asyncio`` directly; they go through a
``Scheduler`` so the same state machine runs on the event loop in
production and on a manual clock in tests. All times are milliseconds.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections.abc import Callable
from typing import Optional, Protocol

from donecall.models import now_ms


class TimerHandle:
    """A single scheduled callback. ``cancel()`` takes effect immediately."""

    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self._callback = callback
        self._cancelled = False
        self._fired = False
        self._canceller: Optional[Callable[[], None]] = None

    @property
    def pending(self) -> bool:
        return not (self._cancelled or self._fired)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if not self.pending:
            return
        self._cancelled = True
        if self._canceller is not None:
            self._canceller()

    def fire(self) -> None:
        if not self.pending:
            return
        self._fired = True
        self._callback()


class Scheduler(Protocol):
    def now(self) -> float: ...

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioScheduler:
    """Wall-clock scheduler backed by the running event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return now_ms()

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self.now() + delay_ms, callback)
        loop_handle = self.loop.call_later(max(delay_ms, 0) / 1000.0, handle.fire)
        handle._canceller = loop_handle.cancel
        return handle


class ManualScheduler:
    """A clock that only moves when told to. Used to drive detectors in tests."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self._now + max(delay_ms, 0), callback)
        heapq.heappush(self._queue, (handle.when, next(self._seq), handle))
        return handle

    def advance_to(self, when: float) -> None:
        """Move the clock to ``when``, firing every timer due on the way."""
        while self._queue and self._queue[0][0] <= when:
            due, _, handle = heapq.heappop(self._queue)
            if not handle.pending:
                continue
            self._now = max(self._now, due)
            handle.fire()
        self._now = max(self._now, when)

    def advance(self, delta_ms: float) -> None:
        self.advance_to(self._now + delta_ms)

    @property
    def pending_timers(self) -> int:
        return sum(1 for _, _, h in self._queue if h.pending)
