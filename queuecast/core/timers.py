"""
queuecast/core/timers.py — Cancellable timers and clocks for the event loop.

Every delayed action in the engine (reconnect backoff, chime → speech gap,
periodic cache refresh) goes through a :class:`TimerScheduler`, so the
engine runs unchanged on an asyncio loop or on a virtual clock.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, runtime_checkable

#: Returns "now" in epoch milliseconds.
Clock = Callable[[], float]


def system_clock_ms() -> float:
    """Wall-clock time in epoch milliseconds."""
    return time.time() * 1000.0


@runtime_checkable
class TimerHandle(Protocol):
    """A scheduled callback that can be cancelled before it fires."""

    def cancel(self) -> None:
        ...


@runtime_checkable
class TimerScheduler(Protocol):
    """Minimal interface for scheduling callbacks on the engine's loop."""

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` once after ``delay_ms`` milliseconds."""
        ...

    def now_ms(self) -> float:
        """Current time in epoch milliseconds."""
        ...


# ──────────────────────────────────────────────────────────────
# asyncio-backed scheduler (production)
# ──────────────────────────────────────────────────────────────

class AsyncioScheduler:
    """
    Schedules callbacks with ``loop.call_later``.

    Args:
        loop: Event loop to schedule on; defaults to the running loop at
            the time of the first :meth:`call_later`.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> TimerHandle:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop.call_later(max(delay_ms, 0.0) / 1000.0, callback)

    def now_ms(self) -> float:
        return system_clock_ms()


# ──────────────────────────────────────────────────────────────
# Virtual-time scheduler (tests and simulation)
# ──────────────────────────────────────────────────────────────

@dataclass(order=True)
class _ManualTimer:
    due_ms: float
    seq: int
    callback: Callable[[], None] = field(compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """
    Deterministic scheduler driven by :meth:`advance`.

    Timers fire in due-time order (ties in scheduling order). Callbacks that
    schedule further timers inside the advanced window fire in the same call.

    Args:
        start_ms: Initial virtual time in epoch milliseconds.
    """

    def __init__(self, start_ms: float = 1_700_000_000_000.0) -> None:
        self._now = float(start_ms)
        self._queue: list[_ManualTimer] = []
        self._seq = itertools.count()

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> _ManualTimer:
        timer = _ManualTimer(self._now + max(delay_ms, 0.0), next(self._seq), callback)
        heapq.heappush(self._queue, timer)
        return timer

    def now_ms(self) -> float:
        return self._now

    def advance(self, delta_ms: float) -> int:
        """
        Move virtual time forward, firing every timer that falls due.

        Returns:
            Number of callbacks fired.
        """
        target = self._now + delta_ms
        fired = 0
        while self._queue and self._queue[0].due_ms <= target:
            timer = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self._now = timer.due_ms
            timer.callback()
            fired += 1
        self._now = target
        return fired

    @property
    def pending(self) -> int:
        """Number of timers scheduled and not cancelled."""
        return sum(1 for t in self._queue if not t.cancelled)

    def next_due_in(self) -> Optional[float]:
        """Milliseconds until the next live timer, or None when idle."""
        live = [t.due_ms for t in self._queue if not t.cancelled]
        return min(live) - self._now if live else None
