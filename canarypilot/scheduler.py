"""
Cancellable Timers
==================

The release engine never sleeps. Everything that happens "later" (metric
ticks, the shadow test result, advisory messages, the decision timeout) is a
callback registered with a Scheduler and identified by a TimerHandle that
can be disposed explicitly.

Two schedulers are provided:

- AsyncioScheduler: runs callbacks on an asyncio event loop (CLI demo, web).
- ManualScheduler: a virtual clock advanced by hand, for deterministic
  simulations and tests.

Usage:
    scheduler = ManualScheduler()
    ticker = scheduler.call_every(1.0, on_tick)
    scheduler.advance(3.0)      # on_tick runs three times
    ticker.cancel()
"""

import asyncio
import heapq
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger(__name__)

Callback = Callable[[], None]


class TimerHandle:
    """Handle to a scheduled callback. Cancelling is idempotent."""

    def __init__(self, name: str = ""):
        self.name = name
        self._cancelled = False
        self._finished = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def live(self) -> bool:
        """True until the timer is cancelled or a one-shot timer has fired."""
        return not (self._cancelled or self._finished)

    def cancel(self) -> bool:
        """
        Dispose of the timer.

        Returns:
            True if this call cancelled a live timer, False otherwise.
        """
        if not self.live:
            return False
        self._cancelled = True
        self._dispose()
        return True

    def _mark_finished(self) -> None:
        self._finished = True

    def _dispose(self) -> None:
        pass

    def __repr__(self) -> str:
        if self._cancelled:
            state = "cancelled"
        elif self._finished:
            state = "finished"
        else:
            state = "active"
        return f"<TimerHandle {self.name or '?'} {state}>"


class Scheduler(ABC):
    """Source of time and of cancellable delayed callbacks."""

    @abstractmethod
    def now(self) -> float:
        """Current time in seconds."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callback, name: str = "") -> TimerHandle:
        """Run callback once after delay seconds."""

    @abstractmethod
    def call_every(self, interval: float, callback: Callback, name: str = "") -> TimerHandle:
        """Run callback every interval seconds until the handle is cancelled."""


# =============================================================================
# asyncio-backed scheduler
# =============================================================================

class _LoopTimer(TimerHandle):
    def __init__(self, name: str = ""):
        super().__init__(name)
        self.loop_handle: Optional[asyncio.TimerHandle] = None

    def _dispose(self) -> None:
        if self.loop_handle is not None:
            self.loop_handle.cancel()
            self.loop_handle = None


class AsyncioScheduler(Scheduler):
    """
    Schedules callbacks on an asyncio event loop.

    If no loop is given, the running loop is looked up on first use, so the
    scheduler must then be used from inside a coroutine or loop callback.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callback, name: str = "") -> TimerHandle:
        timer = _LoopTimer(name)

        def _fire() -> None:
            timer.loop_handle = None
            if not timer.cancelled:
                timer._mark_finished()
                callback()

        timer.loop_handle = self.loop.call_later(delay, _fire)
        return timer

    def call_every(self, interval: float, callback: Callback, name: str = "") -> TimerHandle:
        timer = _LoopTimer(name)
        loop = self.loop

        def _fire() -> None:
            if timer.cancelled:
                return
            # Re-arm before running so a slow callback does not drift the cadence
            timer.loop_handle = loop.call_later(interval, _fire)
            callback()

        timer.loop_handle = loop.call_later(interval, _fire)
        return timer


# =============================================================================
# Virtual clock
# =============================================================================

@dataclass(order=True)
class _Scheduled:
    due: float
    seq: int
    callback: Callback = field(compare=False)
    handle: TimerHandle = field(compare=False)
    interval: Optional[float] = field(default=None, compare=False)


class ManualScheduler(Scheduler):
    """
    Deterministic scheduler driven by advance().

    Callbacks fire in due-time order (ties in registration order). A callback
    may schedule or cancel other timers, including ones due within the same
    advance() window.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: list[_Scheduled] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callback, name: str = "") -> TimerHandle:
        handle = TimerHandle(name)
        heapq.heappush(self._queue, _Scheduled(self._now + delay, next(self._seq), callback, handle))
        return handle

    def call_every(self, interval: float, callback: Callback, name: str = "") -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = TimerHandle(name)
        heapq.heappush(
            self._queue,
            _Scheduled(self._now + interval, next(self._seq), callback, handle, interval),
        )
        return handle

    def advance(self, seconds: float) -> int:
        """
        Move the clock forward, firing every callback that falls due.

        Returns:
            Number of callbacks that ran.
        """
        target = self._now + seconds
        fired = 0
        while self._queue and self._queue[0].due <= target:
            item = heapq.heappop(self._queue)
            if item.handle.cancelled:
                continue
            self._now = item.due
            if item.interval is not None:
                heapq.heappush(
                    self._queue,
                    _Scheduled(item.due + item.interval, next(self._seq), item.callback, item.handle, item.interval),
                )
            else:
                item.handle._mark_finished()
            item.callback()
            fired += 1
        self._now = target
        return fired

    def pending(self) -> int:
        """Number of live (not cancelled) timers."""
        return sum(1 for item in self._queue if not item.handle.cancelled)

    def pending_names(self) -> list[str]:
        return sorted(item.handle.name for item in self._queue if not item.handle.cancelled)


# =============================================================================
# Timer groups
# =============================================================================

class TimerGroup:
    """
    A set of timers that belong to one unit of work and are disposed together.

    The recommendation engine keeps one group per anomaly episode: the three
    advisory messages and the decision timeout.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._handles: list[TimerHandle] = []

    def add(self, handle: TimerHandle) -> TimerHandle:
        # Fired and cancelled handles are dropped so long-lived groups stay small
        self._handles = [h for h in self._handles if h.live]
        self._handles.append(handle)
        return handle

    @property
    def active(self) -> int:
        return sum(1 for h in self._handles if h.live)

    def cancel_all(self) -> int:
        """Cancel every timer in the group. Returns how many were still live."""
        cancelled = sum(1 for h in self._handles if h.cancel())
        self._handles.clear()
        if cancelled:
            logger.debug("Cancelled %d timer(s) in group %s", cancelled, self.name or "?")
        return cancelled

    def __len__(self) -> int:
        return len(self._handles)
