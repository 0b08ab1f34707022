"""
SimClock: Deterministic time control for tests and simulation.

Replaces time.monotonic() and asyncio.sleep() with a simulated clock that
advances only when told to, or when something sleeps on it.

Usage:
    clock = SimClock()
    clock.advance(seconds=2)   # jump 2s
    await clock.sleep(0.05)    # advances 50ms, yields to the loop, returns
    clock.now()                # 2.05
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional


class SimClock:
    """Deterministic simulated clock.

    Single asyncio loop only (no threading). Sleeps advance simulated time
    by the requested amount and return immediately, so polling loops with
    deadlines terminate without real delay.
    """

    def __init__(self, start: float = 0.0, *, step_callback: Optional[Callable[["SimClock", float], None]] = None):
        """
        Args:
            start: Initial simulated monotonic time in seconds.
            step_callback: Optional callback(clock, requested_seconds) called on each sleep,
                           after time has advanced. Tests use it to change broker state mid-poll.
        """
        self._current: float = start
        self._start: float = start
        self._step_callback = step_callback
        self._total_sleeps: int = 0
        self._total_sleep_seconds: float = 0.0

    # -- Time queries --

    def now(self) -> float:
        return self._current

    # -- Time advancement --

    def advance(self, *, seconds: float = 0, ms: float = 0) -> None:
        delta = seconds + ms / 1000.0
        if delta < 0:
            raise ValueError("Cannot advance by negative delta")
        self._current += delta

    def set_step_callback(self, callback: Optional[Callable[["SimClock", float], None]]) -> None:
        self._step_callback = callback

    # -- Sleep replacement --

    async def sleep(self, seconds: float) -> None:
        """Replacement for asyncio.sleep(). Advances simulated time and returns."""
        self._total_sleeps += 1
        self._total_sleep_seconds += seconds
        self._current += max(seconds, 0.0)
        if self._step_callback:
            self._step_callback(self, seconds)
        # Yield control to event loop to allow task switching
        await asyncio.sleep(0)

    # -- Stats --

    @property
    def elapsed(self) -> float:
        return self._current - self._start

    @property
    def stats(self) -> dict:
        return {
            "start": self._start,
            "current": self._current,
            "elapsed_seconds": self.elapsed,
            "total_sleeps": self._total_sleeps,
            "total_sleep_seconds": self._total_sleep_seconds,
        }

    def __repr__(self) -> str:
        return f"SimClock(now={self._current:.3f}, elapsed={self.elapsed:.3f})"
