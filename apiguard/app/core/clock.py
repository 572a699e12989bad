"""Time source used for all expiry math.

A clock is any zero-argument callable returning epoch seconds as a float.
Production code uses ``time.time``; tests pass a ``ManualClock``.
"""

import time
from typing import Callable

Clock = Callable[[], float]

system_clock: Clock = time.time


class ManualClock:
    """Clock that only moves when told to.

    Usage:
        clock = ManualClock(1_000.0)
        limiter = RateLimiter(clock=clock)
        clock.advance(61)
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)

    def __call__(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        """Move the clock forward and return the new time."""
        if seconds < 0:
            raise ValueError("ManualClock cannot move backwards")
        self._now += seconds
        return self._now

    def set(self, now: float) -> None:
        self._now = float(now)
