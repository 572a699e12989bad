"""Rate limiting algorithms.

Each strategy is stateless: it reads the slot's current record, decides,
and hands back the record to write. The limiter runs that inside
``KeyStore.update`` so the read-decide-write is atomic per slot.

Denied checks never return a write, so a denial cannot push a counter
past its limit.
"""

import math
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from apiguard.app.core.keystore import Write
from apiguard.app.middleware.rate_limit.models import (
    LeakyBucket,
    RateLimitConfig,
    RateLimitEntry,
    RateLimitResult,
    RateLimitStrategy,
    SlidingWindowEntry,
    TokenBucket,
)

# Absorbs float noise before flooring fractional remaining counts
_EPSILON = 1e-9

Decision = Tuple[RateLimitResult, Optional[Write]]


def _floor(value: float) -> int:
    return max(0, int(math.floor(value + _EPSILON)))


def _retry_seconds(seconds: float) -> int:
    return max(1, int(math.ceil(seconds - _EPSILON)))


def _window_bounds(config: RateLimitConfig, now: float) -> Tuple[float, float]:
    start = math.floor(now / config.window) * config.window
    return float(start), float(start + config.window)


def _result(
    config: RateLimitConfig,
    allowed: bool,
    remaining: int,
    reset_time: float,
    retry_after: Optional[int] = None,
    **metadata: Any,
) -> RateLimitResult:
    return RateLimitResult(
        allowed=allowed,
        limit=config.capacity,
        remaining=remaining,
        reset_time=reset_time,
        strategy=config.strategy,
        tier=config.tier,
        retry_after=None if allowed else retry_after,
        metadata=metadata,
    )


class Strategy(ABC):
    """Abstract base class for rate limit algorithms."""

    name: RateLimitStrategy

    @abstractmethod
    def check(
        self, config: RateLimitConfig, state: Optional[Any], now: float, weight: int = 1
    ) -> Decision:
        """Decide a request and compute the slot's next state.

        Args:
            config: Policy being enforced
            state: Live slot record, or None for a fresh caller
            now: Current time in epoch seconds
            weight: Units the request consumes

        Returns:
            The decision and the write to apply (None to leave the slot alone)
        """

    @abstractmethod
    def status(self, config: RateLimitConfig, state: Optional[Any], now: float) -> RateLimitResult:
        """Describe the slot without changing it.

        ``allowed`` reports whether a unit-weight check would pass now.
        """


class FixedWindowStrategy(Strategy):
    """Counts events in discrete windows aligned to ``floor(now / window)``.

    The counter resets lazily the first time a slot is touched in a new
    window. A caller can spend a full window's quota just before a boundary
    and another just after it; that burst is inherent to the algorithm.
    """

    name = RateLimitStrategy.FIXED_WINDOW

    @staticmethod
    def _count(state: Optional[RateLimitEntry], window_start: float) -> int:
        if state is not None and state.window_start == window_start:
            return state.count
        return 0

    def check(self, config, state, now, weight=1):
        window_start, reset_time = _window_bounds(config, now)
        count = self._count(state, window_start)

        if count + weight > config.limit:
            return _result(
                config, False, max(0, config.limit - count), reset_time,
                retry_after=_retry_seconds(reset_time - now),
                current=count, window_start=window_start,
            ), None

        count += weight
        result = _result(
            config, True, config.limit - count, reset_time,
            current=count, window_start=window_start,
        )
        return result, Write(RateLimitEntry(count=count, window_start=window_start), reset_time)

    def status(self, config, state, now):
        window_start, reset_time = _window_bounds(config, now)
        count = self._count(state, window_start)
        allowed = count + 1 <= config.limit
        return _result(
            config, allowed, max(0, config.limit - count), reset_time,
            retry_after=_retry_seconds(reset_time - now),
            current=count, window_start=window_start,
        )


class SlidingWindowStrategy(Strategy):
    """Approximates a moving window by blending two fixed windows.

    ``estimate = current + previous * (1 - elapsed / window)`` where
    ``elapsed`` is the time since the current window started. This is the
    weighted-counter approximation, not an exact sliding log.
    """

    name = RateLimitStrategy.SLIDING_WINDOW

    @staticmethod
    def _counts(
        state: Optional[SlidingWindowEntry], window_start: float, window: int
    ) -> Tuple[int, int]:
        if state is None:
            return 0, 0
        if state.window_start == window_start:
            return state.count, state.previous_count
        if state.window_start == window_start - window:
            return 0, state.count
        return 0, 0

    @staticmethod
    def _retry_after(
        config: RateLimitConfig, current: int, previous: int, elapsed: float, weight: int
    ) -> int:
        window = config.window
        headroom = config.limit - current - weight
        if headroom >= 0 and previous > 0:
            # Wait for the previous window's weight to decay enough
            wait = window * (1 - headroom / previous) - elapsed
            return _retry_seconds(wait)

        # Wait for the next window, where today's count becomes "previous"
        wait = window - elapsed
        if current > 0 and config.limit - weight < current:
            wait += max(0.0, window * (1 - (config.limit - weight) / current))
        return _retry_seconds(wait)

    def check(self, config, state, now, weight=1):
        window_start, reset_time = _window_bounds(config, now)
        current, previous = self._counts(state, window_start, config.window)
        elapsed = now - window_start
        overlap = 1 - elapsed / config.window
        estimate = current + previous * overlap

        if estimate + weight > config.limit + _EPSILON:
            return _result(
                config, False, _floor(config.limit - estimate), reset_time,
                retry_after=self._retry_after(config, current, previous, elapsed, weight),
                current=current, previous=previous, estimate=estimate,
                window_start=window_start,
            ), None

        current += weight
        estimate += weight
        result = _result(
            config, True, _floor(config.limit - estimate), reset_time,
            current=current, previous=previous, estimate=estimate,
            window_start=window_start,
        )
        entry = SlidingWindowEntry(count=current, previous_count=previous, window_start=window_start)
        # Kept for one extra window so it can serve as the "previous" counter
        return result, Write(entry, window_start + 2 * config.window)

    def status(self, config, state, now):
        window_start, reset_time = _window_bounds(config, now)
        current, previous = self._counts(state, window_start, config.window)
        elapsed = now - window_start
        estimate = current + previous * (1 - elapsed / config.window)
        allowed = estimate + 1 <= config.limit + _EPSILON
        return _result(
            config, allowed, _floor(config.limit - estimate), reset_time,
            retry_after=self._retry_after(config, current, previous, elapsed, 1),
            current=current, previous=previous, estimate=estimate,
            window_start=window_start,
        )


class TokenBucketStrategy(Strategy):
    """Bucket of ``burst`` tokens refilled continuously at ``refill_rate``/s.

    A new caller starts with a full bucket. Fractional tokens persist
    between calls. A request is allowed when at least ``weight`` tokens are
    available after refilling.
    """

    name = RateLimitStrategy.TOKEN_BUCKET

    @staticmethod
    def _refill(config: RateLimitConfig, state: Optional[TokenBucket], now: float) -> float:
        if state is None:
            return float(config.burst)
        elapsed = max(0.0, now - state.last_update)
        return min(float(config.burst), state.tokens + elapsed * config.refill_rate)

    @staticmethod
    def _full_at(config: RateLimitConfig, tokens: float, now: float) -> float:
        return now + (config.burst - tokens) / config.refill_rate

    def _meta(self, config: RateLimitConfig, tokens: float) -> Dict[str, Any]:
        return {"tokens": tokens, "capacity": config.burst, "refill_rate": config.refill_rate}

    def check(self, config, state, now, weight=1):
        tokens = self._refill(config, state, now)

        if tokens + _EPSILON < weight:
            wait = (weight - tokens) / config.refill_rate
            return _result(
                config, False, _floor(tokens), now + wait,
                retry_after=_retry_seconds(wait), **self._meta(config, tokens),
            ), None

        tokens = max(0.0, tokens - weight)
        full_at = self._full_at(config, tokens, now)
        result = _result(config, True, _floor(tokens), full_at, **self._meta(config, tokens))
        # A bucket that has refilled completely is the same as no bucket
        return result, Write(TokenBucket(tokens=tokens, last_update=now), full_at)

    def status(self, config, state, now):
        tokens = self._refill(config, state, now)
        allowed = tokens + _EPSILON >= 1
        wait = max(0.0, (1 - tokens) / config.refill_rate)
        reset_time = self._full_at(config, tokens, now) if allowed else now + wait
        return _result(
            config, allowed, _floor(tokens), reset_time,
            retry_after=_retry_seconds(wait), **self._meta(config, tokens),
        )


class LeakyBucketStrategy(Strategy):
    """Bucket of capacity ``limit`` draining at ``limit / window`` units/s.

    Each request pours ``weight`` units in; it is rejected if the bucket
    would overflow.
    """

    name = RateLimitStrategy.LEAKY_BUCKET

    @staticmethod
    def _leak_rate(config: RateLimitConfig) -> float:
        return config.limit / config.window

    def _drain(self, config: RateLimitConfig, state: Optional[LeakyBucket], now: float) -> float:
        if state is None:
            return 0.0
        elapsed = max(0.0, now - state.last_leak)
        return max(0.0, state.volume - elapsed * self._leak_rate(config))

    def _meta(self, config: RateLimitConfig, volume: float) -> Dict[str, Any]:
        return {"volume": volume, "capacity": config.limit, "leak_rate": self._leak_rate(config)}

    def check(self, config, state, now, weight=1):
        volume = self._drain(config, state, now)
        rate = self._leak_rate(config)

        if volume + weight > config.limit + _EPSILON:
            wait = (volume + weight - config.limit) / rate
            return _result(
                config, False, _floor(config.limit - volume), now + wait,
                retry_after=_retry_seconds(wait), **self._meta(config, volume),
            ), None

        volume += weight
        empty_at = now + volume / rate
        result = _result(
            config, True, _floor(config.limit - volume), empty_at, **self._meta(config, volume)
        )
        return result, Write(LeakyBucket(volume=volume, last_leak=now), empty_at)

    def status(self, config, state, now):
        volume = self._drain(config, state, now)
        rate = self._leak_rate(config)
        allowed = volume + 1 <= config.limit + _EPSILON
        wait = max(0.0, (volume + 1 - config.limit) / rate)
        return _result(
            config, allowed, _floor(config.limit - volume), now + volume / rate,
            retry_after=_retry_seconds(wait), **self._meta(config, volume),
        )


STRATEGIES: Dict[RateLimitStrategy, Strategy] = {
    strategy.name: strategy
    for strategy in (
        FixedWindowStrategy(),
        SlidingWindowStrategy(),
        TokenBucketStrategy(),
        LeakyBucketStrategy(),
    )
}


def get_strategy(name: RateLimitStrategy) -> Strategy:
    """Look up the algorithm for a strategy name."""
    try:
        return STRATEGIES[RateLimitStrategy(name)]
    except (KeyError, ValueError):
        raise ValueError(f"Unsupported rate limit strategy: {name}") from None
