"""Rate limiting data models.

This module contains the policy config, the decision result and the
per-slot state records each strategy keeps in the key store.
"""

import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from apiguard.app.exceptions import InvalidConfigError


class RateLimitStrategy(str, Enum):
    """Algorithm used to count a policy's events."""

    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW = "sliding_window"
    TOKEN_BUCKET = "token_bucket"
    LEAKY_BUCKET = "leaky_bucket"


class RateLimitTier(str, Enum):
    """How a caller identifier is derived for a policy."""

    GLOBAL = "global"
    IP = "ip"
    USER = "user"
    API_KEY = "api_key"
    ENDPOINT = "endpoint"


@dataclass
class RateLimitConfig:
    """A named rate limit policy.

    ``burst`` and ``refill_rate`` are only read by the token bucket
    strategy, which requires both.
    """

    key: str
    strategy: RateLimitStrategy
    tier: RateLimitTier
    limit: int
    window: int
    burst: Optional[int] = None
    refill_rate: Optional[float] = None
    enabled: bool = True
    description: Optional[str] = None

    def __post_init__(self) -> None:
        self.strategy = _coerce_enum(RateLimitStrategy, self.strategy, "strategy")
        self.tier = _coerce_enum(RateLimitTier, self.tier, "tier")
        self.validate()

    def validate(self) -> None:
        """Check field ranges and strategy-specific requirements.

        Raises:
            InvalidConfigError: On the first invalid field
        """
        if not isinstance(self.key, str) or not self.key.strip():
            raise InvalidConfigError("Config key is required", field="key")
        if not _is_positive_int(self.limit):
            raise InvalidConfigError("limit must be a positive integer", field="limit")
        if not _is_positive_int(self.window):
            raise InvalidConfigError("window must be a positive integer (seconds)", field="window")

        if self.strategy is RateLimitStrategy.TOKEN_BUCKET:
            if self.burst is None or self.refill_rate is None:
                raise InvalidConfigError(
                    "Token bucket strategy requires burst and refill_rate parameters",
                    field="burst" if self.burst is None else "refill_rate",
                )
            if not _is_positive_int(self.burst):
                raise InvalidConfigError("burst must be an integer >= 1", field="burst")
            if not _is_number(self.refill_rate) or self.refill_rate <= 0:
                raise InvalidConfigError("refill_rate must be positive", field="refill_rate")

    @property
    def capacity(self) -> int:
        """Maximum units a caller can spend at once."""
        if self.strategy is RateLimitStrategy.TOKEN_BUCKET:
            return self.burst
        return self.limit

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["strategy"] = self.strategy.value
        data["tier"] = self.tier.value
        return data


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_time: float
    strategy: RateLimitStrategy
    tier: RateLimitTier
    retry_after: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def reset_epoch(self) -> int:
        """Reset time rounded up to whole epoch seconds."""
        return int(math.ceil(self.reset_time))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_time": self.reset_time,
            "retry_after": self.retry_after,
            "strategy": self.strategy.value,
            "tier": self.tier.value,
            "metadata": dict(self.metadata),
        }


@dataclass
class RateLimitEntry:
    """Window counter state (fixed window)."""

    count: int
    window_start: float


@dataclass
class SlidingWindowEntry:
    """Current and previous window counters (sliding window)."""

    count: int
    previous_count: int
    window_start: float


@dataclass
class TokenBucket:
    """Token bucket state for token bucket algorithm."""

    tokens: float
    last_update: float


@dataclass
class LeakyBucket:
    """Leaky bucket state: queued volume draining at a constant rate."""

    volume: float
    last_leak: float


def _coerce_enum(enum_cls, value: Any, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidConfigError(
            f"Invalid {field_name} '{value}'. Expected one of: {allowed}",
            field=field_name,
        ) from None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0
