"""Rate limiter: named policy registry plus per-caller enforcement.

Policies are registered under a config key (``"auth.login"``,
``"api.general"``...). Each ``(config_key, identifier)`` pair owns one slot
in the key store; the config key doubles as the slot namespace so a policy
can be reset or deleted in one call.
"""

import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from apiguard.app.core.clock import Clock, system_clock
from apiguard.app.core.config import settings
from apiguard.app.core.keystore import InMemoryKeyStore, KeyStore
from apiguard.app.core.logging import get_log_context, get_logger
from apiguard.app.core.sweeper import PeriodicSweeper
from apiguard.app.exceptions import ConfigNotFoundError, InvalidConfigError
from apiguard.app.middleware.rate_limit.models import (
    RateLimitConfig,
    RateLimitResult,
    RateLimitStrategy,
    RateLimitTier,
)
from apiguard.app.middleware.rate_limit.strategies import get_strategy

logger = get_logger(__name__)

ConfigInput = Union[RateLimitConfig, Mapping[str, Any]]


@dataclass
class _ConfigCounters:
    allowed: int = 0
    denied: int = 0


class RateLimiter:
    """In-process rate limiter with a mutable policy registry.

    Usage:
        limiter = RateLimiter(default_rate_limit_configs())
        result = await limiter.check("auth.login", client_ip)
        if not result.allowed:
            ...

    Note: state is per process. Several workers each enforce their own
    copy of every limit.
    """

    def __init__(
        self,
        configs: Optional[Iterable[ConfigInput]] = None,
        store: Optional[KeyStore] = None,
        clock: Clock = system_clock,
        cleanup_interval: Optional[float] = None,
    ) -> None:
        """Initialize the limiter.

        Args:
            configs: Policies to register up front
            store: Slot storage (default: a fresh ``InMemoryKeyStore``)
            clock: Time source for window and refill math
            cleanup_interval: Seconds between expired-slot sweeps
                (default: ``settings.rate_limit_cleanup_interval_seconds``)
        """
        self._store = store if store is not None else InMemoryKeyStore()
        self._clock = clock
        self._configs: Dict[str, RateLimitConfig] = {}
        self._counters: Dict[str, _ConfigCounters] = {}
        self._lock = threading.RLock()
        self._sweeper = PeriodicSweeper(
            "rate_limit",
            self.cleanup,
            interval=cleanup_interval or settings.rate_limit_cleanup_interval_seconds,
        )
        for config in configs or ():
            self.set_config(config)

    # -- registry --

    def set_config(self, config: ConfigInput) -> RateLimitConfig:
        """Register or replace a policy.

        Existing slots for the key are kept; they are read with the new
        parameters from the next check on.

        Args:
            config: A ``RateLimitConfig`` or a mapping of its fields

        Returns:
            The registered config

        Raises:
            InvalidConfigError: If the config fails validation. The registry
                is left unchanged.
        """
        if isinstance(config, Mapping):
            try:
                config = RateLimitConfig(**config)
            except TypeError as e:
                raise InvalidConfigError(f"Invalid config fields: {e}") from None
        elif isinstance(config, RateLimitConfig):
            # Fields may have been mutated since construction
            config.validate()
        else:
            raise InvalidConfigError("Config must be a RateLimitConfig or a mapping")

        with self._lock:
            replaced = config.key in self._configs
            self._configs[config.key] = config
            self._counters.setdefault(config.key, _ConfigCounters())

        logger.info(
            f"{'Updated' if replaced else 'Registered'} rate limit config '{config.key}' "
            f"({config.strategy.value}, {config.limit}/{config.window}s)",
            extra=get_log_context(config_key=config.key, strategy=config.strategy.value),
        )
        return config

    def get_config(self, key: str) -> Optional[RateLimitConfig]:
        """Return the policy registered under ``key``, or None."""
        with self._lock:
            return self._configs.get(key)

    def delete_config(self, key: str) -> bool:
        """Remove a policy together with its live slots and counters.

        Returns:
            True if the policy existed
        """
        with self._lock:
            if self._configs.pop(key, None) is None:
                return False
            self._counters.pop(key, None)
            removed = self._store.clear_namespace(key)

        logger.info(
            f"Deleted rate limit config '{key}' ({removed} active entries dropped)",
            extra=get_log_context(config_key=key),
        )
        return True

    def list_configs(
        self,
        strategy: Optional[RateLimitStrategy] = None,
        tier: Optional[RateLimitTier] = None,
        enabled: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> List[RateLimitConfig]:
        """List registered policies, sorted by key.

        Args:
            strategy: Only policies using this strategy
            tier: Only policies using this tier
            enabled: Only enabled (True) or disabled (False) policies
            search: Case-insensitive substring of the key or description
        """
        with self._lock:
            configs = sorted(self._configs.values(), key=lambda c: c.key)

        if strategy is not None:
            configs = [c for c in configs if c.strategy is RateLimitStrategy(strategy)]
        if tier is not None:
            configs = [c for c in configs if c.tier is RateLimitTier(tier)]
        if enabled is not None:
            configs = [c for c in configs if c.enabled is enabled]
        if search:
            needle = search.lower()
            configs = [
                c for c in configs
                if needle in c.key.lower() or needle in (c.description or "").lower()
            ]
        return configs

    def _require(self, key: str) -> RateLimitConfig:
        config = self.get_config(key)
        if config is None:
            raise ConfigNotFoundError(key)
        return config

    # -- enforcement --

    async def check(self, config_key: str, identifier: str, weight: int = 1) -> RateLimitResult:
        """Decide one request and record it if allowed.

        Args:
            config_key: Registered policy key
            identifier: Caller identity for the policy's tier
            weight: Units the request consumes (default: 1)

        Returns:
            The decision. Denied requests leave the caller's state untouched.

        Raises:
            ConfigNotFoundError: If ``config_key`` is not registered
            ValueError: If ``weight`` is not a positive integer
        """
        if weight < 1:
            raise ValueError("weight must be a positive integer")

        config = self._require(config_key)
        if not config.enabled:
            return RateLimitResult(
                allowed=True,
                limit=config.capacity,
                remaining=config.capacity,
                reset_time=self._clock() + config.window,
                strategy=config.strategy,
                tier=config.tier,
                metadata={"disabled": True},
            )

        strategy = get_strategy(config.strategy)
        now = self._clock()
        result = self._store.update(
            config_key,
            identifier,
            now,
            lambda state: strategy.check(config, state, now, weight),
        )

        with self._lock:
            counters = self._counters.setdefault(config_key, _ConfigCounters())
            if result.allowed:
                counters.allowed += 1
            else:
                counters.denied += 1

        if not result.allowed:
            logger.warning(
                f"Rate limit exceeded for '{config_key}' (retry after {result.retry_after}s)",
                extra=get_log_context(
                    config_key=config_key,
                    identifier=identifier,
                    strategy=config.strategy.value,
                ),
            )
        return result

    async def get_status(self, config_key: str, identifier: str) -> RateLimitResult:
        """Describe a caller's standing under a policy without consuming quota.

        Raises:
            ConfigNotFoundError: If ``config_key`` is not registered
        """
        config = self._require(config_key)
        now = self._clock()
        if not config.enabled:
            return RateLimitResult(
                allowed=True,
                limit=config.capacity,
                remaining=config.capacity,
                reset_time=now + config.window,
                strategy=config.strategy,
                tier=config.tier,
                metadata={"disabled": True},
            )
        state = self._store.get(config_key, identifier, now)
        return get_strategy(config.strategy).status(config, state, now)

    async def reset(self, config_key: str, identifier: Optional[str] = None) -> int:
        """Forget recorded usage for one caller, or for every caller.

        Returns:
            Number of slots removed

        Raises:
            ConfigNotFoundError: If ``config_key`` is not registered
        """
        self._require(config_key)
        if identifier is None:
            removed = self._store.clear_namespace(config_key)
        else:
            removed = int(self._store.delete(config_key, identifier))

        logger.info(
            f"Reset rate limit '{config_key}' ({removed} entries)",
            extra=get_log_context(config_key=config_key, identifier=identifier),
        )
        return removed

    # -- introspection and upkeep --

    def get_stats(self) -> Dict[str, Any]:
        """Registry and traffic summary for the admin surface."""
        with self._lock:
            configs = list(self._configs.values())
            per_config = {
                key: {"allowed": c.allowed, "denied": c.denied}
                for key, c in sorted(self._counters.items())
            }

        return {
            "total_configs": len(configs),
            "enabled_configs": sum(1 for c in configs if c.enabled),
            "active_entries": self._store.count(),
            "strategies": sorted({c.strategy.value for c in configs}),
            "tiers": sorted({c.tier.value for c in configs}),
            "total_allowed": sum(c["allowed"] for c in per_config.values()),
            "total_denied": sum(c["denied"] for c in per_config.values()),
            "configs": per_config,
        }

    def active_entries(self, config_key: Optional[str] = None) -> int:
        """Number of stored slots, optionally for one policy."""
        return self._store.count(config_key)

    def cleanup(self) -> int:
        """Purge expired slots. Returns the number removed."""
        return self._store.purge_expired(self._clock())

    @property
    def sweeper(self) -> PeriodicSweeper:
        return self._sweeper

    async def start(self) -> None:
        """Start the background slot sweep."""
        await self._sweeper.start()

    async def stop(self) -> None:
        """Stop the background slot sweep."""
        await self._sweeper.stop()
