"""Core utilities for apiguard."""

from apiguard.app.core.cache import (
    CacheKeyGenerator,
    CacheManager,
    CacheStats,
    CacheTags,
    CacheTTL,
    cached,
)
from apiguard.app.core.clock import ManualClock, system_clock
from apiguard.app.core.config import settings
from apiguard.app.core.keystore import InMemoryKeyStore, KeyStore, is_expired
from apiguard.app.core.logging import get_logger, setup_logging
from apiguard.app.core.sweeper import PeriodicSweeper

__all__ = [
    "CacheKeyGenerator",
    "CacheManager",
    "CacheStats",
    "CacheTags",
    "CacheTTL",
    "cached",
    "ManualClock",
    "system_clock",
    "settings",
    "InMemoryKeyStore",
    "KeyStore",
    "is_expired",
    "get_logger",
    "setup_logging",
    "PeriodicSweeper",
]
