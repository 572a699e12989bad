"""Shared-instance dependencies for FastAPI dependency injection.

The app factory stores one ``RateLimiter``, one ``CacheManager`` and one
``CachedQueries`` on ``app.state``; routes receive them through these
aliases instead of importing module-level singletons.

Usage:
    from apiguard.app.dependencies import RateLimiterDep

    @router.get("/limits")
    async def list_limits(limiter: RateLimiterDep):
        return [c.to_dict() for c in limiter.list_configs()]
"""

from typing import Annotated

from fastapi import Depends, Request

from apiguard.app.core.cache import CacheManager
from apiguard.app.core.config import Settings
from apiguard.app.middleware.rate_limit.limiter import RateLimiter
from apiguard.app.services.cached_queries import CachedQueries


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_cache_manager(request: Request) -> CacheManager:
    return request.app.state.cache


def get_cached_queries(request: Request) -> CachedQueries:
    return request.app.state.cached_queries


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


RateLimiterDep = Annotated[RateLimiter, Depends(get_rate_limiter)]
CacheDep = Annotated[CacheManager, Depends(get_cache_manager)]
CachedQueriesDep = Annotated[CachedQueries, Depends(get_cached_queries)]
SettingsDep = Annotated[Settings, Depends(get_settings)]

__all__ = [
    "RateLimiterDep",
    "CacheDep",
    "CachedQueriesDep",
    "SettingsDep",
    "get_rate_limiter",
    "get_cache_manager",
    "get_cached_queries",
    "get_settings",
]
