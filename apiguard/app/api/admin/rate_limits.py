from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from apiguard.app.dependencies import RateLimiterDep, SettingsDep
from apiguard.app.exceptions import ConfigNotFoundError
from apiguard.app.middleware.rate_limit.identifiers import resolve_identifier
from apiguard.app.middleware.rate_limit.models import RateLimitStrategy, RateLimitTier

router = APIRouter()


class RateLimitConfigCreate(BaseModel):
    key: str
    strategy: str  # validated by RateLimitConfig so errors come back as 400
    tier: str
    limit: int
    window: int
    burst: Optional[int] = None
    refill_rate: Optional[float] = None
    enabled: bool = True
    description: Optional[str] = None


@router.get("")
async def list_rate_limits(
    limiter: RateLimiterDep,
    key: Optional[str] = None,
    strategy: Optional[RateLimitStrategy] = None,
    tier: Optional[RateLimitTier] = None,
    enabled: Optional[bool] = None,
) -> dict:
    """List rate limit configs, optionally filtered."""
    configs = limiter.list_configs(strategy=strategy, tier=tier, enabled=enabled, search=key)
    return {
        "configs": [config.to_dict() for config in configs],
        "total": len(configs),
        "stats": limiter.get_stats(),
    }


@router.post("")
async def create_rate_limit(data: RateLimitConfigCreate, limiter: RateLimiterDep) -> dict:
    """Create or replace a rate limit config."""
    config = limiter.set_config(data.model_dump())
    return {"success": True, "config": config.to_dict()}


@router.get("/{config_key}")
async def get_rate_limit(config_key: str, limiter: RateLimiterDep) -> dict:
    """Get one rate limit config with its active entry count."""
    config = limiter.get_config(config_key)
    if config is None:
        raise ConfigNotFoundError(config_key)
    stats = limiter.get_stats()["configs"].get(config_key, {"allowed": 0, "denied": 0})
    return {
        "config": config.to_dict(),
        "active_entries": limiter.active_entries(config_key),
        "stats": stats,
    }


@router.delete("/{config_key}")
async def delete_rate_limit(config_key: str, limiter: RateLimiterDep) -> dict:
    """Delete a rate limit config and its live counters."""
    if not limiter.delete_config(config_key):
        raise ConfigNotFoundError(config_key)
    return {"success": True}


@router.get("/{config_key}/status")
async def get_rate_limit_status(
    config_key: str,
    request: Request,
    limiter: RateLimiterDep,
    app_settings: SettingsDep,
    identifier: Optional[str] = None,
) -> dict:
    """Current standing of one caller. Does not consume quota.

    Without ``identifier`` the admin request itself is resolved per the
    config's tier.
    """
    config = limiter.get_config(config_key)
    if config is None:
        raise ConfigNotFoundError(config_key)
    if identifier is None:
        identifier = resolve_identifier(
            request, config.tier, trust_forwarded=app_settings.trust_forwarded_headers
        )
    result = await limiter.get_status(config_key, identifier)
    return {"config_key": config_key, "identifier": identifier, "status": result.to_dict()}


@router.post("/{config_key}/reset")
async def reset_rate_limit(
    config_key: str,
    limiter: RateLimiterDep,
    identifier: Optional[str] = None,
) -> dict:
    """Reset one caller, or every caller when no identifier is given."""
    removed = await limiter.reset(config_key, identifier)
    return {"success": True, "identifier": identifier, "removed": removed}
