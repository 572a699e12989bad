from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from apiguard.app.core.cache import CacheManager, CacheTags
from apiguard.app.dependencies import CacheDep, CachedQueriesDep

router = APIRouter()

CACHE_ACTIONS = (
    "clear-all",
    "clear-by-tags",
    "clear-by-keys",
    "warmup",
    "invalidate-users",
    "invalidate-content",
    "invalidate-permissions",
    "get-cache-info",
)


class CacheAction(BaseModel):
    action: str
    tags: List[str] = []
    keys: List[str] = []
    user_id: Optional[str] = None


def health_status(hit_rate: float, lookups: int) -> str:
    """Classify cache effectiveness from its hit rate."""
    if lookups == 0:
        return "idle"
    if hit_rate > 0.7:
        return "healthy"
    if hit_rate > 0.4:
        return "degraded"
    return "poor"


def _overview(cache: CacheManager) -> Dict[str, Any]:
    stats = cache.get_stats()
    return {
        "stats": stats.to_dict(),
        "size": cache.size(),
        "in_flight": cache.in_flight(),
        "tags": cache.tag_counts(),
        "available_tags": CacheTags.all(),
        "health_status": health_status(stats.hit_rate, stats.hits + stats.misses),
        "configuration": {
            "default_ttl": cache.default_ttl,
            "cleanup_interval": cache.sweeper.interval,
            "sweeper_running": cache.sweeper.is_running,
        },
    }


@router.get("")
async def get_cache_overview(cache: CacheDep) -> dict:
    """Cache statistics, size, tag usage and configuration."""
    return _overview(cache)


@router.post("")
async def run_cache_action(data: CacheAction, cache: CacheDep, queries: CachedQueriesDep) -> dict:
    """Run one cache management action."""
    action = data.action
    if action == "clear-all":
        await cache.clear()
        return {"success": True, "action": action}

    if action == "clear-by-tags":
        if not data.tags:
            raise HTTPException(status_code=400, detail="tags are required for clear-by-tags")
        removed = await queries.invalidate_cache(data.tags)
        return {"success": True, "action": action, "removed": removed}

    if action == "clear-by-keys":
        if not data.keys:
            raise HTTPException(status_code=400, detail="keys are required for clear-by-keys")
        removed = 0
        for key in data.keys:
            removed += int(await cache.delete(key))
        return {"success": True, "action": action, "removed": removed}

    if action == "warmup":
        report = await queries.warmup_cache()
        return {"success": not report["failed"], "action": action, **report}

    if action == "invalidate-users":
        if data.user_id:
            removed = await queries.invalidate_user_cache(data.user_id)
        else:
            removed = await cache.delete_by_tag(CacheTags.USERS)
        return {"success": True, "action": action, "removed": removed}

    if action == "invalidate-content":
        removed = await queries.invalidate_content_cache()
        return {"success": True, "action": action, "removed": removed}

    if action == "invalidate-permissions":
        removed = await queries.invalidate_permission_cache(data.user_id)
        return {"success": True, "action": action, "removed": removed}

    if action == "get-cache-info":
        return {"success": True, "action": action, "keys": cache.keys(), **_overview(cache)}

    raise HTTPException(
        status_code=400,
        detail=f"Unknown action '{action}'. Expected one of: {', '.join(CACHE_ACTIONS)}",
    )


@router.delete("")
async def delete_cache_entries(
    cache: CacheDep,
    key: Optional[str] = None,
    tag: Optional[str] = None,
) -> dict:
    """Delete one key or every entry with a tag."""
    if key:
        return {"success": True, "key": key, "deleted": await cache.delete(key)}
    if tag:
        return {"success": True, "tag": tag, "deleted": await cache.delete_by_tag(tag)}
    raise HTTPException(status_code=400, detail="Either key or tag is required")
