"""Read-heavy directory queries served through the cache.

Every query goes through ``CacheManager.get_or_set`` with a TTL tier and
tags chosen for how often the underlying data changes. Writers call the
``invalidate_*`` helpers so readers never see a stale permission set for
longer than it takes to invalidate.
"""

import copy
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, List, Optional, TypeVar

from apiguard.app.core.cache import CacheKeyGenerator, CacheManager, CacheTags, CacheTTL
from apiguard.app.core.clock import Clock, system_clock
from apiguard.app.core.logging import get_log_context, get_logger
from apiguard.app.exceptions import UserNotFoundError
from apiguard.app.services.directory import USER_ROLES, Directory

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class CachedQueryResult(Generic[T]):
    """Query result plus where it came from.

    ``data`` is a copy; mutating it never changes what later readers see.
    """

    data: T
    from_cache: bool
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {"data": self.data, "from_cache": self.from_cache, "timestamp": self.timestamp}


@dataclass
class _Snapshot:
    """What is actually stored: the data and when it was loaded."""

    data: Any
    timestamp: str


class CachedQueries:
    """Cache-backed façade over the directory.

    Usage:
        queries = CachedQueries(cache, Directory.with_sample_data())
        result = await queries.get_user_permissions("u-2")
        result.from_cache  # False the first time, True afterwards
    """

    def __init__(self, cache: CacheManager, directory: Directory, clock: Clock = system_clock):
        self.cache = cache
        self.directory = directory
        self._clock = clock

    def _timestamp(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()

    async def _query(
        self,
        key: str,
        load: Callable[[], Awaitable[Any]],
        ttl: float,
        tags: Iterable[str],
    ) -> CachedQueryResult:
        loaded = False

        async def loader() -> _Snapshot:
            nonlocal loaded
            data = await load()
            loaded = True
            return _Snapshot(data=data, timestamp=self._timestamp())

        snapshot = await self.cache.get_or_set(key, loader, ttl=ttl, tags=tags)
        return CachedQueryResult(
            data=copy.deepcopy(snapshot.data),
            from_cache=not loaded,
            timestamp=snapshot.timestamp,
        )

    # -- queries --

    async def get_users_with_filters(
        self,
        page: int = 1,
        limit: int = 20,
        role: Optional[str] = None,
        search: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> CachedQueryResult[Dict[str, Any]]:
        """Paginated user list. Cached for ``CacheTTL.MEDIUM`` under ``users``."""
        params = {
            "page": page, "limit": limit, "role": role, "search": search,
            "sort_by": sort_by, "sort_order": sort_order,
        }
        return await self._query(
            CacheKeyGenerator.users(params),
            lambda: self.directory.list_users(**params),
            ttl=CacheTTL.MEDIUM,
            tags=[CacheTags.USERS],
        )

    async def get_contents_with_filters(
        self,
        page: int = 1,
        limit: int = 20,
        type: Optional[str] = None,
        status: Optional[str] = None,
        author_id: Optional[str] = None,
        search: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> CachedQueryResult[Dict[str, Any]]:
        """Paginated content list. Cached for ``CacheTTL.MEDIUM`` under ``content``."""
        params = {
            "page": page, "limit": limit, "type": type, "status": status,
            "author_id": author_id, "search": search,
            "sort_by": sort_by, "sort_order": sort_order,
        }
        return await self._query(
            CacheKeyGenerator.content(params),
            lambda: self.directory.list_contents(**params),
            ttl=CacheTTL.MEDIUM,
            tags=[CacheTags.CONTENT],
        )

    async def get_role_permissions(self, role: str) -> CachedQueryResult[List[Dict[str, Any]]]:
        """Permissions granted to a role. Changes rarely, so cached longest."""
        return await self._query(
            CacheKeyGenerator.role_permissions(role),
            lambda: self.directory.get_role_permissions(role),
            ttl=CacheTTL.VERY_LONG,
            tags=[CacheTags.PERMISSIONS, CacheTags.ROLES],
        )

    async def get_user_permissions(self, user_id: str) -> CachedQueryResult[Dict[str, Any]]:
        """Effective permissions of a user: role grants overlaid with user grants.

        Raises:
            LoaderError: Wrapping ``UserNotFoundError`` for an unknown user
        """

        async def load() -> Dict[str, Any]:
            user = await self.directory.get_user(user_id)
            if user is None:
                raise UserNotFoundError(user_id)

            role_permissions = (await self.get_role_permissions(user.role)).data
            overrides = await self.directory.get_user_grants(user_id)

            effective: Dict[str, Dict[str, Any]] = {}
            for perm in role_permissions:
                effective[perm["name"]] = {**perm, "source": "role"}
            for grant in overrides:
                effective[grant.permission] = {
                    "name": grant.permission,
                    "granted": grant.granted,
                    "source": "user",
                    "reason": grant.reason,
                    "expires_at": grant.expires_at,
                }

            permissions = list(effective.values())
            return {
                "user": {"id": user.id, "role": user.role},
                "permissions": permissions,
                "summary": {
                    "total": len(permissions),
                    "granted": sum(1 for p in permissions if p["granted"]),
                    "user_overrides": len(overrides),
                    "role_permissions": len(role_permissions),
                },
            }

        return await self._query(
            CacheKeyGenerator.user_permissions(user_id),
            load,
            ttl=CacheTTL.LONG,
            tags=[CacheTags.PERMISSIONS, CacheTags.USERS],
        )

    async def check_user_permission(
        self, user_id: str, permission_name: str
    ) -> CachedQueryResult[bool]:
        """Whether a user holds one permission (False if not listed at all)."""

        async def load() -> bool:
            summary = (await self.get_user_permissions(user_id)).data
            for perm in summary["permissions"]:
                if perm["name"] == permission_name:
                    return bool(perm["granted"])
            return False

        return await self._query(
            CacheKeyGenerator.permission(user_id, permission_name),
            load,
            ttl=CacheTTL.LONG,
            tags=[CacheTags.PERMISSIONS],
        )

    # -- invalidation --

    async def invalidate_cache(self, tags: Iterable[str]) -> int:
        """Drop every entry carrying any of ``tags``. Returns the number removed."""
        removed = 0
        for tag in tags:
            removed += await self.cache.delete_by_tag(tag)
        return removed

    async def invalidate_user_cache(self, user_id: str) -> int:
        """Drop a user's own entries and every user list."""
        removed = int(await self.cache.delete(CacheKeyGenerator.user(user_id)))
        removed += int(await self.cache.delete(CacheKeyGenerator.user_permissions(user_id)))
        removed += await self.cache.delete_by_tag(CacheTags.USERS)
        logger.debug(
            f"Invalidated user cache for '{user_id}' ({removed} entries)",
            extra=get_log_context(user_id=user_id),
        )
        return removed

    async def invalidate_permission_cache(self, user_id: Optional[str] = None) -> int:
        """Drop permission entries, optionally starting with one user's summary."""
        removed = 0
        if user_id:
            removed += int(await self.cache.delete(CacheKeyGenerator.user_permissions(user_id)))
        removed += await self.cache.delete_by_tag(CacheTags.PERMISSIONS)
        return removed

    async def invalidate_content_cache(self) -> int:
        return await self.cache.delete_by_tag(CacheTags.CONTENT)

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.get_stats().to_dict()

    # -- warmup --

    async def warmup_cache(self) -> Dict[str, Any]:
        """Preload role permissions and the first page of published content.

        A failing step is logged and reported; the remaining steps still run.

        Returns:
            ``{"warmed": [...], "failed": {name: error}}``
        """
        steps: Dict[str, Callable[[], Awaitable[CachedQueryResult]]] = {
            f"role_permissions:{role}": (lambda role=role: self.get_role_permissions(role))
            for role in USER_ROLES
        }
        steps["contents:published"] = lambda: self.get_contents_with_filters(
            page=1, limit=20, status="PUBLISHED", sort_by="created_at", sort_order="desc"
        )

        warmed: List[str] = []
        failed: Dict[str, str] = {}
        logger.info("Starting cache warmup")
        for name, step in steps.items():
            try:
                await step()
            except Exception as e:
                logger.warning(f"Cache warmup step '{name}' failed: {e}")
                failed[name] = str(e)
            else:
                warmed.append(name)
        logger.info(f"Cache warmup completed ({len(warmed)} warmed, {len(failed)} failed)")
        return {"warmed": warmed, "failed": failed}
