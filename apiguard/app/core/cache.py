"""In-process cache manager with TTL, tags and single-flight loading.

Entries expire lazily on read and are reclaimed by a periodic sweep. Tags
let a group of entries be invalidated without enumerating their keys.
``get_or_set`` runs a loader at most once per key at a time: concurrent
callers for the same missing key await the one in-flight load.
"""

import asyncio
import base64
import functools
import inspect
import json
import threading
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Optional,
    Set,
    Tuple,
    Union,
)

from apiguard.app.core.clock import Clock, system_clock
from apiguard.app.core.config import settings
from apiguard.app.core.keystore import is_expired
from apiguard.app.core.logging import get_log_context, get_logger
from apiguard.app.core.sweeper import PeriodicSweeper
from apiguard.app.exceptions import LoaderError

logger = get_logger(__name__)

Loader = Callable[[], Union[Any, Awaitable[Any]]]


class CacheTags:
    """Tag names shared by writers and invalidators."""

    USERS = "users"
    CONTENT = "content"
    PERMISSIONS = "permissions"
    ROLES = "roles"
    AUDIT_LOGS = "audit_logs"
    FORM_SUBMISSIONS = "form_submissions"
    FILES = "files"
    SESSIONS = "sessions"
    ANALYTICS = "analytics"

    @classmethod
    def all(cls) -> List[str]:
        return [
            value for name, value in vars(cls).items()
            if name.isupper() and isinstance(value, str)
        ]


class CacheTTL:
    """Common TTLs in seconds."""

    SHORT = 60
    MEDIUM = 300
    LONG = 1800
    VERY_LONG = 3600
    ULTRA_LONG = 86400


def _normalize(filters: Dict[str, Any]) -> str:
    raw = json.dumps(filters, sort_keys=True, default=str, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


class CacheKeyGenerator:
    """Builds stable cache keys. Filter dicts are order-independent."""

    @staticmethod
    def user(user_id: str, action: Optional[str] = None) -> str:
        return f"user:{user_id}:{action}" if action else f"user:{user_id}"

    @staticmethod
    def users(filters: Dict[str, Any]) -> str:
        return f"users:{_normalize(filters)}"

    @staticmethod
    def content(filters: Dict[str, Any]) -> str:
        return f"content:{_normalize(filters)}"

    @staticmethod
    def permission(user_id: str, permission_name: Optional[str] = None) -> str:
        if permission_name:
            return f"permission:{user_id}:{permission_name}"
        return f"permission:{user_id}"

    @staticmethod
    def user_permissions(user_id: str) -> str:
        return f"user:permissions:{user_id}"

    @staticmethod
    def role_permissions(role: str) -> str:
        return f"role:permissions:{role}"

    @staticmethod
    def audit_logs(filters: Dict[str, Any]) -> str:
        return f"audit:{_normalize(filters)}"

    @staticmethod
    def form_submissions(filters: Dict[str, Any]) -> str:
        return f"forms:{_normalize(filters)}"


@dataclass
class CacheEntry:
    """A cached value with its expiry and tags."""

    key: str
    value: Any
    expires_at: Optional[float]
    tags: FrozenSet[str] = frozenset()
    created_at: float = 0.0

    def is_expired(self, now: float) -> bool:
        return is_expired(self.expires_at, now)


@dataclass
class CacheStats:
    """Hit/miss counters since start or the last ``clear``."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "hit_rate": self.hit_rate,
        }


@dataclass
class _Flight:
    task: "asyncio.Task[Any]"
    waiters: int = field(default=0)


def _consume_exception(task: "asyncio.Task[Any]") -> None:
    # Retrieved here so a load whose callers all went away does not log
    # "exception was never retrieved"
    if not task.cancelled():
        task.exception()


class CacheManager:
    """Process-wide cache for read-heavy lookups.

    Create one instance at startup, share it through ``app.state`` and call
    ``start()``/``stop()`` around the application's lifetime to run the
    expiry sweep.

    Note: data is lost when the process restarts. The manager assumes its
    async methods are driven from a single event loop.
    """

    def __init__(
        self,
        default_ttl: Optional[float] = None,
        cleanup_interval: Optional[float] = None,
        clock: Clock = system_clock,
    ) -> None:
        """Initialize the cache manager.

        Args:
            default_ttl: TTL in seconds when ``set`` is called without one
                (default: ``settings.cache_default_ttl``)
            cleanup_interval: Seconds between background sweeps
                (default: ``settings.cache_cleanup_interval_seconds``)
            clock: Time source for expiry math
        """
        self.default_ttl = default_ttl if default_ttl is not None else settings.cache_default_ttl
        self._clock = clock
        self._data: Dict[str, CacheEntry] = {}
        self._tag_index: Dict[str, Set[str]] = {}
        self._inflight: Dict[str, _Flight] = {}
        self._stats = CacheStats()
        self._generation = 0
        self._lock = threading.RLock()
        self._sweeper = PeriodicSweeper(
            "cache",
            self.cleanup_expired,
            interval=cleanup_interval or settings.cache_cleanup_interval_seconds,
        )

    # -- internal helpers; callers hold self._lock --

    def _unlink(self, key: str) -> Optional[CacheEntry]:
        entry = self._data.pop(key, None)
        if entry is None:
            return None
        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tag_index[tag]
        return entry

    def _store(
        self, key: str, value: Any, ttl: Optional[float], tags: Iterable[str]
    ) -> CacheEntry:
        now = self._clock()
        if ttl is None:
            ttl = self.default_ttl
        entry = CacheEntry(
            key=key,
            value=value,
            expires_at=now + ttl if ttl > 0 else None,
            tags=frozenset(tags),
            created_at=now,
        )
        self._unlink(key)
        self._data[key] = entry
        for tag in entry.tags:
            self._tag_index.setdefault(tag, set()).add(key)
        self._stats.sets += 1
        return entry

    def _lookup(self, key: str) -> Tuple[bool, Any]:
        with self._lock:
            entry = self._data.get(key)
            if entry is not None and entry.is_expired(self._clock()):
                self._unlink(key)
                entry = None
            if entry is None:
                self._stats.misses += 1
                return False, None
            self._stats.hits += 1
            return True, entry.value

    # -- public API --

    async def get(self, key: str) -> Any:
        """Return the cached value, or None if absent or expired."""
        _, value = self._lookup(key)
        return value

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        tags: Iterable[str] = (),
    ) -> None:
        """Store a value, replacing any existing entry.

        Args:
            key: Cache key
            value: Any Python object (stored by reference)
            ttl: Seconds to live; None uses the default, <= 0 never expires
            tags: Tags for bulk invalidation
        """
        with self._lock:
            self._store(key, value, ttl, tags)

    async def has(self, key: str) -> bool:
        """Check for a live entry without touching hit/miss stats."""
        with self._lock:
            entry = self._data.get(key)
            return entry is not None and not entry.is_expired(self._clock())

    async def delete(self, key: str) -> bool:
        """Remove an entry. Returns True if a live entry was removed."""
        with self._lock:
            entry = self._unlink(key)
            if entry is None or entry.is_expired(self._clock()):
                return False
            self._stats.deletes += 1
            return True

    async def delete_by_tag(self, tag: str) -> int:
        """Remove every entry carrying ``tag``. Returns the number removed."""
        with self._lock:
            keys = list(self._tag_index.get(tag, ()))
            for key in keys:
                self._unlink(key)
            self._stats.deletes += len(keys)
        if keys:
            logger.debug(f"Invalidated {len(keys)} cache entries tagged '{tag}'")
        return len(keys)

    async def clear(self) -> None:
        """Remove every entry and reset statistics.

        Loads already in flight still resolve for their callers but their
        results are not stored.
        """
        with self._lock:
            self._data.clear()
            self._tag_index.clear()
            self._stats = CacheStats()
            self._generation += 1
        logger.info("Cache cleared")

    async def get_or_set(
        self,
        key: str,
        loader: Loader,
        ttl: Optional[float] = None,
        tags: Iterable[str] = (),
    ) -> Any:
        """Return the cached value or load, store and return it.

        At most one loader runs per key at a time. The load runs in its own
        task that every caller awaits through ``asyncio.shield``, so a
        cancelled caller stops waiting without aborting the load for the
        others.

        Args:
            key: Cache key
            loader: Zero-arg callable returning the value or an awaitable of it
            ttl: Seconds to live for a freshly loaded value
            tags: Tags for a freshly loaded value

        Returns:
            The cached or freshly loaded value

        Raises:
            LoaderError: If the loader raised. Every waiting caller receives
                the same error and nothing is cached.
        """
        hit, value = self._lookup(key)
        if hit:
            return value

        flight = self._inflight.get(key)
        if flight is None:
            task = asyncio.create_task(self._load(key, loader, ttl, tags, self._generation))
            task.add_done_callback(_consume_exception)
            flight = _Flight(task=task)
            self._inflight[key] = flight
        else:
            flight.waiters += 1
        return await asyncio.shield(flight.task)

    async def _load(
        self,
        key: str,
        loader: Loader,
        ttl: Optional[float],
        tags: Iterable[str],
        generation: int,
    ) -> Any:
        """Body of an in-flight load; removes its own flight when done."""
        try:
            value = loader()
            if inspect.isawaitable(value):
                value = await value
        except Exception as exc:
            flight = self._inflight.get(key)
            logger.warning(
                f"Cache loader failed for '{key}': {exc}",
                extra=get_log_context(
                    cache_key=key, waiters=flight.waiters if flight is not None else 0
                ),
            )
            raise LoaderError(key, exc) from exc
        else:
            with self._lock:
                # A load that straddles clear() is returned but not stored
                if generation == self._generation:
                    self._store(key, value, ttl, tags)
            return value
        finally:
            flight = self._inflight.get(key)
            if flight is not None and flight.task is asyncio.current_task():
                del self._inflight[key]

    async def warmup(
        self,
        key: str,
        loader: Loader,
        ttl: Optional[float] = None,
        tags: Iterable[str] = (),
    ) -> Any:
        """Load a value unconditionally and store it."""
        value = loader()
        if inspect.isawaitable(value):
            value = await value
        await self.set(key, value, ttl=ttl, tags=tags)
        return value

    async def get_many(self, keys: Iterable[str]) -> List[Any]:
        """Look up several keys; missing ones come back as None."""
        return [self._lookup(key)[1] for key in keys]

    async def set_many(self, entries: Iterable[Dict[str, Any]]) -> None:
        """Store several entries given as ``{"key", "value", "ttl"?, "tags"?}``."""
        with self._lock:
            for item in entries:
                self._store(
                    item["key"], item["value"], item.get("ttl"), item.get("tags", ())
                )

    def size(self) -> int:
        """Number of live entries."""
        with self._lock:
            now = self._clock()
            return sum(1 for entry in self._data.values() if not entry.is_expired(now))

    def keys(self) -> List[str]:
        """Snapshot of live keys."""
        with self._lock:
            now = self._clock()
            return [key for key, entry in self._data.items() if not entry.is_expired(now)]

    def tag_counts(self) -> Dict[str, int]:
        """Number of indexed entries per tag."""
        with self._lock:
            return {tag: len(keys) for tag, keys in self._tag_index.items()}

    def in_flight(self) -> int:
        """Number of loads currently running."""
        return len(self._inflight)

    def get_stats(self) -> CacheStats:
        """Return a copy of the hit/miss counters."""
        with self._lock:
            return CacheStats(
                hits=self._stats.hits,
                misses=self._stats.misses,
                sets=self._stats.sets,
                deletes=self._stats.deletes,
            )

    def cleanup_expired(self) -> int:
        """Remove all expired entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in list(self._data.items()) if entry.is_expired(now)]
            for key in expired:
                self._unlink(key)
            return len(expired)

    @property
    def sweeper(self) -> PeriodicSweeper:
        return self._sweeper

    async def start(self) -> None:
        """Start the background expiry sweep."""
        await self._sweeper.start()

    async def stop(self) -> None:
        """Stop the background expiry sweep."""
        await self._sweeper.stop()


def cached(
    cache: CacheManager,
    ttl: Optional[float] = None,
    tags: Iterable[str] = (),
    key_builder: Optional[Callable[..., str]] = None,
) -> Callable:
    """Decorate an async function so its results go through ``get_or_set``.

    Args:
        cache: Cache manager to use
        ttl: TTL for stored results
        tags: Tags for stored results
        key_builder: Builds the key from the call arguments. Defaults to
            ``module.qualname:<json of args>``.

    Example:
        >>> @cached(cache, ttl=CacheTTL.LONG, tags=[CacheTags.ROLES])
        ... async def role_permissions(role: str) -> list[str]:
        ...     ...
    """
    tags = tuple(tags)

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        prefix = f"{func.__module__}.{func.__qualname__}"

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            if key_builder is not None:
                key = key_builder(*args, **kwargs)
            else:
                key = f"{prefix}:{json.dumps([args, kwargs], sort_keys=True, default=str)}"
            return await cache.get_or_set(key, lambda: func(*args, **kwargs), ttl=ttl, tags=tags)

        return wrapper

    return decorator
