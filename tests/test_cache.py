"""Tests for the cache manager."""

import asyncio

import pytest

from apiguard.app.core.cache import (
    CacheEntry,
    CacheKeyGenerator,
    CacheManager,
    CacheTags,
    cached,
)
from apiguard.app.exceptions import LoaderError


@pytest.fixture
def cache(clock):
    return CacheManager(default_ttl=300, cleanup_interval=60, clock=clock)


class TestCacheEntry:
    """Tests for CacheEntry expiry."""

    def test_entry_no_expiry(self):
        """Entry without expiry never expires."""
        entry = CacheEntry(key="k", value=1, expires_at=None, tags=frozenset(), created_at=0)
        assert not entry.is_expired(10**12)

    def test_entry_expires_at_boundary(self):
        """Entry is expired from expires_at on."""
        entry = CacheEntry(key="k", value=1, expires_at=100.0, tags=frozenset(), created_at=0)
        assert not entry.is_expired(99.9)
        assert entry.is_expired(100.0)


class TestCacheManager:
    """Basic get/set/delete behaviour."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, cache):
        """Can store and retrieve values."""
        await cache.set("key1", {"a": 1})
        assert await cache.get("key1") == {"a": 1}

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, cache):
        """Getting a missing key returns None."""
        assert await cache.get("nonexistent") is None

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, cache, clock):
        """An entry is gone once its TTL has passed."""
        await cache.set("short", "v", ttl=0.1)
        clock.advance(0.15)
        assert await cache.get("short") is None

    @pytest.mark.asyncio
    async def test_default_ttl(self, cache, clock):
        """ttl=None uses the manager's default TTL."""
        await cache.set("k", "v")
        clock.advance(299)
        assert await cache.get("k") == "v"
        clock.advance(1)
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_non_positive_ttl_never_expires(self, cache, clock):
        """ttl <= 0 stores the entry without expiry."""
        await cache.set("forever", "v", ttl=0)
        clock.advance(10**9)
        assert await cache.get("forever") == "v"

    @pytest.mark.asyncio
    async def test_overwrite_replaces_tags(self, cache):
        """Overwriting a key drops its old tags."""
        await cache.set("k", 1, tags=["x"])
        await cache.set("k", 2, tags=["y"])
        assert await cache.delete_by_tag("x") == 0
        assert await cache.get("k") == 2

    @pytest.mark.asyncio
    async def test_delete(self, cache, clock):
        """delete reports whether a live entry was removed."""
        await cache.set("k", 1)
        assert await cache.delete("k") is True
        assert await cache.delete("k") is False

        await cache.set("old", 1, ttl=1)
        clock.advance(2)
        assert await cache.delete("old") is False

    @pytest.mark.asyncio
    async def test_has_does_not_touch_stats(self, cache):
        """has() is not counted as a hit or miss."""
        await cache.set("k", 1)
        assert await cache.has("k")
        assert not await cache.has("missing")
        stats = cache.get_stats()
        assert stats.hits == 0
        assert stats.misses == 0

    @pytest.mark.asyncio
    async def test_many(self, cache):
        """set_many and get_many handle several keys."""
        await cache.set_many([
            {"key": "a", "value": 1},
            {"key": "b", "value": 2, "ttl": 10, "tags": ["t"]},
        ])
        assert await cache.get_many(["a", "b", "c"]) == [1, 2, None]
        assert cache.tag_counts() == {"t": 1}

    @pytest.mark.asyncio
    async def test_size_and_keys_skip_expired(self, cache, clock):
        """size() and keys() only report live entries."""
        await cache.set("a", 1, ttl=10)
        await cache.set("b", 2, ttl=100)
        clock.advance(50)
        assert cache.size() == 1
        assert cache.keys() == ["b"]

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, cache, clock):
        """cleanup_expired removes and counts expired entries."""
        await cache.set("a", 1, ttl=10, tags=["t"])
        await cache.set("b", 2, ttl=100)
        clock.advance(10)
        assert cache.cleanup_expired() == 1
        assert cache.tag_counts() == {}

    @pytest.mark.asyncio
    async def test_warmup_overwrites(self, cache):
        """warmup always runs the loader and stores the value."""
        await cache.set("k", "stale")
        value = await cache.warmup("k", lambda: "fresh")
        assert value == "fresh"
        assert await cache.get("k") == "fresh"


class TestTags:
    """Tag invalidation."""

    @pytest.mark.asyncio
    async def test_delete_by_tag(self, cache):
        """All entries sharing a tag go; others stay."""
        await cache.set("a", 1, tags=["x"])
        await cache.set("b", 2, tags=["x", "y"])
        await cache.set("c", 3, tags=["y"])

        assert await cache.delete_by_tag("x") == 2
        assert await cache.get("a") is None
        assert await cache.get("b") is None
        assert await cache.get("c") == 3
        assert cache.tag_counts() == {"y": 1}

    @pytest.mark.asyncio
    async def test_unknown_tag(self, cache):
        """Deleting an unused tag removes nothing."""
        assert await cache.delete_by_tag("nope") == 0


class TestStats:
    """Hit/miss accounting."""

    @pytest.mark.asyncio
    async def test_hit_rate(self, cache):
        """hit_rate is hits / (hits + misses)."""
        await cache.set("k", 1)
        for _ in range(3):
            await cache.get("k")
        for _ in range(2):
            await cache.get("missing")

        stats = cache.get_stats()
        assert stats.hits == 3
        assert stats.misses == 2
        assert stats.hit_rate == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_hit_rate_without_lookups(self, cache):
        """No lookups means a hit rate of 0."""
        assert cache.get_stats().hit_rate == 0.0

    @pytest.mark.asyncio
    async def test_clear_resets_stats(self, cache):
        """clear() empties the cache and zeroes the counters."""
        await cache.set("k", 1)
        await cache.get("k")
        await cache.clear()
        assert cache.size() == 0
        assert cache.get_stats().to_dict() == {
            "hits": 0, "misses": 0, "sets": 0, "deletes": 0, "hit_rate": 0.0,
        }

    @pytest.mark.asyncio
    async def test_stats_are_a_copy(self, cache):
        """Mutating returned stats does not affect the cache."""
        stats = cache.get_stats()
        stats.hits = 99
        assert cache.get_stats().hits == 0


class TestGetOrSet:
    """Single-flight loading."""

    @pytest.mark.asyncio
    async def test_loads_once_and_caches(self, cache):
        """The loader runs on a miss and its value is reused."""
        calls = []

        def loader():
            calls.append(1)
            return "value"

        assert await cache.get_or_set("k", loader) == "value"
        assert await cache.get_or_set("k", loader) == "value"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_load(self, cache):
        """Ten concurrent callers trigger exactly one loader call."""
        calls = 0

        async def loader():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return {"loaded": True}

        results = await asyncio.gather(*(cache.get_or_set("k", loader) for _ in range(10)))

        assert calls == 1
        assert all(result is results[0] for result in results)
        assert cache.in_flight() == 0

    @pytest.mark.asyncio
    async def test_failure_reaches_all_callers_and_is_not_cached(self, cache):
        """A failing loader rejects every waiter; the next call retries."""
        calls = 0

        async def failing():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            raise RuntimeError("backend down")

        results = await asyncio.gather(
            *(cache.get_or_set("k", failing) for _ in range(10)),
            return_exceptions=True,
        )

        assert calls == 1
        assert all(isinstance(r, LoaderError) for r in results)
        assert isinstance(results[0].original, RuntimeError)
        assert isinstance(results[0].__cause__, RuntimeError)
        assert not await cache.has("k")

        assert await cache.get_or_set("k", lambda: "recovered") == "recovered"

    @pytest.mark.asyncio
    async def test_clear_during_load_discards_result(self, cache):
        """A load that straddles clear() returns its value but does not store it."""
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return "late"

        task = asyncio.create_task(cache.get_or_set("k", slow))
        await asyncio.sleep(0)
        await cache.clear()
        release.set()

        assert await task == "late"
        assert not await cache.has("k")

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_others(self, cache):
        """Cancelling the caller that started a load leaves other waiters served."""
        release = asyncio.Event()
        calls = 0

        async def slow():
            nonlocal calls
            calls += 1
            await release.wait()
            return "shared"

        first = asyncio.create_task(cache.get_or_set("k", slow))
        await asyncio.sleep(0)
        second = asyncio.create_task(cache.get_or_set("k", slow))
        await asyncio.sleep(0)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        release.set()
        assert await second == "shared"
        assert calls == 1
        assert await cache.get("k") == "shared"
        assert cache.in_flight() == 0

    @pytest.mark.asyncio
    async def test_load_finishes_when_every_caller_is_cancelled(self, cache):
        """A load with no callers left still completes and is stored."""
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return "late"

        caller = asyncio.create_task(cache.get_or_set("k", slow))
        await asyncio.sleep(0)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        release.set()
        for _ in range(5):
            await asyncio.sleep(0)
        assert await cache.get("k") == "late"

    @pytest.mark.asyncio
    async def test_stored_with_ttl_and_tags(self, cache, clock):
        """Loaded values use the given TTL and tags."""
        await cache.get_or_set("k", lambda: 1, ttl=5, tags=[CacheTags.USERS])
        assert cache.tag_counts() == {CacheTags.USERS: 1}
        clock.advance(5)
        assert not await cache.has("k")


class TestCachedDecorator:
    """The cached() decorator."""

    @pytest.mark.asyncio
    async def test_caches_by_arguments(self, cache):
        """Same arguments hit the cache; different arguments load."""
        calls = []

        @cached(cache, ttl=60, tags=[CacheTags.ROLES])
        async def role_permissions(role):
            calls.append(role)
            return [f"{role}:read"]

        assert await role_permissions("ADMIN") == ["ADMIN:read"]
        assert await role_permissions("ADMIN") == ["ADMIN:read"]
        assert await role_permissions("USER") == ["USER:read"]
        assert calls == ["ADMIN", "USER"]
        assert await cache.delete_by_tag(CacheTags.ROLES) == 2

    @pytest.mark.asyncio
    async def test_custom_key_builder(self, cache):
        """key_builder controls the cache key."""

        @cached(cache, key_builder=lambda user_id: CacheKeyGenerator.user(user_id))
        async def load_user(user_id):
            return {"id": user_id}

        await load_user("u-1")
        assert cache.keys() == ["user:u-1"]


class TestCacheKeyGenerator:
    """Key generation."""

    def test_filter_order_does_not_matter(self):
        """Equal filter dicts give equal keys regardless of order."""
        first = CacheKeyGenerator.users({"page": 1, "role": "ADMIN"})
        second = CacheKeyGenerator.users({"role": "ADMIN", "page": 1})
        assert first == second
        assert first.startswith("users:")

    def test_distinct_namespaces(self):
        """Users and content keys never collide."""
        filters = {"page": 1}
        assert CacheKeyGenerator.users(filters) != CacheKeyGenerator.content(filters)

    def test_simple_keys(self):
        """Entity keys are readable."""
        assert CacheKeyGenerator.user("u-1") == "user:u-1"
        assert CacheKeyGenerator.user("u-1", "profile") == "user:u-1:profile"
        assert CacheKeyGenerator.permission("u-1", "content:read") == "permission:u-1:content:read"
        assert CacheKeyGenerator.role_permissions("ADMIN") == "role:permissions:ADMIN"
