import asyncio

import pytest

from app.core.exceptions import CacheNamespaceNotFoundError
from app.services.cache_service import (
    MISS, BackgroundRefresher, CacheNamespace, CacheRegistry, ManualClock,
    StaleWhileRevalidateCache, TTLCache, build_cache_registry, make_key,
)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def cache(clock):
    return TTLCache("faculties", ttl=900, clock=clock)


def test_make_key_is_order_independent():
    assert make_key(search="ab", page=1) == make_key(page=1, search="ab") == "page=1&search=ab"
    assert make_key(page=None, search="") == "all"
    assert make_key() == "all"


def test_set_then_get_returns_value(cache):
    cache.set("all", ["Faculty of Computing"])

    assert cache.get("all") == ["Faculty of Computing"]
    assert cache.hits == 1


def test_missing_key_is_miss(cache):
    assert cache.get("nope") is MISS
    assert cache.misses == 1


def test_entry_expires_exactly_after_ttl(cache, clock):
    """Entry stored at t=0 with TTL 900s is served at 900s and gone right after"""
    cache.set("all", "value")

    clock.advance(900)
    assert cache.get("all") == "value"

    clock.advance(0.001)
    assert cache.get("all") is MISS
    assert "all" not in cache


def test_per_entry_ttl_overrides_namespace_ttl(cache, clock):
    cache.set("short", "value", ttl=10)
    clock.advance(11)

    assert cache.get("short") is MISS


def test_negative_ttl_rejected(clock):
    with pytest.raises(ValueError):
        TTLCache("bad", ttl=-1, clock=clock)


def test_invalidate_single_key(cache):
    cache.set("a", 1)
    cache.set("b", 2)

    assert cache.invalidate("a") == 1
    assert cache.get("a") is MISS
    assert cache.get("b") == 2


def test_invalidate_whole_namespace(cache):
    cache.set("a", 1)
    cache.set("b", 2)

    assert cache.invalidate() == 2
    assert len(cache) == 0


def test_invalidate_matching(cache):
    cache.set("page=1&search=ab", 1)
    cache.set("page=2&search=ab", 2)
    cache.set("page=1", 3)

    assert cache.invalidate_matching("search=ab") == 2
    assert cache.keys() == ["page=1"]


def test_last_write_wins(cache):
    cache.set("all", "first")
    cache.set("all", "second")

    assert cache.get("all") == "second"


async def test_get_or_load_caches_loader_result(cache):
    calls = []

    async def loader():
        calls.append(1)
        return {"total": 3}

    assert await cache.get_or_load("all", loader) == {"total": 3}
    assert await cache.get_or_load("all", loader) == {"total": 3}
    assert len(calls) == 1


async def test_loader_error_leaves_cache_untouched(cache):
    async def failing():
        raise RuntimeError("database unavailable")

    async def working():
        return "ok"

    with pytest.raises(RuntimeError):
        await cache.get_or_load("all", failing)

    assert cache.get("all") is MISS
    assert await cache.get_or_load("all", working) == "ok"


async def test_load_started_before_invalidation_is_discarded(cache):
    """A value loaded from pre-invalidation data must not be written back"""
    release = asyncio.Event()

    async def slow_loader():
        await release.wait()
        return "old"

    task = asyncio.create_task(cache.get_or_load("all", slow_loader))
    await asyncio.sleep(0)

    cache.invalidate("all")
    release.set()

    assert await task == "old"
    assert cache.get("all") is MISS


async def test_namespace_clear_discards_inflight_load(cache):
    release = asyncio.Event()

    async def slow_loader():
        await release.wait()
        return "old"

    task = asyncio.create_task(cache.get_or_load("key", slow_loader))
    await asyncio.sleep(0)
    cache.invalidate()
    release.set()
    await task

    assert "key" not in cache


def test_set_if_current_rejects_stale_token(cache):
    token = cache.token("k")
    cache.invalidate("k")

    assert cache.set_if_current("k", "v", token) is False
    assert cache.set_if_current("k", "v", cache.token("k")) is True
    assert cache.get("k") == "v"


# ==================== Stale-while-revalidate ====================

@pytest.fixture
async def refresher():
    refresher = BackgroundRefresher(max_concurrency=2)
    yield refresher
    await refresher.shutdown()


@pytest.fixture
def swr(clock, refresher):
    return StaleWhileRevalidateCache(TTLCache("student-detail", ttl=100, clock=clock), refresher, 0.8)


async def test_concurrent_misses_share_one_computation(swr):
    release = asyncio.Event()

    async def compute():
        await release.wait()
        return {"id": 1}

    waiters = [asyncio.create_task(swr.get("1", compute)) for _ in range(5)]
    await asyncio.sleep(0)
    assert swr.in_flight("1")

    release.set()
    results = await asyncio.gather(*waiters)

    assert results == [{"id": 1}] * 5
    assert swr.computations == 1
    assert not swr.in_flight("1")


async def test_concurrent_failure_reaches_every_waiter(swr):
    release = asyncio.Event()

    async def compute():
        await release.wait()
        raise LookupError("gone")

    waiters = [asyncio.create_task(swr.get("1", compute)) for _ in range(3)]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*waiters, return_exceptions=True)

    assert all(isinstance(result, LookupError) for result in results)
    assert swr.cache.get_entry("1") is None


async def test_fresh_hit_does_not_refresh(swr, clock, refresher):
    swr.cache.set("1", "v1")
    clock.advance(80)

    async def compute():
        return "v2"

    assert await swr.get("1", compute) == "v1"
    assert refresher.pending_count == 0


async def test_stale_hit_serves_old_value_and_refreshes(swr, clock, refresher):
    swr.cache.set("1", "v1")
    clock.advance(81)

    async def compute():
        return "v2"

    assert await swr.get("1", compute) == "v1"
    assert refresher.is_pending("student-detail", "1")

    await refresher.drain()

    assert swr.cache.get("1") == "v2"
    assert refresher.completed == 1


async def test_stale_hits_queue_one_refresh_per_key(swr, clock, refresher):
    swr.cache.set("1", "v1")
    clock.advance(90)
    calls = []

    async def compute():
        calls.append(1)
        return "v2"

    for _ in range(4):
        await swr.get("1", compute)
    await refresher.drain()

    assert len(calls) == 1


async def test_failed_refresh_is_recorded_and_old_value_kept(swr, clock, refresher):
    swr.cache.set("1", "v1")
    clock.advance(85)

    async def compute():
        raise ConnectionError("database unavailable")

    assert await swr.get("1", compute) == "v1"
    await refresher.drain()

    assert refresher.failed == 1
    failure = refresher.failures[-1]
    assert failure.namespace == "student-detail"
    assert failure.key == "1"
    assert failure.error_type == "ConnectionError"
    assert swr.cache.get("1") == "v1"


async def test_expired_entry_blocks_on_recompute(swr, clock):
    swr.cache.set("1", "v1")
    clock.advance(101)

    async def compute():
        return "v2"

    assert await swr.get("1", compute) == "v2"


async def test_refresher_bounds_concurrency(refresher):
    running = 0
    peak = 0
    release = asyncio.Event()

    async def job():
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await release.wait()
        running -= 1

    for key in range(6):
        assert refresher.schedule("ns", str(key), job)
    await asyncio.sleep(0.01)
    release.set()
    await refresher.drain()

    assert peak == 2
    assert refresher.completed == 6


async def test_refresher_rejects_work_after_shutdown(refresher):
    await refresher.shutdown()

    async def job():
        return None

    assert refresher.schedule("ns", "k", job) is False


async def test_stale_fraction_validated(clock, refresher):
    with pytest.raises(ValueError):
        StaleWhileRevalidateCache(TTLCache("x", 10, clock), refresher, stale_fraction=0)


# ==================== Registry ====================

async def test_registry_has_every_namespace(clock):
    registry = build_cache_registry(clock)

    assert registry.names() == sorted(ns.value for ns in CacheNamespace)
    assert registry.namespace(CacheNamespace.FACULTIES).ttl == 900
    await registry.close()


async def test_registry_rejects_duplicate_and_unknown_namespaces(clock):
    registry = CacheRegistry(clock=clock)
    registry.register("faculties", 60)

    with pytest.raises(ValueError):
        registry.register("faculties", 60)
    with pytest.raises(CacheNamespaceNotFoundError):
        registry.namespace("missing")
    await registry.close()


async def test_registry_stats_and_clear_all(clock):
    registry = CacheRegistry(clock=clock)
    registry.register(CacheNamespace.FACULTIES, 60)
    registry.register(CacheNamespace.DEPARTMENTS, 60)
    registry.set(CacheNamespace.FACULTIES, "all", [1])
    registry.set(CacheNamespace.DEPARTMENTS, "all", [2])
    registry.get(CacheNamespace.FACULTIES, "all")

    stats = registry.stats()
    assert stats["total_entries"] == 2
    assert stats["namespaces"]["faculties"]["hits"] == 1
    assert "refresh" in stats

    assert registry.clear_all() == 2
    assert registry.stats()["total_entries"] == 0
    await registry.close()


async def test_registry_swr_view_is_reused(clock):
    registry = CacheRegistry(clock=clock)
    registry.register(CacheNamespace.STUDENT_DETAIL, 60)

    assert registry.swr(CacheNamespace.STUDENT_DETAIL) is registry.swr("student-detail")
    await registry.close()
