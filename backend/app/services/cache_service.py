"""
In-process caching layer for registry reads.

Each resource type gets its own namespace (a TTLCache) with a fixed TTL.
Entries are replaced whole and expire hard at `stored_at + ttl`; nothing
is evicted otherwise. Namespaces that back slow lookups can be read
through StaleWhileRevalidateCache, which keeps serving an entry past the
staleness threshold while a bounded background queue refreshes it.

Usage:
    registry = build_cache_registry()

    departments = await registry.get_or_load(
        CacheNamespace.DEPARTMENTS, "all", load_departments
    )
    student = await registry.swr(CacheNamespace.STUDENT_DETAIL).get(
        str(student_id), lambda: load_student(student_id)
    )
    registry.invalidate(CacheNamespace.DEPARTMENTS)

The registry is created per application (app.state.cache_registry) and
handed to endpoints through a dependency, so tests get an isolated
instance with a ManualClock.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import (
    Any, Awaitable, Callable, Deque, Dict, Generic, List, Optional,
    Protocol, Tuple, TypeVar, Union,
)

from app.core.config import settings
from app.core.exceptions import CacheNamespaceNotFoundError
from app.core.logging_config import logger


T = TypeVar("T")
Loader = Callable[[], Awaitable[T]]


# ========== Clocks ==========

class Clock(Protocol):
    def now(self) -> float:
        ...


class SystemClock:
    """Monotonic seconds"""

    def now(self) -> float:
        return time.monotonic()


class ManualClock:
    """Clock that only moves when told to"""

    def __init__(self, start: float = 0.0):
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        if seconds < 0:
            raise ValueError("ManualClock cannot go backwards")
        self._now += seconds
        return self._now


class _Miss:
    """Sentinel returned by TTLCache.get when there is no usable entry"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    stored_at: float
    ttl: float

    @property
    def expires_at(self) -> float:
        return self.stored_at + self.ttl

    def age(self, now: float) -> float:
        return now - self.stored_at

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def is_stale(self, now: float, stale_fraction: float) -> bool:
        return self.age(now) > self.ttl * stale_fraction


def _name(namespace: Union[str, Enum]) -> str:
    return namespace.value if isinstance(namespace, Enum) else namespace


def make_key(**parts: Any) -> str:
    """Stable key for a parameterized query: make_key(page=1, search="ab") -> "page=1&search=ab" """
    items = []
    for name in sorted(parts):
        value = parts[name]
        if value is None or value == "":
            continue
        if isinstance(value, Enum):
            value = value.value
        items.append(f"{name}={value}")
    return "&".join(items) or "all"


# ========== TTL cache (one namespace) ==========

class TTLCache(Generic[T]):
    """
    One cache namespace: string key -> CacheEntry[T].

    Invalidation bumps a generation counter (per key, or for the whole
    namespace), so a load that started before an invalidation is not
    written back after it. Plain `set` calls are last-write-wins.
    """

    def __init__(self, name: str, ttl: float, clock: Optional[Clock] = None):
        if ttl < 0:
            raise ValueError(f"TTL for cache '{name}' must not be negative")
        self.name = name
        self.ttl = ttl
        self.clock: Clock = clock or SystemClock()
        self._entries: Dict[str, CacheEntry[T]] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self.hits = 0
        self.misses = 0

    def get_entry(self, key: str) -> Optional[CacheEntry[T]]:
        """Return the live entry for key, dropping it if it has expired"""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self.clock.now()):
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Union[T, _Miss]:
        entry = self.get_entry(key)
        if entry is None:
            self.misses += 1
            logger.log_cache_event("MISS", self.name, key)
            return MISS
        self.hits += 1
        logger.log_cache_event("HIT", self.name, key)
        return entry.value

    def set(self, key: str, value: T, ttl: Optional[float] = None) -> CacheEntry[T]:
        ttl = self.ttl if ttl is None else ttl
        if ttl < 0:
            raise ValueError("TTL must not be negative")
        entry = CacheEntry(value=value, stored_at=self.clock.now(), ttl=ttl)
        self._entries[key] = entry
        return entry

    def token(self, key: str) -> Tuple[int, int]:
        """Write token for a load about to start"""
        return (self._epoch, self._generations.get(key, 0))

    def set_if_current(self, key: str, value: T, token: Tuple[int, int],
                       ttl: Optional[float] = None) -> bool:
        """Store value only if key was not invalidated since token was taken"""
        if token != self.token(key):
            logger.log_cache_event("DISCARD", self.name, key)
            return False
        self.set(key, value, ttl)
        return True

    async def get_or_load(self, key: str, loader: Loader[T],
                          ttl: Optional[float] = None) -> T:
        """
        Return the cached value or await loader() and cache its result.
        Loader errors propagate and leave the cache untouched.
        """
        value = self.get(key)
        if value is not MISS:
            return value
        token = self.token(key)
        loaded = await loader()
        self.set_if_current(key, loaded, token, ttl)
        return loaded

    def invalidate(self, key: Optional[str] = None) -> int:
        """Drop one key, or the whole namespace when key is None"""
        if key is None:
            removed = len(self._entries)
            self._entries.clear()
            self._generations.clear()
            self._epoch += 1
            logger.log_cache_event("CLEAR", self.name, removed=removed)
            return removed
        self._generations[key] = self._generations.get(key, 0) + 1
        removed = 1 if self._entries.pop(key, None) is not None else 0
        logger.log_cache_event("INVALIDATE", self.name, key)
        return removed

    def invalidate_matching(self, pattern: str) -> int:
        """Drop every key containing pattern"""
        matched = [key for key in self._entries if pattern in key]
        for key in matched:
            self.invalidate(key)
        return len(matched)

    def purge_expired(self) -> int:
        now = self.clock.now()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def keys(self) -> List[str]:
        self.purge_expired()
        return sorted(self._entries)

    def __len__(self) -> int:
        self.purge_expired()
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get_entry(key) is not None

    def stats(self) -> Dict[str, Any]:
        keys = self.keys()
        return {
            "size": len(keys),
            "keys": keys,
            "ttl_seconds": self.ttl,
            "hits": self.hits,
            "misses": self.misses,
        }


# ========== Background refresh queue ==========

@dataclass
class RefreshFailure:
    namespace: str
    key: str
    error_type: str
    error: str
    failed_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "key": self.key,
            "error_type": self.error_type,
            "error": self.error,
            "failed_at": self.failed_at.isoformat(),
        }


class BackgroundRefresher:
    """
    Bounded queue for stale-while-revalidate refreshes.

    At most one refresh per (namespace, key) is queued or running at a
    time, and at most `max_concurrency` run at once. Failures are logged
    and kept in `failures` (newest last) instead of being raised.
    """

    def __init__(self, max_concurrency: int = 3, failure_history: int = 50):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._pending: Dict[Tuple[str, str], "asyncio.Task[None]"] = {}
        self.failures: Deque[RefreshFailure] = deque(maxlen=failure_history)
        self.completed = 0
        self.failed = 0
        self.running = 0
        self._closed = False

    def is_pending(self, namespace: str, key: str) -> bool:
        return (namespace, key) in self._pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def schedule(self, namespace: str, key: str, job: Callable[[], Awaitable[Any]]) -> bool:
        """Queue job unless one is already pending for this key. Returns True if queued."""
        slot = (namespace, key)
        if self._closed or slot in self._pending:
            return False
        task = asyncio.get_running_loop().create_task(self._run(namespace, key, job))
        self._pending[slot] = task

        def _release(done: "asyncio.Task[None]") -> None:
            if self._pending.get(slot) is done:
                del self._pending[slot]

        task.add_done_callback(_release)
        logger.log_cache_event("REFRESH_QUEUED", namespace, key)
        return True

    async def _run(self, namespace: str, key: str, job: Callable[[], Awaitable[Any]]) -> None:
        async with self._semaphore:
            self.running += 1
            try:
                await job()
                self.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failed += 1
                self.failures.append(RefreshFailure(
                    namespace=namespace,
                    key=key,
                    error_type=type(e).__name__,
                    error=str(e),
                ))
                logger.warning(
                    f"Background refresh failed for {namespace}/{key}: {type(e).__name__}: {e}",
                    extra={"event_type": "cache_refresh_failed", "cache_namespace": namespace, "cache_key": key},
                )
            finally:
                self.running -= 1

    async def drain(self) -> None:
        """Wait until every queued refresh has finished"""
        while self._pending:
            await asyncio.gather(*list(self._pending.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop accepting work and cancel whatever is still queued"""
        self._closed = True
        tasks = list(self._pending.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()

    def stats(self) -> Dict[str, Any]:
        return {
            "max_concurrency": self.max_concurrency,
            "pending": len(self._pending),
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
            "recent_failures": [failure.to_dict() for failure in self.failures],
        }


# ========== Stale-while-revalidate ==========

class StaleWhileRevalidateCache(Generic[T]):
    """
    Read-through view over a TTLCache.

    - fresh hit (age <= stale_fraction * ttl): returned as is
    - stale hit (older than that, not expired): returned, refresh queued
    - miss or expired: caller waits for compute(); concurrent callers for
      the same key share one computation
    """

    def __init__(self, cache: TTLCache[T], refresher: BackgroundRefresher,
                 stale_fraction: float = 0.8):
        if not 0 < stale_fraction <= 1:
            raise ValueError("stale_fraction must be in (0, 1]")
        self.cache = cache
        self.refresher = refresher
        self.stale_fraction = stale_fraction
        self._inflight: Dict[str, Tuple[Tuple[int, int], "asyncio.Task[T]"]] = {}
        self.computations = 0

    @property
    def name(self) -> str:
        return self.cache.name

    async def get(self, key: str, compute: Loader[T]) -> T:
        entry = self.cache.get_entry(key)
        if entry is not None:
            self.cache.hits += 1
            if entry.is_stale(self.cache.clock.now(), self.stale_fraction):
                logger.log_cache_event("STALE", self.name, key)
                self.refresher.schedule(self.name, key, lambda: self._load(key, compute))
            else:
                logger.log_cache_event("HIT", self.name, key)
            return entry.value

        self.cache.misses += 1
        logger.log_cache_event("MISS", self.name, key)
        return await self._load(key, compute)

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def _load(self, key: str, compute: Loader[T]) -> T:
        token = self.cache.token(key)
        current = self._inflight.get(key)
        # A load started before an invalidation must not be shared with callers arriving after it
        if current is None or current[0] != token:
            task = asyncio.get_running_loop().create_task(self._compute_and_store(key, compute, token))
            self._inflight[key] = (token, task)
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        else:
            task = current[1]
        return await asyncio.shield(task)

    async def _compute_and_store(self, key: str, compute: Loader[T], token: Tuple[int, int]) -> T:
        self.computations += 1
        value = await compute()
        self.cache.set_if_current(key, value, token)
        return value

    def _forget(self, key: str, done: "asyncio.Task[T]") -> None:
        current = self._inflight.get(key)
        if current is not None and current[1] is done:
            del self._inflight[key]
        if not done.cancelled():
            # Mark the exception retrieved; every waiter already received it
            done.exception()

    def invalidate(self, key: Optional[str] = None) -> int:
        return self.cache.invalidate(key)


# ========== Registry of namespaces ==========

class CacheRegistry:
    """
    Named cache namespaces sharing one clock and one refresh queue.
    """

    def __init__(self, clock: Optional[Clock] = None,
                 refresher: Optional[BackgroundRefresher] = None,
                 stale_fraction: float = 0.8):
        self.clock: Clock = clock or SystemClock()
        self.refresher = refresher or BackgroundRefresher()
        self.stale_fraction = stale_fraction
        self._namespaces: Dict[str, TTLCache[Any]] = {}
        self._swr: Dict[str, StaleWhileRevalidateCache[Any]] = {}
        self._stale_fractions: Dict[str, float] = {}

    def register(self, namespace: Union[str, Enum], ttl: float,
                 stale_fraction: Optional[float] = None) -> TTLCache[Any]:
        name = _name(namespace)
        if name in self._namespaces:
            raise ValueError(f"Cache namespace '{name}' is already registered")
        cache: TTLCache[Any] = TTLCache(name, ttl, clock=self.clock)
        self._namespaces[name] = cache
        self._stale_fractions[name] = stale_fraction or self.stale_fraction
        return cache

    def namespace(self, namespace: Union[str, Enum]) -> TTLCache[Any]:
        name = _name(namespace)
        cache = self._namespaces.get(name)
        if cache is None:
            raise CacheNamespaceNotFoundError(name)
        return cache

    def swr(self, namespace: Union[str, Enum]) -> StaleWhileRevalidateCache[Any]:
        cache = self.namespace(namespace)
        view = self._swr.get(cache.name)
        if view is None:
            view = StaleWhileRevalidateCache(cache, self.refresher, self._stale_fractions[cache.name])
            self._swr[cache.name] = view
        return view

    def names(self) -> List[str]:
        return sorted(self._namespaces)

    def __contains__(self, namespace: Union[str, Enum]) -> bool:
        return _name(namespace) in self._namespaces

    def get(self, namespace: Union[str, Enum], key: str) -> Any:
        return self.namespace(namespace).get(key)

    def set(self, namespace: Union[str, Enum], key: str, value: Any,
            ttl: Optional[float] = None) -> None:
        self.namespace(namespace).set(key, value, ttl)

    def invalidate(self, namespace: Union[str, Enum], key: Optional[str] = None) -> int:
        return self.namespace(namespace).invalidate(key)

    async def get_or_load(self, namespace: Union[str, Enum], key: str, loader: Loader[T],
                          ttl: Optional[float] = None) -> T:
        return await self.namespace(namespace).get_or_load(key, loader, ttl)

    def stats(self) -> Dict[str, Any]:
        namespaces = {name: cache.stats() for name, cache in sorted(self._namespaces.items())}
        return {
            "total_entries": sum(ns["size"] for ns in namespaces.values()),
            "namespaces": namespaces,
            "refresh": self.refresher.stats(),
        }

    def clear_all(self) -> int:
        removed = 0
        for cache in self._namespaces.values():
            removed += cache.invalidate()
        logger.info(f"Cleared all caches ({removed} entries)")
        return removed

    async def close(self) -> None:
        await self.refresher.shutdown()


# ========== Registry namespaces ==========

class CacheNamespace(str, Enum):
    FACULTIES = "faculties"
    DEPARTMENTS = "departments"
    ACADEMIC_YEARS = "academic-years"
    STUDENTS = "students"
    STUDENT_DETAIL = "student-detail"
    STUDENT_VALIDATION = "student-validation"
    DOCUMENTS = "documents"
    VERIFICATION = "verification"
    AUDIT_LOGS = "audit-logs"
    DASHBOARD = "dashboard-stats"


def namespace_ttls() -> Dict[CacheNamespace, int]:
    return {
        CacheNamespace.FACULTIES: settings.CACHE_TTL_ACADEMIC,
        CacheNamespace.DEPARTMENTS: settings.CACHE_TTL_ACADEMIC,
        CacheNamespace.ACADEMIC_YEARS: settings.CACHE_TTL_ACADEMIC,
        CacheNamespace.STUDENTS: settings.CACHE_TTL_STUDENTS,
        CacheNamespace.STUDENT_DETAIL: settings.CACHE_TTL_STUDENT_DETAIL,
        CacheNamespace.STUDENT_VALIDATION: settings.CACHE_TTL_STUDENT_VALIDATION,
        CacheNamespace.DOCUMENTS: settings.CACHE_TTL_DOCUMENTS,
        CacheNamespace.VERIFICATION: settings.CACHE_TTL_VERIFICATION,
        CacheNamespace.AUDIT_LOGS: settings.CACHE_TTL_AUDIT_LOGS,
        CacheNamespace.DASHBOARD: settings.CACHE_TTL_DASHBOARD,
    }


def build_cache_registry(clock: Optional[Clock] = None) -> CacheRegistry:
    """Create a registry with every namespace the API reads through"""
    registry = CacheRegistry(
        clock=clock,
        refresher=BackgroundRefresher(
            max_concurrency=settings.CACHE_REFRESH_CONCURRENCY,
            failure_history=settings.CACHE_FAILURE_HISTORY,
        ),
        stale_fraction=settings.CACHE_STALE_FRACTION,
    )
    for namespace, ttl in namespace_ttls().items():
        registry.register(namespace, ttl)
    return registry
