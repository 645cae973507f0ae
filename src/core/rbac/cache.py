"""
Permission Cache - read-through cache of effective permission sets.

- Keyed by user id, TTL expiry from population time (default 5 minutes)
- Over capacity: evict the least-recently-accessed fraction (default 20%)
- Periodic sweep of expired entries while started (default every 2 minutes)

Callers must invalidate every user whose effective set a mutation changes.
An invalidation that arrives while the same user's resolution is in flight
keeps that (possibly stale) result out of the cache.

The cache is a plain object owned by the service root; nothing here is
process-global.
"""

import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Optional, Tuple
from uuid import UUID
import logging
import threading

from config.settings import RBACSettings

logger = logging.getLogger(__name__)

Loader = Callable[[UUID], Awaitable[FrozenSet[str]]]


# =============================================================================
# CACHE ENTRY
# =============================================================================

@dataclass
class CacheEntry:
    """Cached permission set."""
    permissions: FrozenSet[str]
    cached_at: float
    expires_at: float
    last_access: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


# =============================================================================
# PERMISSION CACHE
# =============================================================================

class PermissionCache:
    """
    Thread-safe TTL cache in front of PermissionResolver.

    All bookkeeping is synchronous under an RLock; only the loader awaits.
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        max_entries: int = 1000,
        eviction_ratio: float = 0.2,
        cleanup_interval_seconds: float = 120,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.eviction_ratio = eviction_ratio
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.enabled = enabled
        self._clock = clock

        self._entries: Dict[UUID, CacheEntry] = {}
        # user_id -> (loads in flight, invalidation version)
        self._inflight: Dict[UUID, Tuple[int, int]] = {}
        self._lock = threading.RLock()
        self._task: Optional[asyncio.Task] = None

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._invalidations = 0

    @classmethod
    def from_settings(cls, settings: RBACSettings, **kwargs) -> "PermissionCache":
        return cls(
            ttl_seconds=settings.cache_ttl_seconds,
            max_entries=settings.cache_max_entries,
            eviction_ratio=settings.cache_eviction_ratio,
            cleanup_interval_seconds=settings.cache_cleanup_interval_seconds,
            enabled=settings.cache_enabled,
            **kwargs,
        )

    # =========================================================================
    # READS
    # =========================================================================

    async def get(self, user_id: UUID, loader: Loader) -> FrozenSet[str]:
        """Return the cached set, or load it with loader(user_id) and cache it."""
        if not self.enabled:
            return await loader(user_id)

        with self._lock:
            now = self._clock()
            entry = self._entries.get(user_id)
            if entry is not None:
                if not entry.is_expired(now):
                    entry.last_access = now
                    self._hits += 1
                    logger.debug(f"Permission cache hit for user {user_id}")
                    return entry.permissions
                del self._entries[user_id]
            self._misses += 1
            token = self._begin_load(user_id)

        logger.debug(f"Permission cache miss for user {user_id}")
        permissions = None
        try:
            permissions = frozenset(await loader(user_id))
            return permissions
        finally:
            self._finish_load(user_id, token, permissions)

    def peek(self, user_id: UUID) -> Optional[FrozenSet[str]]:
        """Cached set without loading or touching recency; None if absent or expired."""
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None or entry.is_expired(self._clock()):
                return None
            return entry.permissions

    async def warmup(self, user_ids: Iterable[UUID], loader: Loader) -> int:
        """Preload several users. Returns how many were loaded."""
        loaded = 0
        for user_id in user_ids:
            await self.get(user_id, loader)
            loaded += 1
        logger.info(f"Permission cache warmed for {loaded} users")
        return loaded

    # =========================================================================
    # INVALIDATION
    # =========================================================================

    def invalidate(self, user_id: UUID) -> None:
        with self._lock:
            self._entries.pop(user_id, None)
            self._mark_stale(user_id)
            self._invalidations += 1
        logger.debug(f"Permission cache invalidated for user {user_id}")

    def invalidate_many(self, user_ids: Iterable[UUID]) -> int:
        count = 0
        with self._lock:
            for user_id in user_ids:
                self._entries.pop(user_id, None)
                self._mark_stale(user_id)
                count += 1
            self._invalidations += count
        logger.debug(f"Permission cache invalidated for {count} users")
        return count

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            for user_id in list(self._inflight):
                self._mark_stale(user_id)
        logger.info("Permission cache cleared")

    def cleanup_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [uid for uid, entry in self._entries.items() if entry.is_expired(now)]
            for user_id in expired:
                del self._entries[user_id]
        if expired:
            logger.debug(f"Permission cache removed {len(expired)} expired entries")
        return len(expired)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """Start the periodic sweep. Must be called from a running event loop."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._sweep())
        logger.info(f"Permission cache sweep started (every {self.cleanup_interval_seconds}s)")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Permission cache sweep stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _sweep(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                self.cleanup_expired()
            except Exception as e:
                logger.error(f"Permission cache sweep failed: {e}")

    # =========================================================================
    # STATS
    # =========================================================================

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "enabled": self.enabled,
                "size": len(self._entries),
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / lookups if lookups else 0.0,
                "evictions": self._evictions,
                "invalidations": self._invalidations,
                "in_flight": len(self._inflight),
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # =========================================================================
    # INTERNALS (call with the lock held unless noted)
    # =========================================================================

    def _begin_load(self, user_id: UUID) -> int:
        count, version = self._inflight.get(user_id, (0, 0))
        self._inflight[user_id] = (count + 1, version)
        return version

    def _mark_stale(self, user_id: UUID) -> None:
        if user_id in self._inflight:
            count, version = self._inflight[user_id]
            self._inflight[user_id] = (count, version + 1)

    def _finish_load(self, user_id: UUID, token: int, permissions: Optional[FrozenSet[str]]) -> None:
        # Takes the lock itself
        with self._lock:
            count, version = self._inflight[user_id]
            if count <= 1:
                del self._inflight[user_id]
            else:
                self._inflight[user_id] = (count - 1, version)

            if permissions is None:
                return
            if version != token:
                logger.debug(f"Discarding stale permission load for user {user_id}")
                return
            now = self._clock()
            self._entries[user_id] = CacheEntry(
                permissions=permissions,
                cached_at=now,
                expires_at=now + self.ttl_seconds,
                last_access=now,
            )
            if len(self._entries) > self.max_entries:
                self._evict()

    def _evict(self) -> None:
        count = max(1, int(self.max_entries * self.eviction_ratio))
        oldest = sorted(self._entries.items(), key=lambda item: item[1].last_access)[:count]
        for user_id, _ in oldest:
            del self._entries[user_id]
        self._evictions += len(oldest)
        logger.debug(f"Permission cache evicted {len(oldest)} least recently used entries")
