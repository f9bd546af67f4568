"""
Per-namespace cache store with fresh/stale/absent states, stale-if-error
fallback, negative caching and an optional LRU bound.
"""
import threading
import time
import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

from app.errors import NotFound

from .core import CacheEntry, CacheMeta, CacheSource, iso_timestamp
from .coalescer import RequestCoalescer
from .ttl_policies import NamespacePolicy

logger = logging.getLogger("cache.store")


class CacheStore:
    """
    Key -> CacheEntry mapping for one namespace.

    State machine per key:
    - absent: compute through the coalescer, store, return
    - fresh: return the stored value (hit)
    - stale: recompute; on failure serve the stale value with its age

    Entries are only ever replaced whole. Failed computes leave the
    existing entry untouched.
    """

    def __init__(
        self,
        name: str,
        policy: NamespacePolicy,
        coalescer: Optional[RequestCoalescer] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.policy = policy
        self._coalescer = coalescer or RequestCoalescer()
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "stale_serves": 0,
            "evictions": 0,
        }

    def get_or_compute(
        self,
        key: str,
        compute_fn: Callable[[], Any],
        ttl: Optional[float] = None,
        force_refresh: bool = False,
    ) -> Tuple[Any, CacheMeta]:
        """
        Return the cached value for key, computing it when absent or stale.

        Args:
            key: Cache key (already validated by the manager)
            compute_fn: Produces a fresh value; may raise
            ttl: Override of the namespace TTL for this write
            force_refresh: Skip the fresh check and recompute

        Returns:
            (value, cache_meta) tuple

        Raises:
            NotFound: The entity is known to be absent (possibly cached)
            Exception: compute_fn's error when no stale value can be served
        """
        now = self._clock()
        entry = self._touch(key)

        if entry is not None and not force_refresh and entry.is_fresh(now):
            self._count("hits")
            if entry.negative:
                logger.debug(f"CACHE HIT (negative): {key}")
                raise NotFound(entry.value, key=key)
            logger.debug(f"CACHE HIT (fresh): {key} [age={entry.age_seconds(now):.1f}s]")
            return entry.value, self._make_meta(CacheSource.FRESH, entry, now)

        self._count("misses")
        if entry is None:
            logger.info(f"CACHE MISS: {key}")
        else:
            logger.info(f"CACHE EXPIRED: {key} [age={entry.age_seconds(now):.1f}s]")

        try:
            stored = self._coalescer.run(
                key, lambda: self._compute_and_store(key, compute_fn, ttl)
            )
        except NotFound:
            raise
        except Exception as e:
            fallback = self._stale_fallback(key, e)
            if fallback is None:
                logger.warning(f"Compute failed for {key} with no cached fallback: {e}")
                raise
            return fallback

        return stored.value, self._make_meta(CacheSource.UPSTREAM, stored, stored.stored_at)

    def _compute_and_store(
        self,
        key: str,
        compute_fn: Callable[[], Any],
        ttl: Optional[float],
    ) -> CacheEntry:
        """Run the compute and write its outcome. Executed once per in-flight key."""
        try:
            value = compute_fn()
        except NotFound as e:
            self._store(key, e.message, self.policy.negative_ttl_seconds, negative=True)
            logger.info(f"Cached negative result for {key} ({self.policy.negative_ttl_seconds}s)")
            raise
        return self._store(key, value, ttl if ttl is not None else self.policy.ttl_seconds)

    def _stale_fallback(self, key: str, error: Exception) -> Optional[Tuple[Any, CacheMeta]]:
        """Serve the existing entry after a failed recompute, if allowed."""
        if not self.policy.stale_serve_enabled:
            return None
        with self._lock:
            entry = self._entries.get(key)
        if entry is None or entry.negative:
            return None

        now = self._clock()
        source = CacheSource.FRESH if entry.is_fresh(now) else CacheSource.STALE
        self._count("stale_serves")
        logger.warning(
            f"STALE SERVE: {key} [age={entry.age_seconds(now):.1f}s] after error: {error}"
        )
        meta = self._make_meta(source, entry, now)
        meta.error = str(error) or type(error).__name__
        return entry.value, meta

    def _store(
        self,
        key: str,
        value: Any,
        ttl: float,
        negative: bool = False,
    ) -> CacheEntry:
        entry = CacheEntry(
            key=key,
            value=value,
            stored_at=self._clock(),
            ttl_seconds=ttl,
            negative=negative,
        )
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            max_entries = self.policy.max_entries
            while max_entries and len(self._entries) > max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._stats["evictions"] += 1
                logger.debug(f"LRU evicted {evicted} from {self.name}")
        return entry

    def _touch(self, key: str) -> Optional[CacheEntry]:
        """Read an entry and mark it most recently used."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
            return entry

    def _count(self, stat: str) -> None:
        with self._lock:
            self._stats[stat] += 1

    def _make_meta(self, source: CacheSource, entry: CacheEntry, now: float) -> CacheMeta:
        return CacheMeta(
            cache_source=source.value,
            last_updated=iso_timestamp(entry.stored_at),
            namespace=self.name,
            ttl_seconds=entry.ttl_seconds,
            age_seconds=0.0 if source == CacheSource.UPSTREAM else entry.age_seconds(now),
        )

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> CacheEntry:
        """Write value directly, replacing any existing entry for key."""
        entry = self._store(key, value, ttl if ttl is not None else self.policy.ttl_seconds)
        logger.debug(f"CACHE SET: {key}")
        return entry

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Return the raw entry for key without affecting statistics or recency."""
        with self._lock:
            return self._entries.get(key)

    def invalidate(self, key: str) -> bool:
        """
        Remove a single entry.

        Returns:
            True if entry was found and removed
        """
        with self._lock:
            if key in self._entries:
                del self._entries[key]
                logger.info(f"Invalidated cache: {key}")
                return True
            return False

    def clear(self) -> int:
        """
        Remove every entry in this namespace.

        Returns:
            Number of entries cleared
        """
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info(f"Cleared {count} entries from {self.name}")
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def get_stats(self) -> Dict[str, Any]:
        """Counts, hit/miss totals and average entry age. Observational only."""
        now = self._clock()
        with self._lock:
            ages = [entry.age_seconds(now) for entry in self._entries.values()]
            negative = sum(1 for entry in self._entries.values() if entry.negative)
            return {
                "count": len(self._entries),
                "hits": self._stats["hits"],
                "misses": self._stats["misses"],
                "staleServes": self._stats["stale_serves"],
                "evictions": self._stats["evictions"],
                "negativeEntries": negative,
                "avgAgeMs": round(sum(ages) / len(ages) * 1000) if ages else 0,
                "maxEntries": self.policy.max_entries,
            }
