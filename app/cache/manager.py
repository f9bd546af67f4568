"""
Main cache orchestration: per-namespace stores sharing one request coalescer.
"""
import time
import logging
from typing import Dict, Optional, Callable, Any, Tuple

from config.settings import Settings, settings

from .core import CacheMeta, CacheNamespace
from .coalescer import RequestCoalescer
from .store import CacheStore
from .ttl_policies import NamespacePolicy, build_ttl_config, get_namespace_for_key, validate_key

logger = logging.getLogger("cache.manager")


class CacheManager:
    """
    Main cache orchestration with:
    - Per-namespace TTL, LRU bound and statistics
    - Request coalescing for concurrent duplicate requests
    - Stale-if-error fallback when a recompute fails
    - Response metadata tracking

    Keys are routed to their namespace by prefix (`driver:`, `race:`, ...).
    Malformed keys raise InvalidKey before touching any store.
    """

    def __init__(
        self,
        policies: Optional[Dict[CacheNamespace, NamespacePolicy]] = None,
        coalesce_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the cache manager.

        Args:
            policies: Namespace policies (defaults to the process settings)
            coalesce_timeout: Max seconds a coalesced caller waits (None: until settlement)
            clock: Time source in epoch seconds
        """
        policies = policies or build_ttl_config()
        self._coalescer = RequestCoalescer(wait_timeout=coalesce_timeout)
        self._stores: Dict[CacheNamespace, CacheStore] = {
            namespace: CacheStore(namespace.value, policy, self._coalescer, clock)
            for namespace, policy in policies.items()
        }
        self._closed = False

    @classmethod
    def from_settings(cls, config: Settings, clock: Callable[[], float] = time.time) -> "CacheManager":
        return cls(
            policies=build_ttl_config(config),
            coalesce_timeout=config.coalesce_timeout_seconds,
            clock=clock,
        )

    @property
    def coalescer(self) -> RequestCoalescer:
        return self._coalescer

    def namespace(self, namespace: CacheNamespace) -> CacheStore:
        return self._stores[namespace]

    def store_for(self, key: str) -> CacheStore:
        """Resolve the store that owns key. Raises InvalidKey for malformed keys."""
        return self._stores[get_namespace_for_key(key)]

    def get_or_compute(
        self,
        key: str,
        compute_fn: Callable[[], Any],
        ttl: Optional[float] = None,
        force_refresh: bool = False,
    ) -> Tuple[Any, CacheMeta]:
        """
        Get data from cache or compute it.

        Args:
            key: Cache key, e.g. "driver:539129"
            compute_fn: Function producing the value on a miss
            ttl: Optional TTL override for this write
            force_refresh: Bypass the fresh check

        Returns:
            (data, cache_meta) tuple
        """
        validate_key(key)
        return self.store_for(key).get_or_compute(
            key, compute_fn, ttl=ttl, force_refresh=force_refresh
        )

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Write a value that was produced outside get_or_compute."""
        validate_key(key)
        self.store_for(key).set(key, value, ttl=ttl)

    def invalidate(self, key: str) -> bool:
        """
        Invalidate a specific cache entry.

        Returns:
            True if entry was found and removed
        """
        return self.store_for(key).invalidate(key)

    def clear_all(self) -> int:
        """
        Clear every namespace.

        Returns:
            Number of entries cleared
        """
        count = sum(store.clear() for store in self._stores.values())
        logger.info(f"Cleared {count} cache entries across {len(self._stores)} namespaces")
        return count

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics per namespace."""
        return {
            "namespaces": {
                namespace.value: store.get_stats()
                for namespace, store in self._stores.items()
            },
            "coalescer": self._coalescer.get_stats(),
        }

    def close(self) -> None:
        """Release all cached state."""
        if self._closed:
            return
        self.clear_all()
        self._closed = True
        logger.info("Cache manager closed")


# Global cache manager instance
_cache_manager: Optional[CacheManager] = None


def init_cache_manager(config: Optional[Settings] = None) -> CacheManager:
    """Create the process-wide cache manager (called at application startup)."""
    global _cache_manager
    if _cache_manager is not None:
        _cache_manager.close()
    _cache_manager = CacheManager.from_settings(config or settings)
    return _cache_manager


def get_cache_manager() -> CacheManager:
    """Get or create the global cache manager."""
    global _cache_manager
    if _cache_manager is None:
        return init_cache_manager()
    return _cache_manager


def shutdown_cache_manager() -> None:
    """Tear down the process-wide cache manager (called at shutdown)."""
    global _cache_manager
    if _cache_manager is not None:
        _cache_manager.close()
        _cache_manager = None
