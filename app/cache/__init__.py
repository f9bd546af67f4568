"""
Caching module with per-namespace TTL, request coalescing and stale-if-error fallback.
"""
from .core import CacheEntry, CacheMeta, CacheNamespace, CacheSource
from .ttl_policies import (
    NamespacePolicy,
    build_ttl_config,
    get_namespace_for_key,
    validate_key,
    parse_positive_id,
    driver_key,
    race_result_key,
    race_key,
    laps_key,
    ALL_CARS_KEY,
    CATEGORIES_KEY,
)
from .coalescer import RequestCoalescer
from .store import CacheStore
from .manager import (
    CacheManager,
    get_cache_manager,
    init_cache_manager,
    shutdown_cache_manager,
)

__all__ = [
    # Core types
    "CacheEntry",
    "CacheMeta",
    "CacheNamespace",
    "CacheSource",
    # TTL policies and keys
    "NamespacePolicy",
    "build_ttl_config",
    "get_namespace_for_key",
    "validate_key",
    "parse_positive_id",
    "driver_key",
    "race_result_key",
    "race_key",
    "laps_key",
    "ALL_CARS_KEY",
    "CATEGORIES_KEY",
    # Coalescing
    "RequestCoalescer",
    # Store and manager
    "CacheStore",
    "CacheManager",
    "get_cache_manager",
    "init_cache_manager",
    "shutdown_cache_manager",
]
