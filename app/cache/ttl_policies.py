"""
TTL configuration, cache key builders and key-to-namespace mapping.
"""
import re
from dataclasses import dataclass
from typing import Dict, Optional, Union

from app.errors import InvalidKey
from config.settings import Settings, settings as default_settings

from .core import CacheNamespace


@dataclass(frozen=True)
class NamespacePolicy:
    """Caching behaviour for one namespace."""
    ttl_seconds: float
    negative_ttl_seconds: float
    max_entries: Optional[int] = None
    stale_serve_enabled: bool = True


def build_ttl_config(config: Optional[Settings] = None) -> Dict[CacheNamespace, NamespacePolicy]:
    """
    Build the per-namespace policy table from settings.

    Args:
        config: Settings to read (defaults to the process settings)

    Returns:
        Mapping of namespace to its policy
    """
    config = config or default_settings
    ttls = {
        CacheNamespace.DRIVER: config.cache_ttl_driver_seconds,
        CacheNamespace.RACE: config.cache_ttl_race_seconds,
        CacheNamespace.LAPS: config.cache_ttl_laps_seconds,
        CacheNamespace.LOOKUP: config.cache_ttl_lookup_seconds,
    }
    return {
        namespace: NamespacePolicy(
            ttl_seconds=ttl,
            negative_ttl_seconds=min(config.cache_negative_ttl_seconds, ttl),
            max_entries=config.cache_max_entries,
            stale_serve_enabled=config.cache_stale_serve_enabled,
        )
        for namespace, ttl in ttls.items()
    }


# Key prefix -> namespace
KEY_PREFIXES: Dict[str, CacheNamespace] = {
    "driver": CacheNamespace.DRIVER,
    "result": CacheNamespace.RACE,     # Raw race result (skeleton source)
    "race": CacheNamespace.RACE,       # Composed enriched race
    "laps": CacheNamespace.LAPS,
    "cars": CacheNamespace.LOOKUP,
    "constants": CacheNamespace.LOOKUP,
}

_KEY_PART = re.compile(r"^[^:\s][^:]*$")


def validate_key(key: str) -> str:
    """
    Reject malformed keys before they reach the store or coalescer.

    A key is `<prefix>:<part>[:<part>...]` with a known prefix and
    non-empty parts that do not start with whitespace.

    Raises:
        InvalidKey: If the key is malformed
    """
    if not isinstance(key, str) or not key:
        raise InvalidKey("Cache key must be a non-empty string", key=key)
    parts = key.split(":")
    if len(parts) < 2:
        raise InvalidKey(f"Cache key '{key}' has no namespace prefix", key=key)
    if parts[0] not in KEY_PREFIXES:
        raise InvalidKey(f"Unknown cache key prefix '{parts[0]}'", key=key)
    for part in parts[1:]:
        if not _KEY_PART.match(part) or part != part.rstrip():
            raise InvalidKey(f"Malformed cache key '{key}'", key=key)
    return key


def get_namespace_for_key(key: str) -> CacheNamespace:
    """Determine the namespace of a (validated) cache key."""
    return KEY_PREFIXES[validate_key(key).split(":", 1)[0]]


def parse_positive_id(value: Union[str, int], label: str) -> int:
    """
    Parse a caller-supplied numeric identifier.

    Raises:
        InvalidKey: If the value is not a positive integer
    """
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidKey(f"Invalid {label}: {value!r}", key=str(value))
    if parsed <= 0:
        raise InvalidKey(f"Invalid {label}: {value!r}", key=str(value))
    return parsed


# ===== KEY BUILDERS =====

def driver_key(cust_id: int) -> str:
    return f"driver:{cust_id}"


def race_result_key(race_id: int) -> str:
    return f"result:{race_id}"


def race_key(race_id: int) -> str:
    return f"race:{race_id}"


def laps_key(race_id: int, cust_id: int) -> str:
    return f"laps:{race_id}:{cust_id}"


ALL_CARS_KEY = "cars:all"
CATEGORIES_KEY = "constants:categories"
