"""
Core cache data structures.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from enum import Enum


class CacheNamespace(Enum):
    """Namespaces of cached data, each with its own TTL and statistics."""
    DRIVER = "driver"     # Driver profiles, 5 minutes
    RACE = "race"         # Race results and enriched races, 30 minutes
    LAPS = "laps"         # Per-participant lap detail, 1 hour
    LOOKUP = "lookup"     # Cars and category constants, 24 hours


class CacheSource(Enum):
    """Source of returned data."""
    FRESH = "fresh"       # Within TTL
    STALE = "stale"       # Past TTL, served because the recompute failed
    UPSTREAM = "upstream" # Computed by this call


@dataclass(frozen=True)
class CacheEntry:
    """
    A cached value with the timestamp of its last successful write.

    Entries are replaced whole on every write and never mutated.
    """
    key: str
    value: Any
    stored_at: float
    ttl_seconds: float
    negative: bool = False  # Records a known-absent entity

    def age_seconds(self, now: float) -> float:
        """Seconds since the entry was stored."""
        return max(0.0, now - self.stored_at)

    def is_fresh(self, now: float) -> bool:
        """Check if the entry is within its TTL."""
        return self.age_seconds(now) < self.ttl_seconds

    def is_stale(self, now: float) -> bool:
        return not self.is_fresh(now)


@dataclass
class CacheMeta:
    """
    Metadata about a cache access, included in API responses.
    """
    cache_source: str  # "fresh", "stale", or "upstream"
    last_updated: str  # ISO timestamp of the underlying write
    namespace: Optional[str] = None
    ttl_seconds: Optional[float] = None
    age_seconds: float = 0.0
    error: Optional[str] = None  # Failure that forced a stale serve

    @property
    def stale(self) -> bool:
        return self.cache_source == CacheSource.STALE.value

    @property
    def age_ms(self) -> int:
        return int(round(self.age_seconds * 1000))

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        result = {
            "lastUpdated": self.last_updated,
            "cacheSource": self.cache_source,
            "stale": self.stale,
            "cacheAgeMs": self.age_ms,
        }
        if self.error:
            result["warning"] = f"Upstream unavailable, serving cached data: {self.error}"
        if self.namespace:
            result["_debug"] = {
                "namespace": self.namespace,
                "ttl": self.ttl_seconds,
            }
        return result


def iso_timestamp(epoch_seconds: float) -> str:
    """Format an epoch timestamp the way responses report it."""
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat().replace("+00:00", "Z")
