"""
Read-mostly lookup tables (car names, car categories, category constants).

Each table is bulk-loaded once through the cache manager, so concurrent
first lookups share a single upstream fetch, and is then served from an
in-memory index until invalidated or its TTL elapses.
"""
import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from app.cache import ALL_CARS_KEY, CATEGORIES_KEY, CacheManager, CacheNamespace, get_cache_manager

logger = logging.getLogger("lookup")


class LoadState(Enum):
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    LOADED = "loaded"


class RacingCategory:
    """Racing categories used across the UI."""
    FORMULA_CAR = "Formula Car"
    OVAL = "Oval"
    DIRT_OVAL = "Dirt Oval"
    PROTOTYPE = "Prototype"
    SPORTS_CAR = "Sports Car"


class LookupTable:
    """
    Identifier -> display value table built from one bulk fetch.

    Subclasses define the cache key, how rows are indexed, and the
    fallback label for unknown identifiers.
    """

    name = "lookup"
    cache_key = ""

    def __init__(
        self,
        cache_manager: CacheManager,
        fetch_fn: Callable[[], List[Dict[str, Any]]],
        refresh_after: Optional[float] = None,
        retry_after: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache = cache_manager
        self._fetch_fn = fetch_fn
        policy = cache_manager.namespace(CacheNamespace.LOOKUP).policy
        self._refresh_after = policy.ttl_seconds if refresh_after is None else refresh_after
        self._retry_after = policy.negative_ttl_seconds if retry_after is None else retry_after
        self._clock = clock
        self._index: Dict[Any, str] = {}
        self._state = LoadState.NOT_LOADED
        self._loaded_at: Optional[float] = None
        # After a failed first load, lookups use fallbacks until this time
        self._next_attempt_at: Optional[float] = None
        self._load_lock = threading.Lock()

    @property
    def load_state(self) -> LoadState:
        return self._state

    def _is_current(self) -> bool:
        return (
            self._state == LoadState.LOADED
            and self._loaded_at is not None
            and self._clock() - self._loaded_at < self._refresh_after
        )

    def _backing_off(self) -> bool:
        return self._next_attempt_at is not None and self._clock() < self._next_attempt_at

    def ensure_loaded(self, force: bool = False) -> bool:
        """
        Load the table if it is not loaded or due for refresh.

        Callers arriving while a load is in progress wait for it. After a
        failed first load no upstream fetch is attempted for retry_after
        seconds unless force is set.

        Returns:
            True if an index (possibly from a previous load) is available
        """
        if self._is_current():
            return True
        if not force and self._backing_off():
            return False

        with self._load_lock:
            if self._is_current():
                return True
            if not force and self._backing_off():
                return False

            had_index = self._state == LoadState.LOADED
            self._state = LoadState.LOADING
            try:
                rows, meta = self._cache.get_or_compute(self.cache_key, self._fetch_fn)
            except Exception as e:
                if had_index:
                    logger.error(f"Failed to refresh {self.name} lookup table, keeping previous index: {e}")
                    self._state = LoadState.LOADED
                    self._loaded_at = self._clock()
                    return True
                logger.error(
                    f"Failed to load {self.name} lookup table, using fallbacks "
                    f"for {self._retry_after}s: {e}"
                )
                self._state = LoadState.NOT_LOADED
                self._next_attempt_at = self._clock() + self._retry_after
                return False

            self._rebuild(rows or [])
            self._state = LoadState.LOADED
            self._loaded_at = self._clock()
            self._next_attempt_at = None
            logger.info(
                f"Built {self.name} lookup with {len(self._index)} entries "
                f"(source={meta.cache_source})"
            )
            return True

    def _rebuild(self, rows: List[Dict[str, Any]]) -> None:
        self._index = self._build_index(rows)

    def _build_index(self, rows: List[Dict[str, Any]]) -> Dict[Any, str]:
        raise NotImplementedError

    def _fallback(self, identifier: Any) -> str:
        return f"{self.name.title()} {identifier}"

    @staticmethod
    def _normalize_id(identifier: Any) -> Any:
        try:
            return int(identifier)
        except (TypeError, ValueError):
            return identifier

    def resolve(self, identifier: Any) -> str:
        """
        Display value for identifier.

        Never raises: unknown identifiers, and every identifier while the
        table cannot be loaded, resolve to a deterministic fallback.
        """
        self.ensure_loaded()
        value = self._index.get(self._normalize_id(identifier))
        if value is None:
            logger.debug(f"{self.name} {identifier} not found, using fallback")
            return self._fallback(identifier)
        return value

    def pre_warm(self) -> bool:
        """Eagerly load the table (startup)."""
        logger.info(f"Pre-warming {self.name} lookup")
        return self.ensure_loaded(force=True)

    def invalidate(self) -> None:
        """Drop the index and its cached bulk payload; the next lookup reloads."""
        with self._load_lock:
            self._index = {}
            self._state = LoadState.NOT_LOADED
            self._loaded_at = None
            self._next_attempt_at = None
        self._cache.invalidate(self.cache_key)

    def __len__(self) -> int:
        return len(self._index)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "entries": len(self._index),
            "loadedAgoSeconds": (
                round(self._clock() - self._loaded_at, 1) if self._loaded_at is not None else None
            ),
        }


def map_category_name(category_name: str) -> Optional[str]:
    """Map an upstream category or car-type label onto a racing category."""
    normalized = (category_name or "").lower().replace("_", " ")
    if "formula" in normalized:
        return RacingCategory.FORMULA_CAR
    if "oval" in normalized and "dirt" in normalized:
        return RacingCategory.DIRT_OVAL
    if "oval" in normalized:
        return RacingCategory.OVAL
    if "prototype" in normalized:
        return RacingCategory.PROTOTYPE
    if "sports" in normalized or "road" in normalized:
        return RacingCategory.SPORTS_CAR
    if normalized == "dirt":
        return RacingCategory.DIRT_OVAL
    return None


FORMULA_NAME_HINTS = ("formula", "skip barber", "f1", "f3", "fr2.0")
OVAL_NAME_HINTS = ("legends", "modified", "sprint", "late model", "super speedway")
PROTOTYPE_NAME_HINTS = ("prototype", "lmp", "dpi", "radical")


def determine_car_category(car: Dict[str, Any]) -> str:
    """
    Racing category of a car.

    Uses the car's upstream categories, then its car types, then its name.
    Road cars with no other signal default to Sports Car.
    """
    for category in car.get("categories") or []:
        label = category.get("category_name") if isinstance(category, dict) else category
        mapped = map_category_name(label or "")
        if mapped:
            return mapped

    for car_type in car.get("car_types") or []:
        label = car_type.get("car_type") if isinstance(car_type, dict) else car_type
        mapped = map_category_name(label or "")
        if mapped and mapped != RacingCategory.SPORTS_CAR:
            return mapped

    name = (car.get("car_name") or "").lower()
    if any(hint in name for hint in FORMULA_NAME_HINTS):
        return RacingCategory.FORMULA_CAR
    if "dirt" in name and "oval" in name:
        return RacingCategory.DIRT_OVAL
    if any(hint in name for hint in OVAL_NAME_HINTS):
        return RacingCategory.OVAL
    if any(hint in name for hint in PROTOTYPE_NAME_HINTS):
        return RacingCategory.PROTOTYPE
    return RacingCategory.SPORTS_CAR


class CarLookup(LookupTable):
    """car_id -> car name, plus car_id -> racing category."""

    name = "car"
    cache_key = ALL_CARS_KEY

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._categories: Dict[int, str] = {}
        self._rows: List[Dict[str, Any]] = []

    def _rebuild(self, rows: List[Dict[str, Any]]) -> None:
        super()._rebuild(rows)
        self._rows = [row for row in rows if row.get("car_id") and row.get("car_name")]
        self._categories = {row["car_id"]: determine_car_category(row) for row in self._rows}

    def _build_index(self, rows: List[Dict[str, Any]]) -> Dict[Any, str]:
        index = {}
        for car in rows:
            car_id = car.get("car_id")
            name = car.get("car_name") or car.get("car_name_abbreviated")
            if car_id and name:
                index[car_id] = name
        return index

    def category_for(self, car_id: Any) -> Optional[str]:
        """Racing category of a car, None for unknown cars."""
        self.ensure_loaded()
        return self._categories.get(self._normalize_id(car_id))

    def all_cars(self) -> List[Dict[str, Any]]:
        """Every known car with its resolved category."""
        self.ensure_loaded()
        return [
            {
                "car_id": car["car_id"],
                "car_name": car["car_name"],
                "category": self._categories.get(car["car_id"], RacingCategory.SPORTS_CAR),
            }
            for car in self._rows
        ]


# Racing category -> upstream category label, when no exact label exists
CATEGORY_ALIASES = {
    RacingCategory.SPORTS_CAR: "Road",
    RacingCategory.FORMULA_CAR: "Road",
    RacingCategory.PROTOTYPE: "Road",
    RacingCategory.OVAL: "Oval",
    RacingCategory.DIRT_OVAL: "Dirt",
}


class CategoryLookup(LookupTable):
    """category id <-> category label."""

    name = "category"
    cache_key = CATEGORIES_KEY

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._ids: Dict[str, int] = {}

    def _rebuild(self, rows: List[Dict[str, Any]]) -> None:
        super()._rebuild(rows)
        self._ids = {label.lower(): value for value, label in self._index.items()}

    def _build_index(self, rows: List[Dict[str, Any]]) -> Dict[Any, str]:
        return {
            row["value"]: row["label"]
            for row in rows
            if row.get("label") and isinstance(row.get("value"), int)
        }

    def id_for(self, category_name: str) -> Optional[int]:
        """Category id for a label or racing category name; None if unknown."""
        self.ensure_loaded()
        normalized = (category_name or "").strip().lower()
        if normalized in self._ids:
            return self._ids[normalized]
        alias = CATEGORY_ALIASES.get((category_name or "").strip())
        if alias:
            return self._ids.get(alias.lower())
        logger.warning(f"Category not found for name '{category_name}'")
        return None


class LookupTables:
    """All lookup tables of the service, sharing one cache manager."""

    def __init__(self, cache_manager: CacheManager, client):
        self.cars = CarLookup(cache_manager, client.fetch_all_cars)
        self.categories = CategoryLookup(cache_manager, client.fetch_category_constants)

    @property
    def tables(self) -> List[LookupTable]:
        return [self.cars, self.categories]

    def pre_warm(self) -> Dict[str, bool]:
        """Load every table in parallel so the first request pays no bulk-fetch latency."""
        logger.info("Pre-warming all lookup tables...")
        with ThreadPoolExecutor(max_workers=len(self.tables), thread_name_prefix="lookup-warm") as executor:
            futures = {table.name: executor.submit(table.pre_warm) for table in self.tables}
            results = {name: future.result() for name, future in futures.items()}
        failed = [name for name, ok in results.items() if not ok]
        if failed:
            logger.warning(f"Lookup tables failed to pre-warm: {failed}")
        return results

    def invalidate(self) -> None:
        for table in self.tables:
            table.invalidate()

    def get_stats(self) -> Dict[str, Any]:
        return {table.name: table.get_stats() for table in self.tables}


# Global lookup tables instance
_lookup_tables: Optional[LookupTables] = None


def get_lookup_tables() -> LookupTables:
    """Get or create the global lookup tables."""
    global _lookup_tables
    if _lookup_tables is None:
        from app.iracing_client import get_iracing_client
        _lookup_tables = LookupTables(get_cache_manager(), get_iracing_client())
    return _lookup_tables


def reset_lookup_tables() -> None:
    """Forget the global lookup tables (used when the cache manager is recreated)."""
    global _lookup_tables
    _lookup_tables = None
