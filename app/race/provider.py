"""
Cache-backed race and driver data access.

Every upstream call made on behalf of a request goes through here, so it is
cached, coalesced, negatively cached on NotFound and served stale when the
upstream is down.
"""
import logging
from typing import Optional, List, Dict, Any, Tuple

from app.cache import (
    CacheManager,
    CacheMeta,
    get_cache_manager,
    driver_key,
    race_result_key,
    race_key,
    laps_key,
)
from app.errors import NotFound
from app.lookup import LookupTables

from .enrichment import EnrichmentPipeline
from .models import LapRecord, ParticipantSummary, RaceSkeleton, fastest_lap
from .transform import build_skeleton, transform_laps

logger = logging.getLogger("race.provider")


class RaceProvider:
    """Race skeletons, participant laps, full races and driver profiles."""

    def __init__(
        self,
        cache_manager: CacheManager,
        client,
        lookups: LookupTables,
        max_workers: Optional[int] = None,
        run_timeout: Optional[float] = None,
    ):
        self.cache = cache_manager
        self.client = client
        self.lookups = lookups
        self.pipeline = EnrichmentPipeline(
            self, cache_manager, max_workers=max_workers, run_timeout=run_timeout
        )

    # ===== RACES =====

    def get_race_skeleton(self, race_id: int) -> Tuple[RaceSkeleton, CacheMeta]:
        """Lap-less race result, one upstream call on a miss."""
        def compute() -> RaceSkeleton:
            raw = self.client.fetch_race_skeleton(race_id)
            return build_skeleton(
                race_id,
                raw,
                car_name=self.lookups.cars.resolve,
                category_name=self.lookups.categories.resolve,
            )

        return self.cache.get_or_compute(race_result_key(race_id), compute)

    def get_participant_laps(
        self,
        race_id: int,
        cust_id: int,
        simsession_number: int = 0,
    ) -> Tuple[Tuple[LapRecord, ...], CacheMeta]:
        """One participant's laps in the race session."""
        def compute() -> Tuple[LapRecord, ...]:
            items = self.client.fetch_participant_laps(race_id, cust_id, simsession_number)
            return tuple(transform_laps(items))

        return self.cache.get_or_compute(laps_key(race_id, cust_id), compute)

    def get_race(self, race_id: int, force_refresh: bool = False) -> Tuple[Dict[str, Any], CacheMeta]:
        """
        Fully enriched race, as produced by a complete enrichment run.

        A cached race written by an earlier run (streamed or not) is served
        as is.
        """
        return self.cache.get_or_compute(
            race_key(race_id),
            lambda: self.pipeline.collect(race_id, persist=False).to_dict(),
            force_refresh=force_refresh,
        )

    def get_participant_laps_by_name(
        self,
        race_id: int,
        driver_name: str,
    ) -> Tuple[Dict[str, Any], CacheMeta]:
        """
        Laps of the participant whose display name matches driver_name.

        Exact (case-insensitive) matches win over partial ones.

        Raises:
            NotFound: If the race has no such participant
        """
        skeleton, _ = self.get_race_skeleton(race_id)
        participant = find_participant(skeleton.participants, driver_name)
        if participant is None:
            raise NotFound(
                f"Driver '{driver_name}' not found in race {race_id}",
                key=race_result_key(race_id),
            )

        laps, meta = self.get_participant_laps(race_id, participant.cust_id, skeleton.simsession_number)
        best = fastest_lap(laps)
        return {
            "raceId": race_id,
            "custId": participant.cust_id,
            "name": participant.name,
            "laps": [lap.to_dict() for lap in laps],
            "fastestLap": best.to_dict() if best else None,
        }, meta

    # ===== DRIVERS =====

    def get_driver_profile(self, cust_id: int, force_refresh: bool = False) -> Tuple[Dict[str, Any], CacheMeta]:
        return self.cache.get_or_compute(
            driver_key(cust_id),
            lambda: self.client.fetch_driver_profile(cust_id),
            force_refresh=force_refresh,
        )


def find_participant(participants: List[ParticipantSummary], driver_name: str) -> Optional[ParticipantSummary]:
    wanted = (driver_name or "").strip().lower()
    if not wanted:
        return None
    for participant in participants:
        if participant.name.lower() == wanted:
            return participant
    for participant in participants:
        if wanted in participant.name.lower():
            return participant
    return None


# Global provider instance
_provider: Optional[RaceProvider] = None


def get_race_provider() -> RaceProvider:
    """Get or create the global race provider."""
    global _provider
    if _provider is None:
        from app.iracing_client import get_iracing_client
        from app.lookup import get_lookup_tables
        _provider = RaceProvider(get_cache_manager(), get_iracing_client(), get_lookup_tables())
    return _provider


def reset_race_provider() -> None:
    """Forget the global provider (used when the cache manager is recreated)."""
    global _provider
    _provider = None
