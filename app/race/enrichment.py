"""
Progressive race enrichment.

A run returns the cheap race skeleton first, then fetches every
participant's laps with bounded parallelism and reports each one as it
lands. The composed race is written to the cache once, after the last
participant is applied.

Event order for one run:
    initial, (progress, participant_update)*, complete
or, when the skeleton cannot be loaded:
    error
"""
import time
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed, TimeoutError as FuturesTimeout
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, Iterator, Tuple, Union, ClassVar

from app.cache import CacheManager, race_key
from app.errors import RaceStatsError
from config.settings import settings

from .models import EnrichedRace, LapRecord, ParticipantSummary, RaceSkeleton

logger = logging.getLogger("race.enrichment")


class RunState(Enum):
    INITIAL = "initial"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"


# ===== EVENTS =====

@dataclass
class InitialEvent:
    """The skeleton, with the cache metadata it was served with."""
    race: Dict[str, Any]
    meta: Dict[str, Any]

    type: ClassVar[str] = "initial"
    is_terminal: ClassVar[bool] = False

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "race": self.race, "meta": self.meta}


@dataclass
class ProgressEvent:
    processed: int
    total: int
    current_participant: str

    type: ClassVar[str] = "progress"
    is_terminal: ClassVar[bool] = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "processed": self.processed,
            "total": self.total,
            "currentParticipant": self.current_participant,
        }


@dataclass
class ParticipantUpdateEvent:
    participant: ParticipantSummary

    type: ClassVar[str] = "participant_update"
    is_terminal: ClassVar[bool] = False

    def to_dict(self) -> Dict[str, Any]:
        best = self.participant.fastest_lap
        return {
            "type": self.type,
            "custId": self.participant.cust_id,
            "name": self.participant.name,
            "laps": [lap.to_dict() for lap in self.participant.laps],
            "fastestLap": best.to_dict() if best else None,
        }


@dataclass
class CompleteEvent:
    race: Dict[str, Any]

    type: ClassVar[str] = "complete"
    is_terminal: ClassVar[bool] = True

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "race": self.race}


@dataclass
class ErrorEvent:
    message: str
    error_type: str = "internal"

    type: ClassVar[str] = "error"
    is_terminal: ClassVar[bool] = True

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "message": self.message, "errorType": self.error_type}


RaceEvent = Union[InitialEvent, ProgressEvent, ParticipantUpdateEvent, CompleteEvent, ErrorEvent]


# ===== RUNS =====

class EnrichmentRun:
    """
    One enrichment of one race.

    Iterating the run drives it; the iterator is finite and cannot be
    restarted. Closing it before the terminal event cancels the queued lap
    fetches and leaves the cached race untouched.
    """

    def __init__(self, pipeline: "EnrichmentPipeline", race_id: int, persist: bool = True):
        self.race_id = race_id
        self.state = RunState.INITIAL
        self.result: Optional[EnrichedRace] = None
        self.error: Optional[BaseException] = None
        self._pipeline = pipeline
        self._persist = persist
        self._started = False

    def __iter__(self) -> Iterator[RaceEvent]:
        if self._started:
            raise RuntimeError(f"Enrichment run for race {self.race_id} already started")
        self._started = True
        return self._events()

    def _events(self) -> Iterator[RaceEvent]:
        pipeline = self._pipeline
        started_at = time.monotonic()

        try:
            skeleton, meta = pipeline.provider.get_race_skeleton(self.race_id)
        except RaceStatsError as e:
            logger.warning(f"Race {self.race_id} skeleton unavailable: {e.message}")
            self._fail(e)
            yield ErrorEvent(e.message, e.error_type)
            return
        except Exception as e:
            logger.error(f"Unexpected error loading race {self.race_id}: {e}", exc_info=True)
            self._fail(e)
            yield ErrorEvent(f"Failed to load race {self.race_id}")
            return

        yield InitialEvent(race=skeleton.to_dict(), meta=meta.to_dict())

        self.state = RunState.STREAMING
        enriched = EnrichedRace.from_skeleton(skeleton)
        total = len(skeleton.participants)
        processed = 0
        logger.info(f"Enriching race {self.race_id}: {total} participants")

        executor = ThreadPoolExecutor(
            max_workers=pipeline.max_workers,
            thread_name_prefix=f"enrich-{self.race_id}",
        )
        try:
            futures = {
                executor.submit(pipeline.fetch_laps, skeleton, participant): participant
                for participant in skeleton.participants
            }
            reported = set()
            try:
                for future in as_completed(futures, timeout=pipeline.run_timeout):
                    participant = futures[future]
                    reported.add(participant.cust_id)
                    processed += 1
                    yield from self._participant_events(
                        enriched, participant, future.result(), processed, total
                    )
            except FuturesTimeout:
                outstanding = [f for f, p in futures.items() if p.cust_id not in reported]
                logger.warning(
                    f"Race {self.race_id} enrichment timed out after {pipeline.run_timeout}s, "
                    f"{len(outstanding)} participants left without laps"
                )
                for future in outstanding:
                    participant = futures[future]
                    laps = future.result() if future.done() and not future.cancelled() else ()
                    processed += 1
                    yield from self._participant_events(enriched, participant, laps, processed, total)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        self.result = enriched
        race = enriched.to_dict()
        if self._persist:
            pipeline.cache.set(race_key(self.race_id), race)
        self.state = RunState.COMPLETE
        logger.info(
            f"Race {self.race_id} enriched: {enriched.enriched_count}/{total} participants "
            f"with laps in {time.monotonic() - started_at:.1f}s"
        )
        yield CompleteEvent(race=race)

    @staticmethod
    def _participant_events(
        enriched: EnrichedRace,
        participant: ParticipantSummary,
        laps: Tuple[LapRecord, ...],
        processed: int,
        total: int,
    ) -> Iterator[RaceEvent]:
        patched = enriched.apply(participant.cust_id, laps)
        yield ProgressEvent(processed=processed, total=total, current_participant=participant.name)
        yield ParticipantUpdateEvent(participant=patched)

    def _fail(self, error: BaseException) -> None:
        self.state = RunState.FAILED
        self.error = error


class EnrichmentPipeline:
    """
    Runs progressive enrichments against a race provider.

    Args:
        provider: Cache-backed race data access (RaceProvider)
        cache_manager: Where the composed race is written
        max_workers: Parallel lap fetches per run
        run_timeout: Seconds after which unfinished participants are given up
    """

    def __init__(
        self,
        provider,
        cache_manager: CacheManager,
        max_workers: Optional[int] = None,
        run_timeout: Optional[float] = None,
    ):
        self.provider = provider
        self.cache = cache_manager
        self.max_workers = max_workers or settings.enrichment_max_workers
        self.run_timeout = run_timeout if run_timeout is not None else settings.enrichment_run_timeout_seconds

    def start(self, race_id: int, persist: bool = True) -> EnrichmentRun:
        return EnrichmentRun(self, race_id, persist=persist)

    def run(self, race_id: int, persist: bool = True) -> Iterator[RaceEvent]:
        """Event iterator of a new run."""
        return iter(self.start(race_id, persist=persist))

    def collect(self, race_id: int, persist: bool = True) -> EnrichedRace:
        """
        Drain a run and return the enriched race.

        Raises:
            The skeleton failure (NotFound, UpstreamUnavailable, ...)
        """
        run = self.start(race_id, persist=persist)
        for _ in run:
            pass
        if run.state == RunState.FAILED:
            raise run.error
        return run.result

    def fetch_laps(self, skeleton: RaceSkeleton, participant: ParticipantSummary) -> Tuple[LapRecord, ...]:
        """
        Laps of one participant; empty when they cannot be fetched.

        Failures only cost this participant its lap detail.
        """
        try:
            laps, _ = self.provider.get_participant_laps(
                skeleton.race_id, participant.cust_id, skeleton.simsession_number
            )
            return tuple(laps)
        except Exception as e:
            logger.warning(
                f"Laps unavailable for {participant.name} ({participant.cust_id}) "
                f"in race {skeleton.race_id}: {e}"
            )
            return ()
