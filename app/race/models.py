"""
Data models for race results and progressive lap enrichment.

The skeleton is produced once per enrichment run and never changes;
the enriched race applies per-participant lap patches on top of it.
"""
from dataclasses import dataclass, field, replace
from typing import Optional, List, Dict, Any, Iterable, Tuple

from app.utils.helpers import format_lap_time


@dataclass(frozen=True)
class LapRecord:
    """A single lap driven by one participant."""
    lap_number: int
    time_ms: Optional[int]  # None when the upstream reports no time
    invalid: bool = False

    @property
    def is_valid_timed(self) -> bool:
        return not self.invalid and self.time_ms is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lapNumber": self.lap_number,
            "timeMs": self.time_ms,
            "time": format_lap_time(self.time_ms),
            "invalid": self.invalid,
        }


def fastest_lap(laps: Iterable[LapRecord]) -> Optional[LapRecord]:
    """
    Valid lap with the lowest time, or None when no valid lap exists.

    Ties keep the earlier lap.
    """
    best: Optional[LapRecord] = None
    for lap in laps:
        if not lap.is_valid_timed:
            continue
        if best is None or lap.time_ms < best.time_ms:
            best = lap
    return best


@dataclass(frozen=True)
class ParticipantSummary:
    """A participant's result line, optionally extended with lap detail."""
    cust_id: int
    name: str
    finish_position: int
    start_position: int = 0
    incidents: int = 0
    irating: Optional[int] = None
    car_id: Optional[int] = None
    car_name: Optional[str] = None
    laps: Tuple[LapRecord, ...] = ()

    @property
    def fastest_lap(self) -> Optional[LapRecord]:
        return fastest_lap(self.laps)

    def with_laps(self, laps: Iterable[LapRecord]) -> "ParticipantSummary":
        return replace(self, laps=tuple(laps))

    def to_dict(self) -> Dict[str, Any]:
        best = self.fastest_lap
        return {
            "custId": self.cust_id,
            "name": self.name,
            "finishPosition": self.finish_position,
            "startPosition": self.start_position,
            "incidents": self.incidents,
            "irating": self.irating,
            "carId": self.car_id,
            "car": self.car_name,
            "laps": [lap.to_dict() for lap in self.laps],
            "fastestLap": best.to_dict() if best else None,
        }


@dataclass(frozen=True)
class RaceSkeleton:
    """The fast, lap-less race result returned before enrichment."""
    race_id: int
    track_name: str
    series_name: str
    participants: Tuple[ParticipantSummary, ...]
    start_time: Optional[str] = None
    category: Optional[str] = None
    strength_of_field: Optional[int] = None
    simsession_number: int = 0  # Session whose laps are fetched

    def participant(self, cust_id: int) -> Optional[ParticipantSummary]:
        for p in self.participants:
            if p.cust_id == cust_id:
                return p
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.race_id,
            "trackName": self.track_name,
            "seriesName": self.series_name,
            "startTime": self.start_time,
            "category": self.category,
            "strengthOfField": self.strength_of_field,
            "participants": [p.to_dict() for p in self.participants],
        }


@dataclass
class EnrichedRace:
    """
    A skeleton plus the lap patches applied so far.

    The skeleton itself is never modified; `participants` merges the
    patches in on read.
    """
    skeleton: RaceSkeleton
    lap_patches: Dict[int, Tuple[LapRecord, ...]] = field(default_factory=dict)

    @classmethod
    def from_skeleton(cls, skeleton: RaceSkeleton) -> "EnrichedRace":
        return cls(skeleton=skeleton)

    @property
    def race_id(self) -> int:
        return self.skeleton.race_id

    def apply(self, cust_id: int, laps: Iterable[LapRecord]) -> ParticipantSummary:
        """
        Patch one participant's laps.

        Returns:
            The patched participant

        Raises:
            KeyError: If the participant is not part of the skeleton
        """
        participant = self.skeleton.participant(cust_id)
        if participant is None:
            raise KeyError(f"Participant {cust_id} not in race {self.race_id}")
        self.lap_patches[cust_id] = tuple(laps)
        return participant.with_laps(self.lap_patches[cust_id])

    @property
    def participants(self) -> List[ParticipantSummary]:
        return [
            p.with_laps(self.lap_patches[p.cust_id]) if p.cust_id in self.lap_patches else p
            for p in self.skeleton.participants
        ]

    @property
    def enriched_count(self) -> int:
        return sum(1 for laps in self.lap_patches.values() if laps)

    def fastest_lap(self) -> Optional[Tuple[ParticipantSummary, LapRecord]]:
        """Race-wide fastest valid lap with its driver."""
        best: Optional[Tuple[ParticipantSummary, LapRecord]] = None
        for p in self.participants:
            lap = p.fastest_lap
            if lap is not None and (best is None or lap.time_ms < best[1].time_ms):
                best = (p, lap)
        return best

    def average_lap_ms(self) -> Optional[int]:
        times = [
            lap.time_ms
            for p in self.participants
            for lap in p.laps
            if lap.is_valid_timed
        ]
        if not times:
            return None
        return int(round(sum(times) / len(times)))

    def average_incidents(self) -> float:
        participants = self.skeleton.participants
        if not participants:
            return 0.0
        return round(sum(p.incidents for p in participants) / len(participants), 2)

    def to_dict(self) -> Dict[str, Any]:
        result = self.skeleton.to_dict()
        result["participants"] = [p.to_dict() for p in self.participants]

        best = self.fastest_lap()
        avg_lap = self.average_lap_ms()
        result["fastestLap"] = (
            {"custId": best[0].cust_id, "name": best[0].name, **best[1].to_dict()}
            if best else None
        )
        result["avgLapTimeMs"] = avg_lap
        result["avgLapTime"] = format_lap_time(avg_lap)
        result["avgIncidents"] = self.average_incidents()
        result["enrichedParticipants"] = self.enriched_count
        return result
