"""
Transform raw iRacing result and lap-data payloads into race models.
"""
import logging
from typing import Optional, List, Dict, Any, Callable

from app.errors import NotFound
from app.utils.helpers import safe_int, safe_str, ten_thousandths_to_ms

from .models import LapRecord, ParticipantSummary, RaceSkeleton

logger = logging.getLogger("race.transform")

# Session names that identify the race session when "RACE" is absent
RACE_SESSION_ALIASES = ("FEATURE", "MAIN")


def find_race_session(session_results: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Pick the race session out of a subsession's sessions.

    Order of preference: a name containing RACE, a known alias,
    the only session, the session with the most participants.
    """
    if not session_results:
        return None

    def name(session: Dict[str, Any]) -> str:
        return safe_str(session.get("simsession_name")).upper()

    for session in session_results:
        if "RACE" in name(session):
            return session
    for session in session_results:
        session_name = name(session)
        if session_name == "R" or any(alias in session_name for alias in RACE_SESSION_ALIASES):
            return session
    if len(session_results) == 1:
        return session_results[0]

    logger.warning(
        f"No race session found among {[name(s) for s in session_results]}, "
        f"using the one with most participants"
    )
    return max(session_results, key=lambda s: len(s.get("results") or []))


def build_skeleton(
    race_id: int,
    raw: Dict[str, Any],
    car_name: Optional[Callable[[int], str]] = None,
    category_name: Optional[Callable[[int], str]] = None,
) -> RaceSkeleton:
    """
    Build the lap-less race skeleton from a raw result document.

    Args:
        race_id: Subsession id
        raw: Result document from the upstream
        car_name: Resolver for car ids (e.g. CarLookup.resolve)
        category_name: Resolver for category ids (e.g. CategoryLookup.resolve)

    Raises:
        NotFound: If the document has no usable race session
    """
    session = find_race_session(raw.get("session_results") or [])
    if session is None or not session.get("results"):
        raise NotFound(f"Race {race_id} has no race session results", key=str(race_id))

    participants = []
    for result in session["results"]:
        car_id = result.get("car_id")
        participants.append(ParticipantSummary(
            cust_id=safe_int(result.get("cust_id")),
            name=safe_str(result.get("display_name"), "Unknown Driver"),
            # Upstream positions are 0-indexed
            finish_position=safe_int(result.get("finish_position")) + 1,
            start_position=safe_int(result.get("starting_position")) + 1,
            incidents=safe_int(result.get("incidents")),
            irating=result.get("newi_rating"),
            car_id=car_id,
            car_name=car_name(car_id) if car_name and car_id is not None else result.get("car_name"),
        ))
    participants.sort(key=lambda p: p.finish_position)

    category_id = raw.get("license_category_id")
    if category_name and category_id is not None:
        category = category_name(category_id)
    else:
        category = raw.get("license_category")

    return RaceSkeleton(
        race_id=race_id,
        track_name=safe_str((raw.get("track") or {}).get("track_name"), "Unknown Track"),
        series_name=safe_str(raw.get("series_name"), "Unknown Series"),
        participants=tuple(participants),
        start_time=raw.get("start_time"),
        category=category,
        strength_of_field=raw.get("event_strength_of_field"),
        simsession_number=safe_int(session.get("simsession_number")),
    )


def transform_laps(lap_items: List[Dict[str, Any]]) -> List[LapRecord]:
    """
    Convert raw lap-data items into lap records.

    A lap is invalid when it carries an incident flag, any lap event,
    or no positive lap time.
    """
    laps = []
    for index, item in enumerate(lap_items):
        time_ms = ten_thousandths_to_ms(item.get("lap_time"))
        invalid = bool(item.get("incident")) or bool(item.get("lap_events")) or time_ms is None
        laps.append(LapRecord(
            lap_number=safe_int(item.get("lap_number"), index + 1),
            time_ms=time_ms,
            invalid=invalid,
        ))
    return laps
