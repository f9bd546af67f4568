"""
Race results, lap enrichment and event streaming.
"""
from .models import LapRecord, ParticipantSummary, RaceSkeleton, EnrichedRace, fastest_lap
from .transform import build_skeleton, transform_laps, find_race_session
from .enrichment import (
    RunState,
    InitialEvent,
    ProgressEvent,
    ParticipantUpdateEvent,
    CompleteEvent,
    ErrorEvent,
    RaceEvent,
    EnrichmentRun,
    EnrichmentPipeline,
)
from .stream import encode_event, stream_events, MEDIA_TYPES
from .provider import RaceProvider, get_race_provider, reset_race_provider

__all__ = [
    # Models
    "LapRecord",
    "ParticipantSummary",
    "RaceSkeleton",
    "EnrichedRace",
    "fastest_lap",
    # Transforms
    "build_skeleton",
    "transform_laps",
    "find_race_session",
    # Enrichment
    "RunState",
    "InitialEvent",
    "ProgressEvent",
    "ParticipantUpdateEvent",
    "CompleteEvent",
    "ErrorEvent",
    "RaceEvent",
    "EnrichmentRun",
    "EnrichmentPipeline",
    # Streaming
    "encode_event",
    "stream_events",
    "MEDIA_TYPES",
    # Data access
    "RaceProvider",
    "get_race_provider",
    "reset_race_provider",
]
