"""
iRacing Race Stats - Main FastAPI Application
Race and driver data fetched LIVE from the iRacing data API, cached in process
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from app.cache import (
    get_cache_manager,
    init_cache_manager,
    shutdown_cache_manager,
    parse_positive_id,
)
from app.errors import InvalidKey, NotFound, RaceStatsError, UpstreamUnavailable
from app.lookup import get_lookup_tables, reset_lookup_tables
from app.race import MEDIA_TYPES, get_race_provider, reset_race_provider, stream_events
from config.settings import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("main")

# Version tracking
APP_VERSION = "v0.1.0"
APP_NAME = "iRacing Race Stats"
APP_STAGE = "Pre-Alpha"


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_cache_manager()
    reset_lookup_tables()
    reset_race_provider()
    if settings.prewarm_lookups_on_startup:
        get_lookup_tables().pre_warm()
    logger.info(f"{APP_NAME} {APP_VERSION} started")
    yield
    shutdown_cache_manager()
    reset_lookup_tables()
    reset_race_provider()
    logger.info(f"{APP_NAME} stopped")


app = FastAPI(
    title=f"{APP_NAME} ({APP_STAGE})",
    description="Cached, progressively enriched race results from the iRacing data API",
    version=APP_VERSION,
    lifespan=lifespan,
)

ERROR_STATUS = {
    InvalidKey: 400,
    NotFound: 404,
    UpstreamUnavailable: 503,
}


@app.exception_handler(RaceStatsError)
async def race_stats_error_handler(request: Request, exc: RaceStatsError):
    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.warning(f"{request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status, content=exc.to_dict())


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok", "source": "iracing", "mode": "live"}


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "stage": APP_STAGE,
        "full": f"{APP_NAME} {APP_VERSION} ({APP_STAGE})"
    }


@app.get("/cache/stats")
def cache_stats():
    """Get cache, coalescer and lookup-table statistics."""
    stats = get_cache_manager().get_stats()
    stats["lookups"] = get_lookup_tables().get_stats()
    return stats


@app.post("/api/cache-clear")
def cache_clear():
    """Clear every cache namespace and reset the lookup tables."""
    cleared = get_cache_manager().clear_all()
    get_lookup_tables().invalidate()
    return {
        "success": True,
        "message": "All caches cleared successfully",
        "cleared": cleared,
        "timestamp": now_iso(),
    }


# ===== DRIVERS =====

@app.get("/api/driver/{cust_id}")
def driver_profile(
    cust_id: str,
    force_refresh: bool = Query(False, description="Bypass the cached profile"),
):
    """Driver profile with cache metadata."""
    parsed_id = parse_positive_id(cust_id, "customer ID")
    profile, meta = get_race_provider().get_driver_profile(parsed_id, force_refresh=force_refresh)
    return {
        "driver": profile,
        "custId": parsed_id,
        "timestamp": now_iso(),
        "meta": meta.to_dict(),
    }


# ===== RACES =====

@app.get("/api/race/{race_id}")
def race_result(
    race_id: str,
    force_refresh: bool = Query(False, description="Re-run the enrichment"),
):
    """Fully enriched race (every participant's laps)."""
    parsed_id = parse_positive_id(race_id, "race ID")
    race, meta = get_race_provider().get_race(parsed_id, force_refresh=force_refresh)
    return {
        "race": race,
        "raceId": parsed_id,
        "timestamp": now_iso(),
        "meta": meta.to_dict(),
    }


@app.get("/api/race/{race_id}/progressive")
def race_progressive(
    race_id: str,
    framing: str = Query("ndjson", alias="format", description="Stream framing: ndjson or sse"),
):
    """
    Progressive race loading.

    Streams the race skeleton first, then one progress/participant_update
    pair per participant, then a single complete (or error) record.
    """
    parsed_id = parse_positive_id(race_id, "race ID")
    if framing not in MEDIA_TYPES:
        raise InvalidKey(f"Unknown stream format '{framing}'", key=framing)

    events = get_race_provider().pipeline.run(parsed_id)
    return StreamingResponse(
        stream_events(events, framing=framing),
        media_type=MEDIA_TYPES[framing],
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/api/race/{race_id}/laps/{driver_name}")
def race_driver_laps(race_id: str, driver_name: str):
    """Laps of one participant, looked up by display name."""
    parsed_id = parse_positive_id(race_id, "race ID")
    laps, meta = get_race_provider().get_participant_laps_by_name(parsed_id, driver_name)
    return {**laps, "meta": meta.to_dict()}


# ===== LOOKUPS =====

@app.get("/api/cars")
def cars():
    """Every car with its racing category."""
    car_lookup = get_lookup_tables().cars
    if not car_lookup.ensure_loaded():
        raise UpstreamUnavailable("Car list is currently unavailable")
    all_cars = car_lookup.all_cars()
    return {
        "success": True,
        "count": len(all_cars),
        "cars": all_cars,
        "timestamp": now_iso(),
    }
