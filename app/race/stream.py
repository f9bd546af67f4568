"""
Wire encoding of enrichment events (NDJSON lines or SSE frames).
"""
import json
import logging
from typing import Iterable, Iterator

from .enrichment import ErrorEvent, RaceEvent

logger = logging.getLogger("race.stream")

NDJSON = "ndjson"
SSE = "sse"

MEDIA_TYPES = {
    NDJSON: "application/x-ndjson",
    SSE: "text/event-stream",
}


def encode_event(event: RaceEvent, framing: str = NDJSON) -> str:
    """Serialize one event as a single NDJSON line or SSE frame."""
    payload = json.dumps(event.to_dict(), separators=(",", ":"))
    if framing == SSE:
        return f"event: {event.type}\ndata: {payload}\n\n"
    return f"{payload}\n"


def stream_events(events: Iterable[RaceEvent], framing: str = NDJSON) -> Iterator[str]:
    """
    Encode events in order until the terminal one.

    The source is closed exactly once: after the terminal record, when the
    consumer disconnects, or when the source fails. A source that ends or
    fails without a terminal event gets a synthetic error record, so every
    stream ends with exactly one terminal record.
    """
    if framing not in MEDIA_TYPES:
        raise ValueError(f"Unknown stream framing '{framing}'")

    source = iter(events)
    terminated = False
    failure = None
    try:
        for event in source:
            yield encode_event(event, framing)
            if event.is_terminal:
                terminated = True
                break
    except Exception as e:
        logger.error(f"Event source failed: {e}", exc_info=True)
        failure = e
    finally:
        close = getattr(source, "close", None)
        if close is not None:
            close()

    if not terminated:
        message = "Race stream ended unexpectedly" if failure is None else f"Race stream failed: {failure}"
        logger.warning(message)
        yield encode_event(ErrorEvent(message, "stream_error"), framing)
