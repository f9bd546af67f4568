"""
Tests for NDJSON/SSE encoding of enrichment events.
"""
import json

import pytest

from app.race import (
    CompleteEvent,
    ErrorEvent,
    InitialEvent,
    ProgressEvent,
    encode_event,
    stream_events,
)


class TrackedSource:
    """Event iterator that records how often it was closed."""

    def __init__(self, events, fail_after=None):
        self.events = list(events)
        self.fail_after = fail_after
        self.close_calls = 0
        self.yielded = 0

    def __iter__(self):
        return self

    def __next__(self):
        if self.fail_after is not None and self.yielded == self.fail_after:
            raise RuntimeError("source blew up")
        if self.yielded >= len(self.events):
            raise StopIteration
        event = self.events[self.yielded]
        self.yielded += 1
        return event

    def close(self):
        self.close_calls += 1


def decode_ndjson(chunks):
    return [json.loads(line) for line in "".join(chunks).splitlines()]


def test_encode_ndjson():
    line = encode_event(ProgressEvent(processed=1, total=3, current_participant="Alice"))
    assert line.endswith("\n")
    assert json.loads(line) == {
        "type": "progress",
        "processed": 1,
        "total": 3,
        "currentParticipant": "Alice",
    }


def test_encode_sse():
    frame = encode_event(ErrorEvent("boom", "not_found"), framing="sse")
    assert frame.startswith("event: error\ndata: ")
    assert frame.endswith("\n\n")
    payload = json.loads(frame.split("data: ", 1)[1])
    assert payload == {"type": "error", "message": "boom", "errorType": "not_found"}


def test_stops_after_terminal_and_closes_once():
    source = TrackedSource([
        InitialEvent(race={"id": 1}, meta={}),
        CompleteEvent(race={"id": 1}),
        ProgressEvent(processed=9, total=9, current_participant="late"),
    ])

    records = decode_ndjson(stream_events(source))

    assert [r["type"] for r in records] == ["initial", "complete"]
    assert source.close_calls == 1


def test_source_without_terminal_gets_synthetic_error():
    source = TrackedSource([InitialEvent(race={"id": 1}, meta={})])

    records = decode_ndjson(stream_events(source))

    assert [r["type"] for r in records] == ["initial", "error"]
    assert records[-1]["errorType"] == "stream_error"
    assert source.close_calls == 1


def test_failing_source_gets_synthetic_error():
    source = TrackedSource(
        [InitialEvent(race={"id": 1}, meta={}), CompleteEvent(race={"id": 1})],
        fail_after=1,
    )

    records = decode_ndjson(stream_events(source))

    assert [r["type"] for r in records] == ["initial", "error"]
    assert "source blew up" in records[-1]["message"]
    assert source.close_calls == 1


def test_consumer_disconnect_closes_source():
    source = TrackedSource([
        InitialEvent(race={"id": 1}, meta={}),
        ProgressEvent(processed=1, total=2, current_participant="Alice"),
        CompleteEvent(race={"id": 1}),
    ])

    stream = stream_events(source)
    next(stream)
    stream.close()

    assert source.close_calls == 1


def test_unknown_framing_is_rejected():
    with pytest.raises(ValueError):
        list(stream_events([], framing="xml"))


def test_pipeline_stream_end_to_end(provider, three_driver_race):
    records = decode_ndjson(stream_events(provider.pipeline.run(three_driver_race)))

    assert records[0]["type"] == "initial"
    assert records[-1]["type"] == "complete"
    assert sum(1 for r in records if r["type"] in ("complete", "error")) == 1
    assert sum(1 for r in records if r["type"] == "participant_update") == 3
