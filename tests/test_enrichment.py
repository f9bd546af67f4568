"""
Tests for the progressive enrichment pipeline.
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from app.cache import race_key
from app.errors import NotFound, UpstreamUnavailable
from app.race import (
    CompleteEvent,
    EnrichmentPipeline,
    ErrorEvent,
    InitialEvent,
    ParticipantUpdateEvent,
    ProgressEvent,
    RunState,
)

from tests.conftest import raw_laps


def event_types(events):
    return [event.type for event in events]


def assert_well_formed(events):
    """initial, then progress/participant_update pairs, then one terminal event."""
    types = event_types(events)
    assert types[0] == "initial"
    assert types[-1] in ("complete", "error")
    body = types[1:-1]
    assert body == ["progress", "participant_update"] * (len(body) // 2)
    assert sum(1 for event in events if event.is_terminal) == 1


class TestPipelineRun:
    def test_failed_participant_keeps_empty_laps(self, provider, three_driver_race):
        events = list(provider.pipeline.run(three_driver_race))

        assert_well_formed(events)
        complete = [e for e in events if isinstance(e, CompleteEvent)]
        assert len(complete) == 1

        participants = {p["custId"]: p for p in complete[0].race["participants"]}
        assert participants[22]["laps"] == []
        assert participants[22]["fastestLap"] is None
        assert participants[11]["fastestLap"]["timeMs"] == 89800
        assert len(participants[33]["laps"]) == 2

    def test_initial_event_carries_skeleton_and_meta(self, provider, three_driver_race):
        events = list(provider.pipeline.run(three_driver_race))
        initial = events[0]

        assert isinstance(initial, InitialEvent)
        assert initial.race["id"] == three_driver_race
        assert [p["custId"] for p in initial.race["participants"]] == [11, 22, 33]
        assert all(p["laps"] == [] for p in initial.race["participants"])
        assert initial.meta["cacheSource"] == "upstream"

    def test_progress_counts_up_to_total(self, provider, three_driver_race):
        events = list(provider.pipeline.run(three_driver_race))
        progress = [e for e in events if isinstance(e, ProgressEvent)]

        assert [e.processed for e in progress] == [1, 2, 3]
        assert all(e.total == 3 for e in progress)

    def test_each_progress_is_followed_by_its_participant(self, provider, three_driver_race):
        events = list(provider.pipeline.run(three_driver_race))
        for progress, update in zip(events[1:-1:2], events[2:-1:2]):
            assert isinstance(update, ParticipantUpdateEvent)
            assert progress.current_participant == update.participant.name

    def test_completed_race_is_written_once(self, provider, cache_manager, three_driver_race):
        run = provider.pipeline.start(three_driver_race)
        events = iter(run)

        next(events)  # initial
        assert race_key(three_driver_race) not in cache_manager.store_for(race_key(three_driver_race))

        remaining = list(events)
        assert run.state == RunState.COMPLETE
        cached = cache_manager.store_for(race_key(three_driver_race)).peek(race_key(three_driver_race))
        assert cached.value == remaining[-1].race

    def test_skeleton_failure_is_a_single_error_event(self, provider, fake_client):
        events = list(provider.pipeline.run(4040))

        assert len(events) == 1
        assert isinstance(events[0], ErrorEvent)
        assert events[0].error_type == "not_found"
        assert fake_client.calls["fetch_participant_laps"] == 0

    def test_upstream_down_is_reported(self, provider, fake_client):
        fake_client.failing_races.add(5050)
        events = list(provider.pipeline.run(5050))

        assert event_types(events) == ["error"]
        assert events[0].to_dict()["errorType"] == "upstream_unavailable"

    def test_single_participant_race(self, provider, fake_client):
        fake_client.add_race(6060, [(11, "Solo")], laps={11: raw_laps(95000)})
        events = list(provider.pipeline.run(6060))
        assert event_types(events) == ["initial", "progress", "participant_update", "complete"]

    def test_rerun_is_idempotent(self, provider, three_driver_race):
        first = list(provider.pipeline.run(three_driver_race))[-1].race
        second = list(provider.pipeline.run(three_driver_race))[-1].race
        assert first == second

    def test_laps_are_served_from_cache_on_rerun(self, provider, fake_client, three_driver_race):
        list(provider.pipeline.run(three_driver_race))
        fetched = fake_client.calls["fetch_participant_laps"]

        list(provider.pipeline.run(three_driver_race))

        # Only the failed participant is fetched again
        assert fake_client.calls["fetch_participant_laps"] == fetched + 1
        assert fake_client.calls["fetch_race_skeleton"] == 1

    def test_run_cannot_be_restarted(self, provider, three_driver_race):
        run = provider.pipeline.start(three_driver_race)
        list(run)
        with pytest.raises(RuntimeError):
            iter(run)


class TestCancellationAndTimeout:
    def test_closing_early_writes_nothing(self, provider, cache_manager, three_driver_race):
        run = provider.pipeline.start(three_driver_race)
        events = iter(run)

        assert isinstance(next(events), InitialEvent)
        assert isinstance(next(events), ProgressEvent)
        events.close()

        assert run.state == RunState.STREAMING
        assert race_key(three_driver_race) not in cache_manager.store_for(race_key(three_driver_race))

    def test_run_timeout_completes_with_empty_laps(self, cache_manager, fake_client, lookups, three_driver_race):
        from app.race import RaceProvider

        fake_client.failing_laps.clear()
        fake_client.lap_gate = threading.Event()  # lap fetches hang until released
        provider = RaceProvider(cache_manager, fake_client, lookups, max_workers=3, run_timeout=0.2)

        try:
            events = list(provider.pipeline.run(three_driver_race))
        finally:
            fake_client.lap_gate.set()

        assert_well_formed(events)
        assert events[-1].type == "complete"
        assert all(p["laps"] == [] for p in events[-1].race["participants"])


class TestCollect:
    def test_collect_returns_enriched_race(self, provider, three_driver_race):
        race = provider.pipeline.collect(three_driver_race)
        assert race.enriched_count == 2
        assert race.fastest_lap()[1].time_ms == 89800

    def test_collect_raises_skeleton_failure(self, provider):
        with pytest.raises(NotFound):
            provider.pipeline.collect(4040)

    def test_collect_without_persist(self, provider, cache_manager, three_driver_race):
        provider.pipeline.collect(three_driver_race, persist=False)
        assert race_key(three_driver_race) not in cache_manager.store_for(race_key(three_driver_race))


class TestProvider:
    def test_get_race_caches_full_race(self, provider, fake_client, three_driver_race):
        race, meta = provider.get_race(three_driver_race)
        again, again_meta = provider.get_race(three_driver_race)

        assert race == again
        assert meta.cache_source == "upstream"
        assert again_meta.cache_source == "fresh"
        assert fake_client.calls["fetch_race_skeleton"] == 1

    def test_get_race_serves_race_written_by_stream(self, provider, fake_client, three_driver_race):
        streamed = list(provider.pipeline.run(three_driver_race))[-1].race
        laps_calls = fake_client.calls["fetch_participant_laps"]

        race, meta = provider.get_race(three_driver_race)

        assert race == streamed
        assert meta.cache_source == "fresh"
        assert fake_client.calls["fetch_participant_laps"] == laps_calls

    def test_skeleton_with_lookups_down_fetches_each_table_once(self, provider, fake_client):
        drivers = [(100 + n, f"Driver {n}") for n in range(10)]
        fake_client.add_race(7070, drivers)
        fake_client.lookups_down = True

        skeleton, _ = provider.get_race_skeleton(7070)

        assert len(skeleton.participants) == 10
        assert all(p.car_name.startswith("Car ") for p in skeleton.participants)
        assert fake_client.calls["fetch_all_cars"] == 1
        assert fake_client.calls["fetch_category_constants"] <= 1

    def test_concurrent_get_race_callers_share_slow_enrichment(
        self, provider, cache_manager, fake_client, three_driver_race
    ):
        fake_client.lap_gate = threading.Event()
        coalescer = cache_manager.coalescer
        key = race_key(three_driver_race)

        with ThreadPoolExecutor(max_workers=3) as executor:
            futures = [executor.submit(provider.get_race, three_driver_race) for _ in range(3)]
            deadline = time.monotonic() + 5
            while coalescer.get_stats()["coalesced_total"] < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
            time.sleep(0.3)
            fake_client.lap_gate.set()
            races = [f.result()[0] for f in futures]

        assert coalescer.get_stats()["coalesced_total"] == 2
        assert races[0] == races[1] == races[2]
        assert races[0]["fastestLap"]["timeMs"] == 89800
        assert fake_client.calls["fetch_race_skeleton"] == 1
        assert not coalescer.is_in_flight(key)

    def test_laps_by_name(self, provider, three_driver_race):
        laps, _ = provider.get_participant_laps_by_name(three_driver_race, "alice fast")
        assert laps["custId"] == 11
        assert laps["fastestLap"]["lapNumber"] == 2

        partial, _ = provider.get_participant_laps_by_name(three_driver_race, "Cara")
        assert partial["custId"] == 33

    def test_laps_by_unknown_name(self, provider, three_driver_race):
        with pytest.raises(NotFound):
            provider.get_participant_laps_by_name(three_driver_race, "Nobody")

    def test_driver_profile_not_found_is_cached(self, provider, fake_client):
        for _ in range(3):
            with pytest.raises(NotFound):
                provider.get_driver_profile(123)
        assert fake_client.calls["fetch_driver_profile"] == 1

    def test_driver_profile_stale_when_upstream_down(self, provider, fake_client, clock):
        fake_client.members[539129] = {"cust_id": 539129, "display_name": "Alice Fast"}
        provider.get_driver_profile(539129)
        clock.advance(301)

        def down(cust_id):
            raise UpstreamUnavailable("rate limited")

        fake_client.fetch_driver_profile = down
        profile, meta = provider.get_driver_profile(539129)

        assert profile["display_name"] == "Alice Fast"
        assert meta.stale is True


def test_pipeline_defaults_come_from_settings(cache_manager):
    from config.settings import settings

    pipeline = EnrichmentPipeline(provider=None, cache_manager=cache_manager)
    assert pipeline.max_workers == settings.enrichment_max_workers
    assert pipeline.run_timeout == settings.enrichment_run_timeout_seconds
