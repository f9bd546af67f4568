"""
Shared fixtures: a scripted upstream client, a manual clock and a fresh
cache manager per test.
"""
import threading
from collections import Counter

import pytest

from app.cache import CacheManager, CacheNamespace, NamespacePolicy
from app.errors import NotFound, UpstreamUnavailable
from app.lookup import LookupTables
from app.race import RaceProvider


# =============================================================================
# Fakes
# =============================================================================

class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def raw_result(race_id: int, drivers):
    """Upstream result document with one race session."""
    return {
        "subsession_id": race_id,
        "series_name": "GT3 Challenge",
        "start_time": "2024-05-01T18:00:00Z",
        "license_category_id": 2,
        "event_strength_of_field": 2150,
        "track": {"track_name": "Spa-Francorchamps"},
        "session_results": [
            {"simsession_number": -1, "simsession_name": "QUALIFY", "results": []},
            {
                "simsession_number": 0,
                "simsession_name": "RACE",
                "results": [
                    {
                        "cust_id": cust_id,
                        "display_name": name,
                        "finish_position": position,
                        "starting_position": position,
                        "incidents": position * 2,
                        "newi_rating": 2000 + position,
                        "car_id": 132,
                    }
                    for position, (cust_id, name) in enumerate(drivers)
                ],
            },
        ],
    }


def raw_laps(*times_ms):
    """Upstream lap items; lap times are given in ms, sent in 1/10000 s."""
    return [
        {"lap_number": number, "lap_time": time_ms * 10, "incident": False, "lap_events": []}
        for number, time_ms in enumerate(times_ms, start=1)
    ]


class FakeIRacingClient:
    """
    Scripted stand-in for IRacingClient.

    Unknown races and drivers raise NotFound; ids in `failing_laps` and
    `failing_races` raise UpstreamUnavailable. Every call is counted.
    """

    def __init__(self):
        self.races = {}
        self.laps = {}
        self.members = {}
        self.cars = [
            {"car_id": 132, "car_name": "BMW M4 GT3", "categories": ["road"]},
            {"car_id": 99, "car_name": "Dallara F3", "categories": ["formula_car"]},
        ]
        self.categories = [
            {"label": "Oval", "value": 1},
            {"label": "Road", "value": 2},
            {"label": "Dirt Oval", "value": 3},
            {"label": "Dirt", "value": 4},
        ]
        self.failing_laps = set()
        self.failing_races = set()
        self.lookups_down = False
        self.calls = Counter()
        self.lap_gate = None  # threading.Event that lap fetches wait on
        self._lock = threading.Lock()

    def _count(self, name: str) -> None:
        with self._lock:
            self.calls[name] += 1

    def add_race(self, race_id: int, drivers, laps=None):
        self.races[race_id] = raw_result(race_id, drivers)
        for cust_id, items in (laps or {}).items():
            self.laps[(race_id, cust_id)] = items

    def fetch_race_skeleton(self, race_id):
        self._count("fetch_race_skeleton")
        if race_id in self.failing_races:
            raise UpstreamUnavailable(f"Race {race_id} upstream down")
        if race_id not in self.races:
            raise NotFound(f"Race {race_id} not found", key=str(race_id))
        return self.races[race_id]

    def fetch_participant_laps(self, race_id, cust_id, simsession_number=0):
        self._count("fetch_participant_laps")
        if self.lap_gate is not None:
            self.lap_gate.wait(5)
        if cust_id in self.failing_laps:
            raise UpstreamUnavailable(f"Laps for {cust_id} unavailable")
        return self.laps.get((race_id, cust_id), [])

    def fetch_driver_profile(self, cust_id):
        self._count("fetch_driver_profile")
        if cust_id not in self.members:
            raise NotFound(f"Driver {cust_id} not found", key=str(cust_id))
        return self.members[cust_id]

    def fetch_all_cars(self):
        self._count("fetch_all_cars")
        if self.lookups_down:
            raise UpstreamUnavailable("Cars unavailable")
        return self.cars

    def fetch_category_constants(self):
        self._count("fetch_category_constants")
        if self.lookups_down:
            raise UpstreamUnavailable("Categories unavailable")
        return self.categories


# =============================================================================
# Fixtures
# =============================================================================

def make_policies(ttl: float = 300, negative_ttl: float = 60, max_entries=None, stale_serve: bool = True):
    return {
        namespace: NamespacePolicy(
            ttl_seconds=ttl,
            negative_ttl_seconds=negative_ttl,
            max_entries=max_entries,
            stale_serve_enabled=stale_serve,
        )
        for namespace in CacheNamespace
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache_manager(clock):
    """Fresh cache manager on the manual clock."""
    return CacheManager(policies=make_policies(), clock=clock)


@pytest.fixture
def fake_client():
    return FakeIRacingClient()


@pytest.fixture
def lookups(cache_manager, fake_client):
    return LookupTables(cache_manager, fake_client)


@pytest.fixture
def provider(cache_manager, fake_client, lookups):
    return RaceProvider(cache_manager, fake_client, lookups, max_workers=2, run_timeout=10.0)


@pytest.fixture
def three_driver_race(fake_client):
    """Race 1001: three drivers, the second one's lap fetch fails."""
    fake_client.add_race(
        1001,
        [(11, "Alice Fast"), (22, "Bob Broken"), (33, "Cara Steady")],
        laps={
            11: raw_laps(90500, 89800, 91000),
            33: raw_laps(92000, 91500),
        },
    )
    fake_client.failing_laps.add(22)
    return 1001
