import math
import random

import pytest

from demand_table import DemandRecord, DemandTable, suggest_dropoffs
from time_ledger import parse_clock
from travel_estimator import TravelEstimate, TravelEstimator

# Central Singapore sample: (lat, lng, gap)
SITES = [
    (1.3521, 103.8198, -1.5),
    (1.3000, 103.8500, 2.0),
    (1.3300, 103.9000, -0.4),
    (1.2900, 103.7800, 1.2),
    (1.3700, 103.7500, -3.0),
    (1.4000, 103.8800, 0.8),
]


def build_table(hours=range(6, 19), seed=3, sites=SITES):
    rng = random.Random(seed)
    records = [
        DemandRecord(
            hour=h,
            latitude=lat,
            longitude=lng,
            gap=gap,
            suggested_dropoffs=suggest_dropoffs(lat, lng, gap, rng),
        )
        for h in hours
        for lat, lng, gap in sites
    ]
    return DemandTable.from_records(records)


class UnreachableEstimator(TravelEstimator):
    """Every leg is reported as impossible."""

    def route_distance_time(self, from_lng, from_lat, to_lng, to_lat):
        return TravelEstimate(math.inf, math.inf, None, "test")


class FixedLegEstimator(TravelEstimator):
    """Every non-trivial leg has the same length and duration."""

    def __init__(self, distance_m, duration_s):
        super().__init__("", workers=1)
        self.distance_m = distance_m
        self.duration_s = duration_s
        self.calls = 0

    def route_distance_time(self, from_lng, from_lat, to_lng, to_lat):
        self.calls += 1
        if (from_lng, from_lat) == (to_lng, to_lat):
            return TravelEstimate(0.0, 0.0, None, "test")
        return TravelEstimate(self.distance_m, self.duration_s, None, "test")


class ExplodingEstimator(TravelEstimator):
    def route_distance_time(self, from_lng, from_lat, to_lng, to_lat):
        raise RuntimeError("oracle exploded")

    def estimate_many(self, from_lng, from_lat, targets):
        raise RuntimeError("oracle exploded")


@pytest.fixture
def table():
    return build_table()


@pytest.fixture
def offline():
    # empty base URL: great-circle estimates only, deterministic
    return TravelEstimator("", workers=1)


def event_minutes(route):
    """Absolute minutes of each event; routes in tests never cross midnight."""
    return [parse_clock(loc["time"]) for loc in route["locations"]]


def assert_route_invariants(route, break_start, break_end):
    minutes = event_minutes(route)
    assert minutes == sorted(minutes), "timestamps must not go backwards"

    for m in minutes[1:]:
        assert not (break_start * 60 <= m < break_end * 60), f"event inside break at {m}"

    # the seed pickup is trip 0 and the first drop-off closes it, so every
    # drop-off (the first included) has exactly one earlier pickup
    locations = route["locations"]
    assert locations[0]["type"] == "pickup"
    assert locations[0]["tripId"] == 0
    for i, loc in enumerate(locations):
        if loc["type"] != "dropoff":
            continue
        earlier = [p for p in locations[:i] if p["type"] == "pickup" and p["tripId"] == loc["tripId"]]
        assert len(earlier) == 1

    drop_ids = [loc["tripId"] for loc in locations if loc["type"] == "dropoff"]
    assert len(drop_ids) == len(set(drop_ids))
    assert route["tripCount"] == len(drop_ids)

    assert all(loc["revenue"] >= 0 for loc in locations)
    assert all(loc["revenue"] == 0 for loc in locations if loc["type"] == "pickup")
    assert route["totalRevenue"] == pytest.approx(
        sum(loc["revenue"] for loc in locations if loc["type"] == "dropoff")
    )
