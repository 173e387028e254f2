import math

import pytest
import requests

import travel_estimator
from travel_estimator import TravelEstimate, TravelEstimator, fallback_estimate, haversine_km


class _Response:
    def __init__(self, payload, status=200):
        self._payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}")

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def test_haversine_known_distance():
    # one degree of latitude ≈ 111.19 km
    assert haversine_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.19, abs=0.01)
    assert haversine_km(1.35, 103.82, 1.35, 103.82) == 0.0


def test_offline_mode_uses_great_circle(monkeypatch):
    def _no_network(*args, **kwargs):
        raise AssertionError("offline estimator must not call the network")

    monkeypatch.setattr(travel_estimator.requests, "get", _no_network)
    leg = TravelEstimator("").route_distance_time(103.8198, 1.3521, 103.8519, 1.2903)
    km = haversine_km(1.3521, 103.8198, 1.2903, 103.8519)
    assert leg.distance_m == pytest.approx(km * 1000)
    assert leg.duration_s == pytest.approx(km * 120)
    assert leg.geometry is None
    assert leg.source == "haversine"


def test_osrm_route_is_used(monkeypatch):
    seen = {}

    def _get(url, params=None, timeout=None):
        seen.update(url=url, params=params, timeout=timeout)
        return _Response({"routes": [{"distance": 2500.0, "duration": 300.0, "geometry": "abc"}]})

    monkeypatch.setattr(travel_estimator.requests, "get", _get)
    leg = TravelEstimator("http://osrm:5001/", timeout=3).route_distance_time(103.8, 1.3, 103.9, 1.4)

    assert leg == TravelEstimate(2500.0, 300.0, "abc", "osrm")
    assert seen["url"] == "http://osrm:5001/route/v1/driving/103.8,1.3;103.9,1.4"
    assert seen["params"] == {"overview": "full"}
    assert seen["timeout"] == 3


@pytest.mark.parametrize(
    "behaviour",
    [
        requests.ConnectionError("refused"),
        requests.Timeout("slow"),
        _Response({}, status=500),
        _Response({"routes": []}),
        _Response({"code": "NoRoute"}),
        _Response(ValueError("not json")),
        _Response({"routes": [{"duration": 10}]}),
        _Response(["unexpected"]),
    ],
)
def test_any_failure_falls_back(monkeypatch, behaviour):
    def _get(*args, **kwargs):
        if isinstance(behaviour, Exception):
            raise behaviour
        return behaviour

    monkeypatch.setattr(travel_estimator.requests, "get", _get)
    leg = TravelEstimator("http://osrm:5001").route_distance_time(103.8, 1.3, 103.9, 1.4)
    assert leg == fallback_estimate(103.8, 1.3, 103.9, 1.4)
    assert leg.reachable


def test_fallback_is_idempotent(monkeypatch):
    def _get(*args, **kwargs):
        raise requests.ConnectionError("down")

    monkeypatch.setattr(travel_estimator.requests, "get", _get)
    estimator = TravelEstimator("http://osrm:5001")
    legs = [estimator.route_distance_time(103.82, 1.35, 103.85, 1.29) for _ in range(4)]
    assert all(leg == legs[0] for leg in legs)


def test_estimate_many_keeps_input_order():
    estimator = TravelEstimator("", workers=4)
    targets = [(1.29, 103.85), (1.40, 103.88), (1.3521, 103.8198), (1.33, 103.90)]
    legs = estimator.estimate_many(103.8198, 1.3521, targets)
    expected = [estimator.route_distance_time(103.8198, 1.3521, lng, lat) for lat, lng in targets]
    assert legs == expected
    assert legs[2].distance_m == 0.0


def test_reachable_flag():
    assert TravelEstimate(10.0, 1.0).reachable
    assert not TravelEstimate(math.inf, math.inf).reachable
    assert TravelEstimate(2500.0, 1.0).distance_km == 2.5
