# travel_estimator.py
"""
Travel Estimator – routing oracle adapter
=========================================
Thin adapter over an OSRM-compatible routing service. Given two coordinates
it returns road distance, duration and path geometry. Whatever goes wrong on
the way (timeout, HTTP error, malformed JSON, no route) the caller still gets
a usable estimate: the great-circle distance driven at 30 km/h.

Architecture
------------
  haversine_km()                     → great-circle distance in km
  fallback_estimate()                → the 30 km/h estimate used on failure
  _fetch_osrm_route()                → one GET against /route/v1/driving
  TravelEstimator.route_distance_time() → public single-leg entry-point
  TravelEstimator.estimate_many()    → concurrent fan-out, results in input order

Usage
-----
  from travel_estimator import TravelEstimator

  osrm = TravelEstimator("http://localhost:5001")     # "" → offline mode
  leg = osrm.route_distance_time(103.82, 1.35, 103.85, 1.29)
  print(leg.distance_m, leg.duration_s, leg.source)
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Sequence

import numpy as np
import requests

from dispatch_config import ESTIMATOR_WORKERS, FALLBACK_SECONDS_PER_KM, OSRM_TIMEOUT_S

# ── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(level=logging.INFO, format="%(levelname)s | %(message)s")
log = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6_371.0


@dataclass(frozen=True)
class TravelEstimate:
    """One routed leg."""

    distance_m: float
    duration_s: float
    geometry: Any = None
    source: str = "osrm"          # "osrm" | "haversine"

    @property
    def reachable(self) -> bool:
        return math.isfinite(self.distance_m)

    @property
    def distance_km(self) -> float:
        return self.distance_m / 1000.0


# ── Internal helpers ──────────────────────────────────────────────────────────

def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two (lat, lng) points in kilometres."""
    phi1, lam1, phi2, lam2 = np.radians([lat1, lng1, lat2, lng2])
    dphi = phi2 - phi1
    dlam = lam2 - lam1
    a = np.sin(dphi / 2) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin(dlam / 2) ** 2
    return float(EARTH_RADIUS_KM * 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a)))


def fallback_estimate(
    from_lng: float, from_lat: float, to_lng: float, to_lat: float
) -> TravelEstimate:
    dist_km = haversine_km(from_lat, from_lng, to_lat, to_lng)
    return TravelEstimate(
        distance_m=dist_km * 1000.0,
        duration_s=dist_km * FALLBACK_SECONDS_PER_KM,
        geometry=None,
        source="haversine",
    )


def _fetch_osrm_route(
    base_url: str,
    from_lng: float,
    from_lat: float,
    to_lng: float,
    to_lat: float,
    timeout: float,
) -> dict[str, Any]:
    """
    Fetch the first route between two points from an OSRM server.
    Raises requests.RequestException on network failure and
    LookupError when the server answers without a route.
    """
    url = (
        f"{base_url.rstrip('/')}/route/v1/driving/"
        f"{from_lng},{from_lat};{to_lng},{to_lat}"
    )
    resp = requests.get(url, params={"overview": "full"}, timeout=timeout)
    resp.raise_for_status()
    routes = resp.json().get("routes") or []
    if not routes:
        raise LookupError("no route found")
    return routes[0]


# ── Public API ────────────────────────────────────────────────────────────────

class TravelEstimator:
    """
    Routing oracle client with great-circle fallback.

    Parameters
    ----------
    base_url : OSRM server root, e.g. ``http://localhost:5001``.
               Pass "" to skip the network entirely (offline mode).
    timeout  : Per-request timeout in seconds.
    workers  : Thread-pool size for ``estimate_many``.
    """

    def __init__(
        self,
        base_url: str = "",
        timeout: float = OSRM_TIMEOUT_S,
        workers: int = ESTIMATOR_WORKERS,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self.workers = max(1, workers)

    def route_distance_time(
        self, from_lng: float, from_lat: float, to_lng: float, to_lat: float
    ) -> TravelEstimate:
        """Distance (m), duration (s) and geometry of the leg. Never raises."""
        if not self.base_url:
            return fallback_estimate(from_lng, from_lat, to_lng, to_lat)

        try:
            route = _fetch_osrm_route(
                self.base_url, from_lng, from_lat, to_lng, to_lat, self.timeout
            )
            return TravelEstimate(
                distance_m=float(route["distance"]),
                duration_s=float(route["duration"]),
                geometry=route.get("geometry"),
            )
        except (
            requests.RequestException, LookupError, ValueError, TypeError, AttributeError
        ) as exc:
            log.warning(
                "  [OSRM] (%.5f, %.5f) → (%.5f, %.5f) failed: %s – using great-circle.",
                from_lat, from_lng, to_lat, to_lng, exc,
            )
            return fallback_estimate(from_lng, from_lat, to_lng, to_lat)

    def estimate_many(
        self,
        from_lng: float,
        from_lat: float,
        targets: Sequence[tuple[float, float]],
    ) -> list[TravelEstimate]:
        """
        Route from one origin to every ``(lat, lng)`` target.

        Legs are independent, so they are fetched concurrently; the returned
        list is aligned with ``targets`` regardless of completion order.
        """
        if len(targets) <= 1 or self.workers == 1:
            return [
                self.route_distance_time(from_lng, from_lat, lng, lat)
                for lat, lng in targets
            ]

        with ThreadPoolExecutor(max_workers=min(self.workers, len(targets))) as pool:
            return list(
                pool.map(
                    lambda target: self.route_distance_time(
                        from_lng, from_lat, target[1], target[0]
                    ),
                    targets,
                )
            )


# ── CLI smoke-test ────────────────────────────────────────────────────────────
if __name__ == "__main__":
    offline = TravelEstimator("")
    leg = offline.route_distance_time(103.8198, 1.3521, 103.8519, 1.2903)
    print(f"  offline  {leg.distance_m:9.1f} m  {leg.duration_s:7.1f} s  [{leg.source}]")

    live = TravelEstimator("http://localhost:5001", timeout=2)
    leg = live.route_distance_time(103.8198, 1.3521, 103.8519, 1.2903)
    print(f"  live     {leg.distance_m:9.1f} m  {leg.duration_s:7.1f} s  [{leg.source}]")
