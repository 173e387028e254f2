# route_service.py
"""
Route Service – public entry-points
===================================
The three operations the HTTP/UI layer calls. Each returns a JSON-ready
dict; malformed input raises RequestValidationError before any dispatcher
work, and any other failure is reported as ComputationFailed with no
partial result.

  optimize_route()     → full shift with the Q-learning or greedy policy
  evaluate_dropoffs()  → rank driver-supplied drop-off candidates
  recommend_pickups()  → primary pickup from the Q-table plus alternates

Dispatchers are built lazily, once per service, on first use; the
Q-learning dispatcher is fully trained before it is published.

Usage
-----
  from route_service import build_service

  service = build_service("data/merged_df_new.csv", osrm_url="")
  route = service.optimize_route({"lat": 1.3521, "lng": 103.8198}, 8, 18, "greedy")
"""

from __future__ import annotations

import argparse
import logging
import math
import random
import threading
from pathlib import Path
from typing import Any, Mapping, Sequence

from demand_table import DemandTable, Point, load_demand_csv
from dispatch_config import (
    ALGORITHMS,
    ALTERNATE_MAX_DURATION_S,
    ALTERNATE_MIN_SEPARATION_DEG,
    ALTERNATE_POOL,
    BREAK_PENALTY_SCORE,
    BREAK_RETRY_ATTEMPTS,
    DEFAULT_BREAK_END,
    DEFAULT_BREAK_START,
    DEMAND_DATA_PATH,
    DISPATCH_SEED,
    MAX_ALTERNATES,
    MOVING_COST_PER_KM,
    OSRM_BASE_URL,
    TRAINING_EPISODES,
    UNREACHABLE_SCORE,
)
from dispatch_errors import ComputationFailed, RequestValidationError
from greedy_dispatcher import GreedyDispatcher
from rl_dispatcher import QLearningDispatcher, demand_factor
from time_ledger import arrival_hour, fare_for, format_clock, in_window
from travel_estimator import TravelEstimator

# ── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(level=logging.INFO, format="%(levelname)s | %(message)s")
log = logging.getLogger(__name__)


# ── Input validation ──────────────────────────────────────────────────────────

def _number(field: str, value: Any) -> float:
    if isinstance(value, bool):
        raise RequestValidationError(field, "must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise RequestValidationError(field, "must be a number") from None
    if not math.isfinite(number):
        raise RequestValidationError(field, "must be finite")
    return number


def parse_point(field: str, value: Any) -> Point:
    """Accept ``{"lat": .., "lng": ..}`` or a ``(lat, lng)`` pair."""
    if value is None:
        raise RequestValidationError(field, "is required")
    if isinstance(value, Mapping):
        if "lat" not in value or "lng" not in value:
            raise RequestValidationError(field, "needs 'lat' and 'lng'")
        lat, lng = value["lat"], value["lng"]
    elif isinstance(value, Sequence) and not isinstance(value, str) and len(value) == 2:
        lat, lng = value
    else:
        raise RequestValidationError(field, "must be {lat, lng}")
    lat, lng = _number(f"{field}.lat", lat), _number(f"{field}.lng", lng)
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise RequestValidationError(field, "coordinates out of range")
    return lat, lng


def parse_hour(field: str, value: Any, upper: int = 24) -> int:
    number = _number(field, value)
    if number != int(number) or not 0 <= number <= upper:
        raise RequestValidationError(field, f"must be a whole hour between 0 and {upper}")
    return int(number)


def parse_break(break_start: Any, break_end: Any) -> tuple[int, int]:
    start = parse_hour("breakStartTime", break_start)
    end = parse_hour("breakEndTime", break_end)
    if end < start:
        raise RequestValidationError("breakEndTime", "must not be before breakStartTime")
    return start, end


# ── Service ───────────────────────────────────────────────────────────────────

class RouteService:
    """
    Holds the demand table, the routing client and the lazily built
    dispatchers for one process.

    Parameters
    ----------
    table     : Immutable demand table shared by both policies.
    estimator : Routing oracle client.
    seed      : Seed for the dispatchers' random sources (None → unseeded).
    episodes  : Training episodes for the Q-learning dispatcher.
    """

    def __init__(
        self,
        table: DemandTable,
        estimator: TravelEstimator,
        seed: int | None = DISPATCH_SEED,
        episodes: int = TRAINING_EPISODES,
    ) -> None:
        self.table = table
        self.estimator = estimator
        self.seed = seed
        self.episodes = episodes
        self._rl: QLearningDispatcher | None = None
        self._greedy: GreedyDispatcher | None = None
        self._rl_lock = threading.Lock()
        self._greedy_lock = threading.Lock()

    @property
    def rl_dispatcher(self) -> QLearningDispatcher:
        with self._rl_lock:
            if self._rl is None:
                log.info("Building Q-learning dispatcher …")
                self._rl = QLearningDispatcher.create(
                    self.table, self.estimator,
                    episodes=self.episodes, rng=random.Random(self.seed),
                )
            return self._rl

    @property
    def greedy_dispatcher(self) -> GreedyDispatcher:
        with self._greedy_lock:
            if self._greedy is None:
                log.info("Building greedy dispatcher …")
                self._greedy = GreedyDispatcher(
                    self.table, self.estimator, rng=random.Random(self.seed)
                )
            return self._greedy

    # ── optimize_route ────────────────────────────────────────────────────────

    def optimize_route(
        self,
        start_location: Any,
        start_hour: Any,
        end_hour: Any,
        algorithm: str = "reinforcement",
        break_start: Any = DEFAULT_BREAK_START,
        break_end: Any = DEFAULT_BREAK_END,
    ) -> dict[str, Any]:
        lat, lng = parse_point("startLocation", start_location)
        start = parse_hour("startTime", start_hour)
        end = parse_hour("endTime", end_hour)
        b_start, b_end = parse_break(break_start, break_end)
        if algorithm not in ALGORITHMS:
            raise RequestValidationError("algorithm", f"must be one of {ALGORITHMS}")

        try:
            dispatcher = (
                self.greedy_dispatcher if algorithm == "greedy" else self.rl_dispatcher
            )
            log.info(
                "Using %s algorithm from %d to %d with break %d-%d",
                algorithm, start, end, b_start, b_end,
            )
            route = dispatcher.assemble_route(lat, lng, start, end, b_start, b_end)
            return route.as_dict()
        except Exception as exc:
            log.exception("Error generating route")
            raise ComputationFailed("Failed to generate route") from exc

    # ── evaluate_dropoffs ─────────────────────────────────────────────────────

    def evaluate_dropoffs(
        self,
        start_location: Any,
        candidates: Any,
        hour: Any,
        break_start: Any = DEFAULT_BREAK_START,
        break_end: Any = DEFAULT_BREAK_END,
    ) -> dict[str, Any]:
        """
        Score driver-supplied drop-offs with the Q-learning reward
        (demand factor minus moving cost). Arrivals inside the break are
        penalised; unreachable candidates get a small negative score.
        """
        s_lat, s_lng = parse_point("startLocation", start_location)
        hour = parse_hour("currentTime", hour, upper=23)
        b_start, b_end = parse_break(break_start, break_end)
        if not isinstance(candidates, Sequence) or isinstance(candidates, str):
            raise RequestValidationError("dropOffLocations", "must be a list")
        parsed = [
            (c.get("id", i) if isinstance(c, Mapping) else i,
             c.get("label") if isinstance(c, Mapping) else None,
             parse_point(f"dropOffLocations[{i}]", c))
            for i, c in enumerate(candidates)
        ]

        try:
            log.info(
                "Evaluating %d drop-off locations from (%.5f, %.5f) at hour %d",
                len(parsed), s_lat, s_lng, hour,
            )
            legs = self.estimator.estimate_many(s_lng, s_lat, [p for _, _, p in parsed])

            evaluated: list[dict[str, Any]] = []
            for (loc_id, label, (d_lat, d_lng)), leg in zip(parsed, legs):
                entry: dict[str, Any] = {
                    "id": loc_id,
                    "lat": d_lat,
                    "lng": d_lng,
                    "label": label or "Drop-off",
                }
                if not leg.reachable:
                    entry.update(distance=0.0, duration=0.0, revenue=0.0, prediction=0.0,
                                 score=UNREACHABLE_SCORE, isDuringBreak=False)
                    evaluated.append(entry)
                    continue

                gap = self.table.gap_at(hour, d_lat, d_lng)
                score = demand_factor(gap) - leg.distance_km * MOVING_COST_PER_KM
                during_break = in_window(arrival_hour(hour, leg.duration_s), b_start, b_end)
                entry.update(
                    distance=leg.distance_km,
                    duration=leg.duration_s,
                    revenue=fare_for(leg.distance_m),
                    prediction=gap if gap is not None else 0.0,
                    score=BREAK_PENALTY_SCORE if during_break else score,
                    isDuringBreak=during_break,
                )
                log.debug("Evaluated (%.5f, %.5f): score=%.2f break=%s",
                          d_lat, d_lng, entry["score"], during_break)
                evaluated.append(entry)

            evaluated.sort(key=lambda e: e["score"], reverse=True)
            recommended = evaluated[0]["id"] if evaluated and evaluated[0]["score"] > 0 else None
            return {"evaluatedLocations": evaluated, "recommendedLocationId": recommended}
        except Exception as exc:
            log.exception("Error evaluating drop-off locations")
            raise ComputationFailed("Failed to evaluate drop-off locations") from exc

    # ── recommend_pickups ─────────────────────────────────────────────────────

    def recommend_pickups(
        self,
        dropoff_location: Any,
        hour: Any,
        break_start: Any = DEFAULT_BREAK_START,
        break_end: Any = DEFAULT_BREAK_END,
    ) -> dict[str, Any]:
        """
        Primary pickup from the Q-learning dispatcher (re-drawn if its arrival
        would land in the break) plus up to three nearby high-demand alternates.
        """
        d_lat, d_lng = parse_point("dropOffLocation", dropoff_location)
        hour = parse_hour("currentTime", hour, upper=23)
        b_start, b_end = parse_break(break_start, break_end)

        if in_window(hour, b_start, b_end):
            return {
                "recommendedPickups": [],
                "primaryRecommendationId": None,
                "isBreakTime": True,
                "breakEndsAt": format_clock(b_end, 0),
            }

        try:
            dispatcher = self.rl_dispatcher
            p_lat, p_lng = dispatcher.recommend(d_lat, d_lng, hour)
            leg = self.estimator.route_distance_time(d_lng, d_lat, p_lng, p_lat)
            if not leg.reachable:
                raise RuntimeError("Unable to route to recommended pickup location")

            crosses_break = in_window(arrival_hour(hour, leg.duration_s), b_start, b_end)
            if crosses_break:
                for _ in range(BREAK_RETRY_ATTEMPTS):
                    a_lat, a_lng = dispatcher.recommend(d_lat, d_lng, hour)
                    alt = self.estimator.route_distance_time(d_lng, d_lat, a_lng, a_lat)
                    if alt.reachable and not in_window(
                        arrival_hour(hour, alt.duration_s), b_start, b_end
                    ):
                        p_lat, p_lng, leg = a_lat, a_lng, alt
                        break

            gap = self.table.gap_at(hour, p_lat, p_lng)
            pickups: list[dict[str, Any]] = [{
                "id": 1,
                "lat": p_lat,
                "lng": p_lng,
                "label": "Primary Pickup",
                "distance": leg.distance_km,
                "duration": leg.duration_s,
                "prediction": gap if gap is not None else 0.0,
                "score": 1.0,
                "wouldCrossBreakTime": crosses_break,
            }]
            log.info("Primary recommendation: (%.5f, %.5f), prediction=%s", p_lat, p_lng, gap)

            for i, alt in enumerate(
                self._alternate_pickups(d_lat, d_lng, (p_lat, p_lng), hour, b_start, b_end)
            ):
                pickups.append({"id": i + 2, "label": f"Alternative {i + 1}", **alt})

            return {
                "recommendedPickups": pickups,
                "primaryRecommendationId": 1,
                "isBreakTime": False,
            }
        except Exception as exc:
            log.exception("Error generating pickup recommendations")
            raise ComputationFailed("Failed to generate pickup recommendations") from exc

    def _alternate_pickups(
        self,
        d_lat: float,
        d_lng: float,
        primary: Point,
        hour: int,
        b_start: int,
        b_end: int,
    ) -> list[dict[str, Any]]:
        """Undersupplied cells a short drive away and clear of the primary pick."""
        candidates = [
            r for r in self.table.at_hour(hour)
            if r.gap > 0
            and math.hypot(r.latitude - primary[0], r.longitude - primary[1])
            > ALTERNATE_MIN_SEPARATION_DEG
        ]
        candidates.sort(key=lambda r: r.gap, reverse=True)
        candidates = candidates[:ALTERNATE_POOL]

        legs = self.estimator.estimate_many(d_lng, d_lat, [r.point for r in candidates])
        options: list[dict[str, Any]] = []
        for rec, leg in zip(candidates, legs):
            if not leg.reachable or leg.duration_s > ALTERNATE_MAX_DURATION_S:
                continue
            options.append({
                "lat": rec.latitude,
                "lng": rec.longitude,
                "distance": leg.distance_km,
                "duration": leg.duration_s,
                "prediction": rec.gap,
                "score": rec.gap - leg.distance_m / 10_000,
                "wouldCrossBreakTime": in_window(
                    arrival_hour(hour, leg.duration_s), b_start, b_end
                ),
            })
        options.sort(key=lambda o: o["score"], reverse=True)
        return options[:MAX_ALTERNATES]


def build_service(
    data_path: Path | str = DEMAND_DATA_PATH,
    osrm_url: str = OSRM_BASE_URL,
    seed: int | None = DISPATCH_SEED,
) -> RouteService:
    """Load the dataset once and wire it to a routing client."""
    table = load_demand_csv(data_path, seed=seed)
    return RouteService(table, TravelEstimator(osrm_url), seed=seed)


# ── CLI smoke-test ────────────────────────────────────────────────────────────
if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Plan one driver shift")
    parser.add_argument("--data", default=str(DEMAND_DATA_PATH), help="demand CSV")
    parser.add_argument("--osrm", default=OSRM_BASE_URL, help='OSRM root URL ("" = offline)')
    parser.add_argument("--lat", type=float, default=1.3521)
    parser.add_argument("--lng", type=float, default=103.8198)
    parser.add_argument("--start", type=int, default=8)
    parser.add_argument("--end", type=int, default=18)
    parser.add_argument("--break-start", type=int, default=DEFAULT_BREAK_START)
    parser.add_argument("--break-end", type=int, default=DEFAULT_BREAK_END)
    parser.add_argument("--algorithm", choices=ALGORITHMS, default="reinforcement")
    parser.add_argument("--seed", type=int, default=DISPATCH_SEED)
    args = parser.parse_args()

    service = build_service(args.data, args.osrm, args.seed)
    result = service.optimize_route(
        {"lat": args.lat, "lng": args.lng},
        args.start, args.end, args.algorithm, args.break_start, args.break_end,
    )

    print(f"\n── {args.algorithm} route ─────────────────────────────")
    for loc in result["locations"]:
        print(f"  {loc['time']:>8s}  trip {loc['tripId']:3d}  {loc['type']:7s}  "
              f"({loc['lat']:.5f}, {loc['lng']:.5f})  ${loc['revenue']:.2f}")
    print(f"\n  trips={result['tripCount']}  revenue=${result['totalRevenue']:.2f}  "
          f"driving={result['totalDrivingTime']} h  break={result['breakTime']}")
