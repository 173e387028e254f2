# greedy_dispatcher.py
"""
Greedy Dispatcher
=================
Myopic alternative to the Q-learning policy. Every step takes the drop-off
with the highest immediate fare among the data-derived suggestions, then a
nearby pickup cell with unmet demand that no earlier step claimed in the
same hour.

Randomised steps (seed ``rng``): the pick among the 20 nearest positive-gap
drop-offs when the location has no suggestions, and the pick among the 7
nearest pickup candidates.
"""

from __future__ import annotations

import logging
import random
import threading
from collections import defaultdict

from demand_table import DemandRecord, DemandTable, Point, coord_key
from dispatch_config import (
    DEFAULT_BREAK_END,
    DEFAULT_BREAK_START,
    DISPATCH_SEED,
    GREEDY_DROPOFF_POOL,
    GREEDY_PICKUP_POOL,
)
from time_ledger import Route, RouteBuilder, ShiftClock, Stop, fare_for
from travel_estimator import TravelEstimate, TravelEstimator

log = logging.getLogger(__name__)


def _nearest(
    pairs: list[tuple[DemandRecord, TravelEstimate]], limit: int
) -> list[tuple[DemandRecord, TravelEstimate]]:
    return sorted(pairs, key=lambda pair: pair[1].distance_m)[:limit]


class GreedyDispatcher:
    def __init__(
        self,
        table: DemandTable,
        estimator: TravelEstimator,
        rng: random.Random | None = None,
    ) -> None:
        self.table = table
        self.estimator = estimator
        self.rng = rng or random.Random(DISPATCH_SEED)
        # hour → pickups already handed out in that hour; never pruned
        self.chosen_pickups_by_hour: dict[int, set[Point]] = defaultdict(set)
        self._lock = threading.Lock()

    def claimed(self, hour: int) -> frozenset[Point]:
        return frozenset(self.chosen_pickups_by_hour.get(hour, ()))

    def _suggestions_near(self, lat: float, lng: float, hour: int) -> tuple[Point, ...]:
        """
        Suggested drop-offs for this spot. A record for the current hour
        settles it, even an empty one; only a spot missing from this hour
        looks at the first later hour with a record, then the first earlier one.
        """
        record = self.table.find(hour, lat, lng)
        if record is not None:
            return record.suggested_dropoffs

        lo, hi = self.table.min_hour, self.table.max_hour
        if lo is None or hi is None:
            return ()

        for h in range(hour + 1, hi + 1):
            record = self.table.find(h, lat, lng)
            if record is not None:
                if record.has_dropoffs:
                    return record.suggested_dropoffs
                break

        for h in range(hour - 1, lo - 1, -1):
            record = self.table.find(h, lat, lng)
            if record is not None:
                return record.suggested_dropoffs

        return ()

    def best_dropoff(self, lat: float, lng: float, hour: int) -> Stop:
        points = self._suggestions_near(lat, lng, hour)

        if not points:
            candidates = [r for r in self.table.at_hour(hour) if r.gap > 0]
            legs = self.estimator.estimate_many(lng, lat, [r.point for r in candidates])
            reachable = [(r, leg) for r, leg in zip(candidates, legs) if leg.reachable]
            closest = _nearest(reachable, GREEDY_DROPOFF_POOL)
            if not closest:
                return Stop.stay(lat, lng)
            record, leg = self.rng.choice(closest)
            return Stop(
                record.latitude, record.longitude,
                leg.distance_m, leg.duration_s, fare_for(leg.distance_m), leg.geometry,
            )

        legs = self.estimator.estimate_many(lng, lat, list(points))
        options = [
            Stop(p_lat, p_lng, leg.distance_m, leg.duration_s, fare_for(leg.distance_m), leg.geometry)
            for (p_lat, p_lng), leg in zip(points, legs)
            if leg.reachable
        ]
        if not options:
            return Stop.stay(lat, lng)
        return max(options, key=lambda stop: stop.revenue)

    def best_pickup(self, drop_lat: float, drop_lng: float, hour: int) -> Stop | None:
        """
        Random pick among the nearest unclaimed pickups of the hour, preferring
        undersupplied cells. The pick is claimed for the rest of the hour.
        """
        claimed = self.chosen_pickups_by_hour[hour]
        here = coord_key(drop_lat, drop_lng)
        candidates = [
            r for r in self.table.at_hour(hour)
            if r.key != here and r.point not in claimed
        ]
        if not candidates:
            return None

        legs = self.estimator.estimate_many(drop_lng, drop_lat, [r.point for r in candidates])
        reachable = [(r, leg) for r, leg in zip(candidates, legs) if leg.reachable]
        undersupplied = [(r, leg) for r, leg in reachable if r.gap > 0]

        closest = _nearest(undersupplied or reachable, GREEDY_PICKUP_POOL)
        if not closest:
            return None

        record, leg = self.rng.choice(closest)
        claimed.add(record.point)
        return Stop(
            record.latitude, record.longitude,
            leg.distance_m, leg.duration_s, 0.0, leg.geometry,
        )

    def assemble_route(
        self,
        start_lat: float,
        start_lng: float,
        start_hour: int,
        end_hour: int,
        break_start: int = DEFAULT_BREAK_START,
        break_end: int = DEFAULT_BREAK_END,
    ) -> Route:
        """
        Same skeleton as the Q-learning route, but a missing or unreachable
        pickup costs an hour of waiting instead of ending the shift.
        """
        with self._lock:
            clock = ShiftClock(start_hour, 0, break_start, break_end)
            route = RouteBuilder.start(start_lat, start_lng, clock)
            lat, lng = start_lat, start_lng

            while clock.hour < end_hour:
                if clock.in_break():
                    clock.skip_break()
                    continue

                # after waiting out an hour the car is already empty
                if route.on_board:
                    drop = self.best_dropoff(lat, lng, clock.hour)
                    if drop.moved:
                        clock.advance(drop.duration_s)
                        route.add_dropoff(drop.lat, drop.lng, drop.revenue)
                        lat, lng = drop.lat, drop.lng

                if clock.hour >= end_hour:
                    break

                pickup = self.best_pickup(lat, lng, clock.hour)
                if pickup is None:
                    log.debug("No pickup available at %s – waiting an hour.", clock.stamp())
                    clock.advance_hour()
                    continue

                leg = self.estimator.route_distance_time(lng, lat, pickup.lng, pickup.lat)
                if not leg.reachable:
                    log.debug("Pickup unreachable at %s – waiting an hour.", clock.stamp())
                    clock.advance_hour()
                    continue

                clock.advance(leg.duration_s)
                route.add_pickup(pickup.lat, pickup.lng)
                lat, lng = pickup.lat, pickup.lng

            result = route.build()

        log.info(
            "Greedy route │ %d events │ %d trips │ revenue=%.2f │ %.1f h",
            len(result.locations), result.trip_count,
            result.total_revenue, result.total_driving_time,
        )
        return result
