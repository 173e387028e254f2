# rl_dispatcher.py
"""
Q-Learning Dispatcher
=====================
Tabular Q-learning over (grid cell, hour) states. Actions are destination
grid cells taken from the demand table; each action remembers the concrete
coordinates of the record it was discovered from.

Lifecycle
---------
  dispatcher = QLearningDispatcher(table, estimator, rng=random.Random(7))
  dispatcher.train(50)                  # blocking warm-up, once per instance
  dispatcher.recommend(lat, lng, hour)  # read-only after training
  dispatcher.assemble_route(...)        # full shift

``QLearningDispatcher.create(...)`` constructs and trains in one call.

Randomised steps (seed ``rng`` for reproducibility): the training start hour
and location, ε-greedy action choice during training (ε = 0.5) and during
recommendation (ε = 0.1), and the last-resort random pick of ``recommend``.
"""

from __future__ import annotations

import logging
import math
import random
import threading
from typing import NamedTuple

from demand_table import DemandTable, Point
from dispatch_config import (
    DEFAULT_BREAK_END,
    DEFAULT_BREAK_START,
    DEFAULT_Q,
    DEMAND_WEIGHT,
    DISCOUNT_FACTOR,
    DISPATCH_SEED,
    GRID,
    LEARNING_RATE,
    MOVING_COST_PER_KM,
    RECOMMEND_EXPLORATION,
    STEPS_PER_EPISODE,
    TRAIN_EXPLORATION,
    TRAINING_EPISODES,
    UNMAPPED_REWARD,
)
from dispatch_errors import DispatcherNotReady
from grid_discretizer import GridSpec
from time_ledger import Route, RouteBuilder, ShiftClock, Stop, fare_for
from travel_estimator import TravelEstimator

log = logging.getLogger(__name__)


class State(NamedTuple):
    x: int
    y: int
    hour: int


class Action(NamedTuple):
    x: int
    y: int


def demand_factor(gap: float | None) -> float:
    """Reward multiplier for arriving at a location with the given demand gap."""
    if gap is None:
        return 1.0
    if gap > 0:
        return 2.0 + min(abs(gap), 3.0)
    return max(0.5, 1.0 - min(gap, 0.5))


class QLearningDispatcher:
    def __init__(
        self,
        table: DemandTable,
        estimator: TravelEstimator,
        grid: GridSpec = GRID,
        rng: random.Random | None = None,
    ) -> None:
        self.table = table
        self.estimator = estimator
        self.grid = grid
        self.rng = rng or random.Random(DISPATCH_SEED)

        self.q_table: dict[State, dict[Action, float]] = {}
        self.location_mapping: dict[Action, Point] = {}
        self.trained = False
        self._lock = threading.Lock()

    @classmethod
    def create(
        cls,
        table: DemandTable,
        estimator: TravelEstimator,
        episodes: int = TRAINING_EPISODES,
        **kwargs,
    ) -> "QLearningDispatcher":
        dispatcher = cls(table, estimator, **kwargs)
        dispatcher.train(episodes)
        return dispatcher

    # ── State / action space ──────────────────────────────────────────────────

    def state_of(self, lat: float, lng: float, hour: int) -> State:
        cell = self.grid.cell_of(lat, lng)
        return State(cell.x, cell.y, hour)

    def possible_actions(self, hour: int) -> list[Action]:
        """
        Destination cells for ``hour``: records with drop-off suggestions, or
        every record of the hour when none has any. Registers each action's
        coordinates in ``location_mapping``.
        """
        records = self.table.at_hour(hour)
        pool = [r for r in records if r.has_dropoffs] or list(records)

        actions: list[Action] = []
        seen: set[Action] = set()
        for rec in pool:
            cell = self.grid.cell_of(rec.latitude, rec.longitude)
            action = Action(cell.x, cell.y)
            self.location_mapping[action] = rec.point
            if action not in seen:
                seen.add(action)
                actions.append(action)
        return actions

    def q_value(self, state: State, action: Action) -> float:
        return self.q_table.get(state, {}).get(action, DEFAULT_Q)

    def max_q(self, state: State) -> float:
        actions = self.possible_actions(state.hour)
        if not actions:
            return 0.0
        return max(self.q_value(state, a) for a in actions)

    # ── Training ──────────────────────────────────────────────────────────────

    def reward(self, state: State, action: Action, distance_m: float) -> float:
        here = self.location_mapping.get(Action(state.x, state.y))
        there = self.location_mapping.get(action)
        if here is None or there is None:
            return UNMAPPED_REWARD

        moving_cost = distance_m / 1000.0 * MOVING_COST_PER_KM
        gap = self.table.gap_at(state.hour, there[0], there[1])
        return demand_factor(gap) - moving_cost

    def _choose_training_action(self, state: State, actions: list[Action]) -> Action:
        if self.rng.random() < TRAIN_EXPLORATION:
            return self.rng.choice(actions)
        return max(actions, key=lambda a: self.q_value(state, a))

    def _run_episode(self) -> int:
        hour = self.rng.choice(self.table.hours)
        start = self.rng.choice(self.table.at_hour(hour))
        lat, lng = start.point
        updates = 0

        for _ in range(STEPS_PER_EPISODE):
            state = self.state_of(lat, lng, hour)
            actions = self.possible_actions(hour)
            if not actions:
                break

            action = self._choose_training_action(state, actions)
            next_lat, next_lng = self.location_mapping.get(action, (lat, lng))

            leg = self.estimator.route_distance_time(lng, lat, next_lng, next_lat)
            if not leg.reachable:
                continue

            reward = self.reward(state, action, leg.distance_m)
            next_hour = math.floor(hour + leg.duration_s / 3600) % 24
            max_next = self.max_q(self.state_of(next_lat, next_lng, next_hour))

            current = self.q_value(state, action)
            self.q_table.setdefault(state, {})[action] = current + LEARNING_RATE * (
                reward + DISCOUNT_FACTOR * max_next - current
            )
            updates += 1
            lat, lng, hour = next_lat, next_lng, next_hour

        return updates

    def train(self, episodes: int = TRAINING_EPISODES) -> None:
        """Run ``episodes`` simulated episodes. Must finish before ``recommend``."""
        with self._lock:
            log.info("Starting RL training with %d episodes", episodes)
            updates = 0
            if self.table.hours:
                for _ in range(episodes):
                    updates += self._run_episode()
            else:
                log.warning("Demand table is empty – nothing to train on.")
            self.trained = True
            log.info(
                "RL training completed │ updates=%d │ states=%d │ mapped cells=%d",
                updates, len(self.q_table), len(self.location_mapping),
            )

    # ── Decision time ─────────────────────────────────────────────────────────

    def _require_trained(self) -> None:
        if not self.trained:
            raise DispatcherNotReady("Q-learning dispatcher has not been trained yet")

    def recommend(self, lat: float, lng: float, hour: int) -> Point:
        """Next pickup coordinates from (lat, lng) at ``hour``; stays put if nothing fits."""
        self._require_trained()
        with self._lock:
            return self._recommend(lat, lng, hour)

    def _recommend(self, lat: float, lng: float, hour: int) -> Point:
        # caller holds self._lock
        state = self.state_of(lat, lng, hour)
        actions = self.possible_actions(hour)
        if not actions:
            return lat, lng

        q_values = {a: self.q_value(state, a) for a in actions}
        if self.rng.random() < RECOMMEND_EXPLORATION:
            action = self.rng.choice(actions)
        elif all(v <= 0 for v in q_values.values()):
            action = self._demand_weighted_choice(state, actions)
        else:
            action = max(actions, key=q_values.__getitem__)

        return self.location_mapping.get(action, (lat, lng))

    def _demand_weighted_choice(self, state: State, actions: list[Action]) -> Action:
        """Every learned value is non-positive: lean on oversupply in the data instead."""
        learned = self.q_table.get(state, {})
        scored: list[tuple[Action, float]] = []
        for action in actions:
            loc = self.location_mapping.get(action)
            if loc is None:
                continue
            gap = self.table.gap_at(state.hour, loc[0], loc[1])
            bonus = max(0.0, -gap) if gap is not None else 0.0
            scored.append((action, learned.get(action, 0.0) + DEMAND_WEIGHT * bonus))

        if not scored:
            return self.rng.choice(actions)
        return max(scored, key=lambda item: item[1])[0]

    def best_dropoff(self, lat: float, lng: float, hour: int) -> Stop:
        """
        Best of the suggested drop-off points for the record under (lat, lng),
        scored by fare weighted with how oversupplied the point is.
        """
        record = self.table.find(hour, lat, lng)
        if record is None or not record.has_dropoffs:
            return Stop.stay(lat, lng)

        points = list(record.suggested_dropoffs)
        legs = self.estimator.estimate_many(lng, lat, points)

        best: Stop | None = None
        best_score = -math.inf
        for (p_lat, p_lng), leg in zip(points, legs):
            if not leg.reachable:
                continue
            revenue = fare_for(leg.distance_m)
            gap = self.table.gap_at(hour, p_lat, p_lng)
            oversupply = -gap if gap is not None and gap < 0 else 0.0
            score = revenue * (1 + max(0.0, oversupply))
            if score > best_score:
                best_score = score
                best = Stop(p_lat, p_lng, leg.distance_m, leg.duration_s, revenue, leg.geometry)

        return best or Stop.stay(lat, lng)

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
        Alternate drop-off selection and pickup recommendation until the shift
        ends. An unreachable pickup ends the shift early; the partial route is
        still returned.
        """
        self._require_trained()
        with self._lock:
            clock = ShiftClock(start_hour, 0, break_start, break_end)
            route = RouteBuilder.start(start_lat, start_lng, clock)
            lat, lng = start_lat, start_lng

            while clock.hour < end_hour:
                if clock.in_break():
                    clock.skip_break()
                    continue
                started_at = clock.minutes

                drop = self.best_dropoff(lat, lng, clock.hour)
                clock.advance(drop.duration_s)
                if drop.moved:
                    route.add_dropoff(drop.lat, drop.lng, drop.revenue)

                if clock.hour >= end_hour:
                    break

                next_lat, next_lng = self._recommend(drop.lat, drop.lng, clock.hour)
                leg = self.estimator.route_distance_time(drop.lng, drop.lat, next_lng, next_lat)
                if not leg.reachable:
                    log.info("Pickup at (%.5f, %.5f) unreachable – ending shift early.",
                             next_lat, next_lng)
                    break

                clock.advance(leg.duration_s)
                route.add_pickup(next_lat, next_lng)
                lat, lng = next_lat, next_lng

                # Standing still at the same minute would never end the shift.
                if clock.minutes == started_at:
                    clock.advance_hour()

            result = route.build()

        log.info(
            "RL route │ %d events │ %d trips │ revenue=%.2f │ %.1f h",
            len(result.locations), result.trip_count,
            result.total_revenue, result.total_driving_time,
        )
        return result
