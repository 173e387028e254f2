# dispatch_config.py
"""
Tunable parameters for the shift dispatcher.

Everything the two dispatchers and the route service need to agree on lives
here: fare model, learning parameters, candidate pool sizes, the default
grid and the break window. Deployment-specific values (routing server,
dataset path, seed) can be overridden through environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path

from grid_discretizer import GridSpec

# ── Environment ───────────────────────────────────────────────────────────────
# Empty OSRM_BASE_URL → offline mode, every estimate is great-circle.
OSRM_BASE_URL: str = os.getenv("OSRM_BASE_URL", "http://localhost:5001")
OSRM_TIMEOUT_S: float = float(os.getenv("OSRM_TIMEOUT_S", "5"))
ESTIMATOR_WORKERS: int = int(os.getenv("ESTIMATOR_WORKERS", "8"))
DEMAND_DATA_PATH = Path(os.getenv("DEMAND_DATA_PATH", "data/merged_df_new.csv"))
DISPATCH_SEED: int | None = (
    int(os.environ["DISPATCH_SEED"]) if os.getenv("DISPATCH_SEED") else None
)

# ── Geography ─────────────────────────────────────────────────────────────────
GRID = GridSpec(lat_min=1.2, lat_max=1.5, lng_min=103.6, lng_max=104.1, size=20)

# Coordinates are matched against the dataset after rounding to this many
# decimal places (≈1.1 km at the equator).
COORD_PRECISION: int = 2

# ── Fare model ────────────────────────────────────────────────────────────────
BASE_FARE: float = 4.5
FARE_PER_KM: float = 0.70
FALLBACK_SECONDS_PER_KM: float = 120.0   # 30 km/h

# ── Suggested drop-off generation ─────────────────────────────────────────────
MAX_SUGGESTED_DROPOFFS: int = 5
DROPOFF_JITTER_DEG: float = 0.01

# ── Q-learning ────────────────────────────────────────────────────────────────
TRAINING_EPISODES: int = 50
STEPS_PER_EPISODE: int = 10
LEARNING_RATE: float = 0.1
DISCOUNT_FACTOR: float = 0.9
TRAIN_EXPLORATION: float = 0.5
RECOMMEND_EXPLORATION: float = 0.1
DEFAULT_Q: float = 0.1
UNMAPPED_REWARD: float = -10.0
MOVING_COST_PER_KM: float = 0.3
DEMAND_WEIGHT: float = 0.5

# ── Greedy candidate pools ────────────────────────────────────────────────────
GREEDY_DROPOFF_POOL: int = 20
GREEDY_PICKUP_POOL: int = 7

# ── Shift defaults ────────────────────────────────────────────────────────────
DEFAULT_BREAK_START: int = 12
DEFAULT_BREAK_END: int = 13

# ── Pickup recommendation endpoint ────────────────────────────────────────────
BREAK_RETRY_ATTEMPTS: int = 5
ALTERNATE_POOL: int = 10
MAX_ALTERNATES: int = 3
ALTERNATE_MAX_DURATION_S: float = 900.0
ALTERNATE_MIN_SEPARATION_DEG: float = 0.005   # ~500 m
BREAK_PENALTY_SCORE: float = -10.0
UNREACHABLE_SCORE: float = -1.0

ALGORITHMS: tuple[str, ...] = ("reinforcement", "greedy")
