# demand_table.py
"""
Spatiotemporal Demand Table
===========================
Immutable, pre-processed view of the demand/supply dataset. Each record is
one (hour, location) sample carrying the signed demand-supply gap
(negative → oversupply, a good place to drop a passenger; positive →
undersupply, a good place to look for the next one) and the list of
suggested drop-off points derived from that gap.

The table is built once at start-up and then only read, by both dispatchers.
"""

from __future__ import annotations

import json
import logging
import math
import random
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import pandas as pd

from dispatch_config import COORD_PRECISION, DROPOFF_JITTER_DEG, MAX_SUGGESTED_DROPOFFS

log = logging.getLogger(__name__)

Point = tuple[float, float]
CoordKey = tuple[int, int]

# Raw CSV header → DemandRecord field
_COLUMN_MAP: dict[str, str] = {
    "LATITUDE": "latitude",
    "LONGITUDE": "longitude",
    "predictions": "gap",
    "dayofweek": "day_of_week",
    "drop_grouped_points": "raw_points",
}
_REQUIRED = ("hour", "latitude", "longitude", "gap")
_OPTIONAL_NUMERIC = ("week", "day_of_week", "time_window", "demand", "supply")


def _round_half_up(value: float) -> int:
    return math.floor(value * 10**COORD_PRECISION + 0.5)


def coord_key(lat: float, lng: float) -> CoordKey:
    """Key used to match a coordinate against the dataset (2 decimal places)."""
    return _round_half_up(lat), _round_half_up(lng)


def suggest_dropoffs(lat: float, lng: float, gap: float, rng: random.Random) -> tuple[Point, ...]:
    """
    Drop-off points scattered around an oversupplied location.
    The more negative the gap, the more points (capped); none when gap ≥ 0.
    """
    if gap >= 0:
        return ()
    n = min(math.ceil(abs(gap)), MAX_SUGGESTED_DROPOFFS)
    return tuple(
        (
            lat + (rng.random() - 0.5) * DROPOFF_JITTER_DEG,
            lng + (rng.random() - 0.5) * DROPOFF_JITTER_DEG,
        )
        for _ in range(n)
    )


def parse_grouped_points(raw: Any) -> tuple[Point, ...]:
    """Decode a ``drop_grouped_points`` cell; the sentinel ``[0]`` means none."""
    if raw is None or (isinstance(raw, float) and math.isnan(raw)):
        return ()
    if isinstance(raw, str):
        raw = json.loads(raw or "[]")
    points = []
    for item in raw:
        if isinstance(item, (list, tuple)) and len(item) == 2:
            points.append((float(item[0]), float(item[1])))
    return tuple(points)


@dataclass(frozen=True)
class DemandRecord:
    hour: int
    latitude: float
    longitude: float
    gap: float
    suggested_dropoffs: tuple[Point, ...] = ()
    week: int | None = None
    day_of_week: int | None = None
    time_window: int | None = None
    demand: float | None = None
    supply: float | None = None

    @property
    def point(self) -> Point:
        return self.latitude, self.longitude

    @property
    def key(self) -> CoordKey:
        return coord_key(self.latitude, self.longitude)

    @property
    def has_dropoffs(self) -> bool:
        return len(self.suggested_dropoffs) > 0


@dataclass(frozen=True)
class DemandTable:
    """Read-only collection of DemandRecords with hour and coordinate indexes."""

    records: tuple[DemandRecord, ...]
    _by_hour: dict[int, tuple[DemandRecord, ...]] = field(init=False, repr=False, compare=False)
    _by_key: dict[tuple[int, CoordKey], DemandRecord] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        by_hour: dict[int, list[DemandRecord]] = defaultdict(list)
        by_key: dict[tuple[int, CoordKey], DemandRecord] = {}
        for rec in self.records:
            by_hour[rec.hour].append(rec)
            # first record wins, like a dataset scan would
            by_key.setdefault((rec.hour, rec.key), rec)
        object.__setattr__(self, "_by_hour", {h: tuple(rs) for h, rs in by_hour.items()})
        object.__setattr__(self, "_by_key", by_key)

    def __len__(self) -> int:
        return len(self.records)

    @property
    def hours(self) -> list[int]:
        return sorted(self._by_hour)

    @property
    def min_hour(self) -> int | None:
        return min(self._by_hour) if self._by_hour else None

    @property
    def max_hour(self) -> int | None:
        return max(self._by_hour) if self._by_hour else None

    def at_hour(self, hour: int) -> tuple[DemandRecord, ...]:
        return self._by_hour.get(hour, ())

    def find(self, hour: int, lat: float, lng: float) -> DemandRecord | None:
        """Record for ``hour`` whose coordinates round to the same key, if any."""
        return self._by_key.get((hour, coord_key(lat, lng)))

    def gap_at(self, hour: int, lat: float, lng: float) -> float | None:
        rec = self.find(hour, lat, lng)
        return rec.gap if rec is not None else None

    # ── Construction ──────────────────────────────────────────────────────────

    @classmethod
    def from_records(cls, records: Iterable[DemandRecord]) -> "DemandTable":
        return cls(tuple(records))

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        rng: random.Random | None = None,
        regenerate_points: bool = True,
    ) -> "DemandTable":
        """
        Build the table from the raw dataset frame.

        Parameters
        ----------
        df                : Frame with at least hour, LATITUDE, LONGITUDE, predictions.
        rng               : Source for the drop-off point jitter (seed it for tests).
        regenerate_points : Derive suggested drop-offs from the gap (default) instead
                            of trusting the stored ``drop_grouped_points`` column.
        """
        rng = rng or random.Random()
        frame = df.rename(columns=_COLUMN_MAP)
        missing = [c for c in _REQUIRED if c not in frame.columns]
        if missing:
            raise ValueError(f"demand dataset is missing columns: {missing}")

        frame = frame.dropna(subset=list(_REQUIRED))
        optional = [c for c in _OPTIONAL_NUMERIC if c in frame.columns]
        has_raw = "raw_points" in frame.columns

        records: list[DemandRecord] = []
        for row in frame.to_dict("records"):
            lat, lng, gap = float(row["latitude"]), float(row["longitude"]), float(row["gap"])
            if regenerate_points or not has_raw:
                points = suggest_dropoffs(lat, lng, gap, rng)
            else:
                points = parse_grouped_points(row["raw_points"])
            extras = {
                c: (None if pd.isna(row[c]) else row[c]) for c in optional
            }
            for c in ("week", "day_of_week", "time_window"):
                if extras.get(c) is not None:
                    extras[c] = int(extras[c])
            records.append(
                DemandRecord(
                    hour=int(row["hour"]),
                    latitude=lat,
                    longitude=lng,
                    gap=gap,
                    suggested_dropoffs=points,
                    **extras,
                )
            )

        table = cls(tuple(records))
        log.info(
            "Demand table built: %d records over %d hours (%d with drop-off suggestions)",
            len(table), len(table.hours), sum(r.has_dropoffs for r in records),
        )
        return table


def load_demand_csv(path: Path | str, seed: int | None = None) -> DemandTable:
    """Read the dataset CSV once and freeze it into a DemandTable."""
    path = Path(path)
    df = pd.read_csv(path)
    log.info("Loaded demand data from %s  (%d rows)", path, len(df))
    return DemandTable.from_frame(df, rng=random.Random(seed))
