# grid_discretizer.py
"""
Grid Discretizer
================
Maps continuous latitude/longitude into a fixed-resolution grid cell. The
cells are the state/action abstraction of the Q-learning dispatcher, so the
mapping must be a pure function of its inputs.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import NamedTuple

import numpy as np


class GridCell(NamedTuple):
    x: int
    y: int


@dataclass(frozen=True)
class GridSpec:
    """Bounding box split into ``size`` × ``size`` buckets."""

    lat_min: float = 1.2
    lat_max: float = 1.5
    lng_min: float = 103.6
    lng_max: float = 104.1
    size: int = 20

    def __post_init__(self) -> None:
        if self.size < 1:
            raise ValueError(f"grid size must be positive, got {self.size}")
        if self.lat_max <= self.lat_min or self.lng_max <= self.lng_min:
            raise ValueError("grid bounds must have max > min on both axes")

    def _bucket(self, value: float, lo: float, hi: float) -> int:
        raw = math.floor((value - lo) / (hi - lo) * self.size)
        return int(np.clip(raw, 0, self.size - 1))

    def cell_of(self, lat: float, lng: float) -> GridCell:
        """Clamp into the box and floor each axis into ``[0, size - 1]``."""
        return GridCell(
            self._bucket(lat, self.lat_min, self.lat_max),
            self._bucket(lng, self.lng_min, self.lng_max),
        )
