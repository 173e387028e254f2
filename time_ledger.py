# time_ledger.py
"""
Route Assembler / Time Ledger
=============================
Control state shared by both dispatchers while they assemble a shift:

  ShiftClock    → (hour, minute) cursor that only moves forward and never
                  lands inside the break window
  RouteBuilder  → timestamped pickup/drop-off events, trip numbering and
                  revenue bookkeeping
  Route         → the finished summary handed back to the caller

Trip numbering: the shift's starting position is the pickup of trip 0. A
drop-off closes the current trip; the next pickup opens ``trip_id + 1``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Literal

from dispatch_config import BASE_FARE, FARE_PER_KM

EventType = Literal["pickup", "dropoff"]

_CLOCK_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*(AM|PM)\s*$", re.IGNORECASE)


def fare_for(distance_m: float) -> float:
    """Trip fare: flag-fall plus a per-kilometre rate."""
    return BASE_FARE + (distance_m / 1000.0) * FARE_PER_KM


def format_clock(hour: int, minute: int) -> str:
    """24h (hour, minute) → ``"h:mm AM"`` display string."""
    hour %= 24
    period = "PM" if hour >= 12 else "AM"
    return f"{hour % 12 or 12}:{minute:02d} {period}"


def parse_clock(stamp: str) -> int:
    """Inverse of ``format_clock``: minutes since midnight."""
    match = _CLOCK_RE.match(stamp)
    if match is None:
        raise ValueError(f"not a clock stamp: {stamp!r}")
    hour, minute, period = int(match[1]), int(match[2]), match[3].upper()
    if period == "AM":
        hour = 0 if hour == 12 else hour
    else:
        hour = hour if hour == 12 else hour + 12
    return hour * 60 + minute


def arrival_hour(hour: int, duration_s: float) -> int:
    """Hour in which a leg started at ``hour:00`` arrives (no break snapping)."""
    return (hour * 60 + math.ceil(duration_s / 60)) // 60


def in_window(hour: int, start: int, end: int) -> bool:
    return start <= hour < end


@dataclass
class ShiftClock:
    hour: int
    minute: int = 0
    break_start: int = 12
    break_end: int = 13

    def in_break(self) -> bool:
        return in_window(self.hour, self.break_start, self.break_end)

    def skip_break(self) -> None:
        self.hour = self.break_end
        self.minute = 0

    def advance(self, duration_s: float) -> None:
        """
        Move forward by a travel duration, rounded up to whole minutes.
        The break check runs after every hour carry, so a long leg that
        crosses the break lands on ``break_end:00`` rather than past it.
        """
        self.minute += math.ceil(duration_s / 60)
        while self.minute >= 60:
            self.hour += 1
            self.minute -= 60
            if self.in_break():
                self.skip_break()

    def advance_hour(self) -> None:
        self.hour += 1

    def stamp(self) -> str:
        return format_clock(self.hour, self.minute)

    @property
    def minutes(self) -> int:
        return self.hour * 60 + self.minute


@dataclass(frozen=True)
class Stop:
    """A chosen destination together with the leg that reaches it."""

    lat: float
    lng: float
    distance_m: float = 0.0
    duration_s: float = 0.0
    revenue: float = 0.0
    geometry: Any = None

    @classmethod
    def stay(cls, lat: float, lng: float) -> "Stop":
        return cls(lat, lng)

    @property
    def moved(self) -> bool:
        return self.distance_m > 0


@dataclass(frozen=True)
class Location:
    lat: float
    lng: float
    type: EventType
    time: str
    trip_id: int
    revenue: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "type": self.type,
            "time": self.time,
            "tripId": self.trip_id,
            "revenue": self.revenue,
        }


@dataclass(frozen=True)
class Route:
    locations: tuple[Location, ...]
    total_revenue: float
    total_driving_time: float
    break_time: str
    trip_count: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "locations": [loc.as_dict() for loc in self.locations],
            "totalRevenue": self.total_revenue,
            "totalDrivingTime": self.total_driving_time,
            "breakTime": self.break_time,
            "tripCount": self.trip_count,
        }


def driving_hours(locations: list[Location] | tuple[Location, ...]) -> float:
    """
    Hours between the first and last event, one decimal.
    A negative span means the shift ran past midnight.
    """
    if len(locations) <= 1:
        return 0.0
    span = parse_clock(locations[-1].time) - parse_clock(locations[0].time)
    if span < 0:
        span += 24 * 60
    return math.floor(span / 6 + 0.5) / 10


@dataclass
class RouteBuilder:
    """
    Accumulates the events of one shift.

    The first drop-off carries trip id 0 and so pairs with the starting
    position. Numbering it 1 would leave the seed pickup unpaired and the
    first drop-off without any pickup of its own id; this numbering keeps
    every drop-off matched to exactly one earlier pickup instead.
    """

    clock: ShiftClock
    locations: list[Location] = field(default_factory=list)
    trip_id: int = 0
    total_revenue: float = 0.0

    @classmethod
    def start(cls, lat: float, lng: float, clock: ShiftClock) -> "RouteBuilder":
        builder = cls(clock=clock)
        builder.locations.append(Location(lat, lng, "pickup", clock.stamp(), 0, 0.0))
        return builder

    @property
    def on_board(self) -> bool:
        """A trip is open: the last event was a pickup."""
        return self.locations[-1].type == "pickup"

    def add_dropoff(self, lat: float, lng: float, revenue: float) -> Location:
        event = Location(lat, lng, "dropoff", self.clock.stamp(), self.trip_id, revenue)
        self.locations.append(event)
        self.total_revenue += revenue
        return event

    def add_pickup(self, lat: float, lng: float) -> Location:
        self.trip_id += 1
        event = Location(lat, lng, "pickup", self.clock.stamp(), self.trip_id, 0.0)
        self.locations.append(event)
        return event

    def build(self) -> Route:
        clock = self.clock
        return Route(
            locations=tuple(self.locations),
            total_revenue=self.total_revenue,
            total_driving_time=driving_hours(self.locations),
            break_time=(
                f"{format_clock(clock.break_start, 0)} - {format_clock(clock.break_end, 0)}"
            ),
            trip_count=sum(1 for loc in self.locations if loc.type == "dropoff"),
        )
