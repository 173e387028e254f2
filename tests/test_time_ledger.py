import pytest

from time_ledger import (
    Location,
    RouteBuilder,
    ShiftClock,
    arrival_hour,
    driving_hours,
    fare_for,
    format_clock,
    parse_clock,
)


@pytest.mark.parametrize(
    "hour, minute, text",
    [(0, 0, "12:00 AM"), (6, 5, "6:05 AM"), (12, 0, "12:00 PM"), (13, 0, "1:00 PM"), (23, 59, "11:59 PM"), (24, 0, "12:00 AM")],
)
def test_format_and_parse_clock(hour, minute, text):
    assert format_clock(hour, minute) == text
    assert parse_clock(text) == (hour % 24) * 60 + minute


def test_parse_clock_rejects_garbage():
    with pytest.raises(ValueError):
        parse_clock("noon")


def test_fare():
    assert fare_for(2000) == pytest.approx(5.9)
    assert fare_for(0) == pytest.approx(4.5)


def test_advance_rounds_up_to_whole_minutes():
    clock = ShiftClock(8, 0)
    clock.advance(61)
    assert (clock.hour, clock.minute) == (8, 2)
    clock.advance(0)
    assert (clock.hour, clock.minute) == (8, 2)


def test_arrival_inside_break_snaps_to_break_end():
    clock = ShiftClock(11, 0, break_start=12, break_end=13)
    clock.advance(90 * 60)
    assert clock.stamp() == "1:00 PM"


def test_multi_hour_leg_lands_on_break_end():
    clock = ShiftClock(10, 30, break_start=12, break_end=14)
    clock.advance(4 * 3600)
    assert (clock.hour, clock.minute) == (14, 0)


def test_leg_that_clears_break_is_not_snapped():
    clock = ShiftClock(11, 0, break_start=12, break_end=13)
    clock.advance(30 * 60)
    assert clock.stamp() == "11:30 AM"
    clock = ShiftClock(13, 10, break_start=12, break_end=13)
    clock.advance(70 * 60)
    assert clock.stamp() == "2:20 PM"


def test_skip_break_and_advance_hour():
    clock = ShiftClock(12, 20, break_start=12, break_end=13)
    assert clock.in_break()
    clock.skip_break()
    assert (clock.hour, clock.minute) == (13, 0)
    assert not clock.in_break()
    clock.advance_hour()
    assert (clock.hour, clock.minute) == (14, 0)


def test_arrival_hour():
    assert arrival_hour(11, 59 * 60) == 11
    assert arrival_hour(11, 60 * 60) == 12
    assert arrival_hour(11, 3600.5) == 12


def _loc(time):
    return Location(1.3, 103.8, "pickup", time, 0)


def test_driving_hours():
    assert driving_hours([]) == 0.0
    assert driving_hours([_loc("8:00 AM")]) == 0.0
    assert driving_hours([_loc("8:00 AM"), _loc("5:30 PM")]) == 9.5
    assert driving_hours([_loc("11:50 AM"), _loc("12:10 PM")]) == pytest.approx(0.3)
    assert driving_hours([_loc("12:05 AM"), _loc("1:05 AM")]) == 1.0


def test_driving_hours_wraps_past_midnight():
    assert driving_hours([_loc("10:00 PM"), _loc("1:00 AM")]) == 3.0


def test_route_builder_numbers_trips():
    clock = ShiftClock(8)
    builder = RouteBuilder.start(1.35, 103.82, clock)
    assert builder.on_board

    builder.add_dropoff(1.30, 103.85, 6.0)
    assert not builder.on_board
    clock.advance(600)
    builder.add_pickup(1.33, 103.90)
    builder.add_dropoff(1.29, 103.78, 7.5)

    route = builder.build()
    assert [(loc.type, loc.trip_id) for loc in route.locations] == [
        ("pickup", 0), ("dropoff", 0), ("pickup", 1), ("dropoff", 1),
    ]
    assert route.total_revenue == pytest.approx(13.5)
    assert route.trip_count == 2
    assert route.break_time == "12:00 PM - 1:00 PM"
    assert route.total_driving_time == pytest.approx(0.2)


def test_route_as_dict_shape():
    route = RouteBuilder.start(1.35, 103.82, ShiftClock(6)).build()
    data = route.as_dict()
    assert data == {
        "locations": [
            {"lat": 1.35, "lng": 103.82, "type": "pickup", "time": "6:00 AM", "tripId": 0, "revenue": 0.0}
        ],
        "totalRevenue": 0.0,
        "totalDrivingTime": 0.0,
        "breakTime": "12:00 PM - 1:00 PM",
        "tripCount": 0,
    }
