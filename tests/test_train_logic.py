import datetime

import pytest

from train_proxy import (
    DecodeError,
    FareClasses,
    TimeOfDay,
    Train,
    decode_trains,
    filter_departing_soon,
    sort_trains,
)


NOW = datetime.datetime(2026, 10, 19, 8, 0, 0, tzinfo=datetime.timezone.utc)


def make_train(name, hours, minutes=0, seconds=0, price=100, seats=10, delay=0):
    return Train(
        name=name,
        number=name.upper(),
        departure=TimeOfDay(hours, minutes, seconds),
        seats=FareClasses(sleeper=seats, ac=0),
        price=FareClasses(sleeper=price, ac=0),
        delayed_by=delay,
    )


def names(trains):
    return [t.name for t in trains]


def test_window_boundary():
    trains = [
        make_train("exactly-30", 8, 30),
        make_train("30-and-1s", 8, 30, 1),
        make_train("past", 7, 0),
        make_train("far", 20, 0),
    ]
    assert names(filter_departing_soon(trains, NOW)) == ["30-and-1s", "far"]


def test_filter_ignores_delay():
    trains = [make_train("delayed-but-soon", 8, 10, delay=120)]
    assert filter_departing_soon(trains, NOW) == []


def test_filter_empty():
    assert filter_departing_soon([], NOW) == []


def test_cheaper_sleeper_first():
    trains = [
        make_train("pricey", 10, price=900, seats=100, delay=600),
        make_train("cheap", 10, price=100, seats=0),
    ]
    assert names(sort_trains(trains)) == ["cheap", "pricey"]


def test_more_seats_first_when_same_price():
    trains = [make_train("few", 10, seats=2), make_train("many", 10, seats=50)]
    assert names(sort_trains(trains)) == ["many", "few"]


def test_later_effective_departure_first():
    trains = [
        make_train("on-time-10:00", 10, 0, delay=0),
        make_train("delayed-to-10:30", 9, 30, delay=60),
    ]
    assert names(sort_trains(trains)) == ["delayed-to-10:30", "on-time-10:00"]


def test_sort_is_stable():
    trains = [
        make_train("a", 10, 0),
        make_train("b", 9, 0, delay=60),
        make_train("c", 10, 0),
    ]
    assert names(sort_trains(trains)) == ["a", "b", "c"]


def test_out_of_range_time_does_not_crash():
    trains = [make_train("odd", 25, 75, 90), make_train("normal", 12, 0)]
    kept = filter_departing_soon(trains, NOW)
    assert names(sort_trains(kept)) == ["odd", "normal"]
    assert trains[0].departure_offset() == 26 * 3600 + 16 * 60 + 30


def test_huge_time_values_do_not_crash():
    trains = [
        make_train("huge-hours", 10**9),
        make_train("huge-delay", 12, 0, delay=10**10),
        make_train("normal", 12, 0),
    ]
    kept = filter_departing_soon(trains, NOW)
    assert names(sort_trains(kept)) == ["huge-hours", "huge-delay", "normal"]


def test_decode_round_trip_wire_names():
    payload = {
        "trainName": "Chennai Exp",
        "trainNumber": "2344",
        "departureTime": {"Hours": 21, "Minutes": 35, "Seconds": 0},
        "seatsAvailable": {"sleeper": 3, "AC": 1},
        "price": {"sleeper": 2, "AC": 5},
        "delayedBy": 15,
    }
    [train] = decode_trains([payload])
    assert train.departure == TimeOfDay(21, 35, 0)
    assert train.seats == FareClasses(sleeper=3, ac=1)
    assert train.to_json() == payload


def test_decode_missing_fields_default_to_zero():
    [train] = decode_trains([{"trainName": "bare"}])
    assert train == Train(name="bare")


def test_decode_null_fields_default_to_zero():
    [train] = decode_trains(
        [
            {
                "trainName": "x",
                "trainNumber": None,
                "delayedBy": None,
                "departureTime": {"Hours": 10, "Minutes": None, "Seconds": 0},
                "price": None,
            }
        ]
    )
    assert train == Train(name="x", departure=TimeOfDay(10, 0, 0))


def test_decode_null_element_is_zero_train():
    assert decode_trains([None, {"trainName": "y"}]) == [Train(), Train(name="y")]


def test_decode_null_is_empty():
    assert decode_trains(None) == []


@pytest.mark.parametrize(
    "data",
    [
        {"trains": []},
        "trains",
        [1],
        [{"delayedBy": "5"}],
        [{"delayedBy": 1.5}],
        [{"price": {"sleeper": True}}],
        [{"departureTime": [8, 0, 0]}],
        [{"trainNumber": 12}],
    ],
)
def test_decode_rejects_bad_shapes(data):
    with pytest.raises(DecodeError):
        decode_trains(data)
