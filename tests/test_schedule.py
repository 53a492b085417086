from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from automation.schedule import (
    Interval,
    local_clock,
    parse_hhmm,
    parse_intervals,
    resolve_active_interval,
)

ROME = ZoneInfo("Europe/Rome")


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_parse_hhmm():
    assert parse_hhmm("00:00") == 0
    assert parse_hhmm("07:45") == 465
    assert parse_hhmm("24:00") == 1440
    with pytest.raises(ValueError):
        parse_hhmm("24:30")
    with pytest.raises(ValueError):
        parse_hhmm("7.45")


def test_local_clock_uses_configured_zone():
    # 23:30 UTC on Sunday is already Monday in Rome
    assert local_clock(utc(2026, 1, 18, 23, 30), ROME) == ("Lunedì", "00:30", 30)
    # summer time, UTC+2
    assert local_clock(utc(2026, 7, 20, 6, 15), ROME) == ("Lunedì", "08:15", 495)


def test_naive_now_is_treated_as_utc():
    assert local_clock(datetime(2026, 1, 19, 18, 30), ROME)[1] == "19:30"


def test_interval_end_is_exclusive():
    intervals = parse_intervals([{"start": "18:00", "end": "19:30", "power": 3, "fan": 2}])

    assert resolve_active_interval(intervals, utc(2026, 1, 19, 17, 0), ROME).label == "18:00-19:30"
    assert resolve_active_interval(intervals, utc(2026, 1, 19, 18, 29), ROME) is not None
    assert resolve_active_interval(intervals, utc(2026, 1, 19, 18, 30), ROME) is None


def test_no_interval_contains_now():
    intervals = parse_intervals([
        {"start": "06:00", "end": "08:00", "power": 3, "fan": 3},
        {"start": "21:00", "end": "23:00", "power": 2, "fan": 2},
    ])

    assert resolve_active_interval(intervals, utc(2026, 1, 19, 12, 0), ROME) is None
    assert resolve_active_interval([], utc(2026, 1, 19, 12, 0), ROME) is None


def test_overlap_resolves_to_first_match(caplog):
    intervals = parse_intervals([
        {"start": "18:00", "end": "22:00", "power": 4, "fan": 3},
        {"start": "19:00", "end": "20:00", "power": 2, "fan": 1},
    ])

    active = resolve_active_interval(intervals, utc(2026, 1, 19, 18, 30), ROME)

    assert active == Interval("18:00", "22:00", 4, 3)
    assert "Overlapping" in caplog.text


def test_malformed_intervals_are_skipped():
    intervals = parse_intervals([
        {"start": "18:00", "end": "22:00", "power": 4, "fan": 3},
        {"start": "22:00", "end": "21:00", "power": 4, "fan": 3},
        {"start": "10:00", "end": "11:00", "power": 9, "fan": 3},
        {"start": "10:00", "power": 2, "fan": 3},
        "garbage",
    ])

    assert [i.label for i in intervals] == ["18:00-22:00"]


def test_index_keyed_mapping_keeps_list_order():
    raw = {
        "1": {"start": "12:00", "end": "13:00", "power": 2, "fan": 2},
        "0": {"start": "06:00", "end": "07:00", "power": 3, "fan": 3},
    }

    assert [i.start for i in parse_intervals(raw)] == ["06:00", "12:00"]
    assert parse_intervals(None) == []


def test_interval_round_trips_its_dict():
    data = {"start": "06:30", "end": "08:30", "power": 3, "fan": 4}
    assert Interval.from_dict(data).to_dict() == data
