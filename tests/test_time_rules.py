from datetime import date, datetime, time, timezone

import pytest
import pytz

from krib.services.time_rules import (
    as_utc,
    combine_date_time,
    format_12h,
    format_hhmm,
    parse_hhmm,
    resolve_timezone,
    time_to_minutes,
    today_in_timezone,
    utc_to_local,
)


@pytest.mark.parametrize("value,expected", [
    ("08:00", time(8, 0)),
    ("23:59", time(23, 59)),
    (" 7:05 ", time(7, 5)),
    ("24:00", None),
    ("12:60", None),
    ("noon", None),
    ("", None),
    (None, None),
])
def test_parse_hhmm(value, expected):
    assert parse_hhmm(value) == expected


def test_minutes_round_trip_helpers():
    assert format_hhmm(510) == "08:30"
    assert time_to_minutes(time(16, 40)) == 1000


@pytest.mark.parametrize("value,expected", [
    ("00:00", "12:00 AM"),
    ("12:00", "12:00 PM"),
    ("16:30", "4:30 PM"),
    ("bad", "bad"),
])
def test_format_12h(value, expected):
    assert format_12h(value) == expected


def test_combine_follows_daylight_saving():
    winter = combine_date_time(date(2025, 1, 15), time(8, 0), "America/New_York")
    summer = combine_date_time(date(2025, 6, 15), time(8, 0), "America/New_York")
    assert winter == datetime(2025, 1, 15, 13, 0, tzinfo=timezone.utc)
    assert summer == datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


def test_unknown_timezone_falls_back_to_default():
    assert resolve_timezone("Mars/Olympus") == pytz.timezone("America/New_York")


def test_today_is_local():
    late_evening = datetime(2025, 6, 2, 2, 0, tzinfo=timezone.utc)
    assert today_in_timezone("America/New_York", late_evening) == date(2025, 6, 1)
    assert today_in_timezone("Europe/Berlin", late_evening) == date(2025, 6, 2)


def test_naive_values_are_utc():
    naive = datetime(2025, 6, 2, 12, 0)
    assert as_utc(naive) == datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc)
    assert utc_to_local(naive, "America/New_York").hour == 8
    assert as_utc(None) is None
