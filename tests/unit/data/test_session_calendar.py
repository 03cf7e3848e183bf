import datetime as dt
import logging

import pytest

from tickbars.config.configs import SessionConfig, SessionRule
from tickbars.data.session import SessionCalendar, SessionWindow, parse_time_of_day, resolve_zone
from tests.fixtures.fixtures import MONDAY, UTC


def _calendar(*rules: tuple[str, str, str], tz: str = "UTC", holidays=()) -> SessionCalendar:
    cfg = SessionConfig(
        time_zone=tz,
        sessions=[SessionRule(day=d, start=s, end=e) for d, s, e in rules],
        holidays=list(holidays),
    )
    return SessionCalendar(cfg)


def test_no_windows_means_always_open():
    cal = _calendar()
    assert cal.is_open(MONDAY + dt.timedelta(days=5))
    assert cal.windows == ()


def test_regular_window_is_half_open():
    cal = _calendar(("Monday", "08:00", "16:30"))
    assert not cal.is_open(MONDAY + dt.timedelta(hours=7, minutes=59))
    assert cal.is_open(MONDAY + dt.timedelta(hours=8))
    assert cal.is_open(MONDAY + dt.timedelta(hours=16, minutes=29))
    assert not cal.is_open(MONDAY + dt.timedelta(hours=16, minutes=30))
    assert not cal.is_open(MONDAY + dt.timedelta(days=1, hours=9))


def test_end_of_day_token():
    cal = _calendar(("Monday", "00:00", "24:00"))
    assert cal.is_open(MONDAY + dt.timedelta(hours=23, minutes=59, seconds=59))


def test_equal_start_and_end_is_open_all_day():
    cal = _calendar(("Tue", "10:00", "10:00"))
    assert cal.is_open(MONDAY + dt.timedelta(days=1, hours=3))


def test_overnight_window_wraps_midnight_on_its_weekday():
    cal = _calendar(("Monday", "22:00", "02:00"))
    assert cal.is_open(MONDAY + dt.timedelta(hours=23))
    assert cal.is_open(MONDAY + dt.timedelta(hours=1))
    assert not cal.is_open(MONDAY + dt.timedelta(hours=12))


def test_holiday_is_closed():
    cal = _calendar(("Monday", "00:00", "24:00"), holidays=["2024-03-04"])
    assert not cal.is_open(MONDAY + dt.timedelta(hours=12))
    assert dt.date(2024, 3, 4) in cal.holidays


def test_local_zone_conversion():
    if resolve_zone("America/New_York") is UTC:
        pytest.skip("tz database unavailable")
    cal = _calendar(("Monday", "09:00", "17:00"), tz="America/New_York")
    # 2024-03-04 is EST (UTC-5): 13:59 UTC = 08:59 local, 14:00 UTC = 09:00 local
    assert not cal.is_open(MONDAY + dt.timedelta(hours=13, minutes=59))
    assert cal.is_open(MONDAY + dt.timedelta(hours=14))


def test_unknown_zone_falls_back_to_utc(caplog: pytest.LogCaptureFixture):
    with caplog.at_level(logging.WARNING):
        zone = resolve_zone("Mars/Olympus_Mons")
    assert zone is UTC
    assert "Unknown time zone" in caplog.text


def test_bad_rules_and_holidays_are_skipped():
    cal = _calendar(
        ("Funday", "00:00", "24:00"),
        ("Monday", "25:00", "26:00"),
        ("Monday", "09:00", "10:00"),
        holidays=["not-a-date", "2024-12-25"],
    )
    assert cal.windows == (
        SessionWindow(0, dt.timedelta(hours=9), dt.timedelta(hours=10)),
    )
    assert cal.holidays == frozenset({dt.date(2024, 12, 25)})


@pytest.mark.parametrize(
    "text,expected",
    [
        ("00:00", dt.timedelta(0)),
        ("09:30", dt.timedelta(hours=9, minutes=30)),
        ("23:59:30", dt.timedelta(hours=23, minutes=59, seconds=30)),
        ("24:00", dt.timedelta(days=1)),
    ],
)
def test_parse_time_of_day(text: str, expected: dt.timedelta):
    assert parse_time_of_day(text) == expected


@pytest.mark.parametrize("text", ["9", "24:01", "12:60", "ab:cd"])
def test_parse_time_of_day_rejects(text: str):
    with pytest.raises(ValueError):
        parse_time_of_day(text)
