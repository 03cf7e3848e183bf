import datetime as dt
from decimal import Decimal

import pytest

from tickbars.core.clock import parse_timeframe
from tickbars.data.resampler import bucket_start, merge_bars, resample
from tickbars.types.data import Bar
from tests.fixtures.fixtures import MONDAY, make_bar

PLUS2 = dt.timezone(dt.timedelta(hours=2))


def _m1_series(start: dt.datetime, count: int) -> list[Bar]:
    bars = []
    for i in range(count):
        base = Decimal(100 + (i * 7) % 13)
        bars.append(
            Bar(
                time=start + dt.timedelta(minutes=i),
                open=base,
                high=base + 2,
                low=base - 1,
                close=base + 1,
                volume=i + 1,
                spread=i % 5,
                real_volume=2 * i,
            )
        )
    return bars


def test_m5_buckets_from_top_of_hour():
    bars = _m1_series(MONDAY + dt.timedelta(hours=1, minutes=3), 10)  # 01:03 .. 01:12
    out = resample(bars, "m5")

    assert [b.time.strftime("%H:%M") for b in out] == ["01:00", "01:05", "01:10"]
    first = out[0]
    assert first.open == bars[0].open
    assert first.close == bars[1].close
    assert first.high == max(b.high for b in bars[:2])
    assert first.low == min(b.low for b in bars[:2])
    assert first.volume == bars[0].volume + bars[1].volume
    assert first.spread == max(bars[0].spread, bars[1].spread)
    assert first.real_volume == bars[0].real_volume + bars[1].real_volume


def test_m1_target_returns_input_unchanged():
    bars = _m1_series(MONDAY, 5)
    out = resample(bars, "m1")
    assert out == bars
    assert out is not bars


def test_unsorted_input_is_sorted_first():
    bars = _m1_series(MONDAY, 30)
    shuffled = bars[15:] + bars[:15]
    assert resample(shuffled, "m15") == resample(bars, "m15")


def test_resampling_is_associative():
    bars = _m1_series(MONDAY, 24 * 60)
    direct = resample(bars, "h1")
    via_m15 = resample(resample(bars, "m15"), "h1")
    assert direct == via_m15


def test_h4_aligns_from_local_midnight():
    start = dt.datetime(2024, 3, 4, 1, 0, tzinfo=PLUS2)
    out = resample(_m1_series(start, 9 * 60), "h4")
    assert [b.time.hour for b in out] == [0, 4, 8]
    assert all(b.time.utcoffset() == dt.timedelta(hours=2) for b in out)


def test_day_bucket_uses_display_offset_midnight():
    start = dt.datetime(2024, 3, 4, 22, 0, tzinfo=PLUS2)
    out = resample(_m1_series(start, 4 * 60), "d1")
    assert [b.time for b in out] == [
        dt.datetime(2024, 3, 4, tzinfo=PLUS2),
        dt.datetime(2024, 3, 5, tzinfo=PLUS2),
    ]


def test_week_starts_on_monday():
    sunday = MONDAY - dt.timedelta(days=1)
    bars = [make_bar(sunday + dt.timedelta(hours=23), "1", "1", "1", "1")] + [
        make_bar(MONDAY + dt.timedelta(days=d), "1", "2", "1", "2") for d in range(3)
    ]
    out = resample(bars, "w1")
    assert [b.time for b in out] == [MONDAY - dt.timedelta(days=7), MONDAY]
    assert out[1].volume == 3


def test_month_bucket():
    bars = [
        make_bar(dt.datetime(2024, 2, 29, 12, tzinfo=dt.timezone.utc), "1", "1", "1", "1"),
        make_bar(dt.datetime(2024, 3, 15, 12, tzinfo=dt.timezone.utc), "1", "3", "1", "2"),
        make_bar(dt.datetime(2024, 3, 31, 12, tzinfo=dt.timezone.utc), "2", "2", "0", "1"),
    ]
    out = resample(bars, parse_timeframe("mn1"))
    assert [b.time.month for b in out] == [2, 3]
    assert out[1].high == Decimal("3")
    assert out[1].low == Decimal("0")
    assert out[1].close == Decimal("1")


@pytest.mark.parametrize(
    "token,expected",
    [("m15", "10:30"), ("m30", "10:30"), ("h1", "10:00")],
)
def test_bucket_start_minutes(token: str, expected: str):
    t = MONDAY + dt.timedelta(hours=10, minutes=37, seconds=12)
    assert bucket_start(t, parse_timeframe(token)).strftime("%H:%M") == expected


def test_merge_keeps_open_and_time():
    a = make_bar(MONDAY, "1.0", "1.5", "0.9", "1.2", 2)
    b = make_bar(MONDAY + dt.timedelta(minutes=1), "1.2", "1.6", "1.1", "1.3", 3)
    m = merge_bars(a, b)
    assert (m.time, m.open, m.high, m.low, m.close, m.volume) == (
        MONDAY,
        Decimal("1.0"),
        Decimal("1.6"),
        Decimal("0.9"),
        Decimal("1.3"),
        5,
    )


def test_empty_input():
    assert resample([], "h1") == []
