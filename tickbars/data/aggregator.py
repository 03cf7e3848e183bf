from __future__ import annotations

import datetime as dt
import enum
import math
import struct
import threading
from dataclasses import dataclass, field
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Optional, Sequence

import polars as pl

from tickbars.core.clock import ensure_utc, from_millis, to_millis
from tickbars.data.session import SessionCalendar
from tickbars.types.aliases import MinuteKey
from tickbars.types.data import Bar, Tick

_MINUTE_MS = 60_000

# (epoch ms, scaled bid, scaled ask, bid volume float32 bits, ask volume float32 bits)
TickFingerprint = tuple[int, int, int, int, int]


class BarSource(enum.Enum):
    NONE = "none"
    TICK = "tick"
    FALLBACK = "fallback"


def _f32_bits(value: float) -> int:
    return struct.unpack(">I", struct.pack(">f", value))[0]


def _to_int(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_HALF_EVEN))


@dataclass(slots=True)
class MinuteAccumulator:
    """Mutable OHLC state of one display-offset minute."""

    open: Optional[Decimal] = None
    high: Optional[Decimal] = None
    low: Optional[Decimal] = None
    close: Optional[Decimal] = None
    volume: int = 0
    real_volume: int = 0
    spread: int = 0
    source: BarSource = BarSource.NONE
    fingerprints: set[TickFingerprint] = field(default_factory=set)

    @property
    def has_value(self) -> bool:
        return self.open is not None

    def fold_price(self, price: Decimal) -> None:
        if self.open is None:
            self.open = self.high = self.low = self.close = price
            return
        assert self.high is not None and self.low is not None
        self.high = max(self.high, price)
        self.low = min(self.low, price)
        self.close = price

    def fold_bar(self, bar: Bar) -> None:
        if self.open is None:
            self.open, self.high, self.low, self.close = bar.open, bar.high, bar.low, bar.close
        else:
            assert self.high is not None and self.low is not None
            self.high = max(self.high, bar.high)
            self.low = min(self.low, bar.low)
            self.close = bar.close
        self.volume += bar.volume
        self.real_volume += bar.real_volume
        self.spread = max(self.spread, bar.spread)


class BarAggregator:
    """
    Folds ticks and minute bars into one-minute buckets in display-offset time.

    Minutes are keyed by `(utc_ms + offset_ms) // 60000`. Every mutation and read holds one
    internal lock, so producers on any number of threads see a single ordering of:

    - tick dominance: a minute that received ticks never takes fallback bar data while
      `skip_fallback_if_ticked` is set, and a fallback-only minute is reset by its first tick
    - deduplication: identical ticks (same ms, prices and raw volume bits) count once
    - the per-day fallback claim used by the tick pipeline

    Ticks and bars outside `[start, end]`, on local weekends (when `filter_weekends`), or
    outside the session calendar are rejected.
    """

    def __init__(
        self,
        digits: int,
        utc_offset: dt.timedelta,
        start: dt.datetime,
        end: dt.datetime,
        *,
        filter_weekends: bool = True,
        dedupe_ticks: bool = True,
        skip_fallback_if_ticked: bool = True,
        session_calendar: Optional[SessionCalendar] = None,
    ) -> None:
        self._digits = digits
        self._scale = Decimal(10) ** digits
        self._quantum = Decimal(1).scaleb(-digits)
        self._offset = utc_offset
        self._offset_ms = utc_offset // dt.timedelta(milliseconds=1)
        self._tz = dt.timezone(utc_offset)
        self._start = ensure_utc(start)
        self._end = ensure_utc(end)
        self._filter_weekends = filter_weekends
        self._dedupe = dedupe_ticks
        self._skip_fallback_if_ticked = skip_fallback_if_ticked
        self._calendar = session_calendar

        self._lock = threading.Lock()
        self._minutes: dict[MinuteKey, MinuteAccumulator] = {}
        self._ticked: set[MinuteKey] = set()
        self._fallback_only: set[MinuteKey] = set()
        self._fallback_days: set[dt.date] = set()
        self._duplicate_ticks_dropped = 0
        self._fallback_bars_skipped = 0

    # --- Properties ---

    @property
    def digits(self) -> int:
        return self._digits

    @property
    def utc_offset(self) -> dt.timedelta:
        return self._offset

    @property
    def duplicate_ticks_dropped(self) -> int:
        with self._lock:
            return self._duplicate_ticks_dropped

    @property
    def fallback_bars_skipped(self) -> int:
        with self._lock:
            return self._fallback_bars_skipped

    def __len__(self) -> int:
        with self._lock:
            return len(self._minutes)

    # --- Producers ---

    def add_tick(self, tick: Tick) -> bool:
        """
        Fold one tick. Returns False when filtered out or dropped as a duplicate.
        Raises ValueError for a non-finite volume, before any state changes.
        """
        when = ensure_utc(tick.time)
        if not self._accepts(when):
            return False
        total_volume = tick.bid_volume + tick.ask_volume
        if not math.isfinite(total_volume):
            raise ValueError(f"non-finite tick volume at {when.isoformat()}")
        real_volume = int(round(total_volume))
        spread = _to_int((tick.ask - tick.bid) * self._scale)
        ms = to_millis(when)
        key = self._minute_key(ms)

        with self._lock:
            acc = self._minutes.get(key)
            if self._skip_fallback_if_ticked and key in self._fallback_only:
                # ticks replace whatever fallback data the minute held
                self._fallback_only.discard(key)
                acc = None
            if acc is None:
                acc = MinuteAccumulator()
                self._minutes[key] = acc

            if self._dedupe:
                fp: TickFingerprint = (
                    ms,
                    _to_int(tick.bid * self._scale),
                    _to_int(tick.ask * self._scale),
                    _f32_bits(tick.bid_volume),
                    _f32_bits(tick.ask_volume),
                )
                if fp in acc.fingerprints:
                    self._duplicate_ticks_dropped += 1
                    return False
                acc.fingerprints.add(fp)

            self._ticked.add(key)
            self._fallback_only.discard(key)
            acc.source = BarSource.TICK
            acc.fold_price(tick.bid)
            acc.volume += 1
            acc.real_volume += real_volume
            acc.spread = spread
        return True

    def add_bar(self, bar: Bar) -> bool:
        return self.try_add_fallback_bar(bar, only_if_missing=False)

    def try_add_fallback_bar(self, bar: Bar, only_if_missing: bool = False) -> bool:
        """
        Fold a minute bar into its bucket.

        Rejected (False) when filtered out, when `only_if_missing` and the minute already has
        any data, or when the minute is tick-sourced and `skip_fallback_if_ticked` is set
        (counted in `fallback_bars_skipped`).
        """
        when = ensure_utc(bar.time)
        if not self._accepts(when):
            return False
        key = self._minute_key(to_millis(when))

        with self._lock:
            acc = self._minutes.get(key)
            if only_if_missing and acc is not None:
                return False
            if self._skip_fallback_if_ticked and key in self._ticked:
                self._fallback_bars_skipped += 1
                return False
            if acc is None:
                acc = MinuteAccumulator()
                self._minutes[key] = acc
            acc.fold_bar(bar)
            if key not in self._ticked:
                acc.source = BarSource.FALLBACK
                self._fallback_only.add(key)
        return True

    def claim_fallback_day(self, day: dt.date | dt.datetime) -> bool:
        """True exactly once per UTC day."""
        if isinstance(day, dt.datetime):
            day = ensure_utc(day).date()
        with self._lock:
            if day in self._fallback_days:
                return False
            self._fallback_days.add(day)
            return True

    # --- Readout ---

    def get_bars(self) -> list[Bar]:
        """Finalized bars inside [start, end], rounded to `digits`, ascending by time."""
        with self._lock:
            items = [(k, acc) for k, acc in self._minutes.items() if acc.has_value]
            bars = [self._build(k, acc) for k, acc in items]
        bars = [b for b in bars if self._start <= b.time <= self._end]
        bars.sort(key=lambda b: b.time)
        return bars

    def get_source(self, time: dt.datetime) -> BarSource:
        key = self._minute_key(to_millis(ensure_utc(time)))
        with self._lock:
            acc = self._minutes.get(key)
            return acc.source if acc is not None else BarSource.NONE

    def to_frame(self) -> pl.DataFrame:
        return bars_to_frame(self.get_bars())

    # --- Internals ---

    def _minute_key(self, utc_ms: int) -> MinuteKey:
        return (utc_ms + self._offset_ms) // _MINUTE_MS

    def _accepts(self, when: dt.datetime) -> bool:
        if when < self._start or when > self._end:
            return False
        if self._filter_weekends and when.astimezone(self._tz).weekday() >= 5:
            return False
        if self._calendar is not None and not self._calendar.is_open(when):
            return False
        return True

    def _round(self, value: Optional[Decimal]) -> Decimal:
        assert value is not None
        return value.quantize(self._quantum, rounding=ROUND_HALF_EVEN)

    def _build(self, key: MinuteKey, acc: MinuteAccumulator) -> Bar:
        bucket = from_millis(key * _MINUTE_MS - self._offset_ms).astimezone(self._tz)
        return Bar(
            time=bucket,
            open=self._round(acc.open),
            high=self._round(acc.high),
            low=self._round(acc.low),
            close=self._round(acc.close),
            volume=acc.volume,
            spread=acc.spread,
            real_volume=acc.real_volume,
        )


def bars_to_frame(bars: Sequence[Bar]) -> pl.DataFrame:
    """One row per bar; times in UTC, prices as Float64."""
    return pl.DataFrame(
        {
            "time": [ensure_utc(b.time) for b in bars],
            "open": [float(b.open) for b in bars],
            "high": [float(b.high) for b in bars],
            "low": [float(b.low) for b in bars],
            "close": [float(b.close) for b in bars],
            "volume": [b.volume for b in bars],
            "spread": [b.spread for b in bars],
            "real_volume": [b.real_volume for b in bars],
        },
        schema={
            "time": pl.Datetime("us", "UTC"),
            "open": pl.Float64,
            "high": pl.Float64,
            "low": pl.Float64,
            "close": pl.Float64,
            "volume": pl.Int64,
            "spread": pl.Int32,
            "real_volume": pl.Int64,
        },
    )
