"""
Time helpers shared by the fetch layer, the aggregator and the resampler.

- parse_timeframe() turns tokens like 'm5', 'h1', 'd1', '5m' into a TimeframeDescriptor
- parse_utc_offset() turns '+02:00' style strings into a fixed timedelta
- enumerate_hours() / enumerate_days() walk the calendar units of a window
- Clock / Sleeper are the injectable time sources used by the retry protocol, so retry logic
  can be tested without real waits
"""

from __future__ import annotations

import datetime as dt
import re
import threading
from typing import Final, Iterator, Optional, Protocol

from tickbars.errors.errors import ConfigurationError, OperationCancelled
from tickbars.types.aliases import UnixMillis as Millis
from tickbars.types.data import TimeframeDescriptor, TimeframeKind

# -------- Timeframe parsing ---------------------------------------------------

_UNIT_MINUTES: Final[dict[str, int]] = {
    "m": 1,
    "h": 60,
}

_FIXED_KINDS: Final[dict[str, tuple[int, TimeframeKind]]] = {
    "d1": (1440, TimeframeKind.DAY),
    "w1": (10080, TimeframeKind.WEEK),
    "mn1": (43200, TimeframeKind.MONTH),
}

_PREFIX_RE = re.compile(r"^(mn|m|h|d|w)(\d+)$")
_SUFFIX_RE = re.compile(r"^(\d+)(mo|m|h|d|w)$")


def parse_timeframe(tf: str) -> TimeframeDescriptor:
    """
    Parse a timeframe token into a TimeframeDescriptor.

    Accepts MetaTrader style tokens (m1, m5, m15, m30, h1, h4, d1, w1, mn1) and the
    suffix style used elsewhere in the codebase (1m, 5m, 1h, 4h, 1d, 1w, 1mo).
    Fixed-minute timeframes must divide an hour (N <= 60) or a day (N > 60).
    Raises ConfigurationError on anything else.
    """
    raw = (tf or "").strip().lower()
    if not raw:
        raise ConfigurationError("timeframe must not be empty", field="timeframe")

    m = _PREFIX_RE.match(raw)
    if m:
        unit, qty = m.group(1), int(m.group(2))
    else:
        m = _SUFFIX_RE.match(raw)
        if not m:
            raise ConfigurationError(f"Invalid timeframe: {tf!r}", field="timeframe", value=tf)
        qty, unit = int(m.group(1)), m.group(2)
        unit = "mn" if unit == "mo" else unit

    if qty <= 0:
        raise ConfigurationError("timeframe quantity must be positive", field="timeframe", value=tf)

    if unit in ("d", "w", "mn"):
        token = f"{unit}{qty}"
        if token not in _FIXED_KINDS:
            raise ConfigurationError(
                f"Unsupported calendar timeframe: {tf!r}", field="timeframe", value=tf
            )
        minutes, kind = _FIXED_KINDS[token]
        return TimeframeDescriptor(token=token, minutes=minutes, kind=kind)

    minutes = qty * _UNIT_MINUTES[unit]
    if minutes <= 60:
        if 60 % minutes != 0:
            raise ConfigurationError(
                "minute timeframes must divide an hour", field="timeframe", value=tf
            )
    elif 1440 % minutes != 0:
        raise ConfigurationError("hour timeframes must divide a day", field="timeframe", value=tf)

    token = f"h{minutes // 60}" if minutes % 60 == 0 else f"m{minutes}"
    return TimeframeDescriptor(token=token, minutes=minutes, kind=TimeframeKind.MINUTES)


# -------- Offsets & calendar units --------------------------------------------

_EPOCH: Final[dt.datetime] = dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc)

_OFFSET_RE = re.compile(r"^(?:utc)?\s*([+-])?(\d{1,2})(?::?(\d{2}))?$")


def parse_utc_offset(value: str | None, fallback: dt.timedelta = dt.timedelta(0)) -> dt.timedelta:
    """
    '+02:00', '-0530', '3', 'UTC+2' -> timedelta. Empty input returns `fallback`.
    Offsets must lie strictly within +-24h.
    """
    if value is None or not value.strip():
        return fallback
    text = value.strip().lower()
    if text in ("z", "utc"):
        return dt.timedelta(0)
    m = _OFFSET_RE.match(text)
    if not m:
        raise ConfigurationError(f"Invalid UTC offset: {value!r}", field="offset", value=value)
    sign = -1 if m.group(1) == "-" else 1
    hours = int(m.group(2))
    minutes = int(m.group(3) or 0)
    if hours >= 24 or minutes >= 60:
        raise ConfigurationError(f"UTC offset out of range: {value!r}", field="offset", value=value)
    return sign * dt.timedelta(hours=hours, minutes=minutes)


def ensure_utc(d: dt.datetime) -> dt.datetime:
    """Naive datetimes are read as UTC; aware ones are converted."""
    if d.tzinfo is None:
        return d.replace(tzinfo=dt.timezone.utc)
    return d.astimezone(dt.timezone.utc)


def to_millis(d: dt.datetime) -> Millis:
    d = ensure_utc(d)
    return (d - _EPOCH) // dt.timedelta(milliseconds=1)


def from_millis(ms: Millis) -> dt.datetime:
    return _EPOCH + dt.timedelta(milliseconds=ms)


def enumerate_hours(start: dt.datetime, end: dt.datetime) -> Iterator[dt.datetime]:
    """UTC hour starts from floor(start) up to and including end."""
    start, end = ensure_utc(start), ensure_utc(end)
    current = start.replace(minute=0, second=0, microsecond=0)
    while current <= end:
        yield current
        current += dt.timedelta(hours=1)


def enumerate_days(start: dt.datetime, end: dt.datetime) -> Iterator[dt.datetime]:
    """UTC midnights from the day of start through the day of end (inclusive)."""
    start, end = ensure_utc(start), ensure_utc(end)
    current = start.replace(hour=0, minute=0, second=0, microsecond=0)
    last = end.replace(hour=0, minute=0, second=0, microsecond=0)
    while current <= last:
        yield current
        current += dt.timedelta(days=1)


def hours_in_window(
    day_start: dt.datetime, window_start: dt.datetime, window_end: dt.datetime
) -> int:
    """Number of UTC hour units of [window_start, window_end] that fall inside the given day."""
    day_start = ensure_utc(day_start)
    day_end = day_start + dt.timedelta(days=1) - dt.timedelta(microseconds=1)
    lo = max(day_start, ensure_utc(window_start))
    hi = min(day_end, ensure_utc(window_end))
    if hi < lo:
        return 0
    return sum(1 for _ in enumerate_hours(lo, hi))


# -------- Interfaces ------------------------------------------------------------


class Clock(Protocol):
    def now(self) -> dt.datetime:
        """Return current UTC time (datetime, tz-aware)."""
        ...


class Sleeper(Protocol):
    def sleep(self, seconds: float, cancel: Optional[threading.Event] = None) -> None:
        """
        Block for `seconds`. Must raise OperationCancelled promptly when `cancel` is set.
        """
        ...


class SystemClock:
    """Clock adapter that returns the current UTC time."""

    def now(self) -> dt.datetime:
        return dt.datetime.now(dt.timezone.utc)


class EventSleeper:
    """
    Real sleeper. Waits on the cancel event instead of time.sleep so a cancellation
    interrupts the backoff immediately.
    """

    def sleep(self, seconds: float, cancel: Optional[threading.Event] = None) -> None:
        if seconds <= 0:
            if cancel is not None and cancel.is_set():
                raise OperationCancelled("cancelled before backoff")
            return
        event = cancel if cancel is not None else threading.Event()
        if event.wait(seconds):
            raise OperationCancelled("cancelled during backoff")
