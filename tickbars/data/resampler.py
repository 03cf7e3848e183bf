from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, replace
from typing import Iterator, Optional, Sequence

from tickbars.core.clock import parse_timeframe
from tickbars.types.data import Bar, TimeframeDescriptor, TimeframeKind


def bucket_start(t: dt.datetime, tf: TimeframeDescriptor) -> dt.datetime:
    """
    Start of the bucket containing `t`, computed in t's own (display-offset) wall time.

    - minutes, N <= 60: multiples of N from the top of the hour
    - minutes, N > 60: multiples of N from local midnight (h4 -> 00, 04, 08, ...)
    - day: local midnight; week: Monday local midnight; month: first of the month
    """
    midnight = t.replace(hour=0, minute=0, second=0, microsecond=0)
    if tf.kind is TimeframeKind.MINUTES:
        n = tf.minutes
        if n <= 60:
            return t.replace(minute=(t.minute // n) * n, second=0, microsecond=0)
        since_midnight = t.hour * 60 + t.minute
        return midnight + dt.timedelta(minutes=(since_midnight // n) * n)
    if tf.kind is TimeframeKind.DAY:
        return midnight
    if tf.kind is TimeframeKind.WEEK:
        return midnight - dt.timedelta(days=t.weekday())
    return midnight.replace(day=1)


def merge_bars(acc: Bar, nxt: Bar) -> Bar:
    """Fold `nxt` into `acc`, keeping acc's time and open."""
    return replace(
        acc,
        high=max(acc.high, nxt.high),
        low=min(acc.low, nxt.low),
        close=nxt.close,
        volume=acc.volume + nxt.volume,
        spread=max(acc.spread, nxt.spread),
        real_volume=acc.real_volume + nxt.real_volume,
    )


@dataclass(slots=True)
class ResampleIter:
    """
    Wrap a time-ordered M1 bar iterator and emit bars of a coarser timeframe.
    """

    it: Iterator[Bar]
    tf: TimeframeDescriptor
    _carry: Optional[Bar] = None
    _done: bool = False

    def __iter__(self) -> Iterator[Bar]:
        return self

    def __next__(self) -> Bar:
        if self._done:
            raise StopIteration

        # Seed the bucket with the first bar (from carry or upstream)
        b = self._carry if self._carry is not None else next(self.it)
        self._carry = None

        bucket = bucket_start(b.time, self.tf)
        current = replace(b, time=bucket)

        while True:
            try:
                n = next(self.it)
            except StopIteration:
                self._done = True
                return current

            if bucket_start(n.time, self.tf) == bucket:
                current = merge_bars(current, n)
            else:
                # Next bucket begins with n
                self._carry = n
                return current


def _is_sorted(bars: Sequence[Bar]) -> bool:
    return all(bars[i - 1].time <= bars[i].time for i in range(1, len(bars)))


def resample(bars: Sequence[Bar], timeframe: TimeframeDescriptor | str) -> list[Bar]:
    """
    Resample an M1 series to `timeframe`. Unsorted input is sorted first; M1 to M1 returns
    the input unchanged.
    """
    tf = parse_timeframe(timeframe) if isinstance(timeframe, str) else timeframe
    if not bars or (tf.kind is TimeframeKind.MINUTES and tf.minutes <= 1):
        return list(bars)
    ordered = bars if _is_sorted(bars) else sorted(bars, key=lambda b: b.time)
    return list(ResampleIter(iter(ordered), tf))
