"""
Output writers for finished bar series.

- write_csv: MetaTrader import format, one bar per line, no header
- write_hst: MetaTrader history file, 148-byte header and 60-byte records
- write_parquet: polars frame, zstd

Every writer renders into a temp file beside the target and renames it into place.
"""

from __future__ import annotations

import datetime as dt
import logging
import os
import struct
import tempfile
from pathlib import Path
from typing import Callable, Final, Iterable, Optional, Sequence

from tickbars.core.utility import format_decimal
from tickbars.data.aggregator import bars_to_frame
from tickbars.types.data import Bar

logger = logging.getLogger(__name__)

HST_VERSION: Final[int] = 501
HST_COPYRIGHT: Final[str] = "Dukascopy to MT5"
HST_HEADER: Final[struct.Struct] = struct.Struct("<i64s12siiii13i")
HST_RECORD: Final[struct.Struct] = struct.Struct("<qddddqiq")


def _atomic_write(out_fp: Path, render: Callable[[Path], None]) -> Path:
    out_fp.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=out_fp.parent, prefix=out_fp.name + ".", suffix=".tmp")
    os.close(fd)
    tmp_fp = Path(tmp_name)
    try:
        render(tmp_fp)

        # Ensure temp file is flushed to disk before rename
        with open(tmp_fp, "rb+") as f:
            f.flush()
            os.fsync(f.fileno())

        # Atomic replace
        tmp_fp.replace(out_fp)
    except BaseException:
        tmp_fp.unlink(missing_ok=True)
        raise
    return out_fp


# --- CSV ---


def csv_line(bar: Bar) -> str:
    """'yyyy.MM.dd,HH:mm,open,high,low,close,volume,spread,real_volume' in the bar's wall time."""
    t = bar.time
    return ",".join(
        (
            t.strftime("%Y.%m.%d"),
            t.strftime("%H:%M"),
            format_decimal(bar.open),
            format_decimal(bar.high),
            format_decimal(bar.low),
            format_decimal(bar.close),
            str(bar.volume),
            str(bar.spread),
            str(bar.real_volume),
        )
    )


def write_csv(path: Path | str, bars: Iterable[Bar]) -> Path:
    out_fp = Path(path)

    def render(tmp: Path) -> None:
        with tmp.open("w", encoding="utf-8", newline="\n", buffering=1 << 16) as f:
            for bar in bars:
                f.write(csv_line(bar))
                f.write("\n")

    _atomic_write(out_fp, render)
    logger.info("Wrote CSV %s", out_fp)
    return out_fp


# --- HST ---


def _fixed_ascii(value: str, length: int) -> bytes:
    return value.encode("ascii", errors="replace")[:length]


def hst_header(symbol: str, digits: int, timeframe_minutes: int, now: dt.datetime) -> bytes:
    stamp = int(now.timestamp())
    return HST_HEADER.pack(
        HST_VERSION,
        _fixed_ascii(HST_COPYRIGHT, 64),
        _fixed_ascii(symbol, 12),
        timeframe_minutes,
        digits,
        stamp,
        stamp,
        *([0] * 13),
    )


def hst_record(bar: Bar) -> bytes:
    return HST_RECORD.pack(
        int(bar.time.timestamp()),
        float(bar.open),
        float(bar.high),
        float(bar.low),
        float(bar.close),
        bar.volume,
        bar.spread,
        bar.real_volume,
    )


def write_hst(
    path: Path | str,
    bars: Iterable[Bar],
    symbol: str,
    digits: int,
    timeframe_minutes: int,
    *,
    now: Optional[dt.datetime] = None,
) -> Path:
    """
    Header: int32 version, 64-byte label, 12-byte symbol, int32 period, int32 digits,
    two int32 timestamps, 13 reserved int32. Records: int64 unix seconds (UTC), 4 x float64,
    int64 volume, int32 spread, int64 real volume. Little-endian.
    """
    out_fp = Path(path)
    stamp = now or dt.datetime.now(dt.timezone.utc)

    def render(tmp: Path) -> None:
        with tmp.open("wb") as f:
            f.write(hst_header(symbol, digits, timeframe_minutes, stamp))
            for bar in bars:
                f.write(hst_record(bar))

    _atomic_write(out_fp, render)
    logger.info("Wrote HST %s", out_fp)
    return out_fp


# --- Parquet ---


def write_parquet(path: Path | str, bars: Sequence[Bar]) -> Path:
    out_fp = Path(path)
    df = bars_to_frame(bars)
    _atomic_write(out_fp, lambda tmp: df.write_parquet(str(tmp), compression="zstd"))
    logger.info("Wrote Parquet %s (%d rows)", out_fp, df.height)
    return out_fp
