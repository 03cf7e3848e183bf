"""
Decoding of provider archives (.bi5).

An archive is an LZMA "alone" container:

    [5-byte properties][8-byte little-endian uncompressed size][compressed payload]

The decompressed block is a flat array of big-endian records:

- hourly tick files, 20 bytes:
  int32 ms offset, int32 bid, int32 ask, float32 bid volume, float32 ask volume
- daily minute-bar files, 24 bytes:
  int32 second offset, int32 open, high, low, close, float32 volume

Prices are integers scaled by 10**digits. A trailing fragment shorter than one record is ignored.
A NaN or infinite volume makes the whole block malformed.
"""

from __future__ import annotations

import datetime as dt
import lzma
import math
import struct
from decimal import Decimal
from typing import Final, Iterator

from tickbars.core.clock import ensure_utc
from tickbars.errors.errors import CodecError
from tickbars.types.data import Bar, Tick

PROPS_SIZE: Final[int] = 5
HEADER_SIZE: Final[int] = 13  # props + uint64 size
UNKNOWN_SIZE: Final[int] = 2**64 - 1

TICK_RECORD: Final[struct.Struct] = struct.Struct(">iiiff")
BAR_RECORD: Final[struct.Struct] = struct.Struct(">iiiiif")


def decompress(data: bytes) -> bytes:
    """
    Decompress one archive. Output length equals the declared size exactly.

    Raises CodecError when the header is short, the stream is malformed, or the stream ends
    before the declared size (or, for an unknown size, before its end marker).
    """
    if len(data) < PROPS_SIZE:
        raise CodecError(
            "archive shorter than the 5-byte property header", details={"size": len(data)}
        )
    if len(data) < HEADER_SIZE:
        raise CodecError(
            "archive shorter than the 8-byte size field", details={"size": len(data)}
        )

    (declared,) = struct.unpack_from("<Q", data, PROPS_SIZE)
    decoder = lzma.LZMADecompressor(format=lzma.FORMAT_ALONE)
    try:
        out = decoder.decompress(data)
    except lzma.LZMAError as exc:
        raise CodecError(f"malformed archive: {exc}") from exc

    if declared == UNKNOWN_SIZE:
        if not decoder.eof:
            raise CodecError("archive truncated before end marker", details={"decoded": len(out)})
        return out

    if len(out) < declared:
        raise CodecError(
            "archive truncated",
            details={"declared": declared, "decoded": len(out)},
        )
    return out[:declared]


def _scale(digits: int) -> Decimal:
    return Decimal(10) ** digits


def _volume(value: float, index: int, kind: str) -> float:
    if not math.isfinite(value):
        raise CodecError(
            f"non-finite {kind} volume in record {index}", details={"value": repr(value)}
        )
    return value


def iter_tick_records(raw: bytes) -> Iterator[tuple[int, int, int, float, float]]:
    usable = len(raw) - len(raw) % TICK_RECORD.size
    return TICK_RECORD.iter_unpack(memoryview(raw)[:usable])


def iter_bar_records(raw: bytes) -> Iterator[tuple[int, int, int, int, int, float]]:
    usable = len(raw) - len(raw) % BAR_RECORD.size
    return BAR_RECORD.iter_unpack(memoryview(raw)[:usable])


def parse_ticks(raw: bytes, hour_start: dt.datetime, digits: int) -> list[Tick]:
    """Decode a decompressed hourly block. `hour_start` is the UTC hour the file belongs to."""
    base = ensure_utc(hour_start)
    scale = _scale(digits)
    ticks: list[Tick] = []
    for i, (ms, bid, ask, bid_vol, ask_vol) in enumerate(iter_tick_records(raw)):
        ticks.append(
            Tick(
                time=base + dt.timedelta(milliseconds=ms),
                bid=Decimal(bid) / scale,
                ask=Decimal(ask) / scale,
                bid_volume=_volume(bid_vol, i, "bid"),
                ask_volume=_volume(ask_vol, i, "ask"),
            )
        )
    return ticks


def parse_bars(raw: bytes, day_start: dt.datetime, digits: int) -> list[Bar]:
    """Decode a decompressed daily minute-bar block. Spread and real volume are zero."""
    base = ensure_utc(day_start)
    scale = _scale(digits)
    bars: list[Bar] = []
    for i, (secs, o, h, low_, c, vol) in enumerate(iter_bar_records(raw)):
        bars.append(
            Bar(
                time=base + dt.timedelta(seconds=secs),
                open=Decimal(o) / scale,
                high=Decimal(h) / scale,
                low=Decimal(low_) / scale,
                close=Decimal(c) / scale,
                volume=int(round(_volume(vol, i, "bar"))),
            )
        )
    return bars


def read_ticks(payload: bytes, hour_start: dt.datetime, digits: int) -> list[Tick]:
    """Decompress and decode an hourly archive. An empty payload decodes to no ticks."""
    if not payload:
        return []
    return parse_ticks(decompress(payload), hour_start, digits)


def read_bars(payload: bytes, day_start: dt.datetime, digits: int) -> list[Bar]:
    if not payload:
        return []
    return parse_bars(decompress(payload), day_start, digits)
