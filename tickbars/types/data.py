from __future__ import annotations

import datetime as dt
import threading
from dataclasses import dataclass, field, fields
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import orjson

# --- tickbars.data.codec ---


@dataclass(frozen=True, slots=True)
class Tick:
    """
    Single bid/ask observation decoded from an hourly tick archive.
    - time: UTC, millisecond resolution
    - bid/ask: exact decimals (scaled integer / 10**digits)
    - volumes: float32 values widened to Python floats
    """

    time: dt.datetime
    bid: Decimal
    ask: Decimal
    bid_volume: float
    ask_volume: float


@dataclass(frozen=True, slots=True)
class Bar:
    """
    OHLC summary of one bucket. `time` is the bucket start (tz-aware).
    Finalized bars satisfy low <= min(open, close) and high >= max(open, close).
    """

    time: dt.datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: int = 0
    spread: int = 0  # price points
    real_volume: int = 0


# --- tickbars.data.pool ---


@dataclass(frozen=True)
class CacheMeta:
    """Sidecar record persisted beside every cached raw archive."""

    sha256: str
    size: int
    downloaded_utc: dt.datetime

    def to_json(self) -> bytes:
        return orjson.dumps(
            {
                "sha256": self.sha256,
                "size": self.size,
                "downloaded_utc": self.downloaded_utc.astimezone(dt.timezone.utc).isoformat(),
            },
            option=orjson.OPT_INDENT_2,
        )

    @classmethod
    def from_json(cls, raw: bytes | str) -> CacheMeta:
        data = orjson.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("cache meta must be a JSON object")
        # keys are matched ignoring case and underscores (older sidecars used PascalCase)
        lowered = {str(k).lower().replace("_", ""): v for k, v in data.items()}
        stamp = dt.datetime.fromisoformat(str(lowered["downloadedutc"]))
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=dt.timezone.utc)
        return cls(
            sha256=str(lowered["sha256"]).lower(),
            size=int(lowered["size"]),
            downloaded_utc=stamp,
        )


# --- tickbars.data.downloader ---


@dataclass(frozen=True)
class FetchedArchive:
    """Successful result of a cache resolve: the local file and its bytes."""

    path: Path
    payload: bytes
    from_cache: bool
    url: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.payload)


# --- tickbars.data.resampler ---


class TimeframeKind(str, Enum):
    MINUTES = "minutes"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


@dataclass(frozen=True)
class TimeframeDescriptor:
    token: str  # canonical token, e.g. "m5", "h1", "d1"
    minutes: int  # nominal minutes (MN1 = 43200, as in MetaTrader history files)
    kind: TimeframeKind = TimeframeKind.MINUTES


# --- tickbars.data.pipeline ---


@dataclass
class RunSummary:
    """
    Run counters. Workers update them concurrently through `incr`, which holds
    a single lock for the whole update.
    """

    hours_processed: int = 0
    missing_hours: int = 0
    failed_units: int = 0
    ticks: int = 0
    bars: int = 0
    fallback_bars: int = 0
    fallback_bars_skipped: int = 0
    duplicate_ticks_dropped: int = 0
    gap_repair_added: int = 0
    gap_repair_skipped: int = 0
    validation_checked: int = 0
    validation_mismatches: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def incr(self, **deltas: int) -> None:
        with self._lock:
            for name, delta in deltas.items():
                if name.startswith("_") or not hasattr(self, name):
                    raise AttributeError(f"RunSummary has no counter '{name}'")
                setattr(self, name, getattr(self, name) + int(delta))

    def as_dict(self) -> dict[str, int]:
        with self._lock:
            return {f.name: getattr(self, f.name) for f in fields(self) if f.init}

    def render(self) -> str:
        labels = {
            "hours_processed": "Hours processed",
            "missing_hours": "Missing hours",
            "failed_units": "Failed units",
            "ticks": "Ticks",
            "bars": "Bars",
            "fallback_bars": "M1 fallback bars",
            "fallback_bars_skipped": "Fallback skipped",
            "duplicate_ticks_dropped": "Ticks deduped",
            "gap_repair_added": "Gap repair added",
            "gap_repair_skipped": "Gap repair skipped",
            "validation_checked": "Validation checked",
            "validation_mismatches": "Validation mismatches",
        }
        lines = ["Summary:"]
        for key, value in self.as_dict().items():
            lines.append(f"  {labels[key] + ':':<24}{value}")
        return "\n".join(lines)


@dataclass(frozen=True)
class RunResult:
    bars: list[Bar]
    summary: RunSummary
    outputs: dict[str, Path] = field(default_factory=dict)
    cancelled: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "bars": len(self.bars),
            "cancelled": self.cancelled,
            "outputs": {k: str(v) for k, v in self.outputs.items()},
            **self.summary.as_dict(),
        }
