from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from tickbars.core.clock import ensure_utc, parse_timeframe, parse_utc_offset
from tickbars.core.utility import default_digits
from tickbars.errors.errors import ConfigurationError
from tickbars.types.data import TimeframeDescriptor

"""
Here, we collect all the different configs
"""


@dataclass(frozen=True)
class RunContext:
    run_id: str


@dataclass(frozen=True)
class AuditConfig:
    log_dir: Path
    enabled: bool = True


# --- Provider / HTTP ---


class HttpConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    base_urls: list[str] = Field(
        default_factory=lambda: ["https://datafeed.dukascopy.com/datafeed"],
    )
    retry_count: int = Field(default=3, ge=1)
    retry_backoff_seconds: float = Field(default=2.0, ge=0.0)
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    chunk_size: int = Field(default=1 << 16, gt=0)
    user_agent: str = "tickbars-ingest/1.0"

    @field_validator("base_urls")
    @classmethod
    def _strip_urls(cls, v: list[str]) -> list[str]:
        urls = [u.strip().rstrip("/") for u in v if u and u.strip()]
        if not urls:
            raise ValueError("at least one base url is required")
        return urls


class InstrumentConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    digits: dict[str, int] = Field(default_factory=dict)

    @field_validator("digits")
    @classmethod
    def _upper_keys(cls, v: dict[str, int]) -> dict[str, int]:
        out: dict[str, int] = {}
        for name, d in v.items():
            if d < 0 or d > 10:
                raise ValueError(f"digits for {name} out of range: {d}")
            out[name.strip().upper()] = d
        return out

    def try_get_digits(self, instrument: str) -> Optional[int]:
        return self.digits.get(instrument.strip().upper())

    def get_digits(self, instrument: str) -> int:
        """Configured digits, else the built-in table. Unknown instruments are rejected."""
        found = self.try_get_digits(instrument)
        if found is None:
            found = default_digits(instrument)
        if found is None:
            raise ConfigurationError(
                f"Unknown instrument: {instrument}", field="instrument", value=instrument
            )
        return found


# --- Session calendar ---


class SessionRule(BaseModel):
    model_config = ConfigDict(extra="ignore")

    day: str = "Monday"
    start: str = "00:00"
    end: str = "24:00"


class SessionConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    time_zone: str = Field(
        default="UTC", validation_alias=AliasChoices("time_zone", "time_zone_id")
    )
    sessions: list[SessionRule] = Field(default_factory=list)
    holidays: list[str] = Field(default_factory=list)


# --- Run options ---

DownloadMode = Literal["ticks", "direct"]
OutputFormat = Literal["csv", "csv+hst", "parquet"]


class IngestOptions(BaseModel):
    """
    Every knob of one ingestion run. Defaults mirror the command line defaults.
    `start`/`end` are UTC instants; naive values are read as UTC.
    """

    model_config = ConfigDict(extra="forbid")

    instrument: str = "EURUSD"
    start: dt.datetime = dt.datetime(2025, 1, 1, tzinfo=dt.timezone.utc)
    end: dt.datetime = dt.datetime(2025, 1, 3, tzinfo=dt.timezone.utc)
    timeframe: str = "m1"
    mode: DownloadMode = "ticks"
    output_format: OutputFormat = "csv+hst"
    utc_offset: dt.timedelta = dt.timedelta(0)

    pool_path: Path = Path("./DataPool")
    output_path: Path = Path("./output")
    instruments_path: Path = Path("./config/instruments.json")
    http_config_path: Path = Path("./config/http.json")
    session_config_path: Path = Path("./config/sessions.json")

    verbose: bool = True
    filter_weekends: bool = True
    fallback_to_m1: bool = True
    refresh_cache: bool = True
    recent_refresh_days: int = Field(default=30, ge=0)
    verify_checksum: bool = True
    dedupe_ticks: bool = True
    skip_fallback_if_ticked: bool = True
    repair_gaps: bool = True
    validate_m1: bool = True
    validation_tolerance_points: int = Field(default=1, ge=0)
    use_session_calendar: bool = False
    max_workers: Optional[int] = Field(default=None, ge=1)

    @field_validator("instrument")
    @classmethod
    def _upper_instrument(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("instrument must not be empty")
        return v

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, v: dt.datetime) -> dt.datetime:
        return ensure_utc(v)

    @field_validator("timeframe")
    @classmethod
    def _timeframe(cls, v: str) -> str:
        try:
            return parse_timeframe(v).token
        except ConfigurationError as exc:
            raise ValueError(exc.args[0]) from exc

    @field_validator("utc_offset", mode="before")
    @classmethod
    def _offset(cls, v: object) -> object:
        if isinstance(v, str):
            try:
                return parse_utc_offset(v)
            except ConfigurationError as exc:
                raise ValueError(exc.args[0]) from exc
        return v

    @model_validator(mode="after")
    def _window(self) -> IngestOptions:
        if self.end < self.start:
            raise ValueError("end must not be before start")
        if abs(self.utc_offset) >= dt.timedelta(hours=24):
            raise ValueError("utc_offset must lie within +-24h")
        return self

    @property
    def descriptor(self) -> TimeframeDescriptor:
        return parse_timeframe(self.timeframe)

