from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Final, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from tickbars.config.configs import SessionConfig
from tickbars.core.clock import ensure_utc

logger = logging.getLogger(__name__)

UTC = dt.timezone.utc

_DAY_NAMES: Final[dict[str, int]] = {
    name: idx
    for idx, names in enumerate(
        (
            ("monday", "mon"),
            ("tuesday", "tue"),
            ("wednesday", "wed"),
            ("thursday", "thu"),
            ("friday", "fri"),
            ("saturday", "sat"),
            ("sunday", "sun"),
        )
    )
    for name in names
}

_END_OF_DAY: Final[dt.timedelta] = dt.timedelta(days=1)


def resolve_zone(name: Optional[str]) -> Union[ZoneInfo, dt.timezone]:
    """IANA zone by name; unknown or empty names fall back to UTC with a warning."""
    key = (name or "").strip()
    if not key or key.upper() in ("UTC", "Z", "ETC/UTC"):
        return UTC
    try:
        return ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        logger.warning("Unknown time zone %r (%s); using UTC", key, exc)
        return UTC


def parse_time_of_day(value: str) -> dt.timedelta:
    """'HH:MM' or 'HH:MM:SS' as an offset from local midnight; '24:00' is end of day."""
    text = value.strip()
    if text in ("24:00", "24:00:00"):
        return _END_OF_DAY
    parts = text.split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"invalid time of day: {value!r}")
    hours, minutes = int(parts[0]), int(parts[1])
    seconds = int(parts[2]) if len(parts) == 3 else 0
    if not (0 <= hours < 24 and 0 <= minutes < 60 and 0 <= seconds < 60):
        raise ValueError(f"time of day out of range: {value!r}")
    return dt.timedelta(hours=hours, minutes=minutes, seconds=seconds)


@dataclass(frozen=True, slots=True)
class SessionWindow:
    weekday: int  # Monday == 0
    start: dt.timedelta
    end: dt.timedelta

    def contains(self, time_of_day: dt.timedelta) -> bool:
        if self.end == self.start:
            return True
        if self.end > self.start:
            return self.start <= time_of_day < self.end
        # overnight
        return time_of_day >= self.start or time_of_day < self.end


class SessionCalendar:
    """
    Weekly trading windows in a local time zone, plus holiday dates.

    With no windows configured every instant is open. Otherwise an instant is open when its
    local date is not a holiday and some window for its local weekday contains its local
    time of day.
    """

    def __init__(self, cfg: SessionConfig) -> None:
        self._zone = resolve_zone(cfg.time_zone)
        self._windows: list[SessionWindow] = []
        self._holidays: set[dt.date] = set()

        for rule in cfg.sessions:
            weekday = _DAY_NAMES.get(rule.day.strip().lower())
            if weekday is None:
                logger.warning("Skipping session rule with unknown day %r", rule.day)
                continue
            try:
                start = parse_time_of_day(rule.start)
                end = parse_time_of_day(rule.end)
            except ValueError:
                logger.warning("Skipping session rule with bad times %r-%r", rule.start, rule.end)
                continue
            self._windows.append(SessionWindow(weekday, start, end))

        for raw in cfg.holidays:
            try:
                self._holidays.add(dt.date.fromisoformat(raw.strip()))
            except ValueError:
                logger.warning("Skipping unparseable holiday %r", raw)

    @property
    def windows(self) -> tuple[SessionWindow, ...]:
        return tuple(self._windows)

    @property
    def holidays(self) -> frozenset[dt.date]:
        return frozenset(self._holidays)

    def is_open(self, instant: dt.datetime) -> bool:
        if not self._windows:
            return True
        local = ensure_utc(instant).astimezone(self._zone)
        if local.date() in self._holidays:
            return False
        weekday = local.weekday()
        tod = dt.timedelta(
            hours=local.hour,
            minutes=local.minute,
            seconds=local.second,
            microseconds=local.microsecond,
        )
        return any(w.weekday == weekday and w.contains(tod) for w in self._windows)
