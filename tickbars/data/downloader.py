from __future__ import annotations

import datetime as dt
import enum
import itertools
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

import requests

from tickbars.audit.audit import AuditWriter
from tickbars.config.configs import HttpConfig
from tickbars.core.clock import Clock, EventSleeper, Sleeper, SystemClock, ensure_utc
from tickbars.core.utility import month_candidates, relative_archive_path
from tickbars.data.pool import DataPool
from tickbars.errors.errors import (
    CacheIntegrityError,
    EmptyArchiveError,
    NotFoundError,
    OperationCancelled,
    TransientFetchError,
)
from tickbars.types.data import FetchedArchive

logger = logging.getLogger(__name__)

TICKS_FILE = "{hour:02d}h_ticks.bi5"
M1_BARS_FILE = "BID_candles_min_1.bi5"


def tick_file_name(hour_start: dt.datetime) -> str:
    return TICKS_FILE.format(hour=ensure_utc(hour_start).hour)


@dataclass(frozen=True, slots=True)
class FetchAttempt:
    """One GET in the retry plan: attempt number (1-based), month directory, mirror."""

    attempt: int
    month_dir: int
    mirror: str
    url: str
    relative_path: str
    local_path: Path


class _Outcome(enum.Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    ERROR = "error"


# ------------------------- Fetching ------------------------------------


class ArchiveFetcher:
    """
    Cache-first, mirror-aware fetch of provider archives into the DataPool.

    For a calendar unit (hour or day) the month directory is ambiguous upstream, so both
    candidates from `month_candidates` are probed, for the cache lookup as well as for the
    remote fetch. The remote protocol is the explicit attempt plan from `plan_attempts`:
    attempts x month candidates x mirrors, in that order.

    - 404 on a path is definitive for that path; an attempt where every path answered 404
      raises NotFoundError without using the remaining retries.
    - Any other failure (status, transport, empty body, disk) is remembered; after a failed
      attempt the fetcher sleeps `retry_backoff_seconds` through the injected Sleeper.
    - Exhausted retries raise TransientFetchError with the last error.

    Safe to call from many worker threads; each thread lazily gets its own requests.Session.
    """

    def __init__(
        self,
        cfg: HttpConfig,
        pool: DataPool,
        *,
        audit: Optional[AuditWriter] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
        sleeper: Optional[Sleeper] = None,
        clock: Optional[Clock] = None,
        verify_checksum: bool = True,
        refresh_cache: bool = True,
        recent_refresh_days: int = 0,
    ) -> None:
        self._cfg = cfg
        self._pool = pool
        self._audit = audit
        self._session_factory = session_factory
        self._sleeper: Sleeper = sleeper or EventSleeper()
        self._clock: Clock = clock or SystemClock()
        self._verify_checksum = verify_checksum
        self._refresh_cache = refresh_cache
        self._recent_refresh_days = recent_refresh_days

        self._local = threading.local()
        self._sessions: list[requests.Session] = []
        self._sessions_lock = threading.Lock()

    # --- Public ---

    def resolve(
        self,
        instrument: str,
        unit_start: dt.datetime,
        file_name: str,
        cancel: Optional[threading.Event] = None,
    ) -> FetchedArchive:
        """
        Return the archive for `unit_start`/`file_name`, from cache when a usable copy exists,
        otherwise from the first mirror that serves it.
        """
        unit_start = ensure_utc(unit_start)
        self._check_cancel(cancel)

        cached = self._from_cache(instrument, unit_start, file_name)
        if cached is not None:
            return cached

        plan = self.plan_attempts(instrument, unit_start, file_name)
        last_error = ""
        last_url: Optional[str] = None

        for attempt_no, group in itertools.groupby(plan, key=lambda a: a.attempt):
            all_not_found = True
            tried: list[str] = []
            for att in group:
                self._check_cancel(cancel)
                tried.append(att.relative_path)
                outcome, error = self._try_download(att, cancel)
                if outcome is _Outcome.OK:
                    try:
                        self._pool.write_meta(att.local_path)
                        payload = att.local_path.read_bytes()
                    except OSError as ex:
                        outcome = _Outcome.ERROR
                        error = f"I/O error storing {att.local_path}: {ex}"
                    else:
                        self._log("GET_OK", payload={"url": att.url, "bytes": len(payload)})
                        return FetchedArchive(
                            path=att.local_path, payload=payload, from_cache=False, url=att.url
                        )
                if outcome is _Outcome.NOT_FOUND:
                    self._log("GET_404", level="DEBUG", payload={"url": att.url})
                    continue
                all_not_found = False
                last_error = error or last_error
                last_url = att.url
                logger.debug("GET failed %s: %s", att.url, error)
                self._log("GET_ERROR", level="WARN", payload={"url": att.url, "error": error})

            if all_not_found:
                paths = list(dict.fromkeys(tried))
                self._log("NOT_FOUND", payload={"paths": paths})
                raise NotFoundError(f"archive not found: {file_name}", relative_paths=paths)

            if attempt_no < self._cfg.retry_count:
                self._log(
                    "RETRY_BACKOFF",
                    level="WARN",
                    payload={"attempt": attempt_no, "seconds": self._cfg.retry_backoff_seconds},
                )
                self._sleeper.sleep(self._cfg.retry_backoff_seconds, cancel)

        logger.warning("Fetch failed after %d attempts: %s", self._cfg.retry_count, last_error)
        self._log(
            "FETCH_FAILED",
            level="ERROR",
            payload={"url": last_url, "error": last_error, "attempts": self._cfg.retry_count},
        )
        raise TransientFetchError(
            f"fetch failed after {self._cfg.retry_count} attempts: {last_error}",
            url=last_url,
            last_error=last_error,
            attempts=self._cfg.retry_count,
        )

    def plan_attempts(
        self, instrument: str, unit_start: dt.datetime, file_name: str
    ) -> list[FetchAttempt]:
        """Ordered attempt descriptors: attempt -> month candidate -> mirror."""
        unit_start = ensure_utc(unit_start)
        plan: list[FetchAttempt] = []
        for attempt in range(1, self._cfg.retry_count + 1):
            for month in month_candidates(unit_start.month):
                rel = relative_archive_path(
                    instrument, unit_start.year, month, unit_start.day, file_name
                )
                local = self._pool.local_path(
                    instrument, unit_start.year, month, unit_start.day, file_name
                )
                for mirror in self._cfg.base_urls:
                    plan.append(
                        FetchAttempt(
                            attempt=attempt,
                            month_dir=month,
                            mirror=mirror,
                            url=f"{mirror.rstrip('/')}/{rel}",
                            relative_path=rel,
                            local_path=local,
                        )
                    )
        return plan

    def is_stale(self, unit_start: dt.datetime) -> bool:
        """Recent units are refetched: the provider may still be completing them."""
        if not self._refresh_cache or self._recent_refresh_days <= 0:
            return False
        horizon = self._clock.now() - dt.timedelta(days=self._recent_refresh_days)
        return ensure_utc(unit_start) >= ensure_utc(horizon)

    def close(self) -> None:
        with self._sessions_lock:
            for s in self._sessions:
                s.close()
            self._sessions.clear()

    # --- Cache ---

    def _from_cache(
        self, instrument: str, unit_start: dt.datetime, file_name: str
    ) -> Optional[FetchedArchive]:
        if self.is_stale(unit_start):
            return None
        for month in month_candidates(unit_start.month):
            path = self._pool.local_path(
                instrument, unit_start.year, month, unit_start.day, file_name
            )
            if not self._pool.has_valid_file(path):
                continue
            try:
                if self._verify_checksum:
                    self._pool.verify(path)
                payload = path.read_bytes()
            except CacheIntegrityError as exc:
                logger.warning("Discarding cached archive: %s", exc)
                self._log(
                    "CACHE_INVALID", level="WARN", payload={"path": str(path), **exc.details}
                )
                continue
            except OSError as exc:
                logger.warning("Unreadable cached archive %s: %s", path, exc)
                self._log(
                    "CACHE_INVALID", level="WARN", payload={"path": str(path), "error": str(exc)}
                )
                continue
            self._log("CACHE_HIT", level="DEBUG", payload={"path": str(path)})
            return FetchedArchive(path=path, payload=payload, from_cache=True)
        return None

    # --- Download bytes ---

    def _try_download(
        self, att: FetchAttempt, cancel: Optional[threading.Event]
    ) -> tuple[_Outcome, Optional[str]]:
        """
        One streaming GET into the target path.

        Returns (OK, None), (NOT_FOUND, None) or (ERROR, message). Cancellation propagates.
        """
        session = self._session()
        try:
            with session.get(att.url, timeout=self._cfg.timeout_seconds, stream=True) as response:
                status = response.status_code
                if status == 404:
                    return _Outcome.NOT_FOUND, None
                if not 200 <= status < 300:
                    return _Outcome.ERROR, f"HTTP {status} for {att.url}"
                written = self._pool.write_atomic(
                    att.local_path,
                    response.iter_content(chunk_size=self._cfg.chunk_size),
                    cancel=cancel,
                    allow_empty=False,
                )
                logger.debug("GET %s %s bytes=%d", status, att.url, written)
        except requests.RequestException as ex:
            return _Outcome.ERROR, f"{type(ex).__name__}: {ex}"
        except EmptyArchiveError:
            return _Outcome.ERROR, f"empty body for {att.url}"
        except OSError as ex:
            return _Outcome.ERROR, f"I/O error writing {att.local_path}: {ex}"
        return _Outcome.OK, None

    def _session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._session_factory()
            session.headers["User-Agent"] = self._cfg.user_agent
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    # --- Helpers ---

    @staticmethod
    def _check_cancel(cancel: Optional[threading.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise OperationCancelled("fetch cancelled", component="fetch")

    def _log(
        self,
        event: str,
        level: str = "INFO",
        payload: dict[str, Any] | None = None,
    ) -> None:
        if self._audit is None:
            return
        self._audit.emit(component="fetch", event=event, level=level, payload=payload)
