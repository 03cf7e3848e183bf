from __future__ import annotations

import datetime as dt
import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence

from tickbars.audit.audit import AuditWriter
from tickbars.config.config_loader import load_model
from tickbars.config.configs import HttpConfig, IngestOptions, InstrumentConfig, SessionConfig
from tickbars.core.clock import Clock, Sleeper, enumerate_days, enumerate_hours, hours_in_window
from tickbars.core.utility import resolve_workers
from tickbars.data import codec
from tickbars.data.aggregator import BarAggregator
from tickbars.data.downloader import M1_BARS_FILE, ArchiveFetcher, tick_file_name
from tickbars.data.pool import DataPool
from tickbars.data.resampler import resample
from tickbars.data.session import SessionCalendar
from tickbars.errors.errors import (
    CodecError,
    NotFoundError,
    OperationCancelled,
    TransientFetchError,
)
from tickbars.export.writers import write_csv, write_hst, write_parquet
from tickbars.types.data import Bar, FetchedArchive, RunResult, RunSummary, Tick

logger = logging.getLogger(__name__)


class ArchiveSource(Protocol):
    def resolve(
        self,
        instrument: str,
        unit_start: dt.datetime,
        file_name: str,
        cancel: Optional[threading.Event] = None,
    ) -> FetchedArchive: ...


# ------------------------- Orchestration ------------------------------


class IngestPipeline:
    """
    One ingestion run: fetch -> decode -> aggregate -> repair -> validate -> resample -> write.

    Calendar units (UTC hours in tick mode, UTC days in direct mode) are processed by a
    thread pool; each unit resolves its archive, decodes it and feeds the shared aggregator.
    A failing unit is counted and skipped, the run continues. Setting `cancel` stops
    scheduling, aborts running units at their next I/O boundary and suppresses output files;
    bars committed so far are still returned.
    """

    def __init__(
        self,
        options: IngestOptions,
        source: ArchiveSource,
        digits: int,
        *,
        session_calendar: Optional[SessionCalendar] = None,
        audit: Optional[AuditWriter] = None,
        now: Optional[Callable[[], dt.datetime]] = None,
    ) -> None:
        self._opts = options
        self._source = source
        self._digits = digits
        self._calendar = session_calendar
        self._audit = audit
        self._now = now or (lambda: dt.datetime.now(dt.timezone.utc))
        self._workers = resolve_workers(options.max_workers)

    @property
    def digits(self) -> int:
        return self._digits

    @property
    def workers(self) -> int:
        return self._workers

    def new_aggregator(self, *, dedupe_ticks: bool, skip_fallback_if_ticked: bool) -> BarAggregator:
        return BarAggregator(
            self._digits,
            self._opts.utc_offset,
            self._opts.start,
            self._opts.end,
            filter_weekends=self._opts.filter_weekends,
            dedupe_ticks=dedupe_ticks,
            skip_fallback_if_ticked=skip_fallback_if_ticked,
            session_calendar=self._calendar,
        )

    def run(self, cancel: Optional[threading.Event] = None) -> RunResult:
        if cancel is None:
            cancel = threading.Event()
        opts = self._opts
        summary = RunSummary()
        base_info = self._base_info()
        self._log("RUN_START", payload=base_info)
        logger.info(
            "Ingest %s %s..%s mode=%s tf=%s workers=%d",
            opts.instrument,
            opts.start.isoformat(),
            opts.end.isoformat(),
            opts.mode,
            opts.timeframe,
            self._workers,
        )

        primary = self.new_aggregator(
            dedupe_ticks=opts.dedupe_ticks, skip_fallback_if_ticked=opts.skip_fallback_if_ticked
        )
        cancelled = False
        try:
            if opts.mode == "ticks":
                self.collect_ticks(primary, summary, cancel)
                if opts.repair_gaps:
                    self.repair_gaps(primary, summary, cancel)
                m1_bars = primary.get_bars()
                if opts.validate_m1:
                    self.validate(m1_bars, summary, cancel)
            else:
                self.collect_m1(primary, summary, cancel)
                m1_bars = primary.get_bars()
        except OperationCancelled:
            logger.warning("Run cancelled; keeping %d committed minutes", len(primary))
            cancelled = True
            m1_bars = primary.get_bars()
        cancelled = cancelled or cancel.is_set()

        bars = resample(m1_bars, opts.descriptor)
        summary.incr(
            bars=len(bars),
            duplicate_ticks_dropped=primary.duplicate_ticks_dropped,
            fallback_bars_skipped=primary.fallback_bars_skipped,
        )

        outputs: dict[str, Path] = {}
        if not cancelled:
            outputs = self.write_outputs(bars)

        result = RunResult(bars=bars, summary=summary, outputs=outputs, cancelled=cancelled)
        self._log("RUN_SUMMARY", payload={**base_info, **summary.as_dict()})
        self._log("RUN_END", payload={**base_info, **result.to_payload()})
        return result

    # --- Tick mode ---

    def collect_ticks(
        self, aggregator: BarAggregator, summary: RunSummary, cancel: threading.Event
    ) -> None:
        hours = list(enumerate_hours(self._opts.start, self._opts.end))
        self._run_units(hours, lambda h: self._tick_hour(h, aggregator, summary, cancel), cancel)

    def _tick_hour(
        self,
        hour: dt.datetime,
        aggregator: BarAggregator,
        summary: RunSummary,
        cancel: threading.Event,
    ) -> None:
        summary.incr(hours_processed=1)
        ticks: list[Tick] = []
        try:
            archive = self._source.resolve(
                self._opts.instrument, hour, tick_file_name(hour), cancel
            )
            ticks = codec.read_ticks(archive.payload, hour, self._digits)
        except NotFoundError:
            summary.incr(missing_hours=1)
            logger.info("Missing ticks for %s %s", self._opts.instrument, hour.isoformat())
            self._log("UNIT_MISSING", level="DEBUG", payload={"unit": hour.isoformat()})
        except (TransientFetchError, CodecError) as exc:
            summary.incr(missing_hours=1, failed_units=1)
            logger.warning("Hour %s failed: %s", hour.isoformat(), exc)
            self._log(
                "UNIT_FAILED",
                level="WARN",
                payload={"unit": hour.isoformat(), "error": str(exc), "type": type(exc).__name__},
            )

        for tick in ticks:
            aggregator.add_tick(tick)
        summary.incr(ticks=len(ticks))

        if not ticks and self._opts.fallback_to_m1 and aggregator.claim_fallback_day(hour):
            day = hour.replace(hour=0, minute=0, second=0, microsecond=0)
            bars = self._fetch_day_bars(day, cancel)
            accepted = sum(1 for bar in bars if aggregator.add_bar(bar))
            summary.incr(fallback_bars=accepted)

    # --- Direct mode ---

    def collect_m1(
        self, aggregator: BarAggregator, summary: RunSummary, cancel: threading.Event
    ) -> None:
        days = list(enumerate_days(self._opts.start, self._opts.end))
        self._run_units(days, lambda d: self._m1_day(d, aggregator, summary, cancel), cancel)

    def _m1_day(
        self,
        day: dt.datetime,
        aggregator: BarAggregator,
        summary: RunSummary,
        cancel: threading.Event,
    ) -> None:
        hour_count = hours_in_window(day, self._opts.start, self._opts.end)
        summary.incr(hours_processed=hour_count)
        try:
            bars = self._fetch_day_bars(day, cancel, strict=True)
        except (TransientFetchError, CodecError):
            summary.incr(missing_hours=hour_count, failed_units=1)
            return
        for bar in bars:
            aggregator.add_bar(bar)
        if not bars:
            summary.incr(missing_hours=hour_count)

    def _fetch_day_bars(
        self, day: dt.datetime, cancel: threading.Event, *, strict: bool = False
    ) -> list[Bar]:
        """
        Decoded M1 bars of one UTC day. A missing day yields []; transient and codec failures
        yield [] too unless `strict`, in which case they propagate after being logged.
        """
        try:
            archive = self._source.resolve(self._opts.instrument, day, M1_BARS_FILE, cancel)
            return codec.read_bars(archive.payload, day, self._digits)
        except NotFoundError:
            logger.info("Missing M1 bars for %s %s", self._opts.instrument, f"{day:%Y-%m-%d}")
            self._log("UNIT_MISSING", level="DEBUG", payload={"unit": day.date().isoformat()})
            return []
        except (TransientFetchError, CodecError) as exc:
            logger.warning("Day %s failed: %s", day.date().isoformat(), exc)
            self._log(
                "UNIT_FAILED",
                level="WARN",
                payload={"unit": day.date().isoformat(), "error": str(exc)},
            )
            if strict:
                raise
            return []

    # --- Repair & validation ---

    def repair_gaps(
        self, primary: BarAggregator, summary: RunSummary, cancel: threading.Event
    ) -> None:
        """Fill minutes the tick pass left empty with provider M1 bars."""
        repair = self.new_aggregator(dedupe_ticks=False, skip_fallback_if_ticked=True)
        self.collect_m1(repair, RunSummary(), cancel)
        repair_bars = repair.get_bars()
        added = sum(1 for bar in repair_bars if primary.try_add_fallback_bar(bar, True))
        skipped = len(repair_bars) - added
        summary.incr(gap_repair_added=added, gap_repair_skipped=skipped)
        self._log("GAP_REPAIR", payload={"added": added, "skipped": skipped})
        logger.info("Gap repair: added=%d skipped=%d", added, skipped)

    def validate(
        self, m1_bars: Sequence[Bar], summary: RunSummary, cancel: threading.Event
    ) -> int:
        """
        Compare the tick-built series against provider M1 bars. A provider bar is a mismatch
        when the series lacks its minute or any OHLC differs by more than the tolerance.
        Returns the mismatch count.
        """
        reference = self.new_aggregator(dedupe_ticks=False, skip_fallback_if_ticked=False)
        self.collect_m1(reference, RunSummary(), cancel)
        tolerance = Decimal(self._opts.validation_tolerance_points) / (Decimal(10) ** self._digits)
        by_time = {b.time: b for b in m1_bars}

        mismatches = 0
        checked = 0
        for ref in reference.get_bars():
            checked += 1
            base = by_time.get(ref.time)
            if base is not None and within_tolerance(base, ref, tolerance):
                continue
            mismatches += 1
            logger.debug("Validation mismatch at %s: %s vs %s", ref.time.isoformat(), base, ref)
            self._log(
                "VALIDATION_MISMATCH",
                level="WARN",
                payload={
                    "time": ref.time.isoformat(),
                    "missing": base is None,
                    "reference": _bar_payload(ref),
                    "built": _bar_payload(base) if base is not None else None,
                },
            )
        summary.incr(validation_checked=checked, validation_mismatches=mismatches)
        return mismatches

    # --- Outputs ---

    def write_outputs(self, bars: Sequence[Bar]) -> dict[str, Path]:
        opts = self._opts
        out_dir = Path(opts.output_path)
        out_dir.mkdir(parents=True, exist_ok=True)
        stem = f"{opts.instrument}_{opts.timeframe}"

        outputs: dict[str, Path] = {"csv": write_csv(out_dir / f"{stem}.csv", bars)}
        if opts.output_format == "csv+hst":
            outputs["hst"] = write_hst(
                out_dir / f"{stem}.hst",
                bars,
                opts.instrument,
                self._digits,
                opts.descriptor.minutes,
                now=self._now(),
            )
        elif opts.output_format == "parquet":
            outputs["parquet"] = write_parquet(out_dir / f"{stem}.parquet", bars)

        for kind, path in outputs.items():
            self._log("WRITE_DONE", component="writer", payload={"kind": kind, "path": str(path)})
        return outputs

    # --- Worker pool ---

    def _run_units(
        self,
        units: Iterable[dt.datetime],
        work: Callable[[dt.datetime], None],
        cancel: threading.Event,
    ) -> None:
        """
        Run `work` for every unit on the pool. Cancellation (event or OperationCancelled from a
        worker) cancels pending units and re-raises OperationCancelled once running ones end.
        Unexpected worker errors propagate.
        """
        if cancel.is_set():
            raise OperationCancelled("cancelled before start")

        with ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="ingest") as pool:
            pending: set[Future[None]] = {pool.submit(work, u) for u in units}
            while pending:
                done, pending = wait(pending, timeout=0.2, return_when=FIRST_EXCEPTION)
                failed = [f for f in done if not f.cancelled() and f.exception() is not None]
                if cancel.is_set() or failed:
                    for f in pending:
                        f.cancel()
                    wait(pending)
                    for f in failed:
                        exc = f.exception()
                        if not isinstance(exc, OperationCancelled):
                            raise exc  # type: ignore[misc]
                    raise OperationCancelled("run cancelled")

    # --- Helpers (AUDIT) ---

    def _base_info(self) -> dict[str, Any]:
        opts = self._opts
        return {
            "instrument": opts.instrument,
            "start_iso": opts.start.isoformat(),
            "end_iso": opts.end.isoformat(),
            "timeframe": opts.timeframe,
            "mode": opts.mode,
            "digits": self._digits,
            "utc_offset_s": int(opts.utc_offset.total_seconds()),
            "workers": self._workers,
        }

    def _log(
        self,
        event: str,
        level: str = "INFO",
        payload: dict[str, Any] | None = None,
        component: str = "pipeline",
    ) -> None:
        if self._audit is None:
            return
        self._audit.emit(
            component=component,
            event=event,
            level=level,
            payload=payload,
            symbol=self._opts.instrument,
        )


def within_tolerance(a: Bar, b: Bar, tolerance: Decimal) -> bool:
    return (
        abs(a.open - b.open) <= tolerance
        and abs(a.high - b.high) <= tolerance
        and abs(a.low - b.low) <= tolerance
        and abs(a.close - b.close) <= tolerance
    )


def _bar_payload(bar: Bar) -> dict[str, str]:
    return {"o": str(bar.open), "h": str(bar.high), "l": str(bar.low), "c": str(bar.close)}


# ------------------------- Wiring --------------------------------------


def build_pipeline(
    options: IngestOptions,
    *,
    audit: Optional[AuditWriter] = None,
    sleeper: Optional[Sleeper] = None,
    clock: Optional[Clock] = None,
) -> tuple[IngestPipeline, ArchiveFetcher]:
    """
    Load the config files named by `options` and wire pool, fetcher, calendar and pipeline.
    The caller owns the returned fetcher and closes it after the run.
    """
    http_cfg = load_model(options.http_config_path, HttpConfig)
    instruments = load_model(options.instruments_path, InstrumentConfig)
    digits = instruments.get_digits(options.instrument)

    calendar: Optional[SessionCalendar] = None
    if options.use_session_calendar:
        calendar = SessionCalendar(load_model(options.session_config_path, SessionConfig))

    pool = DataPool(options.pool_path, clock=clock)
    fetcher = ArchiveFetcher(
        http_cfg,
        pool,
        audit=audit,
        sleeper=sleeper,
        clock=clock,
        verify_checksum=options.verify_checksum,
        refresh_cache=options.refresh_cache,
        recent_refresh_days=options.recent_refresh_days,
    )
    pipeline = IngestPipeline(options, fetcher, digits, session_calendar=calendar, audit=audit)
    return pipeline, fetcher
