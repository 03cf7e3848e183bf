"""tickbars CLI entrypoint.

Fetches provider archives for one instrument and window, builds M1 bars, resamples them and
writes CSV / HST / Parquet files. Structured audit lines (JSONL) go to <output>/audit/<run_id>/.

Exit codes: 0 success, 1 invalid input, 130 cancelled (SIGINT).
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

from pydantic import ValidationError

from tickbars.audit.audit import AuditWriter
from tickbars.config.configs import AuditConfig, IngestOptions, RunContext
from tickbars.core.utility import validation_error_parser
from tickbars.data.pipeline import build_pipeline
from tickbars.errors.errors import ConfigurationError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    """
    Return the CLI argument parser.
    """
    p = argparse.ArgumentParser(
        prog="tickbars", description="Build M1 and higher timeframe bars from tick archives"
    )
    p.add_argument("--instrument", default="EURUSD", help="Instrument, e.g. EURUSD")
    p.add_argument("--start", required=True, help="Window start (ISO-8601, UTC if naive)")
    p.add_argument("--end", required=True, help="Window end (ISO-8601, UTC if naive)")
    p.add_argument("--timeframe", default="m1", help="m1, m5, m15, m30, h1, h4, d1, w1, mn1")
    p.add_argument("--mode", choices=("ticks", "direct"), default="ticks")
    p.add_argument(
        "--format", dest="output_format", choices=("csv", "csv+hst", "parquet"), default="csv+hst"
    )
    p.add_argument("--offset", default="+00:00", help="Display UTC offset, e.g. +02:00")

    # paths
    p.add_argument("--pool", type=Path, default=Path("./DataPool"), help="Archive cache root")
    p.add_argument("--output", type=Path, default=Path("./output"), help="Output directory")
    p.add_argument("--instruments", type=Path, default=Path("./config/instruments.json"))
    p.add_argument("--http", type=Path, default=Path("./config/http.json"))
    p.add_argument("--sessions", type=Path, default=Path("./config/sessions.json"))

    # cache
    p.add_argument("--no-refresh", action="store_true", help="Use any valid cached archive")
    p.add_argument("--recent-refresh-days", type=int, default=30)
    p.add_argument("--verify-checksum", dest="verify_checksum", action="store_true", default=True)
    p.add_argument("--no-verify-checksum", dest="verify_checksum", action="store_false")

    # aggregation
    p.add_argument("--no-dedupe", action="store_true", help="Keep duplicate ticks")
    p.add_argument(
        "--allow-fallback-overlap",
        action="store_true",
        help="Let M1 fallback bars merge into minutes that already have ticks",
    )
    p.add_argument("--no-fallback", action="store_true", help="Do not use M1 bars for empty hours")
    p.add_argument("--no-weekend-filter", action="store_true")
    p.add_argument("--no-repair-gaps", action="store_true")
    p.add_argument("--no-validate-m1", action="store_true")
    p.add_argument("--validation-tolerance-points", type=int, default=1)
    p.add_argument("--use-session-calendar", action="store_true")

    p.add_argument("--workers", type=int, default=None, help="Worker threads (default 2..8)")
    p.add_argument("--audit-dir", type=Path, default=None, help="Audit log root")
    p.add_argument("--quiet", action="store_true", help="Only warnings and errors")
    return p


def options_from_args(args: argparse.Namespace) -> IngestOptions:
    """Map parsed flags onto IngestOptions. Raises ValidationError on bad input."""
    data: dict[str, Any] = {
        "instrument": args.instrument,
        "start": args.start,
        "end": args.end,
        "timeframe": args.timeframe,
        "mode": args.mode,
        "output_format": args.output_format,
        "utc_offset": args.offset,
        "pool_path": args.pool,
        "output_path": args.output,
        "instruments_path": args.instruments,
        "http_config_path": args.http,
        "session_config_path": args.sessions,
        "verbose": not args.quiet,
        "filter_weekends": not args.no_weekend_filter,
        "fallback_to_m1": not args.no_fallback,
        "refresh_cache": not args.no_refresh,
        "recent_refresh_days": args.recent_refresh_days,
        "verify_checksum": args.verify_checksum,
        "dedupe_ticks": not args.no_dedupe,
        "skip_fallback_if_ticked": not args.allow_fallback_overlap,
        "repair_gaps": not args.no_repair_gaps,
        "validate_m1": not args.no_validate_m1,
        "validation_tolerance_points": args.validation_tolerance_points,
        "use_session_calendar": args.use_session_calendar,
        "max_workers": args.workers,
    }
    return IngestOptions.model_validate(data)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _install_sigint(cancel: threading.Event) -> Any:
    """SIGINT sets `cancel`; a second SIGINT falls through to the default handler."""
    if threading.current_thread() is not threading.main_thread():
        return None

    def handler(signum: int, frame: Any) -> None:
        if cancel.is_set():
            signal.default_int_handler(signum, frame)
        print("Cancellation requested; finishing in-flight work...", file=sys.stderr)
        cancel.set()

    return signal.signal(signal.SIGINT, handler)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(not args.quiet)

    try:
        options = options_from_args(args)
    except ValidationError as exc:
        for err in validation_error_parser(exc):
            print(f"Invalid option {err['path']}: {err['message']}", file=sys.stderr)
        return EXIT_INVALID

    run_id = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ") + "-" + uuid.uuid4().hex[:8]
    audit_dir = args.audit_dir or Path(options.output_path) / "audit"
    audit = AuditWriter(RunContext(run_id=run_id), AuditConfig(log_dir=audit_dir))

    try:
        pipeline, fetcher = build_pipeline(options, audit=audit)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        audit.close()
        return EXIT_INVALID

    cancel = threading.Event()
    previous = _install_sigint(cancel)
    try:
        result = pipeline.run(cancel)
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)
        fetcher.close()
        audit.close()

    print(result.summary.render())
    for kind, path in result.outputs.items():
        print(f"Wrote {kind}: {path}")
    if result.cancelled:
        print("Cancelled; no output written.", file=sys.stderr)
        return EXIT_CANCELLED
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
