from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Optional

import orjson

from tickbars.config.configs import AuditConfig, RunContext
from tickbars.types.aliases import AuditRecord


class AuditWriter:
    """
    Simple NDJSON audit logger. Write dict-like events to a file, one JSON per line.

    Consistent schema per line:

    component
        The subsystem emitting the line ("fetch", "pipeline", "writer").
    event
        Upper-case event name, e.g. "GET_OK", "UNIT_MISSING", "RUN_SUMMARY".
    level
        DEBUG / INFO / WARN / ERROR.
    ts_wall
        Wall-clock UTC timestamp (ISO-8601).
    payload
        Free-form structured data; non-JSON values are stringified.

    Fetch workers emit concurrently, so every write holds one lock and each line is
    written in a single call.
    """

    FILE_NAME = "audit.jsonl"

    def __init__(self, run_ctx: RunContext, cfg: AuditConfig) -> None:
        self._run_ctx = run_ctx
        self._cfg = cfg
        self.root = Path(cfg.log_dir) / run_ctx.run_id
        if cfg.enabled:
            self.root.mkdir(parents=True, exist_ok=True)
        self._fh: Optional[IO[bytes]] = None
        self._lock = threading.Lock()
        self._written = 0

    @property
    def run_id(self) -> str:
        return self._run_ctx.run_id

    @property
    def path(self) -> Path:
        return self.root / self.FILE_NAME

    def emit(
        self,
        *,
        component: str,
        event: str,
        level: str = "INFO",
        payload: Optional[dict[str, Any]] = None,
        symbol: Optional[str] = None,
    ) -> None:
        """
        Write one audit line.

        Parameters
        ----------
        component : str
            Subsystem name (e.g., "fetch", "pipeline", "writer")
        event : str
            Event name (e.g., "GET_404", "RUN_START")
        level : str
            Log level: "DEBUG", "INFO", "WARN", "ERROR"
        payload : Optional[dict]
            Additional structured data
        symbol : Optional[str]
            Instrument context for filtering
        """
        if not self._cfg.enabled:
            return
        record: AuditRecord = {
            "run_id": self.run_id,
            "component": component,
            "event": event,
            "level": level,
            "ts_wall": datetime.now(timezone.utc).isoformat(),
            "payload": payload or {},
        }
        if symbol is not None:
            record["symbol"] = symbol

        # default=str handles Decimals, Paths and datetimes
        line = orjson.dumps(record, default=str) + b"\n"
        with self._lock:
            if self._fh is None:
                self._fh = self.path.open("ab")
            self._fh.write(line)
            self._written += 1

    def flush(self) -> None:
        with self._lock:
            if self._fh is not None:
                self._fh.flush()

    def close(self) -> None:
        with self._lock:
            if self._fh is not None:
                self._fh.flush()
                self._fh.close()
                self._fh = None

    def __enter__(self) -> AuditWriter:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()

    # --- Stats ---

    def get_stats(self) -> dict[str, int]:
        return {"events_written": self._written}
