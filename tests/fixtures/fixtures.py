import datetime as dt
import lzma
import struct
import threading
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

import pytest

from tickbars.audit.audit import AuditWriter
from tickbars.config.configs import AuditConfig, HttpConfig, RunContext
from tickbars.types.data import Bar

UTC = dt.timezone.utc

run_context_test = RunContext(run_id="TEST")
http_config_test = HttpConfig(
    base_urls=["https://mirror-a.test/datafeed", "https://mirror-b.test/datafeed"],
    retry_count=3,
    retry_backoff_seconds=2.0,
    timeout_seconds=5.0,
    chunk_size=4,
)

# Monday 2024-03-04
MONDAY = dt.datetime(2024, 3, 4, tzinfo=UTC)


def audit_writer_for(log_dir: Path | str, *, enabled: bool = True) -> AuditWriter:
    """
    Lazy factory to avoid side effects at import time.
    Prefer using the pytest fixtures below in tests.
    """
    return AuditWriter(run_context_test, AuditConfig(log_dir=Path(log_dir), enabled=enabled))


@pytest.fixture
def audit_writer_tmp(tmp_path: Path) -> Iterable[AuditWriter]:
    """
    Provides an AuditWriter that writes into a per-test temp directory.
    """
    writer = audit_writer_for(tmp_path / "audit")
    try:
        yield writer
    finally:
        writer.close()


# --- Archive builders ---


def lzma_alone(raw: bytes) -> bytes:
    """Compress into the provider container (LZMA alone, size field = unknown/end marker)."""
    return lzma.compress(raw, format=lzma.FORMAT_ALONE)


def tick_record(ms: int, bid: int, ask: int, bid_vol: float, ask_vol: float) -> bytes:
    return struct.pack(">iiiff", ms, bid, ask, bid_vol, ask_vol)


def bar_record(sec: int, o: int, h: int, low: int, c: int, vol: float) -> bytes:
    return struct.pack(">iiiiif", sec, o, h, low, c, vol)


def make_bar(time: dt.datetime, o: str, h: str, low: str, c: str, volume: int = 1) -> Bar:
    return Bar(
        time=time,
        open=Decimal(o),
        high=Decimal(h),
        low=Decimal(low),
        close=Decimal(c),
        volume=volume,
    )


# --- Test doubles ---


class RecordingSleeper:
    """Sleeper that records requested delays and never blocks."""

    def __init__(self, on_sleep: Optional[Any] = None) -> None:
        self.calls: list[float] = []
        self._on_sleep = on_sleep

    def sleep(self, seconds: float, cancel: Optional[threading.Event] = None) -> None:
        self.calls.append(seconds)
        if self._on_sleep is not None:
            self._on_sleep()


class FixedClock:
    def __init__(self, now: dt.datetime) -> None:
        self._now = now

    def now(self) -> dt.datetime:
        return self._now


class FakeResponse:
    def __init__(self, status_code: int, body: bytes = b"", *, raise_exc: Any = None) -> None:
        self.status_code = status_code
        self._body = body
        self._raise = raise_exc
        self.closed = False

    def iter_content(self, chunk_size: int = 1) -> Iterator[bytes]:
        for i in range(0, len(self._body), chunk_size):
            yield self._body[i : i + chunk_size]

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.closed = True


class FakeSession:
    """
    Minimal requests.Session stand-in. `routes` maps url -> list of responses (or exceptions)
    served in order; the last entry repeats. Unknown urls answer 404.
    """

    def __init__(self, routes: Optional[dict[str, list[Any]]] = None) -> None:
        self.routes = routes or {}
        self.calls: list[str] = []
        self.headers: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, url: str, timeout: float = 0, stream: bool = False) -> FakeResponse:
        with self._lock:
            self.calls.append(url)
            queue = self.routes.get(url)
            if not queue:
                return FakeResponse(404)
            item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self) -> None:
        pass
