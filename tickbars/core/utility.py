from __future__ import annotations

import hashlib
import os
from decimal import Decimal
from pathlib import Path
from typing import BinaryIO, Final, Optional

from pydantic import ValidationError

# Built-in price precision for the majors.
_DEFAULT_DIGITS: Final[dict[str, int]] = {
    "EURUSD": 5,
    "GBPUSD": 5,
    "USDJPY": 3,
    "AUDUSD": 5,
    "USDCAD": 5,
    "USDCHF": 5,
    "NZDUSD": 5,
    "EURJPY": 3,
}


def default_digits(instrument: str) -> Optional[int]:
    """Pure lookup of the built-in digits table (case-insensitive). None when unknown."""
    return _DEFAULT_DIGITS.get(instrument.strip().upper())


def month_candidates(month: int) -> list[int]:
    """
    Month directory candidates for a calendar month (1-12).

    The provider's directory month is zero-based for most archives, but not reliably so,
    hence both `month - 1` and `month` are probed. Filtered to 0..12, ascending.
    """
    return sorted({m for m in (month - 1, month) if 0 <= m <= 12})


def relative_archive_path(
    instrument: str, year: int, month_dir: int, day: int, file_name: str
) -> str:
    """'{instrument}/{yyyy}/{mm}/{dd}/{file_name}' with zero-padded month directory and day."""
    return f"{instrument}/{year:04d}/{month_dir:02d}/{day:02d}/{file_name}"


def compute_sha256(blob: bytes | bytearray | memoryview | BinaryIO) -> str:
    h = hashlib.sha256()

    if isinstance(blob, (bytes, bytearray, memoryview)):
        if isinstance(blob, memoryview):
            h.update(blob.tobytes())
        else:
            h.update(blob)
        return h.hexdigest()
    # Treat remaining case as BinaryIO
    stream = blob
    pos = stream.tell() if hasattr(stream, "tell") else None
    for chunk in iter(lambda: stream.read(8192), b""):
        h.update(chunk)
    if pos is not None and hasattr(stream, "seek"):
        stream.seek(pos)
    return h.hexdigest()


def file_sha256(path: Path) -> str:
    with path.open("rb") as f:
        return compute_sha256(f)


def format_decimal(value: Decimal) -> str:
    """Plain notation, trailing zeros trimmed: 1.10000 -> '1.1', 1.00000 -> '1'."""
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    if text in ("", "-0"):
        return "0"
    return text


def resolve_workers(requested: Optional[int] = None, *, lo: int = 2, hi: int = 8) -> int:
    """Explicit request wins; otherwise cpu_count clamped to [lo, hi]."""
    if requested is not None and requested > 0:
        return requested
    return max(lo, min(hi, os.cpu_count() or lo))


def validation_error_parser(error: ValidationError) -> list[dict[str, str]]:
    parsed_error = [
        {
            "component": "config.schema",
            "path": ".".join(map(str, err["loc"])),
            "message": err["msg"],
            "error_type": err["type"],
        }
        for err in error.errors()
    ]
    return parsed_error
