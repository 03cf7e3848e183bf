from __future__ import annotations

import datetime as dt
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Iterable, Optional

import orjson

from tickbars.core.clock import Clock, SystemClock
from tickbars.core.utility import file_sha256, relative_archive_path
from tickbars.errors.errors import CacheIntegrityError, EmptyArchiveError, OperationCancelled
from tickbars.types.data import CacheMeta

logger = logging.getLogger(__name__)

META_SUFFIX = ".meta.json"


class DataPool:
    """
    On-disk cache of raw provider archives.

    Layout: <root>/<instrument>/<yyyy>/<mm>/<dd>/<file>, mirroring the remote path, with a
    `<file>.meta.json` sidecar (CacheMeta) written after every successful download.

    Many fetch workers share one pool: directory creation is idempotent and serialized,
    and every file write goes to a unique temp file in the target directory before an
    atomic rename.
    """

    def __init__(self, root: Path | str, *, clock: Optional[Clock] = None) -> None:
        self.root = Path(root)
        self._clock = clock or SystemClock()
        self._dir_lock = threading.Lock()
        self._created: set[Path] = set()

    # --- Paths ---

    def local_path(
        self, instrument: str, year: int, month_dir: int, day: int, file_name: str
    ) -> Path:
        """Local cache path for one archive. Nothing is created until an archive is written."""
        return self.root / relative_archive_path(instrument, year, month_dir, day, file_name)

    def _ensure_dir(self, directory: Path) -> None:
        with self._dir_lock:
            if directory in self._created:
                return
            directory.mkdir(parents=True, exist_ok=True)
            self._created.add(directory)

    @staticmethod
    def meta_path(path: Path) -> Path:
        return path.with_name(path.name + META_SUFFIX)

    @staticmethod
    def has_valid_file(path: Path) -> bool:
        """Exists and is non-empty."""
        try:
            return path.is_file() and path.stat().st_size > 0
        except OSError:
            return False

    # --- Atomic writes ---

    def write_atomic(
        self,
        path: Path,
        chunks: Iterable[bytes],
        *,
        cancel: Optional[threading.Event] = None,
        allow_empty: bool = True,
    ) -> int:
        """
        Stream `chunks` into a unique temp file beside `path` and rename it into place.
        Returns the number of bytes written. The temp file is removed on any failure,
        including cancellation observed between chunks. With `allow_empty=False` a
        zero-length stream raises EmptyArchiveError and leaves any existing file untouched.
        """
        self._ensure_dir(path.parent)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=path.name + ".", suffix=".tmp")
        tmp_fp = Path(tmp_name)
        written = 0
        try:
            with os.fdopen(fd, "wb") as f:
                for chunk in chunks:
                    if cancel is not None and cancel.is_set():
                        raise OperationCancelled(
                            "cancelled while writing", details={"path": str(path)}
                        )
                    if chunk:
                        f.write(chunk)
                        written += len(chunk)
                if written == 0 and not allow_empty:
                    raise EmptyArchiveError(details={"path": str(path)})
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_fp, path)
        except BaseException:
            tmp_fp.unlink(missing_ok=True)
            raise
        return written

    # --- Sidecar metadata ---

    def write_meta(self, path: Path) -> CacheMeta:
        """(Re)compute size and SHA-256 of `path` and persist its sidecar atomically."""
        meta = CacheMeta(
            sha256=file_sha256(path),
            size=path.stat().st_size,
            downloaded_utc=self._clock.now().astimezone(dt.timezone.utc),
        )
        self.write_atomic(self.meta_path(path), [meta.to_json()])
        return meta

    def read_meta(self, path: Path) -> Optional[CacheMeta]:
        """Sidecar for `path`, or None when absent or unreadable."""
        mp = self.meta_path(path)
        if not mp.is_file():
            return None
        try:
            return CacheMeta.from_json(mp.read_bytes())
        except (OSError, ValueError, KeyError, TypeError, orjson.JSONDecodeError) as exc:
            logger.warning("Unreadable cache metadata %s: %s", mp, exc)
            return None

    def verify(self, path: Path) -> CacheMeta:
        """
        Check `path` against its sidecar. Returns the metadata on success.
        Raises CacheIntegrityError when the file or sidecar is missing, or size/hash differ.
        """
        if not self.has_valid_file(path):
            raise CacheIntegrityError("cached file missing or empty", path=str(path))
        meta = self.read_meta(path)
        if meta is None:
            raise CacheIntegrityError("cache metadata missing", path=str(path))
        size = path.stat().st_size
        if size != meta.size:
            raise CacheIntegrityError(
                "cached file size mismatch",
                path=str(path),
                details={"expected": meta.size, "actual": size},
            )
        digest = file_sha256(path)
        if digest != meta.sha256:
            raise CacheIntegrityError(
                "cached file checksum mismatch",
                path=str(path),
                details={"expected": meta.sha256, "actual": digest},
            )
        return meta
