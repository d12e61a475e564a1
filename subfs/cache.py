"""
The cache module stores the bytes of recently fetched files on local disk, so that re-reading a
file does not hit the server again. It is bounded by a byte budget and holds no file larger than
MAX_CACHEABLE_FILE_SIZE.

All state lives behind a single lock: the record map and the running total change together in the
same critical section, so the total always equals the sum of the record sizes, and the admission
checks cannot race with another writer's commit.

Records are keyed by an opaque string that identifies one file entry; see `stream.cache_key`.

Records are only dropped when their backing file turns out to be missing or empty, and at shutdown.
The cache does not survive a restart.
"""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path

from subfs.common import format_megabytes

logger = logging.getLogger(__name__)

MAX_CACHEABLE_FILE_SIZE = 50 * 1024 * 1024


@dataclass(frozen=True)
class CacheRecord:
    path: Path
    size: int


class LocalCache:
    def __init__(self, cache_dir: Path, budget_bytes: int):
        self.cache_dir = cache_dir
        self.budget_bytes = budget_bytes
        self._lock = threading.Lock()
        self._records: dict[str, CacheRecord] = {}
        self._total = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._records

    @property
    def total(self) -> int:
        with self._lock:
            return self._total

    def records(self) -> dict[str, CacheRecord]:
        with self._lock:
            return dict(self._records)

    def get(self, key: str) -> bytes | None:
        """
        Return the cached bytes of a file, or None on a cache miss. A record whose backing file has
        disappeared or been emptied is treated as evicted.
        """
        with self._lock:
            record = self._records.get(key)
        if record is None:
            return None
        try:
            data = record.path.read_bytes()
        except FileNotFoundError:
            data = b""
        if data:
            return data
        logger.info(f"CACHE: Backing file of {key} is missing, evicting")
        self._evict_record(key, record)
        return None

    def admit(
        self,
        key: str,
        data: bytes,
        declared_size: int,
        cancelled: threading.Event | None = None,
    ) -> bool:
        """
        Try to persist a fetched file. Returns whether the file was cached. The declared size may be
        an estimate, so we admit against whichever of the declared and real sizes is larger.
        """
        size = max(declared_size, len(data))
        with self._lock:
            if cancelled is not None and cancelled.is_set():
                logger.debug(f"CACHE: Read of {key} was cancelled, skipping local cache")
                return False
            if key in self._records:
                return False
            if self._total >= self.budget_bytes:
                logger.info(
                    f"CACHE: Cache full ({format_megabytes(self.budget_bytes)} MB), skipping local cache"
                )
                return False
            if self._total + size > self.budget_bytes:
                logger.info(
                    f"CACHE: File will overflow cache ({format_megabytes(size)} MB), skipping local cache"
                )
                return False
            if size > MAX_CACHEABLE_FILE_SIZE:
                logger.info(
                    f"CACHE: File too large ({format_megabytes(size)} > "
                    f"{MAX_CACHEABLE_FILE_SIZE // 1024 // 1024} MB), skipping local cache"
                )
                return False

            fd, name = tempfile.mkstemp(prefix="subfs", dir=self.cache_dir)
            try:
                with os.fdopen(fd, "wb") as fp:
                    fp.write(data)
            except OSError as e:
                logger.error(f"CACHE: Failed to write cached copy of {key}: {e}")
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(name)
                return False

            self._records[key] = CacheRecord(path=Path(name), size=len(data))
            self._total += len(data)
            logger.info(f"CACHE: Cached file {key}")
            self._log_usage(f"+{format_megabytes(len(data))}")
        return True

    def evict(self, key: str) -> bool:
        with self._lock:
            record = self._records.get(key)
        if record is None:
            return False
        return self._evict_record(key, record)

    def _evict_record(self, key: str, record: CacheRecord) -> bool:
        with self._lock:
            # Another reader may have evicted (and possibly re-admitted) the file in the meantime.
            if self._records.get(key) is not record:
                return False
            del self._records[key]
            self._total -= record.size
            self._log_usage(f"-{format_megabytes(record.size)}")
        with contextlib.suppress(FileNotFoundError):
            record.path.unlink()
        return True

    def purge(self) -> int:
        """Delete every cached file. Returns the number of records removed."""
        with self._lock:
            records = list(self._records.values())
            self._records.clear()
            self._total = 0
        for record in records:
            try:
                record.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error(f"CACHE: Failed to remove cached file {record.path}: {e}")
        logger.info(f"CACHE: Removed {len(records)} cached files")
        return len(records)

    def _log_usage(self, delta: str) -> None:
        # Caller holds the lock.
        logger.info(
            f"CACHE: Cache use: {format_megabytes(self._total)} / "
            f"{format_megabytes(self.budget_bytes)} MB ({delta} MB)"
        )
