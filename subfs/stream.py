"""
The stream module serves the content of virtual files. Each read request becomes one unit of work on
a thread pool: the unit serves the file from the local cache when it can, and otherwise streams it
from the server, hands the bytes to the requester, and then offers them to the cache.

The requester waits on either the unit's result or its own cancellation event. When the requester is
cancelled first, it flags the unit's cancellation token before giving up, and the unit abandons its
cache write. The cache checks that token under its own lock, so an abandoned unit never touches the
cache's records or running total.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field

import requests

from subfs.cache import LocalCache
from subfs.common import SubfsError
from subfs.subsonic import SubsonicClient, SubsonicError
from subfs.tree import FileEntry

logger = logging.getLogger(__name__)

# How often a waiting requester checks its cancellation event.
CANCEL_POLL_INTERVAL_SECONDS = 0.05
STREAM_CHUNK_SIZE = 64 * 1024
# The socket timeout only bounds the idle time between reads, so a slow stream or a unit stuck in the
# pool queue is additionally bounded by an overall deadline of this many socket timeouts.
READ_DEADLINE_TIMEOUTS = 10


class StreamFetchError(SubfsError):
    pass


class StreamInterruptedError(SubfsError):
    pass


def cache_key(entry: FileEntry) -> str:
    """
    Filenames are only unique within one directory, so the local cache is keyed by the remote ID as
    well. Cover art shared across directories maps to one key.
    """
    return f"{entry.id}/{entry.filename}"


@dataclass(eq=False)
class _Unit:
    entry: FileEntry
    result: Future[bytes] = field(default_factory=Future)
    cancelled: threading.Event = field(default_factory=threading.Event)


class StreamController:
    def __init__(
        self,
        client: SubsonicClient,
        cache: LocalCache,
        workers: int = 4,
        timeout: float = 60,
        deadline: float | None = None,
    ):
        self.client = client
        self.cache = cache
        self.timeout = timeout
        self.deadline = deadline if deadline is not None else timeout * READ_DEADLINE_TIMEOUTS
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="subfs-stream")
        self._lock = threading.Lock()
        self._inflight: set[_Unit] = set()
        self._closed = False

    def read(self, entry: FileEntry, cancel: threading.Event | None = None) -> bytes:
        """
        Return the full content of a file. Raises StreamInterruptedError if `cancel` is set before
        the content arrives, and StreamFetchError if the server could not provide it or the content
        did not arrive before the deadline.
        """
        unit = _Unit(entry=entry)
        deadline = time.monotonic() + self.deadline
        with self._lock:
            if self._closed:
                raise StreamInterruptedError(f"Stream controller is shut down: {entry.filename}")
            self._inflight.add(unit)
            self._executor.submit(self._run, unit)

        while True:
            try:
                return unit.result.result(timeout=CANCEL_POLL_INTERVAL_SECONDS)
            except concurrent.futures.TimeoutError:
                pass
            if unit.cancelled.is_set() or (cancel is not None and cancel.is_set()):
                unit.cancelled.set()
                logger.debug(f"STREAM: Read of {entry.filename} interrupted")
                raise StreamInterruptedError(f"Read of {entry.filename} interrupted")
            if time.monotonic() >= deadline:
                unit.cancelled.set()
                logger.error(f"STREAM: Read of {entry.filename} timed out after {self.deadline}s")
                raise StreamFetchError(f"Read of {entry.filename} timed out")

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
            units = list(self._inflight)
        for unit in units:
            unit.cancelled.set()
        logger.debug(f"STREAM: Shutting down with {len(units)} in-flight reads")
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def _run(self, unit: _Unit) -> None:
        entry = unit.entry
        key = cache_key(entry)
        try:
            data = self.cache.get(key)
            if data is not None:
                logger.debug(f"STREAM: Serving {entry.filename} from local cache")
                unit.result.set_result(data)
                return

            try:
                data = self._fetch(entry, unit.cancelled)
            except StreamFetchError as e:
                unit.result.set_exception(e)
                return
            unit.result.set_result(data)

            if unit.cancelled.is_set():
                logger.debug(f"STREAM: Read of {entry.filename} was cancelled, skipping local cache")
                return
            self.cache.admit(key, data, entry.size, cancelled=unit.cancelled)
        except Exception as e:
            # Never leave the requester waiting on a unit that died.
            logger.exception(f"STREAM: Unexpected failure while reading {entry.filename}")
            if not unit.result.done():
                unit.result.set_exception(StreamFetchError(f"Failed to read {entry.filename}: {e}"))
        finally:
            with self._lock:
                self._inflight.discard(unit)

    def _fetch(self, entry: FileEntry, cancelled: threading.Event) -> bytes:
        logger.info(f"STREAM: Fetching {entry.filename} from server")
        try:
            if entry.is_art:
                resp = self.client.get_cover_art(entry.id, timeout=self.timeout)
            elif entry.transcoded:
                resp = self.client.stream(entry.id, fmt=entry.suffix, timeout=self.timeout)
            else:
                resp = self.client.stream(entry.id, fmt="raw", timeout=self.timeout)
        except SubsonicError as e:
            logger.error(f"STREAM: Failed to open stream for {entry.filename}: {e}")
            raise StreamFetchError(f"Failed to open stream for {entry.filename}") from e

        chunks: list[bytes] = []
        try:
            with resp:
                for chunk in resp.iter_content(chunk_size=STREAM_CHUNK_SIZE):
                    if cancelled.is_set():
                        raise StreamFetchError(f"Stream of {entry.filename} was cancelled")
                    chunks.append(chunk)
        except requests.RequestException as e:
            logger.error(f"STREAM: Failed to read stream for {entry.filename}: {e}")
            raise StreamFetchError(f"Failed to read stream for {entry.filename}") from e
        data = b"".join(chunks)
        logger.debug(f"STREAM: Fetched {len(data)} bytes for {entry.filename}")
        return data
