"""
The index module keeps an in-memory copy of the server's top-level index: the music folders and the
artists indexed under each of them. A background thread refreshes it on a fixed interval.

Each refresh builds a complete new snapshot and publishes it by swapping a single reference under a
lock. Readers never see a partially updated index. The first successful refresh sets a readiness
event, which the root directory listing waits on. Setting an event requires no listener, so a
refresh never blocks on a consumer.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from subfs.subsonic import IndexArtist, MusicFolder, SubsonicClient, SubsonicError

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL_SECONDS = 600


@dataclass(frozen=True)
class IndexSnapshot:
    generation: int = 0
    folders: dict[MusicFolder, list[IndexArtist]] = field(default_factory=dict)


class IndexCache:
    def __init__(
        self,
        client: SubsonicClient,
        interval_seconds: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
    ):
        self.client = client
        self.interval_seconds = interval_seconds
        self._lock = threading.Lock()
        self._snapshot = IndexSnapshot()
        self._ready = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def snapshot(self) -> IndexSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def wait_until_ready(self, timeout: float | None = None) -> bool:
        return self._ready.wait(timeout)

    def refresh(self) -> bool:
        """
        Run one refresh cycle. Returns False if the folder list could not be fetched, in which case
        the published index is left untouched.
        """
        try:
            folders = self.client.get_music_folders()
        except SubsonicError as e:
            logger.error(f"INDEX: Failed to retrieve music folders: {e}")
            return False

        previous = self.snapshot()
        new_folders: dict[MusicFolder, list[IndexArtist]] = {}
        for folder in folders:
            try:
                new_folders[folder] = self.client.get_indexes(folder.id)
            except SubsonicError as e:
                # Keep serving the stale artists of this folder until the next cycle.
                logger.error(f"INDEX: Failed to retrieve indexes for folder {folder.name}: {e}")
                if folder in previous.folders:
                    new_folders[folder] = previous.folders[folder]
                continue
            logger.debug(
                f"INDEX: Folder {folder.name} has {len(new_folders[folder])} indexed artists"
            )

        with self._lock:
            self._snapshot = IndexSnapshot(
                generation=self._snapshot.generation + 1,
                folders=new_folders,
            )
        if not self._ready.is_set():
            logger.info(f"INDEX: Initial index loaded with {len(new_folders)} music folders")
            self._ready.set()
        return True

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="subfs-index", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            self.refresh()
            # Doubles as an interruptible sleep: stop() wakes us up immediately.
            self._stop.wait(self.interval_seconds)
