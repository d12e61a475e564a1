import logging
import threading
import time
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
import requests
from click.testing import CliRunner

from subfs.config import Config
from subfs.index import IndexCache
from subfs.subsonic import (
    Child,
    IndexArtist,
    MusicDirectory,
    MusicFolder,
    SubsonicAPIError,
    SubsonicError,
)
from subfs.templates import DEFAULT_FILENAME_TEMPLATE
from subfs.tree import LibraryTree

logger = logging.getLogger(__name__)


@pytest.fixture(autouse=True)
def debug_logging() -> None:
    logging.getLogger().setLevel(logging.DEBUG)


@pytest.fixture()
def isolated_dir() -> Iterator[Path]:
    with CliRunner().isolated_filesystem():
        yield Path.cwd()


@pytest.fixture()
def config(isolated_dir: Path) -> Config:
    cache_dir = isolated_dir / "cache"
    cache_dir.mkdir()

    mount_dir = isolated_dir / "mount"
    mount_dir.mkdir()

    return Config(
        server_url="http://subsonic.test",
        username="alice",
        password="hunter2",
        legacy_auth=False,
        fuse_mount_dir=mount_dir,
        cache_dir=cache_dir,
        cache_size_mb=100,
        filename_template=DEFAULT_FILENAME_TEMPLATE,
        index_refresh_interval_seconds=600,
        stream_timeout_seconds=5,
        max_proc=2,
    )


class FakeResponse:
    """Stands in for a streaming requests.Response."""

    def __init__(self, data: bytes, gate: threading.Event | None = None, fail: bool = False):
        self.data = data
        self.gate = gate
        self.fail = fail
        self.closed = False

    def iter_content(self, chunk_size: int = 1) -> Iterator[bytes]:
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fail:
            raise requests.ConnectionError("Connection reset by peer")
        for i in range(0, len(self.data), chunk_size):
            yield self.data[i : i + chunk_size]

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()


class FakeSubsonicClient:
    """
    An in-memory Subsonic server. Tests populate the library attributes directly. IDs placed in
    `failing` raise SubsonicError from every endpoint that receives them; `getMusicFolders` in
    `failing` breaks the folder listing. Streams block on `gate` when it is set.
    """

    server_url = "http://subsonic.test"

    def __init__(self) -> None:
        self.folders: list[MusicFolder] = []
        self.artists: dict[str, list[IndexArtist]] = {}
        self.directories: dict[str, MusicDirectory] = {}
        self.content: dict[str, bytes] = {}
        self.failing: set[str] = set()
        self.broken_streams: set[str] = set()
        self.gate: threading.Event | None = None
        self.calls: list[tuple[Any, ...]] = []
        self._lock = threading.Lock()

    def _record(self, *call: Any) -> None:
        with self._lock:
            self.calls.append(call)

    def calls_to(self, endpoint: str) -> list[tuple[Any, ...]]:
        with self._lock:
            return [c for c in self.calls if c[0] == endpoint]

    def get_music_folders(self) -> list[MusicFolder]:
        self._record("getMusicFolders")
        if "getMusicFolders" in self.failing:
            raise SubsonicError("Request to getMusicFolders failed: connection refused")
        return list(self.folders)

    def get_indexes(self, folder_id: str | None = None) -> list[IndexArtist]:
        self._record("getIndexes", folder_id)
        if folder_id in self.failing:
            raise SubsonicError("Request to getIndexes failed: connection refused")
        return list(self.artists.get(folder_id or "", []))

    def get_music_directory(self, directory_id: str) -> MusicDirectory:
        self._record("getMusicDirectory", directory_id)
        if directory_id in self.failing:
            raise SubsonicError("Request to getMusicDirectory failed: connection refused")
        try:
            return self.directories[directory_id]
        except KeyError as e:
            raise SubsonicAPIError(70, "Directory not found") from e

    def stream(
        self,
        item_id: str,
        fmt: str | None = None,
        timeout: float | None = None,
    ) -> FakeResponse:
        self._record("stream", item_id, fmt)
        return self._open(item_id)

    def get_cover_art(self, cover_art_id: str, timeout: float | None = None) -> FakeResponse:
        self._record("getCoverArt", cover_art_id)
        return self._open(cover_art_id)

    def _open(self, item_id: str) -> FakeResponse:
        if item_id in self.failing:
            raise SubsonicError("Request to stream failed: 500 Server Error")
        try:
            data = self.content[item_id]
        except KeyError as e:
            raise SubsonicAPIError(70, "Requested item not found") from e
        return FakeResponse(data, gate=self.gate, fail=item_id in self.broken_streams)


@pytest.fixture()
def fake_client() -> FakeSubsonicClient:
    return FakeSubsonicClient()


@pytest.fixture()
def seeded_library(fake_client: FakeSubsonicClient) -> FakeSubsonicClient:
    c = fake_client
    c.folders = [MusicFolder(id="1", name="Music"), MusicFolder(id="2", name="Podcasts")]
    c.artists = {
        "1": [IndexArtist(id="ar-1", name="Kim Lip"), IndexArtist(id="ar-2", name="AC/DC")],
        "2": [IndexArtist(id="ar-3", name="Talk Show")],
    }
    c.directories = {
        "ar-1": MusicDirectory(
            id="ar-1",
            name="Kim Lip",
            directories=[Child(id="al-1", title="Kim Lip", is_dir=True, cover_art="al-1")],
        ),
        "ar-2": MusicDirectory(id="ar-2", name="AC/DC"),
        "ar-3": MusicDirectory(id="ar-3", name="Talk Show"),
        "al-1": MusicDirectory(
            id="al-1",
            name="Kim Lip",
            audio=[
                Child(
                    id="tr-1",
                    title="Eclipse",
                    artist="Kim Lip",
                    album="Kim Lip",
                    track=1,
                    suffix="flac",
                    transcoded_suffix="mp3",
                    size=1000,
                    duration=230,
                    cover_art="al-1",
                    path="Kim Lip/Kim Lip/01 Eclipse.flac",
                ),
                Child(
                    id="tr-2",
                    title="Twilight",
                    artist="Kim Lip",
                    album="Kim Lip",
                    track=2,
                    suffix="mp3",
                    size=500,
                    duration=200,
                    cover_art="al-1",
                    path="Kim Lip/Kim Lip/02 Twilight.mp3",
                ),
            ],
            video=[
                Child(id="vi-1", title="Eclipse MV", is_video=True, suffix="mp4", size=2000),
            ],
        ),
    }
    c.content = {
        "tr-1": b"flac" * 250,
        "tr-2": b"mp3!" * 125,
        "vi-1": b"mp4!" * 500,
        "al-1": b"\xff\xd8\xff\xe0jpeg",
    }
    return c


@pytest.fixture()
def index(seeded_library: FakeSubsonicClient) -> IndexCache:
    i = IndexCache(seeded_library)  # type: ignore
    assert i.refresh()
    return i


@pytest.fixture()
def tree(config: Config, seeded_library: FakeSubsonicClient, index: IndexCache) -> LibraryTree:
    return LibraryTree(config, seeded_library, index)  # type: ignore


def retry_for_sec(timeout_sec: float) -> Iterator[None]:
    start = time.time()
    while True:
        yield
        time.sleep(0.01)
        if time.time() - start >= timeout_sec:
            break
