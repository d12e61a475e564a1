"""
The subsonic module is a small client for the Subsonic REST API. We only implement the handful of
read-only endpoints that the virtual filesystem needs: folders, indexes, directories, and streams.

All responses are requested as JSON. Every endpoint wraps its payload in a `subsonic-response`
envelope whose `status` is either `ok` or `failed`; failed envelopes are raised as
SubsonicAPIError.
"""

from __future__ import annotations

import binascii
import dataclasses
import hashlib
import logging
import secrets
from datetime import datetime
from typing import Any

import requests

from subfs.common import VERSION, SubfsError

logger = logging.getLogger(__name__)

API_VERSION = "1.13.0"
CLIENT_NAME = "subfs"


class SubsonicError(SubfsError):
    pass


class SubsonicAPIError(SubsonicError):
    def __init__(self, code: int, message: str):
        super().__init__(f"Subsonic API error {code}: {message}")
        self.code = code


@dataclasses.dataclass(frozen=True, slots=True)
class MusicFolder:
    id: str
    name: str


@dataclasses.dataclass(frozen=True, slots=True)
class IndexArtist:
    id: str
    name: str


@dataclasses.dataclass(frozen=True)
class Child:
    """A single entry of a music directory: a sub-directory, an audio track, or a video."""

    id: str
    title: str
    is_dir: bool = False
    is_video: bool = False
    artist: str = ""
    album: str = ""
    track: int | None = None
    suffix: str = ""
    transcoded_suffix: str = ""
    size: int = 0
    duration: int = 0
    cover_art: str | None = None
    path: str = ""
    created: datetime | None = None

    @classmethod
    def parse(cls, data: dict[str, Any]) -> Child:
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", data.get("name", ""))),
            is_dir=bool(data.get("isDir", False)),
            is_video=bool(data.get("isVideo", False)),
            artist=str(data.get("artist", "")),
            album=str(data.get("album", "")),
            track=int(data["track"]) if data.get("track") is not None else None,
            suffix=str(data.get("suffix", "")),
            transcoded_suffix=str(data.get("transcodedSuffix", "")),
            size=int(data.get("size", 0)),
            duration=int(data.get("duration", 0)),
            cover_art=str(data["coverArt"]) if data.get("coverArt") is not None else None,
            path=str(data.get("path", "")),
            created=_parse_timestamp(data.get("created")),
        )


@dataclasses.dataclass
class MusicDirectory:
    id: str
    name: str
    directories: list[Child] = dataclasses.field(default_factory=list)
    audio: list[Child] = dataclasses.field(default_factory=list)
    video: list[Child] = dataclasses.field(default_factory=list)


def _parse_timestamp(x: Any) -> datetime | None:
    if not x:
        return None
    try:
        return datetime.fromisoformat(str(x))
    except ValueError:
        logger.debug(f"SUBSONIC: Ignoring unparseable timestamp {x!r}")
        return None


class SubsonicClient:
    def __init__(
        self,
        server_url: str,
        username: str,
        password: str,
        timeout: float = 60,
        legacy_auth: bool = False,
    ):
        self.server_url = server_url.rstrip("/")
        self.username = username
        self.timeout = timeout
        self._password = password
        self._legacy_auth = legacy_auth
        self._session = requests.Session()
        self._session.headers["User-Agent"] = f"{CLIENT_NAME}/{VERSION}"

    def __repr__(self) -> str:
        return f"SubsonicClient({self.username}@{self.server_url})"

    def _auth_params(self) -> dict[str, str]:
        params = {"u": self.username, "v": API_VERSION, "c": CLIENT_NAME, "f": "json"}
        if self._legacy_auth:
            params["p"] = "enc:" + binascii.hexlify(self._password.encode()).decode()
        else:
            salt = secrets.token_hex(8)
            params["t"] = hashlib.md5((self._password + salt).encode()).hexdigest()
            params["s"] = salt
        return params

    def _request(
        self,
        endpoint: str,
        stream: bool = False,
        timeout: float | None = None,
        **params: Any,
    ) -> requests.Response:
        url = f"{self.server_url}/rest/{endpoint}.view"
        query = self._auth_params()
        query.update({k: v for k, v in params.items() if v is not None})
        try:
            resp = self._session.get(
                url, params=query, timeout=timeout or self.timeout, stream=stream
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise SubsonicError(f"Request to {endpoint} failed: {e}") from e
        return resp

    def _call(self, endpoint: str, **params: Any) -> dict[str, Any]:
        resp = self._request(endpoint, **params)
        try:
            envelope = resp.json()["subsonic-response"]
        except (ValueError, KeyError) as e:
            raise SubsonicError(f"Malformed response from {endpoint}") from e
        if envelope.get("status") != "ok":
            error = envelope.get("error", {})
            raise SubsonicAPIError(int(error.get("code", 0)), str(error.get("message", "")))
        return envelope

    def _open(self, endpoint: str, timeout: float | None = None, **params: Any) -> requests.Response:
        """Open a binary endpoint. The server signals errors with a JSON envelope instead of data."""
        resp = self._request(endpoint, stream=True, timeout=timeout, **params)
        if resp.headers.get("Content-Type", "").startswith(("application/json", "text/xml")):
            try:
                envelope = resp.json()["subsonic-response"]
            except (ValueError, KeyError) as e:
                raise SubsonicError(f"Malformed response from {endpoint}") from e
            finally:
                resp.close()
            error = envelope.get("error", {})
            raise SubsonicAPIError(int(error.get("code", 0)), str(error.get("message", "")))
        return resp

    def ping(self) -> None:
        self._call("ping")

    def get_music_folders(self) -> list[MusicFolder]:
        envelope = self._call("getMusicFolders")
        return [
            MusicFolder(id=str(f["id"]), name=str(f.get("name", f["id"])))
            for f in envelope.get("musicFolders", {}).get("musicFolder", [])
        ]

    def get_indexes(self, folder_id: str | None = None) -> list[IndexArtist]:
        envelope = self._call("getIndexes", musicFolderId=folder_id)
        artists: list[IndexArtist] = []
        for index in envelope.get("indexes", {}).get("index", []):
            for a in index.get("artist", []):
                artists.append(IndexArtist(id=str(a["id"]), name=str(a["name"])))
        return artists

    def get_music_directory(self, directory_id: str) -> MusicDirectory:
        envelope = self._call("getMusicDirectory", id=directory_id)
        data = envelope.get("directory", {})
        directory = MusicDirectory(id=str(data.get("id", directory_id)), name=str(data.get("name", "")))
        for c in data.get("child", []):
            child = Child.parse(c)
            if child.is_dir:
                directory.directories.append(child)
            elif child.is_video:
                directory.video.append(child)
            else:
                directory.audio.append(child)
        return directory

    def stream(
        self,
        item_id: str,
        fmt: str | None = None,
        timeout: float | None = None,
    ) -> requests.Response:
        """Open a byte stream for a track or video. `fmt="raw"` requests the original file."""
        return self._open("stream", timeout=timeout, id=item_id, format=fmt)

    def get_cover_art(self, cover_art_id: str, timeout: float | None = None) -> requests.Response:
        return self._open("getCoverArt", timeout=timeout, id=cover_art_id)
