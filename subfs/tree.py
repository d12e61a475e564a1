"""
The tree module models the virtual filesystem as a lazily populated tree of directory nodes and file
entries. Nothing is fetched from the server until a directory is first listed or looked up in.

There are three kinds of directories:

1. The root: one synthetic `All` directory plus one directory per music folder. Derived from the
   index cache.

2. Folders: one directory per artist indexed in the folder. `All` aggregates every folder. Also
   derived from the index cache.

3. Ordinary directories: artists, albums, and anything deeper. Derived from the server's
   `getMusicDirectory` listing of the node's ID, and loaded exactly once per node.

Root and folder nodes are re-derived when the index cache publishes a new snapshot, so that new
folders and artists show up while mounted. Child nodes are reused across re-derivations when their
name and ID are unchanged, which keeps already loaded subtrees alive.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from subfs.common import SubfsError, sanitize_filename
from subfs.config import Config
from subfs.index import IndexCache
from subfs.subsonic import Child, MusicDirectory, SubsonicClient, SubsonicError
from subfs.templates import (
    FilenameTemplateEvaluationError,
    Variant,
    cover_art_filename,
    eval_track_template,
    video_filename,
)

logger = logging.getLogger(__name__)

AGGREGATE_FOLDER_NAME = "All"

# We have no idea what the server's transcoding settings are, so estimate the size of transcoded
# files as MP3 CBR 320, which will likely over-estimate. Over-estimating is fine: reads past the end
# of the real content return EOF. Under-estimating would truncate the file.
TRANSCODE_ESTIMATE_KBPS = 320
# The server does not report the size of cover art. Same reasoning: over-estimate.
COVER_ART_SIZE_ESTIMATE = 10 * 1024 * 1024

NodeRole = Literal["root", "folder", "directory"]
EntryKind = Literal["dir", "file"]


class DirectoryListingError(SubfsError):
    pass


@dataclass(frozen=True, slots=True)
class FileEntry:
    id: str
    filename: str
    size: int
    created: datetime | None = None
    suffix: str = ""
    is_video: bool = False
    is_art: bool = False
    is_lossless: bool = False
    transcoded: bool = False


@dataclass(eq=False)
class DirectoryNode:
    # None for the root and for the aggregate folder.
    id: str | None
    role: NodeRole
    dirs: dict[str, DirectoryNode] = field(default_factory=dict)
    files: dict[str, FileEntry] = field(default_factory=dict)
    # Ordinary directories load once. Root and folders track the index generation they were
    # derived from instead.
    loaded: bool = False
    generation: int = -1
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __repr__(self) -> str:
        return f"DirectoryNode(id={self.id!r}, role={self.role!r}, loaded={self.loaded})"


def estimate_transcoded_size(duration_seconds: int) -> int:
    return ((duration_seconds * TRANSCODE_ESTIMATE_KBPS) // 8) * 1024


class LibraryTree:
    def __init__(self, config: Config, client: SubsonicClient, index: IndexCache):
        self.config = config
        self.client = client
        self.index = index
        self.root = DirectoryNode(id=None, role="root")

    def list_directory(self, node: DirectoryNode) -> list[tuple[str, EntryKind]]:
        """
        Return the (name, kind) pairs of a directory, loading it first if necessary. Directories
        come before files. Raises DirectoryListingError if the server could not be reached.
        """
        self.load(node)
        with node.lock:
            entries: list[tuple[str, EntryKind]] = [(name, "dir") for name in node.dirs]
            entries.extend((name, "file") for name in node.files)
        return entries

    def lookup(self, node: DirectoryNode, name: str) -> DirectoryNode | FileEntry | None:
        """Resolve a name in a directory. Unknown names return None."""
        self.load(node)
        with node.lock:
            if name in node.dirs:
                return node.dirs[name]
            return node.files.get(name)

    def load(self, node: DirectoryNode) -> None:
        if node.role == "root":
            self._load_root(node)
        elif node.role == "folder":
            self._load_folder(node)
        else:
            self._load_directory(node)

    def _load_root(self, node: DirectoryNode) -> None:
        # If the index has never been populated, wait for the first refresh to finish.
        if not self.index.ready:
            logger.debug("TREE: Waiting for the initial index before listing the root")
            self.index.wait_until_ready()
        snapshot = self.index.snapshot()
        with node.lock:
            if node.generation == snapshot.generation:
                return
            dirs: dict[str, DirectoryNode] = {}
            dirs[AGGREGATE_FOLDER_NAME] = _reuse_or_create(
                node.dirs.get(AGGREGATE_FOLDER_NAME), None, "folder"
            )
            for folder in snapshot.folders:
                name = sanitize_filename(folder.name)
                if name == AGGREGATE_FOLDER_NAME:
                    name = f"{name} ({folder.id})"
                    logger.debug(f"TREE: Renamed music folder {folder.id} to {name}")
                dirs[name] = _reuse_or_create(node.dirs.get(name), folder.id, "folder")
            node.dirs = dirs
            node.generation = snapshot.generation
            node.loaded = True
            logger.debug(f"TREE: Derived root from index generation {snapshot.generation}")

    def _load_folder(self, node: DirectoryNode) -> None:
        if not self.index.ready:
            self.index.wait_until_ready()
        snapshot = self.index.snapshot()
        with node.lock:
            if node.generation == snapshot.generation:
                return
            dirs: dict[str, DirectoryNode] = {}
            for folder, artists in snapshot.folders.items():
                if node.id is not None and node.id != folder.id:
                    continue
                for artist in artists:
                    name = sanitize_filename(artist.name)
                    dirs[name] = _reuse_or_create(node.dirs.get(name), artist.id, "directory")
            node.dirs = dirs
            node.generation = snapshot.generation
            node.loaded = True
            logger.debug(
                f"TREE: Derived folder {node.id or AGGREGATE_FOLDER_NAME} with {len(dirs)} artists"
            )

    def _load_directory(self, node: DirectoryNode) -> None:
        assert node.id is not None
        # Concurrent first listings of the same node serialize on its lock; the losers see the
        # loaded flag and reuse the winner's children.
        with node.lock:
            if node.loaded:
                return
            try:
                content = self.client.get_music_directory(node.id)
            except SubsonicError as e:
                logger.error(f"TREE: Failed to retrieve directory {node.id}: {e}")
                raise DirectoryListingError(f"Failed to retrieve directory {node.id}") from e
            dirs, files = self._materialize(content)
            node.dirs = dirs
            node.files = files
            node.loaded = True
            logger.debug(
                f"TREE: Loaded directory {node.id} with {len(dirs)} directories and {len(files)} files"
            )

    def _materialize(
        self,
        content: MusicDirectory,
    ) -> tuple[dict[str, DirectoryNode], dict[str, FileEntry]]:
        dirs: dict[str, DirectoryNode] = {}
        files: dict[str, FileEntry] = {}
        # Distinct cover art IDs referenced anywhere in this directory. A dict keeps them in order
        # of first reference.
        cover_art: dict[str, None] = {}

        for d in content.directories:
            dirs[sanitize_filename(d.title)] = DirectoryNode(id=d.id, role="directory")
            if d.cover_art:
                cover_art[d.cover_art] = None

        for a in content.audio:
            for entry in self._expand_audio(a):
                if entry.filename in files:
                    logger.debug(f"TREE: Filename collision on {entry.filename}; last one wins")
                files[entry.filename] = entry
            if a.cover_art:
                cover_art[a.cover_art] = None

        for v in content.video:
            filename = video_filename(v)
            files[filename] = FileEntry(
                id=v.id,
                filename=filename,
                size=v.size,
                created=v.created,
                suffix=v.suffix,
                is_video=True,
            )
            if v.cover_art:
                cover_art[v.cover_art] = None

        for cover_art_id in cover_art:
            filename = cover_art_filename(cover_art_id)
            files[filename] = FileEntry(
                id=cover_art_id,
                filename=filename,
                size=COVER_ART_SIZE_ESTIMATE,
                suffix="jpg",
                is_art=True,
            )

        return dirs, files

    def _expand_audio(self, a: Child) -> list[FileEntry]:
        """
        Expand an audio track into its original and transcoded variants. A variant without a suffix
        does not exist: a lossy source has no transcoded suffix.
        """
        variants: list[tuple[Variant, str, int]] = [
            ("original", a.suffix, a.size),
            ("transcoded", a.transcoded_suffix, 0),
        ]
        entries: list[FileEntry] = []
        for variant, suffix, size in variants:
            if not suffix:
                continue
            lossless = True
            # Unknown size means a lossy transcode: estimate it.
            if size == 0:
                lossless = False
                size = estimate_transcoded_size(a.duration)
            try:
                filename = eval_track_template(self.config.filename_template, a, variant)
            except FilenameTemplateEvaluationError as e:
                logger.error(f"TREE: Failed to format filename: {e}")
                continue
            entries.append(
                FileEntry(
                    id=a.id,
                    filename=filename,
                    size=size,
                    created=a.created,
                    suffix=suffix,
                    is_lossless=lossless,
                    transcoded=variant == "transcoded",
                )
            )
        return entries


def _reuse_or_create(
    existing: DirectoryNode | None,
    node_id: str | None,
    role: NodeRole,
) -> DirectoryNode:
    if existing is not None and existing.id == node_id and existing.role == role:
        return existing
    return DirectoryNode(id=node_id, role=role)
