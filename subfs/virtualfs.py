"""
The virtualfs module exposes the library tree as a read-only FUSE filesystem. It is written in an
Object-Oriented style because that's how the FUSE libraries tend to be implemented.

This module contains 4 classes:

1. FileHandleManager: A counter that generates new file handles. It wraps back to 10 when the file
   handles exceed 10k, as to avoid any overflows.

2. INodeMapper: Tracks the inode <-> path mappings, along with the tree node that each inode
   resolved to. llfuse makes us manage the inodes ourselves.

3. MutatingOp: The set of mutating syscalls. Every one of them is rejected with EROFS.

4. VirtualFS: The llfuse operations class. It translates inodes into tree nodes and file entries,
   delegates directory listings to the LibraryTree and file reads to the StreamController, and maps
   their failures onto errnos.

Everything that may wait on the network (directory loads and file reads) runs with the llfuse global
lock released, so that one slow request does not stall the whole filesystem.
"""

from __future__ import annotations

import contextlib
import enum
import errno
import logging
import os
import random
import stat
import subprocess
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, NoReturn

import cachetools
import llfuse

from subfs.cache import LocalCache
from subfs.common import SubfsExpectedError
from subfs.config import Config
from subfs.index import IndexCache
from subfs.stream import StreamController, StreamFetchError, StreamInterruptedError
from subfs.subsonic import SubsonicClient
from subfs.tree import DirectoryListingError, DirectoryNode, FileEntry, LibraryTree

logger = logging.getLogger(__name__)

DIRECTORY_MODE = stat.S_IFDIR | 0o555
FILE_MODE = stat.S_IFREG | 0o444

# Any of these flags on open means the caller intends to modify the file.
WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_APPEND | os.O_CREAT | os.O_TRUNC


class MountError(SubfsExpectedError):
    pass


class UnmountError(SubfsExpectedError):
    pass


class FileHandleManager:
    """
    FileHandleManager generates file handles and handles wrapping so that we do not go over the int
    size. Assumes that we do not cycle 10k file handles before the first handle is released.
    """

    def __init__(self) -> None:
        self._state = 10

    def next(self) -> int:
        self._state = max(10, (self._state + 1) % 10_000)
        return self._state


class INodeMapper:
    """
    INodeMapper manages the mapping of inodes to paths in our filesystem, and remembers the tree node
    or file entry that each path last resolved to.
    """

    def __init__(self, root: DirectoryNode):
        self._inode_to_path_map: dict[int, PurePosixPath] = {llfuse.ROOT_INODE: PurePosixPath("/")}
        self._path_to_inode_map: dict[PurePosixPath, int] = {PurePosixPath("/"): llfuse.ROOT_INODE}
        self._inode_to_node_map: dict[int, DirectoryNode | FileEntry] = {llfuse.ROOT_INODE: root}
        self._next_inode_ctr: int = llfuse.ROOT_INODE + 1

    def _next_inode(self) -> int:
        # Increment to infinity.
        cur = self._next_inode_ctr
        self._next_inode_ctr += 1
        return cur

    def get_path(self, inode: int) -> PurePosixPath:
        """Raises ENOENT if the inode doesn't exist."""
        try:
            return self._inode_to_path_map[inode]
        except KeyError as e:
            raise llfuse.FUSEError(errno.ENOENT) from e

    def get_node(self, inode: int) -> DirectoryNode | FileEntry:
        """Raises ENOENT if the inode doesn't exist."""
        try:
            return self._inode_to_node_map[inode]
        except KeyError as e:
            raise llfuse.FUSEError(errno.ENOENT) from e

    def calc_inode(self, path: PurePosixPath, node: DirectoryNode | FileEntry) -> int:
        """
        Get the inode of a path. If we've seen the path before, return the cached inode, and point
        it at the node it now resolves to. Otherwise, generate a new inode.
        """
        try:
            inode = self._path_to_inode_map[path]
        except KeyError:
            inode = self._next_inode()
            self._path_to_inode_map[path] = inode
            self._inode_to_path_map[inode] = path
        self._inode_to_node_map[inode] = node
        return inode

    def inode_of(self, path: PurePosixPath) -> int | None:
        return self._path_to_inode_map.get(path)


class MutatingOp(enum.Enum):
    CREATE = "create"
    MKDIR = "mkdir"
    MKNOD = "mknod"
    UNLINK = "unlink"
    RMDIR = "rmdir"
    RENAME = "rename"
    LINK = "link"
    SYMLINK = "symlink"
    SETATTR = "setattr"
    SETXATTR = "setxattr"
    REMOVEXATTR = "removexattr"
    WRITE = "write"
    FSYNC = "fsync"
    FSYNCDIR = "fsyncdir"


def _readonly(op: MutatingOp) -> Callable[..., NoReturn]:
    def reject(self: VirtualFS, *args: Any, **kwargs: Any) -> NoReturn:
        self.reject(op)

    reject.__name__ = op.value
    return reject


@dataclass(eq=False)
class OpenFile:
    entry: FileEntry
    # The full content, fetched on first read.
    data: bytes | None = None
    lock: threading.Lock = field(default_factory=threading.Lock)


class VirtualFS(llfuse.Operations):  # type: ignore
    """
    This is the virtual filesystem class. It delegates the library logic to LibraryTree and
    StreamController and the inode tracking to INodeMapper.
    """

    def __init__(
        self,
        config: Config,
        tree: LibraryTree,
        streamer: StreamController,
        unlocked: contextlib.AbstractContextManager[Any] | None = None,
    ):
        self.config = config
        self.tree = tree
        self.streamer = streamer
        # Releases the llfuse global lock around blocking work. Swappable so that the operations can
        # be called outside of a running llfuse main loop.
        self.unlocked = unlocked if unlocked is not None else llfuse.lock_released
        # Set when the filesystem is going away. Interrupts every pending read.
        self.shutdown = threading.Event()
        self.fhandler = FileHandleManager()
        self.inodes = INodeMapper(tree.root)
        self.default_attrs = {
            # We change inodes across FS restarts, so vary the generation too.
            "generation": random.randint(0, 1000000),
            "entry_timeout": 30,
            "attr_timeout": 30,
        }
        # After a ls, getattr and lookup are serially called for each item in the directory. Whenever
        # we have a readdir, populate these caches with the listing's attributes. They are only valid
        # for a second, which prevents stale results from being read from them.
        self.getattr_cache: cachetools.TTLCache[int, llfuse.EntryAttributes]
        self.lookup_cache: cachetools.TTLCache[tuple[int, bytes], llfuse.EntryAttributes]
        self.reset_getattr_caches()
        # Programs invoke readdir multiple times with offsets for a single directory. We list the
        # directory once in `opendir`, associate the results with a file handle, and yield results
        # from that handle in `readdir`. We delete the state in `releasedir`.
        #
        # Map of file handle -> (parent inode, child name, child attributes).
        self.readdir_cache: dict[int, list[tuple[int, bytes, llfuse.EntryAttributes]]] = {}
        self.open_files: dict[int, OpenFile] = {}

    def reset_getattr_caches(self) -> None:
        self.getattr_cache = cachetools.TTLCache(maxsize=8192, ttl=1)
        self.lookup_cache = cachetools.TTLCache(maxsize=8192, ttl=1)

    def stat(self, node: DirectoryNode | FileEntry, inode: int) -> dict[str, Any]:
        attrs: dict[str, Any] = {}
        attrs["st_ino"] = inode
        attrs["st_nlink"] = 1
        attrs["st_uid"] = os.getuid()
        attrs["st_gid"] = os.getgid()
        attrs["st_blksize"] = 4096
        if isinstance(node, DirectoryNode):
            attrs["st_mode"] = DIRECTORY_MODE
            attrs["st_nlink"] = 2
            attrs["st_size"] = 4096
            mtime_ns = 0
        else:
            attrs["st_mode"] = FILE_MODE
            attrs["st_size"] = node.size
            mtime_ns = int(node.created.timestamp() * 1e9) if node.created else 0
        attrs["st_blocks"] = (attrs["st_size"] + 511) // 512
        attrs["st_atime_ns"] = mtime_ns
        attrs["st_mtime_ns"] = mtime_ns
        attrs["st_ctime_ns"] = mtime_ns
        return attrs

    def make_entry_attributes(self, attrs: dict[str, Any]) -> llfuse.EntryAttributes:
        for k, v in self.default_attrs.items():
            if k not in attrs:
                attrs[k] = v
        entry = llfuse.EntryAttributes()
        for k, v in attrs.items():
            setattr(entry, k, v)
        return entry

    def _directory(self, inode: int) -> DirectoryNode:
        node = self.inodes.get_node(inode)
        if not isinstance(node, DirectoryNode):
            raise llfuse.FUSEError(errno.ENOTDIR)
        return node

    def getattr(self, inode: int, _: Any = None) -> llfuse.EntryAttributes:
        logger.debug(f"FUSE: Received getattr for {inode=}")
        with contextlib.suppress(KeyError):
            return self.getattr_cache[inode]
        node = self.inodes.get_node(inode)
        return self.make_entry_attributes(self.stat(node, inode))

    def lookup(self, parent_inode: int, name: bytes, _: Any = None) -> llfuse.EntryAttributes:
        logger.debug(f"FUSE: Received lookup for {parent_inode=}/{name=}")
        with contextlib.suppress(KeyError):
            return self.lookup_cache[(parent_inode, name)]
        parent_path = self.inodes.get_path(parent_inode)
        if name == b".":
            return self.getattr(parent_inode)
        if name == b"..":
            inode = self.inodes.inode_of(parent_path.parent)
            if inode is None:
                raise llfuse.FUSEError(errno.ENOENT)
            return self.getattr(inode)
        parent = self._directory(parent_inode)
        try:
            namestr = name.decode()
        except UnicodeDecodeError as e:
            raise llfuse.FUSEError(errno.ENOENT) from e

        try:
            with self.unlocked:
                node = self.tree.lookup(parent, namestr)
        except DirectoryListingError as e:
            raise llfuse.FUSEError(errno.ENOENT) from e
        if node is None:
            logger.debug(f"FUSE: Failed to resolve {parent_path / namestr}")
            raise llfuse.FUSEError(errno.ENOENT)

        inode = self.inodes.calc_inode(parent_path / namestr, node)
        logger.debug(f"FUSE: Resolved lookup {parent_inode=}/{name=} to {inode=}")
        return self.make_entry_attributes(self.stat(node, inode))

    def access(self, inode: int, mode: int, _: Any = None) -> bool:
        self.inodes.get_node(inode)
        return not mode & os.W_OK

    def opendir(self, inode: int, _: Any = None) -> int:
        logger.debug(f"FUSE: Received opendir for {inode=}")
        path = self.inodes.get_path(inode)
        node = self._directory(inode)

        try:
            with self.unlocked:
                children: list[tuple[str, DirectoryNode | FileEntry]] = []
                for namestr, _kind in self.tree.list_directory(node):
                    child = self.tree.lookup(node, namestr)
                    # The index may have been refreshed in between listing and lookup.
                    if child is not None:
                        children.append((namestr, child))
        except DirectoryListingError as e:
            raise llfuse.FUSEError(errno.ENOENT) from e

        entries: list[tuple[int, bytes, llfuse.EntryAttributes]] = []
        entries.append((inode, b".", self.getattr(inode)))
        parent_inode = self.inodes.inode_of(path.parent) or llfuse.ROOT_INODE
        entries.append((inode, b"..", self.getattr(parent_inode)))
        for namestr, child in children:
            child_inode = self.inodes.calc_inode(path / namestr, child)
            attrs = self.make_entry_attributes(self.stat(child, child_inode))
            entries.append((inode, namestr.encode(), attrs))

        fh = self.fhandler.next()
        self.readdir_cache[fh] = entries
        logger.debug(f"FUSE: Stored {len(entries)=} nodes into the readdir cache for {fh=}")
        return fh

    def readdir(
        self,
        fh: int,
        offset: int = 0,
    ) -> Iterator[tuple[bytes, llfuse.EntryAttributes, int]]:
        logger.debug(f"FUSE: Received readdir for {fh=} {offset=}")
        try:
            entries = self.readdir_cache[fh]
        except KeyError:
            return
        for i, (parent_inode, name, entry) in enumerate(entries[offset:]):
            self.getattr_cache[entry.st_ino] = entry
            self.lookup_cache[(parent_inode, name)] = entry
            yield name, entry, i + offset + 1

    def releasedir(self, fh: int) -> None:
        with contextlib.suppress(KeyError):
            del self.readdir_cache[fh]

    def open(self, inode: int, flags: int, _: Any = None) -> int:
        logger.debug(f"FUSE: Received open for {inode=} {flags=}")
        node = self.inodes.get_node(inode)
        if flags & WRITE_FLAGS:
            logger.debug(f"FUSE: Rejected writable open of {inode=}")
            raise llfuse.FUSEError(errno.EROFS)
        if isinstance(node, DirectoryNode):
            raise llfuse.FUSEError(errno.EISDIR)
        fh = self.fhandler.next()
        self.open_files[fh] = OpenFile(entry=node)
        return fh

    def read(self, fh: int, offset: int, length: int) -> bytes:
        logger.debug(f"FUSE: Received read for {fh=} {offset=} {length=}")
        try:
            handle = self.open_files[fh]
        except KeyError as e:
            raise llfuse.FUSEError(errno.EBADF) from e

        try:
            with self.unlocked:
                with handle.lock:
                    if handle.data is None:
                        handle.data = self.streamer.read(handle.entry, cancel=self.shutdown)
                    data = handle.data
        except StreamInterruptedError as e:
            raise llfuse.FUSEError(errno.EINTR) from e
        except StreamFetchError as e:
            raise llfuse.FUSEError(errno.EIO) from e
        return data[offset : offset + length]

    def release(self, fh: int) -> None:
        logger.debug(f"FUSE: Received release for {fh=}")
        with contextlib.suppress(KeyError):
            del self.open_files[fh]

    def flush(self, fh: int) -> None:
        pass

    def statfs(self, _: Any = None) -> llfuse.StatvfsData:
        data = llfuse.StatvfsData()
        data.f_bsize = 4096
        data.f_frsize = 4096
        data.f_blocks = 0
        data.f_bfree = 0
        data.f_bavail = 0
        data.f_files = 0
        data.f_ffree = 0
        data.f_favail = 0
        data.f_namemax = 255
        return data

    def getxattr(self, inode: int, name: bytes, _: Any = None) -> bytes:
        raise llfuse.FUSEError(llfuse.ENOATTR)

    def listxattr(self, inode: int, _: Any = None) -> Iterator[bytes]:
        return iter([])

    def forget(self, inode_list: list[tuple[int, int]]) -> None:
        # Clear the cache in case someone makes a request later...
        self.reset_getattr_caches()

    def destroy(self) -> None:
        self.shutdown.set()

    def reject(self, op: MutatingOp) -> NoReturn:
        logger.debug(f"FUSE: Rejected {op.value} on read-only filesystem")
        raise llfuse.FUSEError(errno.EROFS)

    create = _readonly(MutatingOp.CREATE)
    mkdir = _readonly(MutatingOp.MKDIR)
    mknod = _readonly(MutatingOp.MKNOD)
    unlink = _readonly(MutatingOp.UNLINK)
    rmdir = _readonly(MutatingOp.RMDIR)
    rename = _readonly(MutatingOp.RENAME)
    link = _readonly(MutatingOp.LINK)
    symlink = _readonly(MutatingOp.SYMLINK)
    setattr = _readonly(MutatingOp.SETATTR)
    setxattr = _readonly(MutatingOp.SETXATTR)
    removexattr = _readonly(MutatingOp.REMOVEXATTR)
    write = _readonly(MutatingOp.WRITE)
    fsync = _readonly(MutatingOp.FSYNC)
    fsyncdir = _readonly(MutatingOp.FSYNCDIR)


def mount_virtualfs(
    c: Config,
    client: SubsonicClient | None = None,
    debug: bool = False,
    attempts: int = 5,
    delay: float = 1.0,
) -> None:
    """
    Mount the filesystem and serve it until the main loop exits, then tear everything down: the
    index refresher, pending reads, the mount itself, and the cached files. Raises MountError if
    the filesystem could not be mounted after `attempts` tries.
    """
    if client is None:
        client = SubsonicClient(
            c.server_url,
            c.username,
            c.password,
            timeout=c.stream_timeout_seconds,
            legacy_auth=c.legacy_auth,
        )
    index = IndexCache(client, c.index_refresh_interval_seconds)
    cache = LocalCache(c.cache_dir, c.cache_size_bytes)
    tree = LibraryTree(c, client, index)
    streamer = StreamController(client, cache, workers=c.max_proc, timeout=c.stream_timeout_seconds)
    fs = VirtualFS(c, tree, streamer)

    options = set(llfuse.default_options)
    options.add("ro")
    options.add("fsname=subfs")
    if debug:
        options.add("debug")

    try:
        _init_with_retries(fs, str(c.fuse_mount_dir), options, attempts, delay)
    except MountError:
        streamer.shutdown(wait=False)
        raise
    logger.info(f"FUSE: Mounted {client.server_url} at {c.fuse_mount_dir}")
    # Only start refreshing once there is a filesystem to serve the index from.
    index.start()
    try:
        llfuse.main(workers=c.max_proc)
    finally:
        fs.shutdown.set()
        index.stop(timeout=1)
        streamer.shutdown(wait=False)
        llfuse.close(unmount=False)
        try:
            unmount_virtualfs(c)
        finally:
            cache.purge()


def _init_with_retries(
    fs: VirtualFS,
    mount_dir: str,
    options: set[str],
    attempts: int,
    delay: float,
) -> None:
    for attempt in range(1, attempts + 1):
        try:
            llfuse.init(fs, mount_dir, options)
            return
        except RuntimeError as e:
            # llfuse raises RuntimeError when the mount itself fails.
            logger.warning(f"FUSE: Failed to mount {mount_dir} (attempt {attempt}/{attempts}): {e}")
        if attempt < attempts:
            time.sleep(delay)
    raise MountError(f"Failed to mount {mount_dir} after {attempts} attempts")


def unmount_virtualfs(c: Config, attempts: int = 5, delay: float = 1.0) -> None:
    """
    Unmount the filesystem, retrying a few times if the mount point is busy. Raises UnmountError if
    the filesystem is still mounted afterwards.
    """
    mount_dir = str(c.fuse_mount_dir)
    for attempt in range(1, attempts + 1):
        if not os.path.ismount(mount_dir):
            return
        for cmd in (["fusermount", "-u", mount_dir], ["umount", mount_dir]):
            try:
                proc = subprocess.run(cmd, capture_output=True, text=True)
            except FileNotFoundError:
                continue
            if proc.returncode == 0:
                break
            logger.debug(f"FUSE: {cmd[0]} failed: {proc.stderr.strip()}")
        if not os.path.ismount(mount_dir):
            logger.info(f"FUSE: Unmounted {mount_dir}")
            return
        logger.warning(f"FUSE: Failed to unmount {mount_dir} (attempt {attempt}/{attempts})")
        time.sleep(delay)
    raise UnmountError(f"Failed to unmount {mount_dir} after {attempts} attempts")
