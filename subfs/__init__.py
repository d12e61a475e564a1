from subfs.cache import MAX_CACHEABLE_FILE_SIZE, CacheRecord, LocalCache
from subfs.common import (
    VERSION,
    SubfsError,
    SubfsExpectedError,
    initialize_logging,
    sanitize_filename,
)
from subfs.config import Config
from subfs.index import IndexCache, IndexSnapshot
from subfs.stream import StreamController, StreamFetchError, StreamInterruptedError
from subfs.subsonic import (
    Child,
    IndexArtist,
    MusicDirectory,
    MusicFolder,
    SubsonicAPIError,
    SubsonicClient,
    SubsonicError,
)
from subfs.templates import (
    DEFAULT_FILENAME_TEMPLATE,
    FilenameTemplate,
    FilenameTemplateEvaluationError,
    InvalidFilenameTemplateError,
    cover_art_filename,
    eval_track_template,
    video_filename,
)
from subfs.tree import DirectoryListingError, DirectoryNode, FileEntry, LibraryTree

__all__ = [
    # Plumbing
    "initialize_logging",
    "VERSION",
    # Errors
    "SubfsError",
    "SubfsExpectedError",
    "SubsonicError",
    "SubsonicAPIError",
    "DirectoryListingError",
    "StreamFetchError",
    "StreamInterruptedError",
    "FilenameTemplateEvaluationError",
    "InvalidFilenameTemplateError",
    # Utilities
    "sanitize_filename",
    # Configuration
    "Config",
    # Remote
    "SubsonicClient",
    "MusicFolder",
    "IndexArtist",
    "MusicDirectory",
    "Child",
    # Naming
    "FilenameTemplate",
    "DEFAULT_FILENAME_TEMPLATE",
    "eval_track_template",
    "video_filename",
    "cover_art_filename",
    # Index
    "IndexCache",
    "IndexSnapshot",
    # Tree
    "LibraryTree",
    "DirectoryNode",
    "FileEntry",
    # Local cache and streaming
    "LocalCache",
    "CacheRecord",
    "MAX_CACHEABLE_FILE_SIZE",
    "StreamController",
]

initialize_logging(__name__)
