"""
The config module provides the configuration schema and parsing logic.

We take special care to optimize the configuration experience: subfs provides detailed errors when
an invalid configuration is detected, and emits warnings when unrecognized keys are found.
"""

from __future__ import annotations

import functools
import logging
import multiprocessing
import tomllib
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import appdirs

from subfs.common import SubfsExpectedError
from subfs.templates import (
    DEFAULT_FILENAME_TEMPLATE,
    FilenameTemplate,
    InvalidFilenameTemplateError,
)

XDG_CONFIG_SUBFS = Path(appdirs.user_config_dir("subfs"))
CONFIG_PATH = XDG_CONFIG_SUBFS / "config.toml"

XDG_CACHE_SUBFS = Path(appdirs.user_cache_dir("subfs"))

logger = logging.getLogger(__name__)


class ConfigNotFoundError(SubfsExpectedError):
    pass


class ConfigDecodeError(SubfsExpectedError):
    pass


class MissingConfigKeyError(SubfsExpectedError):
    pass


class InvalidConfigValueError(SubfsExpectedError, ValueError):
    pass


@dataclass(frozen=True)
class Config:
    server_url: str
    username: str
    password: str
    # Send the password hex-encoded instead of as a salted token. Needed for servers that predate
    # API version 1.13.0 or that store hashed passwords.
    legacy_auth: bool

    fuse_mount_dir: Path
    # Where fetched files are stored while the filesystem is mounted. Emptied on unmount.
    cache_dir: Path
    cache_size_mb: int

    filename_template: FilenameTemplate

    index_refresh_interval_seconds: int
    stream_timeout_seconds: int
    # Number of FUSE worker threads and concurrent stream fetches. Defaults to nproc/2.
    max_proc: int

    @classmethod
    def parse(cls, config_path_override: Path | None = None) -> Config:
        # As we parse, delete consumed values from the data dictionary. If any are left over at the
        # end of the config, warn that unknown config keys were found.
        cfgpath = config_path_override or CONFIG_PATH
        try:
            with cfgpath.open("r") as fp:
                data = tomllib.loads(fp.read())
        except FileNotFoundError as e:
            raise ConfigNotFoundError(f"Configuration file not found ({cfgpath})") from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigDecodeError(
                f"Failed to decode configuration file: invalid TOML: {e}"
            ) from e

        try:
            server_url = data["server_url"]
            del data["server_url"]
            if not isinstance(server_url, str):
                raise ValueError(f"Must be a str: got {type(server_url)}")
            if not server_url.startswith(("http://", "https://")):
                raise ValueError(f"Must be an http(s) URL: got {server_url}")
        except KeyError as e:
            raise MissingConfigKeyError(
                f"Missing key server_url in configuration file ({cfgpath})"
            ) from e
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid value for server_url in configuration file ({cfgpath}): {e}"
            ) from e

        try:
            username = data["username"]
            del data["username"]
            if not isinstance(username, str):
                raise ValueError(f"Must be a str: got {type(username)}")
        except KeyError as e:
            raise MissingConfigKeyError(
                f"Missing key username in configuration file ({cfgpath})"
            ) from e
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid value for username in configuration file ({cfgpath}): {e}"
            ) from e

        try:
            password = data["password"]
            del data["password"]
            if not isinstance(password, str):
                raise ValueError(f"Must be a str: got {type(password)}")
        except KeyError as e:
            raise MissingConfigKeyError(
                f"Missing key password in configuration file ({cfgpath})"
            ) from e
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid value for password in configuration file ({cfgpath}): {e}"
            ) from e

        try:
            legacy_auth = data["legacy_auth"]
            del data["legacy_auth"]
            if not isinstance(legacy_auth, bool):
                raise ValueError(f"Must be a bool: got {type(legacy_auth)}")
        except KeyError:
            legacy_auth = False
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid value for legacy_auth in configuration file ({cfgpath}): {e}"
            ) from e

        try:
            fuse_mount_dir = Path(data["fuse_mount_dir"]).expanduser()
            del data["fuse_mount_dir"]
        except KeyError as e:
            raise MissingConfigKeyError(
                f"Missing key fuse_mount_dir in configuration file ({cfgpath})"
            ) from e
        except (ValueError, TypeError) as e:
            raise InvalidConfigValueError(
                f"Invalid value for fuse_mount_dir in configuration file ({cfgpath}): must be a path"
            ) from e

        try:
            cache_dir = Path(data["cache_dir"]).expanduser()
            del data["cache_dir"]
        except KeyError:
            cache_dir = XDG_CACHE_SUBFS
        except (TypeError, ValueError) as e:
            raise InvalidConfigValueError(
                f"Invalid value for cache_dir in configuration file ({cfgpath}): must be a path"
            ) from e
        cache_dir.mkdir(parents=True, exist_ok=True)

        cache_size_mb = _parse_positive_int(data, "cache_size_mb", 100, cfgpath, allow_zero=True)
        index_refresh_interval_seconds = _parse_positive_int(
            data, "index_refresh_interval_seconds", 600, cfgpath
        )
        stream_timeout_seconds = _parse_positive_int(data, "stream_timeout_seconds", 60, cfgpath)
        max_proc = _parse_positive_int(
            data, "max_proc", max(1, multiprocessing.cpu_count() // 2), cfgpath
        )

        try:
            filename_template = FilenameTemplate(data["filename_template"])
            del data["filename_template"]
            if not isinstance(filename_template.text, str):
                raise ValueError(f"Must be a str: got {type(filename_template.text)}")
        except KeyError:
            filename_template = DEFAULT_FILENAME_TEMPLATE
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid value for filename_template in configuration file ({cfgpath}): {e}"
            ) from e
        try:
            filename_template.parse()
        except InvalidFilenameTemplateError as e:
            raise InvalidConfigValueError(
                f"Invalid filename_template in configuration file ({cfgpath}): {e}"
            ) from e

        if data:
            unrecognized_accessors: list[str] = []
            # Do a DFS over the data keys to assemble the map of unknown keys. State is a tuple of
            # ("accessor", node).
            dfs_state: deque[tuple[str, dict[str, Any]]] = deque([("", data)])
            while dfs_state:
                accessor, node = dfs_state.pop()
                if isinstance(node, dict):
                    for k, v in node.items():
                        child_accessor = k if not accessor else f"{accessor}.{k}"
                        dfs_state.append((child_accessor, v))
                    continue
                unrecognized_accessors.append(accessor)
            logger.warning(
                f"Unrecognized options found in configuration file: {', '.join(unrecognized_accessors)}"
            )

        return Config(
            server_url=server_url,
            username=username,
            password=password,
            legacy_auth=legacy_auth,
            fuse_mount_dir=fuse_mount_dir,
            cache_dir=cache_dir,
            cache_size_mb=cache_size_mb,
            filename_template=filename_template,
            index_refresh_interval_seconds=index_refresh_interval_seconds,
            stream_timeout_seconds=stream_timeout_seconds,
            max_proc=max_proc,
        )

    @functools.cached_property
    def cache_size_bytes(self) -> int:
        return self.cache_size_mb * 1024 * 1024

    @functools.cached_property
    def mount_pid_path(self) -> Path:
        return self.cache_dir / "mount.pid"


def _parse_positive_int(
    data: dict[str, Any],
    key: str,
    default: int,
    cfgpath: Path,
    allow_zero: bool = False,
) -> int:
    try:
        value = data[key]
        del data[key]
        # bool is a subclass of int, and `true` is certainly not a number of megabytes.
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValueError(f"Must be an int: got {type(value)}")
        if value < 0 or (value == 0 and not allow_zero):
            raise ValueError(f"Must be a positive integer: got {value}")
    except KeyError:
        return default
    except ValueError as e:
        raise InvalidConfigValueError(
            f"Invalid value for {key} in configuration file ({cfgpath}): {e}"
        ) from e
    return value
