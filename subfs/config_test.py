import multiprocessing
import tempfile
from pathlib import Path

import pytest

from subfs.config import (
    XDG_CACHE_SUBFS,
    Config,
    ConfigDecodeError,
    ConfigNotFoundError,
    InvalidConfigValueError,
    MissingConfigKeyError,
)
from subfs.templates import DEFAULT_FILENAME_TEMPLATE, FilenameTemplate


def test_config_minimal() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "config.toml"
        with path.open("w") as fp:
            fp.write(
                """
                server_url = "https://music.example.com"
                username = "alice"
                password = "hunter2"
                fuse_mount_dir = "~/music"
                """
            )

        c = Config.parse(config_path_override=path)
        assert c.server_url == "https://music.example.com"
        assert c.username == "alice"
        assert c.password == "hunter2"
        assert c.legacy_auth is False
        assert c.fuse_mount_dir == Path.home() / "music"
        assert c.cache_dir == XDG_CACHE_SUBFS
        assert c.cache_size_mb == 100
        assert c.cache_size_bytes == 100 * 1024 * 1024
        assert c.filename_template == DEFAULT_FILENAME_TEMPLATE
        assert c.index_refresh_interval_seconds == 600
        assert c.stream_timeout_seconds == 60
        assert c.max_proc == max(1, multiprocessing.cpu_count() // 2)


def test_config_full() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "config.toml"
        cache_dir = Path(tmpdir) / "cache"
        with path.open("w") as fp:
            fp.write(
                f"""
                server_url = "http://localhost:4533"
                username = "alice"
                password = "hunter2"
                legacy_auth = true
                fuse_mount_dir = "~/music"
                cache_dir = "{cache_dir}"
                cache_size_mb = 250
                filename_template = "{{{{ title }}}}.{{{{ suffix }}}}"
                index_refresh_interval_seconds = 60
                stream_timeout_seconds = 10
                max_proc = 8
                """
            )

        c = Config.parse(config_path_override=path)
        assert c == Config(
            server_url="http://localhost:4533",
            username="alice",
            password="hunter2",
            legacy_auth=True,
            fuse_mount_dir=Path.home() / "music",
            cache_dir=cache_dir,
            cache_size_mb=250,
            filename_template=FilenameTemplate("{{ title }}.{{ suffix }}"),
            index_refresh_interval_seconds=60,
            stream_timeout_seconds=10,
            max_proc=8,
        )
        assert cache_dir.is_dir()
        assert c.mount_pid_path == cache_dir / "mount.pid"


def test_config_not_found() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "config.toml"
        with pytest.raises(ConfigNotFoundError):
            Config.parse(config_path_override=path)


def test_config_invalid_toml() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "config.toml"
        path.write_text("server_url = ")
        with pytest.raises(ConfigDecodeError):
            Config.parse(config_path_override=path)


def test_config_value_validation() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "config.toml"
        base = """
            username = "alice"
            password = "hunter2"
            fuse_mount_dir = "~/music"
            cache_dir = "{cache_dir}"
        """.format(cache_dir=Path(tmpdir) / "cache")

        def write(s: str) -> None:
            with path.open("w") as fp:
                fp.write(base + s)

        # server_url
        write("")
        with pytest.raises(MissingConfigKeyError) as excinfo:
            Config.parse(config_path_override=path)
        assert str(excinfo.value) == f"Missing key server_url in configuration file ({path})"
        write('server_url = "music.example.com"')
        with pytest.raises(InvalidConfigValueError) as excinfo:
            Config.parse(config_path_override=path)
        assert (
            str(excinfo.value)
            == f"Invalid value for server_url in configuration file ({path}): Must be an http(s) URL: got music.example.com"
        )

        # legacy_auth
        write('server_url = "http://x"\nlegacy_auth = "yes"')
        with pytest.raises(InvalidConfigValueError) as excinfo:
            Config.parse(config_path_override=path)
        assert (
            str(excinfo.value)
            == f"Invalid value for legacy_auth in configuration file ({path}): Must be a bool: got <class 'str'>"
        )

        # cache_size_mb
        write('server_url = "http://x"\ncache_size_mb = "big"')
        with pytest.raises(InvalidConfigValueError) as excinfo:
            Config.parse(config_path_override=path)
        assert (
            str(excinfo.value)
            == f"Invalid value for cache_size_mb in configuration file ({path}): Must be an int: got <class 'str'>"
        )
        write('server_url = "http://x"\ncache_size_mb = true')
        with pytest.raises(InvalidConfigValueError):
            Config.parse(config_path_override=path)
        write('server_url = "http://x"\ncache_size_mb = -1')
        with pytest.raises(InvalidConfigValueError) as excinfo:
            Config.parse(config_path_override=path)
        assert (
            str(excinfo.value)
            == f"Invalid value for cache_size_mb in configuration file ({path}): Must be a positive integer: got -1"
        )
        # A zero budget disables the local cache.
        write('server_url = "http://x"\ncache_size_mb = 0')
        assert Config.parse(config_path_override=path).cache_size_mb == 0

        # max_proc
        write('server_url = "http://x"\nmax_proc = 0')
        with pytest.raises(InvalidConfigValueError) as excinfo:
            Config.parse(config_path_override=path)
        assert (
            str(excinfo.value)
            == f"Invalid value for max_proc in configuration file ({path}): Must be a positive integer: got 0"
        )

        # filename_template
        write('server_url = "http://x"\nfilename_template = "{{ title "')
        with pytest.raises(InvalidConfigValueError) as excinfo:
            Config.parse(config_path_override=path)
        assert str(excinfo.value).startswith(
            f"Invalid filename_template in configuration file ({path}): Failed to compile template:"
        )


def test_config_warns_on_unrecognized_keys(caplog: pytest.LogCaptureFixture) -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "config.toml"
        with path.open("w") as fp:
            fp.write(
                f"""
                server_url = "http://localhost:4533"
                username = "alice"
                password = "hunter2"
                fuse_mount_dir = "~/music"
                cache_dir = "{Path(tmpdir) / "cache"}"
                music_source_dir = "~/.music-src"
                [vfs]
                artists_whitelist = ["BLACKPINK"]
                """
            )
        Config.parse(config_path_override=path)
        assert "Unrecognized options found in configuration file:" in caplog.text
        assert "music_source_dir" in caplog.text
        assert "vfs.artists_whitelist" in caplog.text
