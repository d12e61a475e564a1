"""
The cli module defines subfs's CLI interface. It does not have any domain logic of its own. It is
dedicated to parsing, resolving arguments, and delegating to the appropriate module.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass
from pathlib import Path

import click

from subfs.common import SubfsExpectedError
from subfs.config import Config

logger = logging.getLogger(__name__)


class DaemonAlreadyRunningError(SubfsExpectedError):
    pass


@dataclass
class Context:
    config: Config


# fmt: off
@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Emit verbose logging.")
@click.option("--config", "-c", type=click.Path(path_type=Path), help="Override the config file location.")
@click.pass_context
# fmt: on
def cli(cc: click.Context, verbose: bool, config: Path | None = None) -> None:
    """A read-only virtual filesystem for a Subsonic music library."""
    logging.getLogger().setLevel(logging.DEBUG if verbose else logging.INFO)
    cc.obj = Context(
        config=Config.parse(config_path_override=config),
    )


@cli.group()
def config() -> None:
    """Utilites for configuring subfs."""


@config.command()
@click.pass_obj
def preview_template(ctx: Context) -> None:
    """Preview the configured filename template with sample tracks."""
    from subfs.templates import preview_filename_template
    preview_filename_template(ctx.config)


@cli.command()
# fmt: off
@click.option("--foreground", "-f", is_flag=True, help="Run the FUSE controller in the foreground (default: daemon).")
@click.option("--server-url", type=str, help="Override the configured server URL.")
@click.option("--username", type=str, help="Override the configured username.")
@click.option("--password", type=str, help="Override the configured password.")
@click.option("--mount-dir", type=click.Path(path_type=Path), help="Override the configured mount directory.")
@click.option("--cache-size", type=click.IntRange(min=0), help="Override the configured cache size (in MB).")
# fmt: on
@click.pass_obj
def mount(
    ctx: Context,
    foreground: bool,
    server_url: str | None,
    username: str | None,
    password: str | None,
    mount_dir: Path | None,
    cache_size: int | None,
) -> None:
    """Mount the virtual filesystem."""
    from subfs.virtualfs import mount_virtualfs

    c = apply_overrides(
        ctx.config,
        server_url=server_url,
        username=username,
        password=password,
        mount_dir=mount_dir,
        cache_size=cache_size,
    )
    if not foreground:
        daemonize(pid_path=c.mount_pid_path)

    debug = logging.getLogger().getEffectiveLevel() == logging.DEBUG
    mount_virtualfs(c, debug=debug)


@cli.command()
@click.pass_obj
def unmount(ctx: Context) -> None:
    """Unmount the virtual filesystem."""
    from subfs.virtualfs import unmount_virtualfs
    unmount_virtualfs(ctx.config)


def apply_overrides(
    c: Config,
    *,
    server_url: str | None = None,
    username: str | None = None,
    password: str | None = None,
    mount_dir: Path | None = None,
    cache_size: int | None = None,
) -> Config:
    """Return a copy of the config with the flags passed on the command line taking precedence."""
    overrides: dict[str, object] = {}
    if server_url is not None:
        overrides["server_url"] = server_url
    if username is not None:
        overrides["username"] = username
    if password is not None:
        overrides["password"] = password
    if mount_dir is not None:
        overrides["fuse_mount_dir"] = mount_dir.expanduser()
    if cache_size is not None:
        overrides["cache_size_mb"] = cache_size
    if not overrides:
        return c
    return dataclasses.replace(c, **overrides)  # type: ignore


def daemonize(pid_path: Path | None = None) -> None:
    """Forks into a background daemon and exits the foreground process."""
    if pid_path and pid_path.exists():
        # Parse the PID. If it's not a valid integer, just skip and move on.
        try:
            with pid_path.open("r") as fp:
                existing_pid = int(fp.read())
        except ValueError:
            logger.debug(f"Ignoring improperly formatted pid file at {pid_path}")
        else:
            # Otherwise, Check to see if existing_pid is running. Kill 0 does nothing, but errors if
            # the process doesn't exist.
            try:
                os.kill(existing_pid, 0)
            except OSError:
                logger.debug(f"Ignoring pid file with a pid that isn't running: {existing_pid}")
            else:
                raise DaemonAlreadyRunningError(
                    f"Daemon is already running in process {existing_pid}"
                )

    pid = os.fork()
    if pid == 0:
        # Child process. Detach and keep going!
        os.setsid()
        return
    # Parent process, let's exit now!
    if pid_path:
        with pid_path.open("w") as fp:
            fp.write(str(pid))
    os._exit(0)
