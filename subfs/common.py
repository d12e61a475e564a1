"""
The common module is our grab bag of shared toys: the version, the base errors, name sanitization,
and logging setup.
"""

import logging
import logging.handlers
import os
import re
import sys
from pathlib import Path

import appdirs

with (Path(__file__).parent / ".version").open("r") as fp:
    VERSION = fp.read().strip()


class SubfsError(Exception):
    pass


class SubfsExpectedError(SubfsError):
    """These errors are printed without traceback."""

    pass


# Path separators are the only characters that cannot appear in a single path segment. Everything
# else the server hands us is displayed as-is.
PATH_SEPARATORS_REGEX = re.compile(r"[\\/]")


def sanitize_filename(name: str) -> str:
    """Replace path separators so that the name is always a single valid path segment."""
    return PATH_SEPARATORS_REGEX.sub("_", name)


def format_megabytes(num_bytes: int) -> str:
    return f"{num_bytes / 1024 / 1024:0.3f}"


__logging_initialized: set[str | None] = set()


def initialize_logging(logger_name: str | None = None) -> None:
    if logger_name in __logging_initialized:
        return
    __logging_initialized.add(logger_name)

    logger = logging.getLogger(logger_name)

    # appdirs by default has Unix log to $XDG_CACHE_HOME, but I'd rather write logs to $XDG_STATE_HOME.
    log_home = Path(appdirs.user_state_dir("subfs"))
    if appdirs.system == "darwin":
        log_home = Path(appdirs.user_log_dir("subfs"))

    log_home.mkdir(parents=True, exist_ok=True)
    log_file = log_home / "subfs.log"

    # Useful for debugging problems with the virtual FS, since pytest doesn't capture that debug
    # logging output.
    log_despite_testing = os.environ.get("LOG_TEST", False)

    # Add a logging handler for stdout unless we are testing. Pytest captures logging output on its
    # own, so by default, we do not attach our own.
    if "pytest" not in sys.modules or log_despite_testing:  # pragma: no cover
        simple_formatter = logging.Formatter(
            "[%(asctime)s] %(levelname)s: %(message)s",
            datefmt="%H:%M:%S",
        )
        verbose_formatter = logging.Formatter(
            "[ts=%(asctime)s.%(msecs)03d] [pid=%(process)d] [src=%(name)s:%(lineno)s] %(levelname)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(
            simple_formatter if not log_despite_testing else verbose_formatter
        )
        logger.addHandler(stream_handler)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=20 * 1024 * 1024,
            backupCount=10,
        )
        file_handler.setFormatter(verbose_formatter)
        logger.addHandler(file_handler)
