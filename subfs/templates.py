"""
The templates module lets users customize the filenames of tracks in the virtual filesystem with a
Jinja template. Only audio tracks are templated: videos and cover art have fixed formats.
"""

from __future__ import annotations

import dataclasses
import posixpath
import re
import typing
from functools import cached_property
from typing import Any, Literal

import click
import jinja2

from subfs.common import SubfsError, SubfsExpectedError, sanitize_filename

if typing.TYPE_CHECKING:
    from subfs.config import Config
    from subfs.subsonic import Child

Variant = Literal["original", "transcoded"]


def split(x: str, sep: str | None = None) -> list[str]:
    return x.split(sep)


def basename(x: str) -> str:
    return posixpath.basename(x)


def dirname(x: str) -> str:
    return posixpath.dirname(x)


def ext(x: str) -> str:
    """Extension of a path without the leading dot."""
    return posixpath.splitext(x)[1].removeprefix(".")


def trimsuffix(x: str, suffix: str) -> str:
    return x.removesuffix(suffix)


def trimprefix(x: str, prefix: str) -> str:
    return x.removeprefix(prefix)


def zfill(x: Any, width: int = 2) -> str:
    if x is None:
        return ""
    return str(x).zfill(width)


# `upper`, `lower`, `title`, `trim` and `replace` are Jinja builtins.
ENVIRONMENT = jinja2.Environment(undefined=jinja2.StrictUndefined)
ENVIRONMENT.filters["split"] = split
ENVIRONMENT.filters["basename"] = basename
ENVIRONMENT.filters["dirname"] = dirname
ENVIRONMENT.filters["ext"] = ext
ENVIRONMENT.filters["trimsuffix"] = trimsuffix
ENVIRONMENT.filters["trimprefix"] = trimprefix
ENVIRONMENT.filters["zfill"] = zfill


class InvalidFilenameTemplateError(SubfsExpectedError):
    pass


class FilenameTemplateEvaluationError(SubfsError):
    pass


@dataclasses.dataclass
class FilenameTemplate:
    """
    A wrapper for a template that stores the template as a string and compiles on-demand as a
    derived propery. This grants us serialization of the config.
    """

    text: str

    @cached_property
    def compiled(self) -> jinja2.Template:
        return ENVIRONMENT.from_string(self.text)

    def __hash__(self) -> int:
        return hash(self.text)

    def __getstate__(self) -> dict[str, Any]:
        # We cannot pickle a compiled template, so remove it from the state before we pickle it. We
        # can cheaply recompute it in the daemonized process anyways.
        state = self.__dict__.copy()
        if "compiled" in state:
            del state["compiled"]
        return state

    def parse(self) -> None:
        """Compile the template now. Raises InvalidFilenameTemplateError if it is invalid."""
        try:
            _ = self.compiled
        except jinja2.exceptions.TemplateSyntaxError as e:
            raise InvalidFilenameTemplateError(f"Failed to compile template: {e}") from e


DEFAULT_FILENAME_TEMPLATE = FilenameTemplate(
    "{{ track | zfill(2) }} - {{ artist }} - {{ title }}.{{ suffix }}"
)


def eval_track_template(template: FilenameTemplate, track: Child, variant: Variant) -> str:
    """
    Render the filename of one variant of a track. The result is sanitized into a single path
    segment. Raises FilenameTemplateEvaluationError when the template cannot be rendered for this
    track, in which case the caller should skip the track.
    """
    try:
        rendered = template.compiled.render(**_calc_track_variables(track, variant))
    except jinja2.exceptions.TemplateError as e:
        raise FilenameTemplateEvaluationError(
            f"Failed to render filename for track {track.id} ({track.path}): {e}"
        ) from e
    return sanitize_filename(_join_lines(rendered))


def _calc_track_variables(track: Child, variant: Variant) -> dict[str, Any]:
    suffix = track.transcoded_suffix if variant == "transcoded" else track.suffix
    return {
        "A": track,
        "artist": track.artist,
        "album": track.album,
        "track": track.track,
        "title": track.title,
        "suffix": suffix,
        "original_suffix": track.suffix,
        "path": track.path,
        "basename": posixpath.splitext(posixpath.basename(track.path))[0],
        "transcoded": variant == "transcoded",
    }


def video_filename(video: Child) -> str:
    return sanitize_filename(f"{video.title}.{video.suffix}")


def cover_art_filename(cover_art_id: str) -> str:
    return sanitize_filename(f"{cover_art_id}.jpg")


LINE_BREAK_REGEX = re.compile(r"\s*[\r\n]+\s*")
EDGE_LINE_BREAK_REGEX = re.compile(r"^\s*[\r\n]\s*|\s*[\r\n]\s*$")


def _join_lines(x: str) -> str:
    # Multi-line templates render onto one line. Spacing inside the rendered fields is kept as is,
    # so titles that differ only in spacing keep distinct filenames.
    return LINE_BREAK_REGEX.sub(" ", EDGE_LINE_BREAK_REGEX.sub("", x))


def preview_filename_template(c: Config) -> None:
    from subfs.subsonic import Child

    samples = [
        Child(
            id="tr-1",
            title="Eclipse",
            artist="Kim Lip",
            album="Kim Lip",
            track=1,
            suffix="flac",
            transcoded_suffix="mp3",
            size=31_457_280,
            duration=230,
            path="Kim Lip/Kim Lip/01 Eclipse.flac",
        ),
        Child(
            id="tr-2",
            title="House of Cards",
            artist="BTS",
            album="Young Forever",
            track=5,
            suffix="mp3",
            size=5_452_595,
            duration=226,
            path="BTS/Young Forever/05 House of Cards.mp3",
        ),
    ]

    click.secho("Filename template:", dim=True, underline=True)
    for i, sample in enumerate(samples, start=1):
        variants: list[Variant] = ["original"]
        if sample.transcoded_suffix:
            variants.append("transcoded")
        for variant in variants:
            click.secho(f"  Sample {i} ({variant}): ", dim=True, nl=False)
            try:
                click.secho(eval_track_template(c.filename_template, sample, variant))
            except FilenameTemplateEvaluationError as e:
                click.secho(str(e), fg="red")
