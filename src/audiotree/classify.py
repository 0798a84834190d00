"""Decide what the exporter does with each entry of the input tree."""
from __future__ import annotations

import enum
import posixpath
from typing import Iterable

from .paths import is_trash_file


class Kind(enum.Enum):
    DIRECTORY = "directory"  # created by the directory pass only
    TRASH = "trash"
    MEDIA = "media"
    OTHER = "other"


def classify(path: str, is_dir: bool, media_extensions: Iterable[str]) -> Kind:
    """Classify a root relative path.

    The root itself (".") is never acted upon; callers skip it before asking.
    Extension matching is exact, so "song.FLAC" is not media.
    """
    if is_dir:
        return Kind.DIRECTORY
    if is_trash_file(path):
        return Kind.TRASH
    if posixpath.splitext(path)[1] in tuple(media_extensions):
        return Kind.MEDIA
    return Kind.OTHER
