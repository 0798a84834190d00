"""Exception types shared across audiotree."""
from __future__ import annotations

from typing import Optional


class AudioTreeError(Exception):
    pass


class ConfigError(AudioTreeError):
    """Bad command line or settings values, detected before any work starts."""


class PreconditionViolated(AudioTreeError):
    """A lifecycle method was called in the wrong state.

    This indicates a sequencing bug in the caller and is not meant to be
    caught and recovered from.
    """


class ConversionError(AudioTreeError):
    def __init__(self, path: str, returncode: Optional[int], output: str = "") -> None:
        super().__init__(f"converting {path!r} failed with exit code {returncode}")
        self.path = path
        self.returncode = returncode
        self.output = output


class Cancelled(AudioTreeError):
    """The run was interrupted before all work was queued."""
