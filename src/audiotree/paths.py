from __future__ import annotations

import posixpath
import re
from typing import Iterable, List


# Reserved characters across the common platforms: slash everywhere, colon on
# classic Mac and anything FAT/NTFS flavoured, the rest of the Windows set, and
# the ASCII control range 0-31.
RESERVED_CHARACTERS: List[str] = ["/", ":", "<", ">", '"', "\\", "|", "?", "*"] + [
    chr(cp) for cp in range(32)
]

_FINDER_INFO = ".DS_Store"
_APPLE_DOUBLE_PREFIX = "._"


def is_trash_file(name: str) -> bool:
    """Return True for platform metadata files that are never content.

    Ordinary Unix dot files are not considered trash.
    """
    base = posixpath.basename(name)
    if base == _FINDER_INFO:
        return True
    return base.startswith(_APPLE_DOUBLE_PREFIX)


class Cleaner:
    """Replace reserved characters in output file names.

    Useful when an exported tree will be read on a different operating system
    than the one that wrote it.
    """

    def __init__(self, replacement: str, reserved: Iterable[str] = RESERVED_CHARACTERS) -> None:
        self.replacement = replacement
        chars = [re.escape(s) for s in reserved if s]
        self._pattern = re.compile("|".join(chars)) if chars else None

    def clean_name(self, name: str) -> str:
        if self._pattern is None:
            return name
        return self._pattern.sub(lambda _m: self.replacement, name)

    def clean_path(self, path: str) -> str:
        """Clean each element of a slash separated path.

        "/foo>bar/file" becomes "/foo_bar/file". Empty elements are dropped,
        a leading separator is kept.
        """
        absolute = path.startswith("/")
        parts = [self.clean_name(p) for p in path.split("/") if p]
        joined = "/".join(parts)
        if absolute:
            return "/" + joined
        return joined
