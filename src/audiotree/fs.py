"""Rooted filesystem views.

Two independently rooted instances (input and output) let the exporter work
purely with root relative, slash separated paths such as "Artist/Album/01.flac".
"." names the root itself.
"""
from __future__ import annotations

import os
import posixpath
from pathlib import Path
from typing import BinaryIO, Iterator, List, Tuple

_COPY_CHUNK = 1024 * 1024


def valid_path(name: str) -> bool:
    """Mirror of the usual rooted-fs rules: relative, no empty, "." or ".." elements."""
    if name == ".":
        return True
    if not name or name.startswith("/") or name.endswith("/"):
        return False
    return all(part not in ("", ".", "..") for part in name.split("/"))


class FileSystem:
    def __init__(self, root: str | os.PathLike) -> None:
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"FileSystem({str(self.root)!r})"

    def resolve(self, name: str) -> Path:
        if not valid_path(name):
            raise ValueError(f"invalid path: {name!r}")
        if name == ".":
            return self.root
        return self.root.joinpath(*name.split("/"))

    def stat(self, name: str) -> os.stat_result:
        return self.resolve(name).stat()

    def exists(self, name: str) -> bool:
        return self.resolve(name).exists()

    def is_dir(self, name: str) -> bool:
        """True for a directory, or a symlink that resolves to one."""
        return self.resolve(name).is_dir()

    def read_dir(self, name: str) -> List[os.DirEntry]:
        """Return the entries of a directory sorted by name."""
        with os.scandir(self.resolve(name)) as it:
            return sorted(it, key=lambda e: e.name)

    def read_file(self, name: str) -> bytes:
        return self.resolve(name).read_bytes()

    def open(self, name: str) -> BinaryIO:
        return self.resolve(name).open("rb")

    def create(self, name: str) -> BinaryIO:
        return self.resolve(name).open("wb")

    def mkdir(self, name: str, mode: int = 0o777) -> None:
        self.resolve(name).mkdir(mode=mode)

    def mkdir_all(self, name: str, mode: int = 0o777) -> None:
        os.makedirs(self.resolve(name), mode=mode, exist_ok=True)


def walk(fsys: FileSystem, root: str = ".") -> Iterator[Tuple[str, bool]]:
    """Yield (path, is_dir) in lexical pre-order, starting with root itself.

    Directories are yielded before their contents. Symlinks are never
    followed, so a link to a directory is yielded as (path, False). Any
    OSError propagates and ends the walk.
    """
    yield root, True
    for entry in fsys.read_dir(root):
        path = entry.name if root == "." else posixpath.join(root, entry.name)
        if entry.is_dir(follow_symlinks=False):
            yield from walk(fsys, path)
        else:
            yield path, False


def copy_file(src_fs: FileSystem, source: str, dst_fs: FileSystem, destination: str) -> int:
    """Copy source from src_fs to destination in dst_fs, returning bytes copied."""
    copied = 0
    with src_fs.open(source) as src, dst_fs.create(destination) as dst:
        while True:
            chunk = src.read(_COPY_CHUNK)
            if not chunk:
                break
            dst.write(chunk)
            copied += len(chunk)
    return copied
