"""Export a tree of audio files into a mirrored tree in another format.

The input tree is walked twice. The first walk creates every directory on the
output side, synchronously, so that no queued task ever races another over
"I was just about to create that directory". The second walk queues a copy or
conversion per file on the WorkPool, then waits for the pool to drain.
"""
from __future__ import annotations

import dataclasses
import posixpath
import stat
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Tuple

from .classify import Kind, classify
from .config import ConverterOptions
from .errors import ConversionError
from .ffmpeg import INPUT_EXTENSIONS, convert_in_background
from .fs import FileSystem, copy_file, walk
from .logging import fatal, get_logger, truncate
from .paths import Cleaner
from .workpool import WorkPool

STATUS_INTERVAL = 30.0


@dataclass
class ExportJob:
    in_root: Path
    out_root: Path
    format: str = "m4a"
    copy_unknown: bool = True
    no_clobber: bool = False
    max_jobs: int = 0
    max_queue: int = 0
    clean_paths: str = ""
    converter: ConverterOptions = field(default_factory=ConverterOptions)
    media_extensions: Tuple[str, ...] = INPUT_EXTENSIONS


class Exporter:
    def __init__(
        self,
        job: ExportJob,
        cancel: Optional[threading.Event] = None,
        *,
        log=None,
        on_error: Callable[[str], None] = fatal,
        status_interval: float = STATUS_INTERVAL,
    ) -> None:
        self.job = job
        self.cancel = cancel
        self.log = log or get_logger(component="exporter")
        self.on_error = on_error
        self.status_interval = status_interval
        self.in_root = FileSystem(job.in_root)
        self.out_root = FileSystem(job.out_root)
        self.pool = WorkPool(cancel, job.max_jobs, job.max_queue, log=self.log)
        self.cleaner = Cleaner(job.clean_paths) if job.clean_paths else None

    def run(self) -> None:
        """Create the output directories, then copy/convert every file.

        Traversal errors propagate. Task failures go to `on_error`.
        """
        for path, is_dir in walk(self.in_root):
            self.visit_dir(path, is_dir)

        self.pool.start()
        done = threading.Event()
        status = threading.Thread(target=self._log_status, args=(done,), name="export-status", daemon=True)
        status.start()
        try:
            # Blocks whenever the queue is full.
            for path, is_dir in walk(self.in_root):
                self.visit_file(path, is_dir)
            self.pool.wait()
        except BaseException:
            if self.pool.size() > 0:
                self.pool.stop()
            raise
        finally:
            done.set()

    def _log_status(self, done: threading.Event) -> None:
        while not done.wait(self.status_interval):
            pool = self.pool
            self.log.info(
                f"WorkPool: size: {pool.size()} limit: {pool.limit()} "
                f"buffer: {pool.remaining()} ({pool.percent_full():.1f}%)"
            )

    def output_path(self, path: str) -> str:
        if self.cleaner is None:
            return path
        return self.cleaner.clean_path(path)

    def visit_dir(self, path: str, is_dir: bool) -> None:
        """Mirror one input directory on the output side, with the same permissions."""
        if not is_dir or path == ".":
            return
        mode = stat.S_IMODE(self.in_root.stat(path).st_mode)
        out = self.output_path(path)
        self.log.debug(f"Mkdirs {out!r}")
        self.out_root.mkdir_all(out, mode)

    def visit_file(self, path: str, is_dir: bool) -> None:
        if path == ".":
            return
        kind = classify(path, is_dir, self.job.media_extensions)
        if kind is Kind.DIRECTORY:
            # Created by the directory pass.
            return
        if kind is Kind.TRASH:
            self.log.debug(f"Skipping {path!r}")
            return
        if self.in_root.is_dir(path):
            # A symlinked directory; the walk does not descend into it.
            self.log.debug(f"Skipping symlinked directory {path!r}")
            return
        if kind is Kind.MEDIA:
            self.pool.add(lambda: self._convert_task(path))
        elif self.job.copy_unknown:
            self.pool.add(lambda: self._copy_task(path))
        else:
            self.log.debug(f"Not copying unknown file {path!r}")

    def _convert_task(self, path: str) -> None:
        try:
            output = self.convert(path)
        except ConversionError as e:
            self.on_error(
                f"!!! FATAL: {e} !!!\n=== Start Output {path!r} ===\n{e.output}\n=== End Output {path!r} ==="
            )
        except OSError as e:
            self.on_error(f"!!! FATAL: converting {path!r} failed: {e} !!!")
        else:
            self.log.debug(f"=== Start Output {path!r} ===\n{truncate(output)}\n=== End Output {path!r} ===")

    def _copy_task(self, path: str) -> None:
        try:
            self.copy(path)
        except OSError as e:
            self.on_error(f"!!! FATAL: copying {path!r} failed: {e} !!!")

    def copy(self, path: str) -> int:
        """Copy path between the roots. Returns bytes copied.

        With no-clobber set an existing destination is left alone.
        """
        out = self.output_path(path)
        if self.job.no_clobber and self.out_root.exists(out):
            self.log.debug(f"Not clobbering {out!r}")
            return 0
        self.log.debug(f"Copying {str(self.in_root.resolve(path))!r} to {str(self.out_root.resolve(out))!r}")
        copied = copy_file(self.in_root, path, self.out_root, out)
        self.log.info(f"Copied {copied} bytes of {path}")
        return copied

    def convert(self, path: str) -> str:
        """Convert path into the target format, returning ffmpeg's output.

        A file already in the target format is copied instead.
        """
        stem, old_ext = posixpath.splitext(path)
        new_ext = "." + self.job.format
        if old_ext == new_ext:
            self.log.info(f"{path} already in target format")
            self.copy(path)
            return ""

        opts = dataclasses.replace(
            self.job.converter,
            input_file=str(self.in_root.resolve(path)),
            output_file=str(self.out_root.resolve(self.output_path(stem + new_ext))),
        )
        self.log.debug(f"Converting {opts.input_file!r} -> {opts.output_file!r}")
        output = convert_in_background(opts, self.cancel)
        self.log.info(f"Converted {path}")
        return output
