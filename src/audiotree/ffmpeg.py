"""ffmpeg command construction and execution.

Conversions copy metadata (-map_metadata 0) and the attached cover art stream
(-c:v copy unless a cover art codec is requested). Each run may be given a
cancellation event; when it is set the child process is terminated.
"""
from __future__ import annotations

import posixpath
import shlex
import shutil
import subprocess
import threading
from dataclasses import dataclass
from typing import List, Optional

from loguru import logger

from .config import ConverterOptions, FormatPreset
from .errors import ConfigError, ConversionError

# Supported input format extensions.
INPUT_EXTENSIONS = (".flac", ".m4a", ".m4r", ".mp3", ".wav")

FLAC_PRESET = FormatPreset(
    codec="flac",
    input_extensions=INPUT_EXTENSIONS,
    output_extensions=(".flac",),
)
AAC_PRESET = FormatPreset(
    codec="aac",
    bitrate="256k",
    input_extensions=INPUT_EXTENSIONS,
    output_extensions=(".m4a", ".m4r"),
)
MP3_PRESET = FormatPreset(
    codec="libmp3lame",
    bitrate="320k",
    input_extensions=INPUT_EXTENSIONS,
    output_extensions=(".mp3",),
)

DEFAULT_PRESETS = (FLAC_PRESET, AAC_PRESET, MP3_PRESET)

# How often a running child checks for cancellation.
_POLL_INTERVAL = 0.25


def is_media_file(name: str) -> bool:
    return posixpath.splitext(name)[1] in INPUT_EXTENSIONS


def get_default_options(ext: str) -> FormatPreset:
    """Return the preset producing files with extension ext (e.g. ".mp3")."""
    for preset in DEFAULT_PRESETS:
        if ext in preset.output_extensions:
            return preset
    raise ConfigError(f"no defaults for extension {ext!r}")


def cmd_to_string(cmd: List[str]) -> str:
    return " ".join(shlex.quote(p) for p in cmd)


def _clobber_args(opts) -> List[str]:
    if opts.no_clobber:
        return ["-n"]
    if opts.overwrite:
        return ["-y"]
    return []


def build_convert_cmd(opts: ConverterOptions) -> List[str]:
    cmd = [
        "ffmpeg",
        "-i",
        opts.input_file,
        "-map_metadata",
        "0",  # carry the tags over
        "-c:v",
        opts.cover_art_codec or "copy",  # cover art, if present
    ]
    cmd += _clobber_args(opts)
    if opts.codec:
        cmd += ["-c:a", opts.codec]
    if opts.bitrate:
        cmd += ["-b:a", opts.bitrate]
    if opts.sample_rate:
        cmd += ["-ar", str(opts.sample_rate)]
    if opts.channels:
        cmd += ["-ac", str(opts.channels)]
    if opts.scale:
        cmd += ["-s", opts.scale]
    cmd.append(opts.output_file)
    return cmd


def _run(cmd: List[str], cancel: Optional[threading.Event], capture: bool) -> tuple[int, str]:
    """Run cmd until it exits or cancel is set. Returns (returncode, output)."""
    proc = subprocess.Popen(
        cmd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE if capture else None,
        stderr=subprocess.STDOUT if capture else None,
        text=True if capture else None,
        errors="replace" if capture else None,
    )
    chunks: List[str] = []
    try:
        while True:
            try:
                out, _ = proc.communicate(timeout=_POLL_INTERVAL)
                if out:
                    chunks.append(out)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    logger.debug("Cancelling: {}", cmd_to_string(cmd))
                    proc.terminate()
                    out, _ = proc.communicate()
                    if out:
                        chunks.append(out)
                    break
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()
    return proc.returncode, "".join(chunks)


def convert(opts: ConverterOptions, cancel: Optional[threading.Event] = None) -> int:
    """Run ffmpeg with this process's standard output and error."""
    cmd = build_convert_cmd(opts)
    logger.info("Running: {}", cmd_to_string(cmd))
    rc, _ = _run(cmd, cancel, capture=False)
    return rc


def convert_in_background(opts: ConverterOptions, cancel: Optional[threading.Event] = None) -> str:
    """Run ffmpeg capturing its combined output.

    Returns the output on success; raises ConversionError carrying the output
    otherwise.
    """
    cmd = build_convert_cmd(opts)
    logger.debug("Running in background: {}", cmd_to_string(cmd))
    try:
        rc, output = _run(cmd, cancel, capture=True)
    except OSError as e:
        raise ConversionError(opts.input_file, None, str(e)) from e
    if rc != 0:
        raise ConversionError(opts.input_file, rc, output)
    return output


@dataclass
class ExtractOptions:
    input_file: str
    output_file: str
    codec: str = ""
    scale: str = ""
    no_clobber: bool = False
    overwrite: bool = False


def build_extract_cmd(opts: ExtractOptions) -> List[str]:
    cmd = [
        "ffmpeg",
        "-i",
        opts.input_file,
        # Video streams, minus real video: leaves attached pictures.
        "-map",
        "0:v",
        "-map",
        "-0:V",
    ]
    if opts.codec:
        cmd += ["-c", opts.codec]
    if opts.scale:
        cmd += ["-s", opts.scale]
    cmd += _clobber_args(opts)
    cmd.append(opts.output_file)
    return cmd


def extract_cover_art(opts: ExtractOptions, cancel: Optional[threading.Event] = None) -> None:
    cmd = build_extract_cmd(opts)
    logger.info("Running: {}", cmd_to_string(cmd))
    rc, _ = _run(cmd, cancel, capture=False)
    if rc != 0:
        raise ConversionError(opts.input_file, rc)


@dataclass
class FFmpegStatus:
    available: bool
    ffmpeg_path: Optional[str] = None
    ffmpeg_version: Optional[str] = None
    error: Optional[str] = None


def probe_ffmpeg() -> FFmpegStatus:
    path = shutil.which("ffmpeg")
    if not path:
        return FFmpegStatus(available=False, error="ffmpeg not found in PATH")
    try:
        proc = subprocess.run(
            [path, "-version"],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=False,
            text=True,
        )
    except OSError as exc:
        return FFmpegStatus(available=False, ffmpeg_path=path, error=str(exc))
    version = proc.stdout.splitlines()[0].strip() if proc.stdout else None
    return FFmpegStatus(
        available=(proc.returncode == 0),
        ffmpeg_path=path,
        ffmpeg_version=version,
        error=None if proc.returncode == 0 else (proc.stderr or "ffmpeg -version failed"),
    )
