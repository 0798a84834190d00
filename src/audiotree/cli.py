from __future__ import annotations

import argparse
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from loguru import logger

from . import __version__
from .config import (
    FORMATS,
    ConverterOptions,
    ExportSettings,
    cli_overrides_from_args,
    merge_defaults,
    validate_file_args,
    validate_format,
    validate_replacement,
    validate_roots,
    validate_scale,
)
from .errors import Cancelled, ConfigError, ConversionError
from .exporter import Exporter, ExportJob
from .ffmpeg import ExtractOptions, convert, extract_cover_art, get_default_options, probe_ffmpeg
from .logging import EXIT_FATAL, bind_run, configure, log_event, timed

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_CONVERT_FAILED = 2
EXIT_PREFLIGHT_FAILED = 3
EXIT_INTERRUPTED = 130

EXPORT_DESCRIPTION = """\
Given a tree of source files {indir}, export them to the output folder
{outdir} retaining the same structure. For example if {indir} holds
"Artists/Album/Song.flac" then {outdir} will end up with
"Artists/Album/Song.m4a". This is useful for say, exporting a library in a
different format.

Copies and conversions are executed concurrently. Defaults are based on CPU
core count. Set max jobs to lower CPU usage from conversions, the default is
one per core.
"""


def install_signal_handlers(cancel: threading.Event) -> None:
    """Set cancel on SIGINT/SIGTERM. A second signal gets the default behaviour."""

    def _handler(signum, frame):
        logger.warning(f"Received signal {signum}, finishing current work")
        cancel.set()
        signal.signal(signum, signal.SIG_DFL)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _add_tool_args(p: argparse.ArgumentParser) -> None:
    """Options every tool shares."""
    p.add_argument("-v", "--verbose", action="store_const", const=True, default=None, help="Display verbose output")
    clobber = p.add_mutually_exclusive_group()
    clobber.add_argument(
        "-n", "--no-clobber", dest="no_clobber", action="store_const", const=True, default=None,
        help="Set the no clobber flag: don't overwrite files",
    )
    clobber.add_argument(
        "-y", "--overwrite", dest="overwrite", action="store_const", const=True, default=None,
        help="Overwrite files without prompting",
    )
    p.add_argument("--log-file", dest="log_file", default=None, help="Log to a file ('-' for stdout)")


def _add_converter_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("-b", "--bitrate", default=None, help="Sets the output bitrate (e.g. 256k)")
    p.add_argument("-c", "--codec", default=None, help="Sets the ffmpeg audio codec")
    p.add_argument("-r", "--sample-rate", dest="sample_rate", type=int, default=None, help="Sets sample rate (default 44100)")
    channels = p.add_mutually_exclusive_group()
    channels.add_argument("-s", "--stereo", dest="channels", action="store_const", const=2, default=None, help="Sets 2.0/stereo mode")
    channels.add_argument("-m", "--mono", dest="channels", action="store_const", const=1, help="Sets 1.0/mono mode")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="audiotree")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ~/.config/audiotree/config.toml)",
    )
    p.add_argument(
        "--write-config",
        action="store_true",
        help="Write current effective settings to the config file and exit",
    )
    p.add_argument("--log-level", default=None, help="Console log level (DEBUG, INFO, WARNING, ERROR)")
    p.add_argument("--log-json", dest="log_json", default=None, help="Path to write JSON lines log (structured events)")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("preflight", help="Check ffmpeg availability")

    p_export = sub.add_parser(
        "export",
        help="Export a directory tree into another format",
        description=EXPORT_DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p_export.add_argument("in_dir", metavar="indir", nargs="?", help="Input directory")
    p_export.add_argument("out_dir", metavar="outdir", nargs="?", help="Output directory (must exist)")
    p_export.add_argument("-f", "--format", type=str.lower, default=None, help=f"Set the output extension/format: {', '.join(FORMATS)} (default m4a)")
    unknown = p_export.add_mutually_exclusive_group()
    unknown.add_argument(
        "-C", "--copy-unknown", dest="copy_unknown", action="store_const", const=True, default=None,
        help="Copy unknown files, like album art and booklets (default)",
    )
    unknown.add_argument(
        "-N", "--no-copy-unknown", dest="copy_unknown", action="store_const", const=False,
        help="Do not copy unknown files",
    )
    p_export.add_argument("-q", "--max-queue", dest="max_queue", type=int, default=None, help="Sets the maximum queue depth")
    p_export.add_argument("-j", "--max-jobs", dest="max_jobs", type=int, default=None, help="Sets the maximum number of concurrent jobs")
    p_export.add_argument(
        "--cleanpaths",
        dest="clean_paths",
        metavar="TEXT",
        default=None,
        help="Replace reserved characters with TEXT when creating output file names. "
        "Useful when files will be shared with a different operating system. "
        "The underscore ('_') makes a good replacement text.",
    )
    _add_tool_args(p_export)
    _add_converter_args(p_export)
    p_export.set_defaults(subparser=p_export)

    p_convert = sub.add_parser("convert", help="Convert a single file using ffmpeg")
    p_convert.add_argument("src", nargs="?", help="Input audio file")
    p_convert.add_argument("dest", nargs="?", help="Output file; the extension picks the format")
    p_convert.add_argument("--preset", choices=FORMATS, default=None, help="Use the defaults of this format regardless of extension")
    _add_tool_args(p_convert)
    _add_converter_args(p_convert)
    p_convert.set_defaults(subparser=p_convert)

    p_extract = sub.add_parser(
        "extract-coverart",
        help="Extract cover art from a media file",
        description="Extracts cover art from {input} into {output} using ffmpeg. The format is "
        "detected based on the file extension of {output}. For best compatibility, consider "
        "scaling to 500x500 as a jpg.",
    )
    p_extract.add_argument("src", nargs="?", help="Input media file")
    p_extract.add_argument("dest", nargs="?", help="Output image file")
    p_extract.add_argument("-s", "--scale", default=None, help="Scale image to SCALE, e.g. 500x500")
    p_extract.add_argument("-c", "--codec", dest="cover_art_codec", default=None, help="Image codec for ffmpeg")
    _add_tool_args(p_extract)
    p_extract.set_defaults(subparser=p_extract)
    return p


def cmd_preflight() -> int:
    st = probe_ffmpeg()
    if not st.available:
        logger.error("ffmpeg: NOT FOUND")
        if st.error:
            logger.error(st.error)
        return EXIT_PREFLIGHT_FAILED
    logger.info(f"ffmpeg: {st.ffmpeg_path}")
    logger.info(f"version: {st.ffmpeg_version}")
    return EXIT_OK


def build_export_job(cfg: ExportSettings, in_dir: Optional[str], out_dir: Optional[str]) -> ExportJob:
    """Validate settings and roots; raises ConfigError."""
    fmt = validate_format(cfg.format)
    validate_replacement(cfg.clean_paths)
    validate_scale(cfg.scale)
    in_root, out_root = validate_roots(in_dir, out_dir)
    opts = merge_defaults(cfg.converter_options(), get_default_options("." + fmt))
    return ExportJob(
        in_root=in_root,
        out_root=out_root,
        format=fmt,
        copy_unknown=cfg.copy_unknown,
        no_clobber=cfg.no_clobber,
        max_jobs=cfg.max_jobs,
        max_queue=cfg.max_queue,
        clean_paths=cfg.clean_paths,
        converter=opts,
        media_extensions=opts.input_extensions,
    )


def cmd_export(job: ExportJob, cancel: threading.Event) -> int:
    try:
        with timed("export"):
            Exporter(job, cancel).run()
    except Cancelled:
        logger.warning("Export interrupted")
        return EXIT_INTERRUPTED
    except OSError as e:
        logger.error(f"Export failed: {e}")
        return EXIT_FATAL
    if cancel.is_set():
        logger.warning("Export interrupted")
        return EXIT_INTERRUPTED
    log_event("export", msg="Export complete", src=str(job.in_root), dest=str(job.out_root), format=job.format)
    return EXIT_OK


def build_converter_options(cfg: ExportSettings, src: Optional[str], dest: Optional[str], preset: Optional[str]) -> ConverterOptions:
    validate_file_args(src, dest)
    opts = cfg.converter_options()
    opts.input_file = str(src)
    opts.output_file = str(dest)
    ext = "." + preset if preset else Path(str(dest)).suffix.lower()
    try:
        defaults = get_default_options(ext)
    except ConfigError:
        # Unknown output extension: leave everything to ffmpeg and the flags.
        logger.debug(f"No preset for {ext!r}")
    else:
        merge_defaults(opts, defaults)
    return opts


def cmd_convert(opts: ConverterOptions, cancel: threading.Event) -> int:
    rc = convert(opts, cancel)
    if rc != 0:
        logger.error(f"Conversion failed with exit code {rc}")
        return EXIT_CONVERT_FAILED
    logger.info(f"Wrote: {opts.output_file}")
    return EXIT_OK


def cmd_extract(opts: ExtractOptions, cancel: threading.Event) -> int:
    try:
        extract_cover_art(opts, cancel)
    except ConversionError as e:
        logger.error(str(e))
        return EXIT_CONVERT_FAILED
    return EXIT_OK


def _usage_error(args: argparse.Namespace, err: Exception) -> int:
    parser = getattr(args, "subparser", None)
    print(err, file=sys.stderr)
    if parser is not None:
        parser.print_usage(sys.stderr)
    return EXIT_USAGE


def main(argv: Optional[List[str]] = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    # Load settings: defaults + TOML + env + CLI overrides
    overrides = cli_overrides_from_args(args)
    config_path = Path(args.config_path).expanduser() if args.config_path else None
    try:
        cfg = ExportSettings.load(config_path=config_path, overrides=overrides)
    except ValueError as e:
        # pydantic ValidationError is a ValueError
        return _usage_error(args, e)

    if args.write_config:
        written = cfg.write(config_path)
        print(f"Config written to: {written}")
        return EXIT_OK

    configure(log_level=cfg.log_level, verbose=cfg.verbose, log_file=cfg.log_file, log_json=cfg.log_json)
    bind_run()

    if args.cmd == "preflight":
        return cmd_preflight()

    cancel = threading.Event()
    try:
        if args.cmd == "export":
            job = build_export_job(cfg, args.in_dir, args.out_dir)
        elif args.cmd == "convert":
            copts = build_converter_options(cfg, args.src, args.dest, args.preset)
        else:
            validate_file_args(args.src, args.dest)
            eopts = ExtractOptions(
                input_file=args.src,
                output_file=args.dest,
                codec=cfg.cover_art_codec,
                scale=validate_scale(cfg.scale),
                no_clobber=cfg.no_clobber,
                overwrite=cfg.overwrite,
            )
    except ConfigError as e:
        return _usage_error(args, e)

    install_signal_handlers(cancel)
    if args.cmd == "export":
        return cmd_export(job, cancel)
    if args.cmd == "convert":
        return cmd_convert(copts, cancel)
    return cmd_extract(eopts, cancel)


def export_main() -> int:
    return main(["export", *sys.argv[1:]])


def extract_main() -> int:
    return main(["extract-coverart", *sys.argv[1:]])


def _convert_main(preset: str) -> int:
    return main(["convert", "--preset", preset, *sys.argv[1:]])


def to_flac_main() -> int:
    return _convert_main("flac")


def to_m4a_main() -> int:
    return _convert_main("m4a")


def to_mp3_main() -> int:
    return _convert_main("mp3")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
