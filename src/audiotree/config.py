from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Tuple

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover - Python <3.11 not supported per pyproject
    tomllib = None  # type: ignore

from tomlkit import dumps as toml_dumps

from .errors import ConfigError
from .paths import RESERVED_CHARACTERS


DEFAULT_CONFIG_PATH = Path("~/.config/audiotree/config.toml").expanduser()
ENV_PREFIX = "AUDIOTREE_"

FORMATS = ("flac", "m4a", "m4r", "mp3")
DEFAULT_SAMPLE_RATE = 44100

_SCALE_RE = re.compile(r"^[0-9]+x[0-9]+$")


@dataclass
class ConverterOptions:
    """Parameters for one ffmpeg conversion.

    Unset values are None (or empty for strings) so that a preset can be
    merged in afterwards without clobbering explicit choices.
    """

    input_file: str = ""
    output_file: str = ""
    codec: str = ""
    bitrate: str = ""
    sample_rate: Optional[int] = None
    channels: Optional[int] = None
    cover_art_codec: str = ""
    scale: str = ""
    no_clobber: bool = False
    overwrite: bool = False
    input_extensions: Tuple[str, ...] = ()
    output_extensions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FormatPreset:
    codec: str
    output_extensions: Tuple[str, ...]
    input_extensions: Tuple[str, ...]
    bitrate: str = ""
    sample_rate: Optional[int] = None
    channels: Optional[int] = None


def merge_defaults(opts: ConverterOptions, preset: FormatPreset) -> ConverterOptions:
    """Fill the unset fields of opts from preset, one named field at a time."""
    if not opts.codec:
        opts.codec = preset.codec
    if not opts.bitrate:
        opts.bitrate = preset.bitrate
    if opts.sample_rate is None:
        opts.sample_rate = preset.sample_rate
    if opts.channels is None:
        opts.channels = preset.channels
    if not opts.input_extensions:
        opts.input_extensions = preset.input_extensions
    if not opts.output_extensions:
        opts.output_extensions = preset.output_extensions
    return opts


class ExportSettings(BaseSettings):
    """Global settings for audiotree.

    Priority (lowest -> highest):
    - Class defaults below
    - TOML file at `config_path` (default: ~/.config/audiotree/config.toml)
    - Environment variables with prefix AUDIOTREE_
    - CLI overrides passed to `load(overrides=...)`
    """

    # Logging
    log_level: str = Field(default="INFO", description="Console log level")
    log_json: Optional[str] = Field(default=None, description="Path for structured JSON log file")
    log_file: Optional[str] = Field(default=None, description="Plain text log file, '-' for stdout")
    verbose: bool = Field(default=False, description="Show DEBUG output on the console")

    # Export
    format: Literal["flac", "m4a", "m4r", "mp3"] = Field(default="m4a", description="Output extension/format")
    copy_unknown: bool = Field(default=True, description="Copy files that are not media, like booklets")
    no_clobber: bool = Field(default=False, description="Never overwrite existing output files")
    overwrite: bool = Field(default=False, description="Overwrite output files without prompting")
    max_jobs: int = Field(default=0, ge=0, description="Max concurrent jobs; 0=CPU count")
    max_queue: int = Field(default=0, ge=0, description="Max queue depth; 0=max(jobs, 100)")
    clean_paths: str = Field(default="", description="Replacement text for reserved characters; empty=off")

    # Conversion; empty/None means "use the format preset"
    bitrate: str = Field(default="", description="Output bitrate, e.g. 256k")
    codec: str = Field(default="", description="ffmpeg audio codec")
    sample_rate: Optional[int] = Field(default=DEFAULT_SAMPLE_RATE, description="Output sample rate")
    channels: Optional[int] = Field(default=None, description="Output channel count")
    cover_art_codec: str = Field(default="", description="Cover art codec; empty=copy")
    scale: str = Field(default="", description="Cover art scale WIDTHxHEIGHT")

    # Config source/path (not persisted as part of effective config when writing)
    config_path: Path = Field(default=DEFAULT_CONFIG_PATH, exclude=True)

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        # Raises ValueError for names loguru does not know.
        return logger.level(v.upper()).name

    @staticmethod
    def default_config_path() -> Path:
        return DEFAULT_CONFIG_PATH

    @classmethod
    def _toml_file_source(cls, config_path: Path) -> Dict[str, Any]:
        """Read settings from a TOML file if it exists; return dict values.

        Unknown keys are ignored by pydantic via extra="ignore".
        """
        if not config_path or not config_path.exists():
            return {}
        if tomllib is None:
            return {}
        with config_path.open("rb") as f:
            data = tomllib.load(f)
        if not isinstance(data, dict):
            return {}
        return data  # type: ignore[return-value]

    @classmethod
    def load(
        cls,
        *,
        config_path: Optional[Path] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "ExportSettings":
        """Load settings from defaults + TOML + env + CLI overrides.

        - config_path: path to TOML config; defaults to ~/.config/audiotree/config.toml
        - overrides: dict of CLI values (None values are ignored)
        """
        cp = config_path or DEFAULT_CONFIG_PATH
        file_values = cls._toml_file_source(cp)
        # Init kwargs outrank env in pydantic-settings; drop file keys the env sets.
        env_keys = {k.lower() for k in os.environ}
        file_values = {k: v for k, v in file_values.items() if (ENV_PREFIX + k).lower() not in env_keys}
        base = cls(**file_values)
        if overrides:
            non_none = {k: v for k, v in overrides.items() if v is not None}
        else:
            non_none = {}
        merged = base.model_dump()
        merged.update(non_none)
        settings = cls(**merged)
        settings.config_path = cp
        return settings

    def to_toml(self) -> str:
        """Serialize effective settings (excluding ephemeral fields) to TOML string."""
        data = self.model_dump(exclude={"config_path"})
        # TOML has no null
        data = {k: v for k, v in data.items() if v is not None}
        return toml_dumps(data)

    def write(self, path: Optional[Path] = None) -> Path:
        """Write effective config to TOML at `path` (or default path). Creates parent dirs.

        Returns the path written.
        """
        target = path or self.config_path or DEFAULT_CONFIG_PATH
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.to_toml(), encoding="utf-8")
        return target

    def converter_options(self) -> ConverterOptions:
        return ConverterOptions(
            codec=self.codec,
            bitrate=self.bitrate,
            sample_rate=self.sample_rate,
            channels=self.channels,
            cover_art_codec=self.cover_art_codec,
            scale=self.scale,
            no_clobber=self.no_clobber,
            overwrite=self.overwrite,
        )


def cli_overrides_from_args(args: Any) -> Dict[str, Any]:
    """Extract known settings keys from argparse Namespace into an overrides dict.

    Unknown keys are ignored; None values are preserved for filtering by `load()`.
    """
    keys = set(ExportSettings.model_fields) - {"config_path"}
    result: Dict[str, Any] = {}
    for k in keys:
        if hasattr(args, k):
            result[k] = getattr(args, k)
    return result


def validate_format(fmt: str) -> str:
    fmt = fmt.lower()
    if fmt not in FORMATS:
        raise ConfigError(f"unsupported format: {fmt!r}")
    return fmt


def validate_scale(scale: str) -> str:
    if scale and not _SCALE_RE.match(scale):
        raise ConfigError(f"bad scale format: {scale!r}, expected e.g. 500x500")
    return scale


def validate_replacement(text: str) -> str:
    for c in text:
        if c in RESERVED_CHARACTERS:
            raise ConfigError(f"cannot include reserved character {c!r} in clean paths value")
    return text


def validate_roots(in_root: Optional[str], out_root: Optional[str]) -> Tuple[Path, Path]:
    """Check the export roots and return them resolved to absolute paths."""
    if not in_root:
        raise ConfigError("must specify input directory")
    src = Path(in_root).expanduser()
    if not src.is_dir():
        raise ConfigError(f"input directory: {in_root} is not a directory or does not exist")
    if not out_root:
        raise ConfigError("must specify output directory")
    dst = Path(out_root).expanduser()
    if not dst.is_dir():
        raise ConfigError(f"out directory: {out_root} is not a directory or does not exist")
    src, dst = src.resolve(), dst.resolve()
    if src == dst:
        raise ConfigError(f"cowardly refusing to export {in_root!r} into itself")
    if src in dst.parents:
        raise ConfigError("output directory cannot be nested within input directory")
    return src, dst


def validate_file_args(input_file: Optional[str], output_file: Optional[str]) -> None:
    if not input_file:
        raise ConfigError("must specify input file")
    if not output_file:
        raise ConfigError("must specify output file")
    if input_file == output_file:
        raise ConfigError(f"cowardly refusing to output the input {input_file!r} to itself")
