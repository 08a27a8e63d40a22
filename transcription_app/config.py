"""Configuration loader and validation."""

import logging
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from transcription_app._types import ResponseFormat
from transcription_app.capabilities import lookup_capability
from transcription_app.errors import UnsupportedModelError

logger = logging.getLogger(__name__)

__all__ = [
    "SegmentationConfig",
    "ToolsConfig",
    "TranscodeConfig",
    "TranscriptionConfig",
    "OpenAIConfig",
    "DeepgramConfig",
    "GeneralConfig",
    "Config",
    "ConfigError",
    "MAX_CONCURRENCY",
    "load_config",
]

MAX_CONCURRENCY = 8

_SECTIONS = (
    "segmentation",
    "tools",
    "transcode",
    "transcription",
    "openai",
    "deepgram",
    "general",
)


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


@dataclass
class SegmentationConfig:
    """Segment limits and the duration estimate used when probing fails."""

    max_segment_seconds: float = 600.0
    max_file_size_bytes: int = 24 * 1024 * 1024
    assumed_bitrate_kbps: float = 128.0
    unsplittable_formats: Sequence[str] = ("webm",)

    def __post_init__(self) -> None:
        """Normalize format names to a lowercase tuple."""
        if isinstance(self.unsplittable_formats, str):
            formats = (self.unsplittable_formats,)
        else:
            try:
                formats = tuple(self.unsplittable_formats)
            except TypeError as exc:
                raise ConfigError(
                    f"segmentation.unsplittable_formats must be a string or list of strings: {exc}"
                ) from exc

        for fmt in formats:
            if not isinstance(fmt, str) or not fmt:
                raise ConfigError("segmentation.unsplittable_formats entries must be non-empty strings")

        self.unsplittable_formats = tuple(fmt.lower().lstrip(".") for fmt in formats)


@dataclass
class ToolsConfig:
    """Candidate binaries and per-invocation timeouts for ffmpeg/ffprobe."""

    ffmpeg_paths: Sequence[str] = ("ffmpeg", "/usr/local/bin/ffmpeg", "/opt/homebrew/bin/ffmpeg")
    ffprobe_paths: Sequence[str] = ("ffprobe", "/usr/local/bin/ffprobe", "/opt/homebrew/bin/ffprobe")
    probe_timeout: float = 30.0
    transcode_timeout: float = 900.0
    cut_timeout: float = 300.0

    def __post_init__(self) -> None:
        """Normalize candidate lists to tuples."""
        for name in ("ffmpeg_paths", "ffprobe_paths"):
            value = getattr(self, name)
            if isinstance(value, str):
                value = (value,)
            try:
                value = tuple(value)
            except TypeError as exc:
                raise ConfigError(f"tools.{name} must be a string or list of strings: {exc}") from exc
            for entry in value:
                if not isinstance(entry, str) or not entry:
                    raise ConfigError(f"tools.{name} entries must be non-empty strings")
            setattr(self, name, value)


@dataclass
class TranscodeConfig:
    """Normalized MP3 encoding parameters."""

    enabled: bool = True
    bitrate: str = "128k"
    channels: int = 1
    sample_rate: int = 44100


@dataclass
class TranscriptionConfig:
    """Backend model selection and dispatch settings."""

    model: str = "whisper-1"
    language: str | None = None
    response_format: str | None = None
    max_attempts: int = 3
    concurrency: int = 1
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    request_timeout: float = 120.0
    separator: str = "\n"


@dataclass
class OpenAIConfig:
    """OpenAI API configuration (for whisper-1 and gpt-4o transcribe models)."""

    api_key: str | None = None
    base_url: str | None = None
    organization: str | None = None


@dataclass
class DeepgramConfig:
    """Deepgram API configuration (for nova models)."""

    api_key: str | None = None
    smart_format: bool = True
    punctuate: bool = True


@dataclass
class GeneralConfig:
    """General application settings."""

    verbose: bool = False
    debug: bool = False


@dataclass
class Config:
    """Main configuration container."""

    segmentation: SegmentationConfig = field(default_factory=SegmentationConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    transcode: TranscodeConfig = field(default_factory=TranscodeConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    deepgram: DeepgramConfig = field(default_factory=DeepgramConfig)
    general: GeneralConfig = field(default_factory=GeneralConfig)

    @classmethod
    def from_toml(
        cls,
        path: Path | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> "Config":
        """Load configuration from TOML file with environment overrides.

        Args:
            path: Explicit config file path. If None, searches in order:
                  1. TRANSCRIPTION_CONFIG env var
                  2. ./transcription.toml
                  3. ~/.config/transcription.toml
                  Falls back to built-in defaults when none exists.
            env: Environment variables for overrides (defaults to os.environ)

        Returns:
            Loaded Config instance

        Raises:
            ConfigError: If an explicit file is missing or values are invalid
        """
        if env is None:
            import os

            env = os.environ

        resolved_path = _resolve_config_path(path, env)
        raw_data = _load_toml_file(resolved_path) if resolved_path else {}

        try:
            coerced = _coerce_config_values(raw_data, env)
            return cls(
                segmentation=SegmentationConfig(**coerced["segmentation"]),
                tools=ToolsConfig(**coerced["tools"]),
                transcode=TranscodeConfig(**coerced["transcode"]),
                transcription=TranscriptionConfig(**coerced["transcription"]),
                openai=OpenAIConfig(**coerced["openai"]),
                deepgram=DeepgramConfig(**coerced["deepgram"]),
                general=GeneralConfig(**coerced["general"]),
            )
        except TypeError as e:
            raise ConfigError(f"Invalid configuration values: {e}") from e

    def validate(self) -> None:
        """Validate configuration values and backend credentials.

        Raises:
            ConfigError: If any setting is out of range or a key is missing
        """
        validate_segmentation_config(self.segmentation)
        validate_tools_config(self.tools)
        validate_transcription_config(self.transcription)
        validate_backend_credentials(self)


def _resolve_config_path(
    cli_path: Path | None,
    env: Mapping[str, str],
) -> Path | None:
    """Resolve configuration file path following search order.

    Search order:
    1. CLI-provided path
    2. TRANSCRIPTION_CONFIG environment variable
    3. ./transcription.toml (current directory)
    4. ~/.config/transcription.toml (user config directory)

    Returns:
        Path to the file, or None when no candidate exists

    Raises:
        ConfigError: If an explicitly requested file does not exist
    """
    if cli_path:
        cli_path = Path(cli_path)
        if cli_path.exists():
            logger.info("Using config file: %s", cli_path.resolve())
            return cli_path.resolve()
        raise ConfigError(f"Config file not found: {cli_path}")

    if env_path := env.get("TRANSCRIPTION_CONFIG"):
        candidate = Path(env_path)
        if not candidate.exists():
            raise ConfigError(f"Config file from TRANSCRIPTION_CONFIG not found: {candidate}")
        logger.info("Using config file: %s", candidate.resolve())
        return candidate.resolve()

    candidates = [
        Path("transcription.toml"),
        Path.home() / ".config" / "transcription.toml",
    ]
    for candidate in candidates:
        if candidate.exists():
            logger.info("Using config file: %s", candidate.resolve())
            return candidate.resolve()

    logger.info(
        "No config file found (searched: %s), using defaults",
        ", ".join(str(c) for c in candidates),
    )
    return None


def _load_toml_file(path: Path) -> dict:
    """Load and parse TOML configuration file.

    Args:
        path: Path to TOML file

    Returns:
        Parsed TOML data as dictionary

    Raises:
        ConfigError: If file cannot be read or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except Exception as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e


def _coerce_config_values(raw_data: dict, env: Mapping[str, str]) -> dict:
    """Normalize raw TOML data for dataclass instantiation.

    Handles per-section table checks and environment fallbacks.

    Args:
        raw_data: Raw parsed TOML dictionary
        env: Environment variables for overrides

    Returns:
        Coerced dictionary ready for dataclass instantiation
    """
    unknown = set(raw_data) - set(_SECTIONS)
    if unknown:
        raise ConfigError(f"Unknown config section(s): {', '.join(sorted(unknown))}")

    coerced = {}
    for section in _SECTIONS:
        value = raw_data.get(section, {})
        if not isinstance(value, dict):
            raise ConfigError(f"Section [{section}] must be a table")
        coerced[section] = dict(value)

    segmentation = coerced["segmentation"]
    if "max_file_size_mb" in segmentation:
        size_mb = segmentation.pop("max_file_size_mb")
        if not isinstance(size_mb, (int, float)):
            raise ConfigError("segmentation.max_file_size_mb must be a number")
        segmentation.setdefault("max_file_size_bytes", int(size_mb * 1024 * 1024))

    transcription = coerced["transcription"]
    if not transcription.get("model") and env.get("TRANSCRIPTION_MODEL"):
        transcription["model"] = env["TRANSCRIPTION_MODEL"]

    if not coerced["openai"].get("api_key"):
        coerced["openai"]["api_key"] = env.get("OPENAI_API_KEY")

    if not coerced["deepgram"].get("api_key"):
        coerced["deepgram"]["api_key"] = env.get("DEEPGRAM_API_KEY")

    return coerced


def validate_segmentation_config(seg_cfg: SegmentationConfig) -> None:
    """Validate segment limits.

    Raises:
        ConfigError: If limits are not positive
    """
    if seg_cfg.max_segment_seconds <= 0:
        raise ConfigError(
            f"max_segment_seconds must be positive, got {seg_cfg.max_segment_seconds}"
        )
    if seg_cfg.max_file_size_bytes <= 0:
        raise ConfigError(
            f"max_file_size_bytes must be positive, got {seg_cfg.max_file_size_bytes}"
        )
    if seg_cfg.assumed_bitrate_kbps <= 0:
        raise ConfigError(
            f"assumed_bitrate_kbps must be positive, got {seg_cfg.assumed_bitrate_kbps}"
        )


def validate_tools_config(tools_cfg: ToolsConfig) -> None:
    """Validate tool candidate lists and timeouts.

    Raises:
        ConfigError: If a timeout is not positive
    """
    for name in ("probe_timeout", "transcode_timeout", "cut_timeout"):
        value = getattr(tools_cfg, name)
        if value <= 0:
            raise ConfigError(f"tools.{name} must be positive, got {value}")


def validate_transcription_config(tx_cfg: TranscriptionConfig) -> None:
    """Validate model selection and dispatch settings.

    Raises:
        ConfigError: If the model is unknown or a setting is out of range
    """
    try:
        lookup_capability(tx_cfg.model)
    except UnsupportedModelError as e:
        raise ConfigError(str(e)) from e

    if tx_cfg.response_format is not None:
        valid_formats = tuple(f.value for f in ResponseFormat)
        if tx_cfg.response_format not in valid_formats:
            raise ConfigError(
                f"Invalid response_format '{tx_cfg.response_format}'. "
                f"Must be one of: {', '.join(valid_formats)}"
            )

    if tx_cfg.max_attempts < 1:
        raise ConfigError(f"max_attempts must be at least 1, got {tx_cfg.max_attempts}")

    if not 1 <= tx_cfg.concurrency <= MAX_CONCURRENCY:
        raise ConfigError(
            f"concurrency must be between 1 and {MAX_CONCURRENCY}, got {tx_cfg.concurrency}"
        )

    if tx_cfg.backoff_base < 0 or tx_cfg.backoff_max < 0:
        raise ConfigError("backoff_base and backoff_max must be non-negative")

    if tx_cfg.request_timeout <= 0:
        raise ConfigError(f"request_timeout must be positive, got {tx_cfg.request_timeout}")


def validate_backend_credentials(cfg: Config) -> None:
    """Validate that the selected model's backend has an API key.

    Raises:
        ConfigError: If the key is missing
    """
    backend = lookup_capability(cfg.transcription.model).backend

    if backend == "openai" and not cfg.openai.api_key:
        raise ConfigError(
            f"OpenAI API key is required for model '{cfg.transcription.model}'. "
            "Set it in config file or via OPENAI_API_KEY environment variable."
        )

    if backend == "deepgram" and not cfg.deepgram.api_key:
        raise ConfigError(
            f"Deepgram API key is required for model '{cfg.transcription.model}'. "
            "Set it in config file or via DEEPGRAM_API_KEY environment variable."
        )


def load_config(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from TOML file.

    Convenience wrapper around Config.from_toml().

    Args:
        path: Explicit config file path (optional)
        env: Environment variables (defaults to os.environ)

    Returns:
        Loaded Config instance

    Raises:
        ConfigError: If config cannot be loaded
    """
    return Config.from_toml(path, env=env)
