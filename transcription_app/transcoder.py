"""Normalization of source audio to MP3 before time-based cutting."""

import logging
from pathlib import Path

from transcription_app._types import AudioMetadata
from transcription_app.config import TranscodeConfig, ToolsConfig
from transcription_app.errors import TranscodeFailed, ToolError
from transcription_app.toolchain import MediaToolchain, run_checked

logger = logging.getLogger(__name__)

TARGET_SUFFIX = ".mp3"


def is_normalized(path: Path, metadata: AudioMetadata) -> bool:
    """True when the source is already MP3 and needs no transcoding."""
    return "mp3" in metadata.format.lower().split(",") or Path(path).suffix.lower() == TARGET_SUFFIX


def mp3_encode_args(config: TranscodeConfig) -> list[str]:
    """ffmpeg output options producing the normalized MP3 encoding."""
    return [
        "-vn",
        "-acodec", "libmp3lame",
        "-ab", config.bitrate,
        "-ac", str(config.channels),
        "-ar", str(config.sample_rate),
    ]


def encoded_bytes_per_second(config: TranscodeConfig) -> float | None:
    """Byte rate of the constant-bitrate MP3 encoding, None if unparseable."""
    value = config.bitrate.strip().lower()
    scale = 1
    if value.endswith("k"):
        value, scale = value[:-1], 1000
    elif value.endswith("m"):
        value, scale = value[:-1], 1000 * 1000
    try:
        bits = float(value) * scale
    except ValueError:
        return None
    return bits / 8 if bits > 0 else None


class Transcoder:
    """Re-encodes sources into MP3 so every segment shares one encoding."""

    def __init__(
        self,
        toolchain: MediaToolchain,
        config: TranscodeConfig | None = None,
        tools_config: ToolsConfig | None = None,
    ):
        self.toolchain = toolchain
        self.config = config or TranscodeConfig()
        self.timeout = (tools_config or toolchain.config).transcode_timeout

    def needed(self, path: Path, metadata: AudioMetadata) -> bool:
        return self.config.enabled and not is_normalized(path, metadata)

    async def transcode(self, path: Path, metadata: AudioMetadata, workdir: Path) -> Path:
        """Encode ``path`` into ``workdir`` as MP3.

        Args:
            path: Source file
            metadata: Probed source metadata
            workdir: Run-scoped temporary directory

        Returns:
            Path of the file to segment (``path`` itself when already MP3)

        Raises:
            TranscodeFailed: If ffmpeg is unavailable, fails or times out
        """
        path = Path(path)
        if not self.needed(path, metadata):
            logger.debug("Skipping transcode for %s (format %s)", path.name, metadata.format)
            return path

        output = Path(workdir) / f"{path.stem}.normalized{TARGET_SUFFIX}"

        try:
            ffmpeg = await self.toolchain.require_ffmpeg()
            cmd = [
                ffmpeg,
                "-hide_banner",
                "-loglevel", "error",
                "-y",
                "-i", str(path),
                *mp3_encode_args(self.config),
                str(output),
            ]
            logger.info("Transcoding %s to MP3", path.name)
            await run_checked(cmd, self.timeout)
        except ToolError as e:
            output.unlink(missing_ok=True)
            raise TranscodeFailed(f"Transcoding {path.name} failed: {e}") from e

        if not output.exists() or output.stat().st_size == 0:
            output.unlink(missing_ok=True)
            raise TranscodeFailed(f"Transcoding {path.name} produced no output")

        logger.info(
            "Transcoded %s: %d -> %d bytes",
            path.name,
            metadata.size_bytes,
            output.stat().st_size,
        )
        return output
