"""Audio metadata extraction via ffprobe with graceful degradation."""

import json
import logging
import math
from pathlib import Path

from transcription_app._types import AudioMetadata
from transcription_app.errors import (
    DurationInvalid,
    ProbeParseError,
    ProbeUnavailable,
    ToolError,
)
from transcription_app.toolchain import MediaToolchain, run_tool

logger = logging.getLogger(__name__)


def _positive_float(value) -> float | None:
    """Parse a probe field as a positive finite number, else None."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


def _optional_int(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def extract_duration(data: dict) -> float | None:
    """Pick the duration from ffprobe JSON.

    Container-level ``format.duration`` wins; otherwise the first stream with
    a positive duration, audio streams before others.
    """
    duration = _positive_float((data.get("format") or {}).get("duration"))
    if duration is not None:
        return duration

    streams = data.get("streams") or []
    ordered = sorted(streams, key=lambda s: s.get("codec_type") != "audio")
    for stream in ordered:
        duration = _positive_float(stream.get("duration"))
        if duration is not None:
            return duration
    return None


def parse_probe_output(stdout: str, path: Path, size_bytes: int, tool: str) -> AudioMetadata:
    """Build metadata from ffprobe JSON output.

    Raises:
        ProbeParseError: If the output is not a JSON object
        DurationInvalid: If no positive duration is present. The partially
            parsed metadata is attached as ``metadata``.
    """
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError as e:
        raise ProbeParseError(f"{tool} returned non-JSON output for {path}: {e}") from e
    if not isinstance(data, dict):
        raise ProbeParseError(f"{tool} returned unexpected JSON for {path}")

    fmt = data.get("format") or {}
    audio_stream = next(
        (s for s in data.get("streams") or [] if s.get("codec_type") == "audio"), {}
    )

    metadata = AudioMetadata(
        duration=0.0,
        format=fmt.get("format_name") or _extension_format(path),
        size_bytes=size_bytes,
        bitrate=_optional_int(audio_stream.get("bit_rate") or fmt.get("bit_rate")),
        sample_rate=_optional_int(audio_stream.get("sample_rate")),
        channels=_optional_int(audio_stream.get("channels")),
        probed=True,
        probe_tool=tool,
    )

    duration = extract_duration(data)
    if duration is None:
        raise DurationInvalid(
            f"{tool} reported no positive duration for {path}", metadata=metadata
        )

    return AudioMetadata(
        duration=duration,
        format=metadata.format,
        size_bytes=metadata.size_bytes,
        bitrate=metadata.bitrate,
        sample_rate=metadata.sample_rate,
        channels=metadata.channels,
        probed=True,
        probe_tool=tool,
    )


def _extension_format(path: Path) -> str:
    return path.suffix.lower().lstrip(".") or "unknown"


def basic_metadata(path: Path, size_bytes: int) -> AudioMetadata:
    """Metadata available without any external tool."""
    return AudioMetadata(duration=0.0, format=_extension_format(path), size_bytes=size_bytes)


class MetadataProbe:
    """Extracts duration and format information from audio files.

    Tries every ffprobe candidate in order and never fails for tool problems:
    the worst case is basic metadata with ``duration = 0``.
    """

    def __init__(self, toolchain: MediaToolchain, timeout: float | None = None):
        """Initialize probe.

        Args:
            toolchain: MediaToolchain supplying ffprobe candidates
            timeout: Per-invocation timeout in seconds (defaults to tools config)
        """
        self.toolchain = toolchain
        self.timeout = timeout if timeout is not None else toolchain.config.probe_timeout

    async def probe(self, path: Path) -> AudioMetadata:
        """Probe a file.

        Args:
            path: Audio file to inspect

        Returns:
            AudioMetadata, degraded when no candidate reports a valid duration

        Raises:
            FileNotFoundError: If the file does not exist
        """
        path = Path(path)
        size_bytes = path.stat().st_size
        candidates = await self.toolchain.ffprobe_candidates()
        return await self.probe_with(candidates, path, size_bytes)

    async def probe_with(
        self, candidates: list[str], path: Path, size_bytes: int
    ) -> AudioMetadata:
        """Run the fallback chain over an explicit candidate list."""
        first_parsed: AudioMetadata | None = None

        for tool in candidates:
            try:
                metadata = await self._probe_one(tool, path, size_bytes)
            except ProbeUnavailable as e:
                logger.debug("Probe candidate %s unavailable: %s", tool, e)
                continue
            except ProbeParseError as e:
                logger.warning("Probe candidate %s output unusable: %s", tool, e)
                continue
            except DurationInvalid as e:
                logger.warning("Probe candidate %s: %s", tool, e)
                if first_parsed is None:
                    first_parsed = e.metadata
                continue

            logger.info(
                "Probed %s with %s: %.2fs, %s, %d bytes",
                path.name,
                tool,
                metadata.duration,
                metadata.format,
                metadata.size_bytes,
            )
            return metadata

        if first_parsed is not None:
            logger.warning("No valid duration for %s, duration unknown", path)
            return first_parsed

        logger.warning(
            "No probing tool usable for %s (tried %d candidates), using basic metadata",
            path,
            len(candidates),
        )
        return basic_metadata(path, size_bytes)

    async def _probe_one(self, tool: str, path: Path, size_bytes: int) -> AudioMetadata:
        cmd = [
            tool,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]
        try:
            result = await run_tool(cmd, self.timeout)
        except ToolError as e:
            raise ProbeUnavailable(str(e)) from e

        if result.returncode != 0:
            raise ProbeUnavailable(f"{tool} exited with code {result.returncode}")
        if not result.stdout.strip():
            raise ProbeParseError(f"{tool} produced no output for {path}")

        return parse_probe_output(result.stdout, path, size_bytes, tool)
