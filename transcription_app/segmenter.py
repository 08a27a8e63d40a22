"""Splitting of source audio into backend-sized segment files."""

import asyncio
import logging
import math
from pathlib import Path

from transcription_app._types import (
    AudioMetadata,
    Segment,
    SegmentationPlan,
    SegmentStrategy,
)
from transcription_app.config import SegmentationConfig, TranscodeConfig
from transcription_app.errors import SegmentCreationFailed, ToolError
from transcription_app.planner import SegmentLimits
from transcription_app.probe import MetadataProbe
from transcription_app.toolchain import MediaToolchain, run_checked
from transcription_app.transcoder import encoded_bytes_per_second, mp3_encode_args

logger = logging.getLogger(__name__)

COPY_BUFFER_SIZE = 1024 * 1024
# Headroom below the size limit when shrinking segment length by byte rate.
SIZE_SAFETY_FACTOR = 0.95
# A cut shorter than its window by more than this means the audio ended.
END_TOLERANCE_SECONDS = 0.5
# 8 kbps, the floor for bounding cuts of a source with unknown duration.
MIN_BYTES_PER_SECOND = 1000


def time_segment_length(
    duration: float, size_bytes: int, limits: SegmentLimits
) -> float:
    """Segment length in seconds that keeps each cut under both limits."""
    length = limits.max_segment_seconds
    if duration <= 0 or size_bytes <= 0:
        return length

    bytes_per_second = size_bytes / duration
    if bytes_per_second * length > limits.max_file_size_bytes:
        length = limits.max_file_size_bytes / bytes_per_second * SIZE_SAFETY_FACTOR
        logger.info(
            "Segment length reduced to %.1fs to stay under %d bytes",
            length,
            limits.max_file_size_bytes,
        )
    return length


def time_boundaries(duration: float, length: float) -> list[tuple[float, float]]:
    """(start, duration) pairs covering ``[0, duration)`` without gaps."""
    count = max(1, math.ceil(duration / length - 1e-6))
    bounds = []
    for i in range(count):
        start = i * length
        bounds.append((start, min(length, duration - start)))
    return bounds


def estimated_windows(length: float, max_duration: float):
    """Full-length (start, duration) windows up to ``max_duration``.

    Used when the source duration is only an estimate: the caller stops
    iterating once a cut comes back short or empty.
    """
    count = max(1, math.ceil(max_duration / length - 1e-6))
    for i in range(count):
        yield i * length, length


def byte_ranges(size_bytes: int, max_bytes: int) -> list[tuple[int, int]]:
    """Half-open (start, end) ranges of near-equal size partitioning the file."""
    count = max(1, math.ceil(size_bytes / max_bytes))
    chunk = math.ceil(size_bytes / count)
    return [
        (start, min(start + chunk, size_bytes))
        for start in range(0, count * chunk, chunk)
        if start < size_bytes
    ] or [(0, 0)]


def _copy_range(source: Path, target: Path, start: int, end: int) -> int:
    written = 0
    with open(source, "rb") as src, open(target, "wb") as dst:
        src.seek(start)
        remaining = end - start
        while remaining > 0:
            buf = src.read(min(COPY_BUFFER_SIZE, remaining))
            if not buf:
                break
            dst.write(buf)
            written += len(buf)
            remaining -= len(buf)
    if written != end - start:
        raise OSError(f"short read from {source}: {written} of {end - start} bytes")
    return written


def _remove_files(segments: list[Segment]) -> None:
    for segment in segments:
        if segment.temporary:
            try:
                segment.path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to remove segment file %s: %s", segment.path, e)


class Segmenter:
    """Produces SegmentationPlans from a planned strategy."""

    def __init__(
        self,
        toolchain: MediaToolchain,
        probe: MetadataProbe,
        config: SegmentationConfig | None = None,
        transcode_config: TranscodeConfig | None = None,
    ):
        self.toolchain = toolchain
        self.probe = probe
        self.config = config or SegmentationConfig()
        self.transcode_config = transcode_config or TranscodeConfig()
        self.cut_timeout = toolchain.config.cut_timeout

    def single(self, path: Path, metadata: AudioMetadata) -> SegmentationPlan:
        """Plan with one segment that is the source itself."""
        segment = Segment(
            index=0,
            path=Path(path),
            start_offset=0.0,
            duration=metadata.duration,
            size_bytes=metadata.size_bytes,
        )
        return SegmentationPlan(
            segments=(segment,),
            strategy=SegmentStrategy.NONE,
            original_duration=metadata.duration,
            original_size=metadata.size_bytes,
            source_format=metadata.format,
        )

    def _cut_duration(self, measured: AudioMetadata | None, size: int, planned: float) -> float:
        """Length of a cut whose window may run past the end of the audio.

        Uses the probed duration, else derives it from the cut's size at the
        constant encoding bitrate.
        """
        if measured is None:
            return 0.0
        if measured.duration > 0 or measured.probed:
            return measured.duration
        rate = encoded_bytes_per_second(self.transcode_config)
        if rate is None:
            return planned
        return min(size / rate, planned)

    async def segment_by_time(
        self,
        path: Path,
        metadata: AudioMetadata,
        duration: float,
        limits: SegmentLimits,
        workdir: Path,
        *,
        duration_estimated: bool = False,
        transcoded: bool = False,
    ) -> SegmentationPlan:
        """Cut ``path`` into consecutive time windows with ffmpeg.

        Args:
            path: Working file (transcoded output or the original)
            metadata: Metadata of the original source
            duration: Duration to cover, probed or estimated
            limits: Effective segment limits
            workdir: Run-scoped temporary directory
            duration_estimated: Whether ``duration`` is an estimate
            transcoded: Whether ``path`` is a transcoded copy

        Returns:
            Time-based SegmentationPlan with measured segment sizes and durations

        Raises:
            SegmentCreationFailed: If any cut fails
        """
        path = Path(path)
        try:
            ffmpeg = await self.toolchain.require_ffmpeg()
            working_size = path.stat().st_size
        except (ToolError, OSError) as e:
            raise SegmentCreationFailed(f"Cannot segment {path.name}: {e}") from e

        length = time_segment_length(duration, working_size, limits)
        if duration_estimated:
            # Cut until the audio runs out, bounded by the lowest plausible bitrate.
            windows = estimated_windows(length, working_size / MIN_BYTES_PER_SECOND)
            logger.info(
                "Cutting %s into %.1fs segments until the audio ends (estimated %.1fs)",
                path.name,
                length,
                duration,
            )
        else:
            bounds = time_boundaries(duration, length)
            windows = iter(bounds)
            logger.info(
                "Cutting %s into %d segments of up to %.1fs", path.name, len(bounds), length
            )

        segments: list[Segment] = []
        try:
            for index, (start, planned) in enumerate(windows):
                output = Path(workdir) / f"segment_{index:03d}.mp3"
                cmd = [
                    ffmpeg,
                    "-hide_banner",
                    "-loglevel", "error",
                    "-y",
                    "-ss", f"{start:.3f}",
                    "-i", str(path),
                    "-t", f"{planned:.3f}",
                    *mp3_encode_args(self.transcode_config),
                    str(output),
                ]
                await run_checked(cmd, self.cut_timeout)

                size = output.stat().st_size if output.exists() else 0
                measured = await self.probe.probe(output) if size else None

                if duration_estimated:
                    segment_duration = self._cut_duration(measured, size, planned)
                    if index > 0 and segment_duration < END_TOLERANCE_SECONDS:
                        output.unlink(missing_ok=True)
                        logger.info(
                            "Segment %d starts past the end of %s, stopping", index, path.name
                        )
                        break
                if size == 0:
                    raise SegmentCreationFailed(f"Segment {index} of {path.name} is empty")
                if not duration_estimated:
                    segment_duration = measured.duration if measured.duration > 0 else planned

                if size > limits.max_file_size_bytes:
                    logger.warning(
                        "Segment %d is %d bytes, above the %d byte limit",
                        index,
                        size,
                        limits.max_file_size_bytes,
                    )

                segments.append(
                    Segment(
                        index=index,
                        path=output,
                        start_offset=start,
                        duration=segment_duration,
                        size_bytes=size,
                        temporary=True,
                    )
                )
                logger.debug(
                    "Segment %d: start=%.1fs duration=%.1fs size=%d",
                    index,
                    start,
                    segment_duration,
                    size,
                )
                if duration_estimated and segment_duration < planned - END_TOLERANCE_SECONDS:
                    logger.info("Reached the end of %s at segment %d", path.name, index)
                    break
        except (ToolError, OSError) as e:
            _remove_files(segments)
            Path(workdir, f"segment_{len(segments):03d}.mp3").unlink(missing_ok=True)
            raise SegmentCreationFailed(
                f"Cutting segment {len(segments)} of {path.name} failed: {e}"
            ) from e
        except BaseException:
            _remove_files(segments)
            raise

        original_duration = duration
        if duration_estimated:
            original_duration = sum(s.duration for s in segments)

        return SegmentationPlan(
            segments=tuple(segments),
            strategy=SegmentStrategy.TIME,
            original_duration=original_duration,
            original_size=metadata.size_bytes,
            timing_approximate=duration_estimated,
            duration_estimated=duration_estimated,
            source_format=metadata.format,
            transcoded=transcoded,
        )

    def _check_splittable(self, path: Path, metadata: AudioMetadata) -> None:
        names = {name.strip().lower() for name in metadata.format.split(",")}
        names.add(path.suffix.lower().lstrip("."))
        refused = names.intersection(self.config.unsplittable_formats)
        if refused:
            raise SegmentCreationFailed(
                f"Cannot split {path.name} by bytes: {', '.join(sorted(refused))} "
                "segments would not decode. Install ffmpeg for time-based segmentation."
            )

    async def segment_by_bytes(
        self,
        path: Path,
        metadata: AudioMetadata,
        limits: SegmentLimits,
        workdir: Path,
        *,
        fallback_reason: str | None = None,
    ) -> SegmentationPlan:
        """Copy contiguous byte ranges of ``path`` into segment files.

        Durations and offsets are estimated proportionally to size, so the
        plan is marked ``timing_approximate``.

        Raises:
            SegmentCreationFailed: If the container cannot be split this way
                or a copy fails
        """
        path = Path(path)
        self._check_splittable(path, metadata)

        size_bytes = metadata.size_bytes
        ranges = byte_ranges(size_bytes, limits.max_file_size_bytes)
        duration = metadata.duration if metadata.duration > 0 else 0.0
        logger.info(
            "Splitting %s into %d byte ranges of up to %d bytes",
            path.name,
            len(ranges),
            limits.max_file_size_bytes,
        )

        loop = asyncio.get_running_loop()
        suffix = path.suffix or ".bin"
        segments: list[Segment] = []
        try:
            for index, (start, end) in enumerate(ranges):
                output = Path(workdir) / f"segment_{index:03d}{suffix}"
                written = await loop.run_in_executor(
                    None, _copy_range, path, output, start, end
                )
                segments.append(
                    Segment(
                        index=index,
                        path=output,
                        start_offset=start / size_bytes * duration if size_bytes else 0.0,
                        duration=written / size_bytes * duration if size_bytes else 0.0,
                        size_bytes=written,
                        byte_range=(start, end),
                        temporary=True,
                    )
                )
        except OSError as e:
            _remove_files(segments)
            Path(workdir, f"segment_{len(segments):03d}{suffix}").unlink(missing_ok=True)
            raise SegmentCreationFailed(
                f"Copying byte range {len(segments)} of {path.name} failed: {e}"
            ) from e
        except BaseException:
            _remove_files(segments)
            raise

        return SegmentationPlan(
            segments=tuple(segments),
            strategy=SegmentStrategy.BYTE,
            original_duration=duration,
            original_size=size_bytes,
            timing_approximate=True,
            duration_estimated=False,
            source_format=metadata.format,
            fallback_reason=fallback_reason,
        )
