"""Segmentation strategy selection."""

import logging
from dataclasses import dataclass

from transcription_app._types import AudioMetadata, SegmentStrategy
from transcription_app.capabilities import ModelCapability
from transcription_app.config import SegmentationConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SegmentLimits:
    """Hard bounds a single segment must respect."""

    max_segment_seconds: float
    max_file_size_bytes: int


@dataclass(frozen=True)
class PlanDecision:
    """Outcome of strategy selection, before any file is touched.

    ``effective_duration`` is the duration the segmenter should work from:
    the probed one, or an estimate when ``duration_estimated`` is set.
    """

    needed: bool
    strategy: SegmentStrategy
    effective_duration: float
    duration_estimated: bool = False


def effective_limits(
    config: SegmentationConfig, capability: ModelCapability | None = None
) -> SegmentLimits:
    """Combine configured limits with the model's declared hard limits."""
    max_seconds = config.max_segment_seconds
    max_bytes = config.max_file_size_bytes

    if capability is not None:
        if capability.max_duration_seconds is not None:
            max_seconds = min(max_seconds, capability.max_duration_seconds)
        if capability.max_file_size_bytes is not None:
            max_bytes = min(max_bytes, capability.max_file_size_bytes)

    return SegmentLimits(max_segment_seconds=max_seconds, max_file_size_bytes=max_bytes)


def estimate_duration(size_bytes: int, assumed_bitrate_kbps: float) -> float:
    """Estimate playback length from file size at an assumed constant bitrate."""
    bytes_per_second = assumed_bitrate_kbps * 1000 / 8
    return size_bytes / bytes_per_second


def plan(
    metadata: AudioMetadata,
    limits: SegmentLimits,
    *,
    segmenting_available: bool,
    assumed_bitrate_kbps: float = 128.0,
) -> PlanDecision:
    """Decide whether and how to segment a source.

    Args:
        metadata: Probed (possibly degraded) source metadata
        limits: Effective segment limits
        segmenting_available: Whether ffmpeg can cut the file
        assumed_bitrate_kbps: Bitrate used to estimate an unknown duration

    Returns:
        PlanDecision
    """
    duration = metadata.duration if metadata.duration > 0 else 0.0

    within_duration = duration <= limits.max_segment_seconds
    within_size = metadata.size_bytes <= limits.max_file_size_bytes
    if within_duration and within_size:
        logger.info(
            "No segmentation needed (%.1fs, %d bytes)", duration, metadata.size_bytes
        )
        return PlanDecision(
            needed=False, strategy=SegmentStrategy.NONE, effective_duration=duration
        )

    if not segmenting_available:
        logger.warning(
            "Segmentation needed but ffmpeg unavailable, falling back to byte-based splitting"
        )
        return PlanDecision(
            needed=True, strategy=SegmentStrategy.BYTE, effective_duration=duration
        )

    if duration > 0:
        logger.info(
            "Time-based segmentation: %.1fs source, %.1fs max per segment",
            duration,
            limits.max_segment_seconds,
        )
        return PlanDecision(
            needed=True, strategy=SegmentStrategy.TIME, effective_duration=duration
        )

    estimate = max(
        estimate_duration(metadata.size_bytes, assumed_bitrate_kbps),
        limits.max_segment_seconds,
    )
    logger.warning(
        "Duration unknown, estimated %.1fs from %d bytes at %.0f kbps",
        estimate,
        metadata.size_bytes,
        assumed_bitrate_kbps,
    )
    return PlanDecision(
        needed=True,
        strategy=SegmentStrategy.TIME,
        effective_duration=estimate,
        duration_estimated=True,
    )
