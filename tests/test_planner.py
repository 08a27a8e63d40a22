"""Tests for planner module."""

from transcription_app._types import AudioMetadata, SegmentStrategy
from transcription_app.capabilities import lookup_capability
from transcription_app.config import SegmentationConfig
from transcription_app.planner import SegmentLimits, effective_limits, estimate_duration, plan

MB = 1024 * 1024
LIMITS = SegmentLimits(max_segment_seconds=600, max_file_size_bytes=25 * MB)


def _metadata(duration, size_bytes, fmt="mp3"):
    return AudioMetadata(duration=duration, format=fmt, size_bytes=size_bytes)


class TestPlan:
    """Test strategy selection."""

    def test_within_limits_no_segmentation(self):
        """Test a short, small file is sent as is."""
        decision = plan(_metadata(300, 5 * MB), LIMITS, segmenting_available=True)
        assert decision.needed is False
        assert decision.strategy is SegmentStrategy.NONE

    def test_exactly_at_limits_no_segmentation(self):
        """Test limits are inclusive."""
        decision = plan(_metadata(600, 25 * MB), LIMITS, segmenting_available=True)
        assert decision.needed is False

    def test_unknown_duration_small_file_passes(self):
        """Test unknown duration passes the duration test."""
        decision = plan(_metadata(0, 1 * MB), LIMITS, segmenting_available=False)
        assert decision.needed is False

    def test_long_file_time_strategy(self):
        """Test a 40 minute file is planned time-based."""
        decision = plan(_metadata(2400, 60 * MB), LIMITS, segmenting_available=True)
        assert decision.needed is True
        assert decision.strategy is SegmentStrategy.TIME
        assert decision.effective_duration == 2400
        assert decision.duration_estimated is False

    def test_oversized_short_file_time_strategy(self):
        """Test a short file over the size limit still needs segmentation."""
        decision = plan(_metadata(500, 40 * MB), LIMITS, segmenting_available=True)
        assert decision.needed is True
        assert decision.strategy is SegmentStrategy.TIME

    def test_no_tool_byte_strategy(self):
        """Test byte strategy when ffmpeg is unavailable."""
        decision = plan(_metadata(0, 50 * MB), LIMITS, segmenting_available=False)
        assert decision.strategy is SegmentStrategy.BYTE

    def test_no_tool_byte_strategy_with_valid_duration(self):
        """Test byte strategy regardless of duration validity."""
        decision = plan(_metadata(3000, 50 * MB), LIMITS, segmenting_available=False)
        assert decision.strategy is SegmentStrategy.BYTE
        assert decision.effective_duration == 3000

    def test_unknown_duration_estimated(self):
        """Test duration estimated from size at the assumed bitrate."""
        size = 48_000_000
        decision = plan(
            _metadata(0, size), LIMITS, segmenting_available=True, assumed_bitrate_kbps=128
        )
        assert decision.strategy is SegmentStrategy.TIME
        assert decision.duration_estimated is True
        assert decision.effective_duration == 3000.0

    def test_estimate_at_least_one_segment(self):
        """Test the estimate is never shorter than one segment."""
        limits = SegmentLimits(max_segment_seconds=600, max_file_size_bytes=1 * MB)
        decision = plan(
            _metadata(0, 2 * MB), limits, segmenting_available=True, assumed_bitrate_kbps=1000
        )
        assert decision.effective_duration == 600


class TestEffectiveLimits:
    """Test combining configured and model limits."""

    def test_config_tighter_than_model(self):
        """Test configured 24 MiB wins over the 25 MiB upload limit."""
        limits = effective_limits(SegmentationConfig(), lookup_capability("whisper-1"))
        assert limits.max_file_size_bytes == 24 * MB
        assert limits.max_segment_seconds == 600

    def test_model_duration_limit_applies(self):
        """Test model duration cap applies when tighter."""
        limits = effective_limits(
            SegmentationConfig(max_segment_seconds=3600),
            lookup_capability("gpt-4o-mini-transcribe"),
        )
        assert limits.max_segment_seconds == 1400

    def test_no_capability(self):
        """Test configured limits are returned as is without a capability."""
        cfg = SegmentationConfig(max_segment_seconds=120, max_file_size_bytes=MB)
        limits = effective_limits(cfg)
        assert limits == SegmentLimits(120, MB)


def test_estimate_duration():
    """Test size/bitrate estimate."""
    assert estimate_duration(16_000, 128) == 1.0
