"""Tests for probe module."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from transcription_app.errors import ToolNotFoundError, ToolTimeoutError
from transcription_app.probe import MetadataProbe, extract_duration
from transcription_app.toolchain import MediaToolchain, ToolResult


def _probe_json(
    format_duration=None, stream_duration=None, format_name="mp3", video_duration=None
):
    data = {
        "format": {"format_name": format_name, "bit_rate": "128000"},
        "streams": [
            {"codec_type": "video"},
            {
                "codec_type": "audio",
                "sample_rate": "44100",
                "channels": 2,
                "bit_rate": "128000",
            },
        ],
    }
    if format_duration is not None:
        data["format"]["duration"] = format_duration
    if stream_duration is not None:
        data["streams"][1]["duration"] = stream_duration
    if video_duration is not None:
        data["streams"][0]["duration"] = video_duration
    return json.dumps(data)


@pytest.fixture
def audio_file(tmp_path):
    path = tmp_path / "meeting.m4a"
    path.write_bytes(b"\x00" * 2048)
    return path


@pytest.fixture
def probe():
    toolchain = MediaToolchain()
    toolchain.ffprobe_candidates = AsyncMock(return_value=["ffprobe", "/opt/ffprobe"])
    return MetadataProbe(toolchain, timeout=5)


class TestExtractDuration:
    """Test duration selection from ffprobe JSON."""

    def test_format_duration_preferred(self):
        """Test container duration wins over stream duration."""
        data = json.loads(_probe_json(format_duration="120.5", stream_duration="119.0"))
        assert extract_duration(data) == 120.5

    def test_audio_stream_before_other_streams(self):
        """Test audio stream duration is used before video stream duration."""
        data = json.loads(
            _probe_json(format_duration="N/A", stream_duration="42.0", video_duration="99.0")
        )
        assert extract_duration(data) == 42.0

    def test_invalid_values_rejected(self):
        """Test zero, negative, NaN and infinite durations are invalid."""
        for value in ("0", "-3", "nan", "inf", "N/A"):
            data = {"format": {"duration": value}, "streams": []}
            assert extract_duration(data) is None


class TestMetadataProbe:
    """Test the candidate fallback chain."""

    @pytest.mark.asyncio
    async def test_probe_success(self, probe, audio_file):
        """Test metadata from the first working candidate."""
        with patch(
            "transcription_app.probe.run_tool",
            new=AsyncMock(return_value=ToolResult(0, _probe_json("300.0"), "")),
        ) as mock_run:
            metadata = await probe.probe(audio_file)

        assert metadata.duration == 300.0
        assert metadata.format == "mp3"
        assert metadata.size_bytes == 2048
        assert metadata.sample_rate == 44100
        assert metadata.channels == 2
        assert metadata.bitrate == 128000
        assert metadata.probed is True
        assert metadata.probe_tool == "ffprobe"
        cmd = mock_run.call_args[0][0]
        assert cmd[:6] == ["ffprobe", "-v", "quiet", "-print_format", "json", "-show_format"]
        assert cmd[-1] == str(audio_file)

    @pytest.mark.asyncio
    async def test_probe_falls_through_unavailable_candidate(self, probe, audio_file):
        """Test a missing first candidate falls through to the second."""
        run = AsyncMock(
            side_effect=[
                ToolNotFoundError("missing"),
                ToolResult(0, _probe_json("60.0"), ""),
            ]
        )
        with patch("transcription_app.probe.run_tool", new=run):
            metadata = await probe.probe(audio_file)

        assert metadata.duration == 60.0
        assert metadata.probe_tool == "/opt/ffprobe"

    @pytest.mark.asyncio
    async def test_probe_falls_through_non_json_and_non_zero(self, probe, audio_file):
        """Test non-JSON output and non-zero exit both fall through."""
        run = AsyncMock(
            side_effect=[
                ToolResult(0, "not json", ""),
                ToolResult(1, "", "error"),
            ]
        )
        with patch("transcription_app.probe.run_tool", new=run):
            metadata = await probe.probe(audio_file)

        assert metadata.duration == 0
        assert metadata.probed is False
        assert metadata.format == "m4a"
        assert metadata.size_bytes == 2048

    @pytest.mark.asyncio
    async def test_probe_invalid_duration_then_valid(self, probe, audio_file):
        """Test an invalid duration from one candidate falls through to the next."""
        run = AsyncMock(
            side_effect=[
                ToolResult(0, _probe_json("0"), ""),
                ToolResult(0, _probe_json("75.0"), ""),
            ]
        )
        with patch("transcription_app.probe.run_tool", new=run):
            metadata = await probe.probe(audio_file)

        assert metadata.duration == 75.0
        assert metadata.probe_tool == "/opt/ffprobe"

    @pytest.mark.asyncio
    async def test_probe_parseable_without_duration(self, probe, audio_file):
        """Test parseable output without duration keeps format info, duration 0."""
        run = AsyncMock(
            side_effect=[
                ToolResult(0, _probe_json("0", format_name="matroska,webm"), ""),
                ToolTimeoutError("timed out"),
            ]
        )
        with patch("transcription_app.probe.run_tool", new=run):
            metadata = await probe.probe(audio_file)

        assert metadata.duration == 0
        assert metadata.probed is True
        assert metadata.format == "matroska,webm"
        assert metadata.probe_tool == "ffprobe"

    @pytest.mark.asyncio
    async def test_probe_no_candidates(self, audio_file):
        """Test absent probing tools yield basic metadata without raising."""
        toolchain = MediaToolchain()
        toolchain.ffprobe_candidates = AsyncMock(return_value=[])
        metadata = await MetadataProbe(toolchain).probe(audio_file)

        assert metadata.duration == 0
        assert metadata.format == "m4a"
        assert metadata.probed is False

    @pytest.mark.asyncio
    async def test_probe_missing_file(self, probe, tmp_path):
        """Test a missing source raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            await probe.probe(tmp_path / "missing.mp3")

    @pytest.mark.asyncio
    async def test_probe_uses_config_timeout(self, audio_file):
        """Test default timeout comes from tools config."""
        toolchain = MediaToolchain()
        toolchain.ffprobe_candidates = AsyncMock(return_value=["ffprobe"])
        probe = MetadataProbe(toolchain)
        with patch(
            "transcription_app.probe.run_tool",
            new=AsyncMock(return_value=ToolResult(0, _probe_json("1.0"), "")),
        ) as mock_run:
            await probe.probe(audio_file)

        assert mock_run.call_args[0][1] == toolchain.config.probe_timeout
