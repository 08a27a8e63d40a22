"""Tests for config module."""

import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from transcription_app.config import (
    Config,
    ConfigError,
    DeepgramConfig,
    GeneralConfig,
    SegmentationConfig,
    ToolsConfig,
    TranscodeConfig,
    TranscriptionConfig,
    load_config,
    validate_backend_credentials,
    validate_segmentation_config,
    validate_transcription_config,
)


@pytest.fixture
def tmp_config_file():
    """Create a temporary TOML config file for testing."""

    def _create(content: str) -> Path:
        with tempfile.NamedTemporaryFile(mode="w", suffix=".toml", delete=False) as f:
            f.write(content)
            return Path(f.name)

    return _create


@pytest.fixture
def full_config_content():
    """Full configuration with all sections."""
    return """
[segmentation]
max_segment_seconds = 300
max_file_size_mb = 20
assumed_bitrate_kbps = 64
unsplittable_formats = ["WEBM", ".mkv"]

[tools]
ffmpeg_paths = ["/opt/ffmpeg/bin/ffmpeg"]
ffprobe_paths = "/opt/ffmpeg/bin/ffprobe"
probe_timeout = 10.0

[transcode]
bitrate = "96k"

[transcription]
model = "gpt-4o-transcribe"
language = "de"
response_format = "json"
max_attempts = 5
concurrency = 4

[openai]
api_key = "sk-test"

[deepgram]
smart_format = false

[general]
verbose = true
"""


class TestConfigDataclasses:
    """Test configuration dataclasses."""

    def test_segmentation_config_defaults(self):
        """Test SegmentationConfig defaults."""
        cfg = SegmentationConfig()
        assert cfg.max_segment_seconds == 600.0
        assert cfg.max_file_size_bytes == 24 * 1024 * 1024
        assert cfg.assumed_bitrate_kbps == 128.0
        assert cfg.unsplittable_formats == ("webm",)

    def test_segmentation_config_single_format_string(self):
        """Test unsplittable_formats accepts a single string."""
        cfg = SegmentationConfig(unsplittable_formats="OGG")
        assert cfg.unsplittable_formats == ("ogg",)

    def test_segmentation_config_rejects_empty_format(self):
        """Test empty format names are rejected."""
        with pytest.raises(ConfigError, match="non-empty strings"):
            SegmentationConfig(unsplittable_formats=["webm", ""])

    def test_tools_config_defaults(self):
        """Test ToolsConfig defaults."""
        cfg = ToolsConfig()
        assert cfg.ffmpeg_paths[0] == "ffmpeg"
        assert cfg.ffprobe_paths[0] == "ffprobe"
        assert cfg.probe_timeout == 30.0

    def test_tools_config_list_to_tuple(self):
        """Test candidate lists are normalized to tuples."""
        cfg = ToolsConfig(ffmpeg_paths=["a", "b"], ffprobe_paths="c")
        assert cfg.ffmpeg_paths == ("a", "b")
        assert cfg.ffprobe_paths == ("c",)

    def test_transcode_config_defaults(self):
        """Test TranscodeConfig defaults."""
        cfg = TranscodeConfig()
        assert cfg.enabled is True
        assert cfg.bitrate == "128k"
        assert cfg.channels == 1
        assert cfg.sample_rate == 44100

    def test_transcription_config_defaults(self):
        """Test TranscriptionConfig defaults."""
        cfg = TranscriptionConfig()
        assert cfg.model == "whisper-1"
        assert cfg.max_attempts == 3
        assert cfg.concurrency == 1
        assert cfg.separator == "\n"

    def test_deepgram_config_defaults(self):
        """Test DeepgramConfig defaults."""
        cfg = DeepgramConfig()
        assert cfg.api_key is None
        assert cfg.smart_format is True

    def test_general_config_defaults(self):
        """Test GeneralConfig defaults."""
        cfg = GeneralConfig()
        assert cfg.verbose is False
        assert cfg.debug is False


class TestConfigLoading:
    """Test config file loading."""

    def test_load_config_from_explicit_path(self, tmp_config_file, full_config_content):
        """Test loading config from explicit path."""
        cfg_path = tmp_config_file(full_config_content)
        try:
            cfg = load_config(cfg_path, env={})
            assert cfg.segmentation.max_segment_seconds == 300
            assert cfg.segmentation.max_file_size_bytes == 20 * 1024 * 1024
            assert cfg.segmentation.unsplittable_formats == ("webm", "mkv")
            assert cfg.tools.ffmpeg_paths == ("/opt/ffmpeg/bin/ffmpeg",)
            assert cfg.tools.ffprobe_paths == ("/opt/ffmpeg/bin/ffprobe",)
            assert cfg.transcode.bitrate == "96k"
            assert cfg.transcription.model == "gpt-4o-transcribe"
            assert cfg.transcription.concurrency == 4
            assert cfg.openai.api_key == "sk-test"
            assert cfg.deepgram.smart_format is False
            assert cfg.general.verbose is True
        finally:
            cfg_path.unlink()

    def test_load_config_from_toml_classmethod(self, tmp_config_file, full_config_content):
        """Test Config.from_toml() classmethod."""
        cfg_path = tmp_config_file(full_config_content)
        try:
            cfg = Config.from_toml(cfg_path, env={})
            assert isinstance(cfg, Config)
            assert cfg.transcription.language == "de"
        finally:
            cfg_path.unlink()

    def test_load_config_defaults_when_no_file(self, tmp_path, monkeypatch):
        """Test built-in defaults are used when no config file exists."""
        monkeypatch.chdir(tmp_path)
        with patch("transcription_app.config.Path.home", return_value=tmp_path):
            cfg = load_config(None, env={})
        assert cfg.transcription.model == "whisper-1"
        assert cfg.segmentation.max_segment_seconds == 600.0

    def test_load_config_file_not_found(self):
        """Test error when explicit config file not found."""
        with pytest.raises(ConfigError, match="Config file not found"):
            load_config(Path("/nonexistent/config.toml"), env={})

    def test_load_config_env_path_not_found(self):
        """Test error when TRANSCRIPTION_CONFIG points nowhere."""
        with pytest.raises(ConfigError, match="TRANSCRIPTION_CONFIG not found"):
            load_config(None, env={"TRANSCRIPTION_CONFIG": "/nonexistent/config.toml"})

    def test_load_config_invalid_toml(self, tmp_config_file):
        """Test error on invalid TOML syntax."""
        cfg_path = tmp_config_file("[transcription\nmodel = missing quote")
        try:
            with pytest.raises(ConfigError, match="Failed to parse"):
                load_config(cfg_path, env={})
        finally:
            cfg_path.unlink()

    def test_load_config_unknown_section(self, tmp_config_file):
        """Test error on unknown section."""
        cfg_path = tmp_config_file("[audio]\nsample_rate = 16000\n")
        try:
            with pytest.raises(ConfigError, match="Unknown config section"):
                load_config(cfg_path, env={})
        finally:
            cfg_path.unlink()

    def test_load_config_unknown_key(self, tmp_config_file):
        """Test error on unknown key within a section."""
        cfg_path = tmp_config_file("[transcription]\nbeam_size = 5\n")
        try:
            with pytest.raises(ConfigError, match="Invalid configuration values"):
                load_config(cfg_path, env={})
        finally:
            cfg_path.unlink()

    def test_load_config_section_not_table(self, tmp_config_file):
        """Test error when a section is a scalar."""
        cfg_path = tmp_config_file('general = "yes"\n')
        try:
            with pytest.raises(ConfigError, match="must be a table"):
                load_config(cfg_path, env={})
        finally:
            cfg_path.unlink()

    def test_load_config_env_var_path(self, tmp_config_file, full_config_content):
        """Test environment variable config path."""
        cfg_path = tmp_config_file(full_config_content)
        try:
            cfg = load_config(None, env={"TRANSCRIPTION_CONFIG": str(cfg_path)})
            assert cfg.transcription.model == "gpt-4o-transcribe"
        finally:
            cfg_path.unlink()

    def test_load_config_cli_path_takes_precedence(self, tmp_config_file):
        """Test that CLI path takes precedence over env var."""
        cfg_path1 = tmp_config_file('[transcription]\nmodel = "nova-3"\n')
        cfg_path2 = tmp_config_file('[transcription]\nmodel = "whisper-1"\n')
        try:
            env = {"TRANSCRIPTION_CONFIG": str(cfg_path1)}
            cfg = load_config(cfg_path2, env=env)
            assert cfg.transcription.model == "whisper-1"
        finally:
            cfg_path1.unlink()
            cfg_path2.unlink()

    def test_api_keys_from_environment(self, tmp_config_file):
        """Test API keys fall back to environment variables."""
        cfg_path = tmp_config_file("[transcription]\n")
        try:
            env = {"OPENAI_API_KEY": "sk-env", "DEEPGRAM_API_KEY": "dg-env"}
            cfg = load_config(cfg_path, env=env)
            assert cfg.openai.api_key == "sk-env"
            assert cfg.deepgram.api_key == "dg-env"
        finally:
            cfg_path.unlink()

    def test_file_api_key_wins_over_environment(self, tmp_config_file):
        """Test a key set in the file is not replaced by the environment."""
        cfg_path = tmp_config_file('[openai]\napi_key = "sk-file"\n')
        try:
            cfg = load_config(cfg_path, env={"OPENAI_API_KEY": "sk-env"})
            assert cfg.openai.api_key == "sk-file"
        finally:
            cfg_path.unlink()

    def test_model_from_environment(self, tmp_config_file):
        """Test TRANSCRIPTION_MODEL applies when the file sets no model."""
        cfg_path = tmp_config_file("[transcription]\nconcurrency = 2\n")
        try:
            cfg = load_config(cfg_path, env={"TRANSCRIPTION_MODEL": "nova-3"})
            assert cfg.transcription.model == "nova-3"
        finally:
            cfg_path.unlink()

    def test_max_file_size_mb_must_be_number(self, tmp_config_file):
        """Test max_file_size_mb type check."""
        cfg_path = tmp_config_file('[segmentation]\nmax_file_size_mb = "big"\n')
        try:
            with pytest.raises(ConfigError, match="must be a number"):
                load_config(cfg_path, env={})
        finally:
            cfg_path.unlink()


class TestConfigValidation:
    """Test configuration validation."""

    def test_validate_segmentation_non_positive(self):
        """Test segment limits must be positive."""
        with pytest.raises(ConfigError, match="max_segment_seconds"):
            validate_segmentation_config(SegmentationConfig(max_segment_seconds=0))
        with pytest.raises(ConfigError, match="max_file_size_bytes"):
            validate_segmentation_config(SegmentationConfig(max_file_size_bytes=-1))

    def test_validate_unknown_model(self):
        """Test unknown model is rejected."""
        with pytest.raises(ConfigError, match="Unsupported transcription model"):
            validate_transcription_config(TranscriptionConfig(model="parakeet"))

    def test_validate_dated_model_variant(self):
        """Test dated model variants are accepted."""
        validate_transcription_config(
            TranscriptionConfig(model="gpt-4o-transcribe-2025-03-20")
        )

    def test_validate_invalid_response_format(self):
        """Test invalid response format is rejected."""
        with pytest.raises(ConfigError, match="Invalid response_format"):
            validate_transcription_config(TranscriptionConfig(response_format="srt"))

    def test_validate_concurrency_range(self):
        """Test concurrency bounds."""
        with pytest.raises(ConfigError, match="concurrency"):
            validate_transcription_config(TranscriptionConfig(concurrency=0))
        with pytest.raises(ConfigError, match="concurrency"):
            validate_transcription_config(TranscriptionConfig(concurrency=9))

    def test_validate_max_attempts(self):
        """Test at least one attempt is required."""
        with pytest.raises(ConfigError, match="max_attempts"):
            validate_transcription_config(TranscriptionConfig(max_attempts=0))

    def test_validate_missing_openai_key(self):
        """Test OpenAI key required for OpenAI models."""
        cfg = Config()
        with pytest.raises(ConfigError, match="OpenAI API key is required"):
            validate_backend_credentials(cfg)

    def test_validate_missing_deepgram_key(self):
        """Test Deepgram key required for nova models."""
        cfg = Config()
        cfg.transcription.model = "nova-3"
        cfg.openai.api_key = "sk-test"
        with pytest.raises(ConfigError, match="Deepgram API key is required"):
            validate_backend_credentials(cfg)


class TestConfigIntegration:
    """Integration tests for full config workflow."""

    def test_config_load_and_validate_workflow(self, tmp_config_file, full_config_content):
        """Test complete load and validate workflow."""
        cfg_path = tmp_config_file(full_config_content)
        try:
            cfg = load_config(cfg_path, env={})
            cfg.validate()
        finally:
            cfg_path.unlink()

    def test_validate_rejects_bad_timeout(self, tmp_config_file):
        """Test tool timeouts must be positive."""
        cfg_path = tmp_config_file('[tools]\ncut_timeout = 0\n[openai]\napi_key = "k"\n')
        try:
            cfg = load_config(cfg_path, env={})
            with pytest.raises(ConfigError, match="cut_timeout"):
                cfg.validate()
        finally:
            cfg_path.unlink()
