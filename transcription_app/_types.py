"""Shared types and dataclasses for cross-module use."""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType


class SegmentStrategy(Enum):
    """How a source file is split before transcription."""

    NONE = "none"
    TIME = "time"
    BYTE = "byte"


class UsageKind(Enum):
    """Unit a backend bills in. Kinds are never summed together."""

    DURATION = "duration"
    TOKENS = "tokens"


class OutcomeStatus(Enum):
    """Per-segment transcription status."""

    OK = "ok"
    RETRIED_OK = "retried-ok"
    FAILED = "failed"


class OverallStatus(Enum):
    """Status of an assembled transcript."""

    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"


class ResponseFormat(Enum):
    """Transcript response formats a backend may accept."""

    TEXT = "text"
    JSON = "json"
    VERBOSE_JSON = "verbose_json"


@dataclass(frozen=True)
class AudioMetadata:
    """Metadata extracted from a media file.

    ``duration`` is 0 when unknown. ``probed`` is True when a probing tool
    returned parseable output, even if the duration it reported was invalid.
    """

    duration: float
    format: str
    size_bytes: int
    bitrate: int | None = None
    sample_rate: int | None = None
    channels: int | None = None
    probed: bool = False
    probe_tool: str | None = None


@dataclass(frozen=True)
class Segment:
    """A bounded slice of the source audio sent to the backend as one request."""

    index: int
    path: Path
    start_offset: float
    duration: float
    size_bytes: int
    byte_range: tuple[int, int] | None = None
    temporary: bool = False


@dataclass(frozen=True)
class SegmentationPlan:
    """Ordered segments covering the whole source under one strategy."""

    segments: tuple[Segment, ...]
    strategy: SegmentStrategy
    original_duration: float
    original_size: int
    timing_approximate: bool = False
    duration_estimated: bool = False
    source_format: str = "unknown"
    transcoded: bool = False
    fallback_reason: str | None = None


@dataclass(frozen=True)
class Usage:
    """Consumption reported for one request."""

    kind: UsageKind
    amount: float = 0.0


@dataclass(frozen=True)
class TranscriptionSegment:
    """A segment of transcribed text with timing information."""

    text: str
    start: float
    end: float
    confidence: float = 0.0


@dataclass(frozen=True)
class TranscriptionResult:
    """Result from a single backend request."""

    text: str
    language: str | None = None
    confidence: float = 0.0
    segments: tuple[TranscriptionSegment, ...] = ()
    usage: Usage | None = None
    duration: float | None = None


@dataclass(frozen=True)
class TranscriptionOutcome:
    """Result of dispatching one segment, successful or not."""

    segment_index: int
    status: OutcomeStatus
    usage: Usage
    text: str | None = None
    error: str | None = None
    attempts: int = 0
    utterances: tuple[TranscriptionSegment, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status is not OutcomeStatus.FAILED


@dataclass(frozen=True)
class Transcript:
    """Final artifact returned to the caller."""

    full_text: str
    per_segment: tuple[TranscriptionOutcome, ...]
    overall_status: OverallStatus
    usage_summary: Mapping[UsageKind, float]
    backend_model: str
    gaps: tuple[int, ...] = ()
    strategy: SegmentStrategy = SegmentStrategy.NONE
    timing_approximate: bool = False
    utterances: tuple[TranscriptionSegment, ...] = ()
    cancelled: bool = False

    def __post_init__(self) -> None:
        """Freeze the usage summary into a read-only mapping."""
        object.__setattr__(self, "usage_summary", MappingProxyType(dict(self.usage_summary)))
