"""Exception hierarchy for the transcription pipeline."""

from transcription_app._types import Transcript


class TranscriptionAppError(Exception):
    """Base exception for pipeline failures."""

    pass


# Probing. Never escape MetadataProbe.probe(); logged for diagnostics only.


class ProbeUnavailable(TranscriptionAppError):
    """Probing tool missing, timed out, or exited non-zero."""

    pass


class ProbeParseError(TranscriptionAppError):
    """Probing tool produced output that is not the expected JSON."""

    pass


class DurationInvalid(TranscriptionAppError):
    """Probe output carried no positive duration.

    ``metadata`` holds whatever else the output described, if parseable.
    """

    def __init__(self, message: str, metadata=None):
        super().__init__(message)
        self.metadata = metadata


# External tools.


class ToolError(TranscriptionAppError):
    """Base exception for ffmpeg/ffprobe invocation failures."""

    pass


class ToolNotFoundError(ToolError):
    """Required binary unavailable or not executable."""

    pass


class ToolTimeoutError(ToolError):
    """Subprocess execution timed out."""

    pass


class ToolFailedError(ToolError):
    """Subprocess exited with a non-zero code."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


# Preparation.


class TranscodeFailed(TranscriptionAppError):
    """Normalizing the source failed. Forces byte-based segmentation."""

    pass


class SegmentCreationFailed(TranscriptionAppError):
    """A segment could not be produced. Fatal to the run."""

    pass


# Per-segment transcription.


class TranscriptionError(TranscriptionAppError):
    """Base exception for a single backend request."""

    pass


class TranscriptionTransientError(TranscriptionError):
    """Network error, timeout or rate limiting. Retried with backoff."""

    pass


class TranscriptionFatalError(TranscriptionError):
    """Authentication, unsupported input or model, payload too large. Not retried."""

    pass


class UnsupportedModelError(TranscriptionFatalError):
    """Model missing from the capability table."""

    pass


# Run-level hard failures.


class TranscriptionFailed(TranscriptionAppError):
    """No segment was transcribed successfully."""

    def __init__(self, message: str, transcript: Transcript):
        super().__init__(message)
        self.transcript = transcript


class TranscriptionCancelled(TranscriptionAppError):
    """The run was cancelled through its token."""

    def __init__(self, message: str, transcript: Transcript):
        super().__init__(message)
        self.transcript = transcript
