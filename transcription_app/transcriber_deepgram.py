"""Audio transcription via Deepgram API."""

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import httpx

from transcription_app._types import (
    ResponseFormat,
    TranscriptionResult,
    TranscriptionSegment,
    Usage,
    UsageKind,
)
from transcription_app.errors import TranscriptionFatalError, TranscriptionTransientError
from transcription_app.transcriber import Transcriber, classify_status

logger = logging.getLogger(__name__)


class DeepgramTranscriber(Transcriber):
    """Encapsulates Deepgram API client and transcription logic.

    Utterance timestamps are requested only for the verbose response format.
    """

    backend = "deepgram"

    def __init__(
        self,
        api_key: str,
        smart_format: bool = True,
        punctuate: bool = True,
        timeout: float = 120.0,
        max_workers: int = 1,
        executor: ThreadPoolExecutor | None = None,
    ):
        """Initialize Deepgram transcriber.

        Args:
            api_key: Deepgram API key
            smart_format: Enable smart formatting (currency, dates, etc.)
            punctuate: Auto-add punctuation
            timeout: API request timeout in seconds
            max_workers: Thread pool size when no executor is given
            executor: Optional ThreadPoolExecutor for transcription tasks
        """
        super().__init__(timeout=timeout, max_workers=max_workers, executor=executor)
        self.api_key = api_key
        self.smart_format = smart_format
        self.punctuate = punctuate
        logger.info(
            "DeepgramTranscriber initialized: smart_format=%s, punctuate=%s",
            smart_format,
            punctuate,
        )

    def _create_client(self):
        from deepgram import DeepgramClient

        return DeepgramClient(api_key=self.api_key)

    def _transcribe_sync(
        self,
        audio_path: Path,
        model: str,
        response_format: ResponseFormat,
        language: str | None,
    ) -> TranscriptionResult:
        """Synchronous transcription using Deepgram API (runs in thread pool)."""
        from deepgram.core.api_error import ApiError

        if self._client is None:
            raise TranscriptionFatalError("Deepgram client not initialized")

        with open(audio_path, "rb") as audio_file:
            audio_bytes = audio_file.read()

        utterances = response_format is ResponseFormat.VERBOSE_JSON
        options = {
            "model": model,
            "smart_format": self.smart_format,
            "punctuate": self.punctuate,
            "utterances": utterances,
        }
        if language:
            options["language"] = language

        logger.debug("Deepgram options: %s", options)

        try:
            response = self._client.listen.v1.media.transcribe_file(
                request=audio_bytes,
                **options
            )
        except ApiError as e:
            if e.status_code == 401:
                raise TranscriptionFatalError("Invalid Deepgram API key") from e
            raise classify_status(
                e.status_code, f"Deepgram API error ({e.status_code}): {e.body}"
            ) from e
        except httpx.TransportError as e:
            raise TranscriptionTransientError(f"Deepgram connection error: {e}") from e

        return parse_deepgram_response(response, utterances=utterances, language=language)


def parse_deepgram_response(
    response, *, utterances: bool, language: str | None = None
) -> TranscriptionResult:
    """Convert a Deepgram prerecorded response into a TranscriptionResult."""
    channel = response.results.channels[0]
    alternative = channel.alternatives[0]
    text = (alternative.transcript or "").strip()

    detected_language = language or getattr(channel, "detected_language", None)

    segments = []
    if utterances and getattr(response.results, "utterances", None):
        for utt in response.results.utterances:
            segments.append(
                TranscriptionSegment(
                    text=utt.transcript.strip(),
                    start=utt.start,
                    end=utt.end,
                    confidence=getattr(utt, "confidence", None) or 0.0,
                )
            )

    confidence = getattr(alternative, "confidence", None) or 0.0

    duration = None
    metadata = getattr(response, "metadata", None)
    if metadata is not None and getattr(metadata, "duration", None) is not None:
        duration = float(metadata.duration)

    return TranscriptionResult(
        text=text,
        language=detected_language,
        confidence=confidence,
        segments=tuple(segments),
        usage=Usage(UsageKind.DURATION, duration) if duration is not None else None,
        duration=duration,
    )
