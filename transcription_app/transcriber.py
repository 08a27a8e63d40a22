"""Remote transcription backends and the OpenAI implementation."""

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from transcription_app._types import (
    ResponseFormat,
    TranscriptionResult,
    TranscriptionSegment,
    Usage,
    UsageKind,
)
from transcription_app.errors import (
    TranscriptionError,
    TranscriptionFatalError,
    TranscriptionTransientError,
)

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 409, 429})


def classify_status(status_code: int | None, message: str) -> TranscriptionError:
    """Map an HTTP status from a backend into a retryable or fatal error.

    Timeouts, conflicts, rate limiting and server errors are transient;
    authentication, payload and any other client errors are fatal.
    """
    if status_code is None:
        return TranscriptionTransientError(message)
    if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
        return TranscriptionTransientError(message)
    return TranscriptionFatalError(message)


class Transcriber:
    """Base class for remote speech-to-text backends.

    Subclasses provide ``_create_client`` and ``_transcribe_sync``. Blocking
    SDK calls run inside a thread pool executor so several segments can be in
    flight at once without blocking the event loop. The client is created
    lazily on first use.
    """

    backend = "base"

    def __init__(
        self,
        timeout: float = 120.0,
        max_workers: int = 1,
        executor: ThreadPoolExecutor | None = None,
    ):
        """Initialize transcriber.

        Args:
            timeout: Default per-request timeout in seconds
            max_workers: Thread pool size when no executor is given
            executor: Optional ThreadPoolExecutor for blocking requests
        """
        self.timeout = timeout
        self.executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=f"{self.backend}-transcribe"
        )
        self._executor_owned = executor is None
        self._client = None
        self._client_lock = asyncio.Lock()

    def _create_client(self):
        raise NotImplementedError

    def _transcribe_sync(
        self,
        audio_path: Path,
        model: str,
        response_format: ResponseFormat,
        language: str | None,
    ) -> TranscriptionResult:
        raise NotImplementedError

    async def _ensure_client_initialized(self) -> None:
        """Lazy-initialize the SDK client on first use.

        Raises:
            TranscriptionFatalError: If the client cannot be created
        """
        async with self._client_lock:
            if self._client is not None:
                return

            logger.info("Initializing %s client", self.backend)
            try:
                start_time = time.perf_counter()
                self._client = self._create_client()
                duration = time.perf_counter() - start_time
                logger.info("%s client initialized in %.3f seconds", self.backend, duration)
            except Exception as e:
                logger.error("Failed to initialize %s client: %s", self.backend, e)
                raise TranscriptionFatalError(
                    f"Failed to initialize {self.backend} client: {e}"
                ) from e

    async def transcribe(
        self,
        audio_path: Path,
        *,
        model: str,
        response_format: ResponseFormat,
        language: str | None = None,
        timeout: float | None = None,
    ) -> TranscriptionResult:
        """Transcribe one audio file.

        Args:
            audio_path: Segment file to upload
            model: Backend model identifier
            response_format: Format already validated against the model
            language: Optional language hint (ISO code)
            timeout: Request timeout in seconds (defaults to instance timeout)

        Returns:
            TranscriptionResult

        Raises:
            TranscriptionTransientError: On timeout, network or retryable HTTP errors
            TranscriptionFatalError: On errors retrying cannot fix
        """
        audio_path = Path(audio_path)
        if not audio_path.exists():
            raise TranscriptionFatalError(f"Audio file not found: {audio_path}")

        await self._ensure_client_initialized()

        timeout = timeout if timeout is not None else self.timeout
        logger.debug(
            "Transcribing %s with %s (format=%s, language=%s)",
            audio_path.name,
            model,
            response_format.value,
            language,
        )

        loop = asyncio.get_running_loop()
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(
                    self.executor,
                    self._transcribe_sync,
                    audio_path,
                    model,
                    response_format,
                    language,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning(
                "Transcription of %s timed out after %.1f seconds", audio_path.name, timeout
            )
            raise TranscriptionTransientError(
                f"Transcription timed out after {timeout} seconds"
            ) from e
        except TranscriptionError:
            raise
        except OSError as e:
            raise TranscriptionTransientError(f"I/O error during transcription: {e}") from e
        except Exception as e:
            logger.error("Transcription failed: %s", e, exc_info=True)
            raise TranscriptionFatalError(f"Transcription failed: {e}") from e

        logger.debug("Transcribed %s: %d characters", audio_path.name, len(result.text))
        return result

    async def shutdown(self) -> None:
        """Release the client and stop the thread pool if owned by this instance."""
        logger.info("%s transcriber shutting down", self.backend)
        self._client = None
        if self._executor_owned and self.executor:
            self.executor.shutdown(wait=True)
            logger.debug("Executor shut down")


def _usage_from_response(data: dict) -> Usage | None:
    usage = data.get("usage")
    if isinstance(usage, dict):
        if usage.get("type") == "tokens":
            total = usage.get("total_tokens")
            if total is None:
                total = (usage.get("input_tokens") or 0) + (usage.get("output_tokens") or 0)
            return Usage(UsageKind.TOKENS, float(total))
        if usage.get("type") == "duration" and usage.get("seconds") is not None:
            return Usage(UsageKind.DURATION, float(usage["seconds"]))

    if data.get("duration") is not None:
        return Usage(UsageKind.DURATION, float(data["duration"]))
    return None


def parse_openai_response(response) -> TranscriptionResult:
    """Convert an OpenAI transcription response into a TranscriptionResult.

    ``text`` responses arrive as plain strings; ``json`` and ``verbose_json``
    as pydantic models.
    """
    if isinstance(response, str):
        return TranscriptionResult(text=response.strip())

    if hasattr(response, "model_dump"):
        data = response.model_dump()
    elif isinstance(response, dict):
        data = response
    else:
        data = {"text": getattr(response, "text", "")}

    segments = tuple(
        TranscriptionSegment(
            text=(seg.get("text") or "").strip(),
            start=float(seg.get("start") or 0.0),
            end=float(seg.get("end") or 0.0),
        )
        for seg in data.get("segments") or []
    )

    duration = data.get("duration")
    return TranscriptionResult(
        text=(data.get("text") or "").strip(),
        language=data.get("language"),
        segments=segments,
        usage=_usage_from_response(data),
        duration=float(duration) if duration is not None else None,
    )


class OpenAITranscriber(Transcriber):
    """Transcription through the OpenAI audio API (whisper-1, gpt-4o transcribe models).

    The SDK's own retries are disabled; retrying is the dispatcher's job.
    """

    backend = "openai"

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        organization: str | None = None,
        timeout: float = 120.0,
        max_workers: int = 1,
        executor: ThreadPoolExecutor | None = None,
    ):
        """Initialize OpenAI transcriber.

        Args:
            api_key: OpenAI API key
            base_url: Optional API base URL (proxies, compatible servers)
            organization: Optional organization id
            timeout: Per-request timeout in seconds
            max_workers: Thread pool size when no executor is given
            executor: Optional ThreadPoolExecutor for blocking requests
        """
        super().__init__(timeout=timeout, max_workers=max_workers, executor=executor)
        self.api_key = api_key
        self.base_url = base_url
        self.organization = organization
        logger.info("OpenAITranscriber initialized: base_url=%s", base_url or "default")

    def _create_client(self):
        from openai import OpenAI

        return OpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            organization=self.organization,
            timeout=self.timeout,
            max_retries=0,
        )

    def _transcribe_sync(
        self,
        audio_path: Path,
        model: str,
        response_format: ResponseFormat,
        language: str | None,
    ) -> TranscriptionResult:
        """Synchronous request (runs in thread pool)."""
        import openai

        if self._client is None:
            raise TranscriptionFatalError("OpenAI client not initialized")

        kwargs = {"model": model, "response_format": response_format.value}
        if language:
            kwargs["language"] = language

        try:
            with open(audio_path, "rb") as audio_file:
                response = self._client.audio.transcriptions.create(file=audio_file, **kwargs)
        except openai.APITimeoutError as e:
            raise TranscriptionTransientError(f"OpenAI request timed out: {e}") from e
        except openai.APIConnectionError as e:
            raise TranscriptionTransientError(f"OpenAI connection error: {e}") from e
        except openai.APIStatusError as e:
            if getattr(e, "code", None) == "insufficient_quota":
                raise TranscriptionFatalError(f"OpenAI quota exceeded: {e.message}") from e
            raise classify_status(
                e.status_code, f"OpenAI API error ({e.status_code}): {e.message}"
            ) from e

        return parse_openai_response(response)
