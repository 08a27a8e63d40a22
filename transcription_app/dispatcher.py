"""Bounded-concurrency fan-out of segments to the transcription backend."""

import asyncio
import logging
from typing import Callable, Sequence

from transcription_app._types import (
    OutcomeStatus,
    ResponseFormat,
    Segment,
    TranscriptionOutcome,
    TranscriptionResult,
    Usage,
    UsageKind,
)
from transcription_app.capabilities import (
    ModelCapability,
    lookup_capability,
    select_response_format,
)
from transcription_app.config import TranscriptionConfig
from transcription_app.errors import (
    TranscriptionFatalError,
    TranscriptionTransientError,
    UnsupportedModelError,
)
from transcription_app.transcriber import Transcriber

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[TranscriptionOutcome, int, int], None]


class CancellationToken:
    """Token for gracefully aborting a transcription run.

    Checked before every new backend request. Requests already in flight are
    allowed to finish or time out.
    """

    def __init__(self):
        """Initialize cancellation token in non-cancelled state."""
        self._cancelled = False

    def cancel(self) -> None:
        """Mark token as cancelled."""
        self._cancelled = True

    def is_cancelled(self) -> bool:
        """Check if token is cancelled.

        Returns:
            True if cancelled, False otherwise
        """
        return self._cancelled


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    return min(base * (2 ** (attempt - 1)), maximum)


def fill_usage(
    result: TranscriptionResult, segment: Segment, capability: ModelCapability
) -> Usage:
    """Usage for a successful request, falling back when the backend reports none."""
    if result.usage is not None:
        return result.usage
    if capability.usage_kind is UsageKind.DURATION:
        return Usage(UsageKind.DURATION, result.duration or segment.duration)
    return Usage(capability.usage_kind, 0.0)


class TranscriptionDispatcher:
    """Sends segments to a Transcriber with retries and a concurrency bound.

    Exactly one outcome is produced per segment, in segment order, whatever
    the completion order. A failing segment never affects its siblings.
    """

    def __init__(
        self,
        transcriber: Transcriber,
        config: TranscriptionConfig | None = None,
        sleep: Callable = asyncio.sleep,
    ):
        """Initialize dispatcher.

        Args:
            transcriber: Backend used for every request
            config: Attempts, concurrency, backoff and timeout settings
            sleep: Awaitable used between retries
        """
        self.transcriber = transcriber
        self.config = config or TranscriptionConfig()
        self._sleep = sleep

    async def dispatch(
        self,
        segments: Sequence[Segment],
        model: str,
        *,
        response_format: ResponseFormat | str | None = None,
        language: str | None = None,
        token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[TranscriptionOutcome]:
        """Transcribe every segment.

        Args:
            segments: Segments in canonical order
            model: Backend model identifier
            response_format: Requested format, constrained by the model
            language: Optional language hint
            token: Optional CancellationToken
            on_progress: Called with (outcome, completed, total) per segment

        Returns:
            One TranscriptionOutcome per segment, ordered by segment index
        """
        try:
            capability = lookup_capability(model)
        except UnsupportedModelError as e:
            logger.error("%s", e)
            return [
                TranscriptionOutcome(
                    segment_index=segment.index,
                    status=OutcomeStatus.FAILED,
                    usage=Usage(UsageKind.DURATION, 0.0),
                    error=str(e),
                )
                for segment in segments
            ]

        if response_format is None:
            response_format = self.config.response_format
        fmt = select_response_format(capability, response_format)
        language = language or self.config.language
        semaphore = asyncio.Semaphore(self.config.concurrency)
        total = len(segments)
        completed = 0

        logger.info(
            "Dispatching %d segments to %s (format=%s, concurrency=%d)",
            total,
            model,
            fmt.value,
            self.config.concurrency,
        )

        async def _run(segment: Segment) -> TranscriptionOutcome:
            nonlocal completed
            async with semaphore:
                outcome = await self._transcribe_segment(
                    segment, model, capability, fmt, language, token
                )
            completed += 1
            if on_progress is not None:
                try:
                    on_progress(outcome, completed, total)
                except Exception as e:
                    logger.warning("Progress callback failed: %s", e)
            return outcome

        tasks = [asyncio.create_task(_run(segment)) for segment in segments]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            # No request may outlive dispatch: the caller removes segment files next.
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return sorted(outcomes, key=lambda o: o.segment_index)

    async def _transcribe_segment(
        self,
        segment: Segment,
        model: str,
        capability: ModelCapability,
        fmt: ResponseFormat,
        language: str | None,
        token: CancellationToken | None,
    ) -> TranscriptionOutcome:
        empty_usage = Usage(capability.usage_kind, 0.0)
        last_error: Exception | None = None
        attempts = 0

        for attempt in range(1, self.config.max_attempts + 1):
            if token is not None and token.is_cancelled():
                logger.info("Segment %d not sent: run cancelled", segment.index)
                return TranscriptionOutcome(
                    segment_index=segment.index,
                    status=OutcomeStatus.FAILED,
                    usage=empty_usage,
                    error="cancelled" if last_error is None else f"cancelled after: {last_error}",
                    attempts=attempts,
                )

            attempts = attempt
            try:
                result = await self.transcriber.transcribe(
                    segment.path,
                    model=model,
                    response_format=fmt,
                    language=language,
                    timeout=self.config.request_timeout,
                )
            except TranscriptionTransientError as e:
                last_error = e
                if attempt < self.config.max_attempts:
                    delay = backoff_delay(
                        attempt, self.config.backoff_base, self.config.backoff_max
                    )
                    logger.warning(
                        "Segment %d attempt %d/%d failed: %s. Retrying in %.1fs",
                        segment.index,
                        attempt,
                        self.config.max_attempts,
                        e,
                        delay,
                    )
                    await self._sleep(delay)
                continue
            except TranscriptionFatalError as e:
                last_error = e
                logger.error("Segment %d failed permanently: %s", segment.index, e)
                break

            status = OutcomeStatus.OK if attempt == 1 else OutcomeStatus.RETRIED_OK
            logger.info(
                "Segment %d transcribed (%s, %d characters)",
                segment.index,
                status.value,
                len(result.text),
            )
            return TranscriptionOutcome(
                segment_index=segment.index,
                status=status,
                usage=fill_usage(result, segment, capability),
                text=result.text,
                attempts=attempt,
                utterances=result.segments,
            )
        else:
            logger.error(
                "Segment %d failed after %d attempts: %s",
                segment.index,
                attempts,
                last_error,
            )

        return TranscriptionOutcome(
            segment_index=segment.index,
            status=OutcomeStatus.FAILED,
            usage=empty_usage,
            error=str(last_error),
            attempts=attempts,
        )
