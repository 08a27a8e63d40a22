"""Per-model request constraints for the supported transcription backends."""

import logging
import re
from dataclasses import dataclass

from transcription_app._types import ResponseFormat, UsageKind
from transcription_app.errors import UnsupportedModelError

logger = logging.getLogger(__name__)

OPENAI_MAX_UPLOAD_BYTES = 25 * 1024 * 1024


@dataclass(frozen=True)
class ModelCapability:
    """What a backend model accepts and how it reports consumption.

    ``rich_format`` is the response format carrying per-utterance timestamps,
    or None when the model never returns them.
    """

    model_id: str
    backend: str
    response_formats: tuple[ResponseFormat, ...]
    default_format: ResponseFormat
    usage_kind: UsageKind
    rich_format: ResponseFormat | None = None
    max_file_size_bytes: int | None = None
    max_duration_seconds: float | None = None
    description: str = ""

    def supports(self, response_format: ResponseFormat) -> bool:
        return response_format in self.response_formats


MODEL_CAPABILITIES: dict[str, ModelCapability] = {
    cap.model_id: cap
    for cap in (
        ModelCapability(
            model_id="whisper-1",
            backend="openai",
            response_formats=(
                ResponseFormat.TEXT,
                ResponseFormat.JSON,
                ResponseFormat.VERBOSE_JSON,
            ),
            default_format=ResponseFormat.VERBOSE_JSON,
            rich_format=ResponseFormat.VERBOSE_JSON,
            usage_kind=UsageKind.DURATION,
            max_file_size_bytes=OPENAI_MAX_UPLOAD_BYTES,
            description="Original Whisper, duration billing",
        ),
        ModelCapability(
            model_id="gpt-4o-transcribe",
            backend="openai",
            response_formats=(ResponseFormat.TEXT, ResponseFormat.JSON),
            default_format=ResponseFormat.JSON,
            usage_kind=UsageKind.TOKENS,
            max_file_size_bytes=OPENAI_MAX_UPLOAD_BYTES,
            max_duration_seconds=1400.0,
            description="Highest quality, token billing",
        ),
        ModelCapability(
            model_id="gpt-4o-mini-transcribe",
            backend="openai",
            response_formats=(ResponseFormat.TEXT, ResponseFormat.JSON),
            default_format=ResponseFormat.JSON,
            usage_kind=UsageKind.TOKENS,
            max_file_size_bytes=OPENAI_MAX_UPLOAD_BYTES,
            max_duration_seconds=1400.0,
            description="Fast and accurate, token billing",
        ),
        ModelCapability(
            model_id="nova-3",
            backend="deepgram",
            response_formats=(ResponseFormat.JSON, ResponseFormat.VERBOSE_JSON),
            default_format=ResponseFormat.VERBOSE_JSON,
            rich_format=ResponseFormat.VERBOSE_JSON,
            usage_kind=UsageKind.DURATION,
            max_file_size_bytes=2 * 1024 * 1024 * 1024,
            description="Deepgram Nova-3, duration billing",
        ),
        ModelCapability(
            model_id="nova-2",
            backend="deepgram",
            response_formats=(ResponseFormat.JSON, ResponseFormat.VERBOSE_JSON),
            default_format=ResponseFormat.VERBOSE_JSON,
            rich_format=ResponseFormat.VERBOSE_JSON,
            usage_kind=UsageKind.DURATION,
            max_file_size_bytes=2 * 1024 * 1024 * 1024,
            description="Deepgram Nova-2, duration billing",
        ),
    )
}


def lookup_capability(model_id: str) -> ModelCapability:
    """Find the capability entry for a model identifier.

    Exact ids match first; otherwise a dated or suffixed variant matches its
    family, e.g. ``gpt-4o-transcribe-2025-03-20`` -> ``gpt-4o-transcribe``.
    The longest matching family wins.

    Raises:
        UnsupportedModelError: If no entry matches
    """
    if model_id in MODEL_CAPABILITIES:
        return MODEL_CAPABILITIES[model_id]

    matches = [
        cap
        for family, cap in MODEL_CAPABILITIES.items()
        if re.match(rf"^{re.escape(family)}([-_.]|$)", model_id)
    ]
    if matches:
        cap = max(matches, key=lambda c: len(c.model_id))
        logger.debug("Model %s resolved to capability family %s", model_id, cap.model_id)
        return cap

    raise UnsupportedModelError(
        f"Unsupported transcription model '{model_id}'. "
        f"Known models: {', '.join(MODEL_CAPABILITIES)}"
    )


def select_response_format(
    capability: ModelCapability,
    requested: ResponseFormat | str | None = None,
) -> ResponseFormat:
    """Pick the response format to send, constrained by the model.

    A requested format the model does not accept is replaced by the model's
    default rather than forwarded.
    """
    if requested is None:
        return capability.default_format

    if isinstance(requested, str):
        try:
            requested = ResponseFormat(requested)
        except ValueError:
            logger.warning(
                "Unknown response format '%s', using %s for %s",
                requested,
                capability.default_format.value,
                capability.model_id,
            )
            return capability.default_format

    if capability.supports(requested):
        return requested

    logger.warning(
        "Model %s does not accept response_format=%s, using %s",
        capability.model_id,
        requested.value,
        capability.default_format.value,
    )
    return capability.default_format
