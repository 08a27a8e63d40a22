"""Ordered merging of per-segment outcomes into a Transcript."""

import logging
from typing import Sequence

from transcription_app._types import (
    OverallStatus,
    SegmentationPlan,
    Transcript,
    TranscriptionOutcome,
    TranscriptionSegment,
    UsageKind,
)

logger = logging.getLogger(__name__)


def overall_status(outcomes: Sequence[TranscriptionOutcome]) -> OverallStatus:
    succeeded = sum(1 for o in outcomes if o.succeeded)
    if outcomes and succeeded == len(outcomes):
        return OverallStatus.COMPLETE
    if succeeded:
        return OverallStatus.PARTIAL
    return OverallStatus.FAILED


def summarize_usage(outcomes: Sequence[TranscriptionOutcome]) -> dict[UsageKind, float]:
    """Sum usage per kind over successful outcomes."""
    summary: dict[UsageKind, float] = {}
    for outcome in outcomes:
        if outcome.succeeded:
            kind = outcome.usage.kind
            summary[kind] = summary.get(kind, 0.0) + outcome.usage.amount
    return summary


def assemble(
    outcomes: Sequence[TranscriptionOutcome],
    plan: SegmentationPlan,
    backend_model: str,
    *,
    separator: str = "\n",
    cancelled: bool = False,
) -> Transcript:
    """Merge outcomes into one transcript in segment order.

    Failed segments contribute no text and are listed in ``gaps``.
    Utterance times are shifted from segment-relative to source time.

    Args:
        outcomes: One outcome per plan segment, any order
        plan: The segmentation the outcomes belong to
        backend_model: Model identifier recorded on the transcript
        separator: Inserted between consecutive segment texts
        cancelled: Whether the run was cancelled

    Returns:
        Transcript
    """
    ordered = sorted(outcomes, key=lambda o: o.segment_index)
    offsets = {segment.index: segment.start_offset for segment in plan.segments}

    texts = []
    gaps = []
    utterances: list[TranscriptionSegment] = []
    for outcome in ordered:
        if not outcome.succeeded:
            gaps.append(outcome.segment_index)
            continue
        if outcome.text:
            texts.append(outcome.text)
        offset = offsets.get(outcome.segment_index, 0.0)
        utterances.extend(
            TranscriptionSegment(
                text=u.text,
                start=u.start + offset,
                end=u.end + offset,
                confidence=u.confidence,
            )
            for u in outcome.utterances
        )

    status = overall_status(ordered)
    if gaps:
        logger.warning(
            "Transcript %s: %d of %d segments failed (%s)",
            status.value,
            len(gaps),
            len(ordered),
            ", ".join(str(i) for i in gaps),
        )
    else:
        logger.info("Transcript complete: %d segments", len(ordered))

    return Transcript(
        full_text=separator.join(texts),
        per_segment=tuple(ordered),
        overall_status=status,
        usage_summary=summarize_usage(ordered),
        backend_model=backend_model,
        gaps=tuple(gaps),
        strategy=plan.strategy,
        timing_approximate=plan.timing_approximate,
        utterances=tuple(utterances),
        cancelled=cancelled,
    )
