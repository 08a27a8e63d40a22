"""End-to-end transcription pipeline: prepare, dispatch, assemble, clean up."""

import asyncio
import logging
import shutil
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Hashable

from transcription_app._types import (
    AudioMetadata,
    OverallStatus,
    ResponseFormat,
    SegmentationPlan,
    SegmentStrategy,
    Transcript,
)
from transcription_app.assembler import assemble
from transcription_app.capabilities import lookup_capability
from transcription_app.config import Config, ConfigError
from transcription_app.dispatcher import (
    CancellationToken,
    ProgressCallback,
    TranscriptionDispatcher,
)
from transcription_app.errors import (
    TranscodeFailed,
    TranscriptionCancelled,
    TranscriptionFailed,
)
from transcription_app.planner import PlanDecision, SegmentLimits, effective_limits, plan
from transcription_app.probe import MetadataProbe
from transcription_app.segmenter import Segmenter
from transcription_app.toolchain import MediaToolchain
from transcription_app.transcoder import Transcoder
from transcription_app.transcriber import OpenAITranscriber, Transcriber
from transcription_app.transcriber_deepgram import DeepgramTranscriber

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedAudio:
    """A source probed and segmented, ready for dispatch.

    ``workdir`` holds every temporary file of the preparation, or is None
    when the source is sent as is.
    """

    metadata: AudioMetadata
    plan: SegmentationPlan
    workdir: Path | None = None


def file_identity(path: Path) -> tuple:
    """Identity of a file's current content: location plus stat fingerprint."""
    path = Path(path).resolve()
    st = path.stat()
    return (str(path), st.st_dev, st.st_ino, st.st_size, st.st_mtime_ns)


def remove_workdir(workdir: Path | None) -> None:
    if workdir is None:
        return
    try:
        shutil.rmtree(workdir)
        logger.debug("Removed temporary directory %s", workdir)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Error removing temporary directory %s: %s", workdir, e)


class _Lease:
    def __init__(self, task: asyncio.Task):
        self.task = task
        self.refs = 0


class PreparationRegistry:
    """In-flight memoization of preparations keyed by file identity and limits.

    Concurrent callers for the same key share one preparation task. The
    preparation's temporary files are removed when the last caller releases
    its lease, or the task is cancelled if nobody is left waiting for it.
    """

    def __init__(self):
        self._leases: dict[Hashable, _Lease] = {}

    def __len__(self) -> int:
        return len(self._leases)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._leases

    @asynccontextmanager
    async def lease(self, key: Hashable, factory: Callable[[], Awaitable[PreparedAudio]]):
        """Yield the PreparedAudio for ``key``, starting ``factory`` if none is in flight."""
        lease = self._leases.get(key)
        if lease is None:
            lease = _Lease(asyncio.create_task(factory()))
            self._leases[key] = lease
        else:
            logger.info("Joining in-flight preparation")
        lease.refs += 1

        try:
            prepared = await asyncio.shield(lease.task)
            yield prepared
        finally:
            lease.refs -= 1
            if lease.refs == 0:
                if self._leases.get(key) is lease:
                    del self._leases[key]
                await self._release(lease)

    @staticmethod
    async def _release(lease: _Lease) -> None:
        task = lease.task
        if not task.done():
            task.cancel()
            await asyncio.wait([task])
            return
        if task.cancelled() or task.exception() is not None:
            return
        remove_workdir(task.result().workdir)


def build_transcriber(config: Config, backend: str) -> Transcriber:
    """Create the transcriber for a backend from configuration.

    Raises:
        ConfigError: If the backend is unknown or its API key is missing
    """
    tx = config.transcription
    if backend == "openai":
        if not config.openai.api_key:
            raise ConfigError("OpenAI API key is required (set OPENAI_API_KEY)")
        return OpenAITranscriber(
            api_key=config.openai.api_key,
            base_url=config.openai.base_url,
            organization=config.openai.organization,
            timeout=tx.request_timeout,
            max_workers=tx.concurrency,
        )
    if backend == "deepgram":
        if not config.deepgram.api_key:
            raise ConfigError("Deepgram API key is required (set DEEPGRAM_API_KEY)")
        return DeepgramTranscriber(
            api_key=config.deepgram.api_key,
            smart_format=config.deepgram.smart_format,
            punctuate=config.deepgram.punctuate,
            timeout=tx.request_timeout,
            max_workers=tx.concurrency,
        )
    raise ConfigError(f"Unknown transcription backend: {backend}")


class TranscriptionOrchestrator:
    """Runs probe, plan, transcode, segment, dispatch and assemble for a file.

    Temporary files are always cleaned up, whether the run completes, fails,
    raises or is cancelled.
    """

    def __init__(
        self,
        config: Config | None = None,
        transcriber: Transcriber | None = None,
        toolchain: MediaToolchain | None = None,
        registry: PreparationRegistry | None = None,
    ):
        """Initialize orchestrator.

        Args:
            config: Loaded Config (defaults when None)
            transcriber: Backend to use for every model; built from config per
                backend when None
            toolchain: MediaToolchain (built from config when None)
            registry: Shared PreparationRegistry (a private one when None)
        """
        self.config = config or Config()
        self.toolchain = toolchain or MediaToolchain(self.config.tools)
        self.probe = MetadataProbe(self.toolchain)
        self.transcoder = Transcoder(self.toolchain, self.config.transcode)
        self.segmenter = Segmenter(
            self.toolchain,
            self.probe,
            self.config.segmentation,
            self.config.transcode,
        )
        self.registry = registry or PreparationRegistry()
        self._transcriber = transcriber
        self._transcribers: dict[str, Transcriber] = {}

    def transcriber_for(self, backend: str) -> Transcriber:
        if self._transcriber is not None:
            return self._transcriber
        if backend not in self._transcribers:
            self._transcribers[backend] = build_transcriber(self.config, backend)
        return self._transcribers[backend]

    def limits_for(self, model: str) -> SegmentLimits:
        return effective_limits(self.config.segmentation, lookup_capability(model))

    async def probe_file(self, path: Path) -> AudioMetadata:
        """Probe a file without planning or cutting it."""
        return await self.probe.probe(Path(path))

    async def plan_file(
        self, path: Path, *, model: str | None = None
    ) -> tuple[AudioMetadata, SegmentLimits, PlanDecision]:
        """Decide how a file would be segmented, without creating any segment."""
        model = model or self.config.transcription.model
        limits = self.limits_for(model)
        metadata = await self.probe.probe(Path(path))
        ffmpeg = await self.toolchain.ffmpeg()
        decision = plan(
            metadata,
            limits,
            segmenting_available=ffmpeg is not None,
            assumed_bitrate_kbps=self.config.segmentation.assumed_bitrate_kbps,
        )
        return metadata, limits, decision

    async def _prepare(self, path: Path, limits: SegmentLimits) -> PreparedAudio:
        """Probe, plan and segment ``path`` into a fresh temporary directory.

        Raises:
            SegmentCreationFailed: If segmentation fails
        """
        workdir = Path(tempfile.mkdtemp(prefix="transcription-"))
        try:
            metadata = await self.probe.probe(path)
            ffmpeg = await self.toolchain.ffmpeg()
            decision = plan(
                metadata,
                limits,
                segmenting_available=ffmpeg is not None,
                assumed_bitrate_kbps=self.config.segmentation.assumed_bitrate_kbps,
            )

            if not decision.needed:
                remove_workdir(workdir)
                return PreparedAudio(metadata, self.segmenter.single(path, metadata))

            if decision.strategy is SegmentStrategy.BYTE:
                segmentation = await self.segmenter.segment_by_bytes(
                    path, metadata, limits, workdir, fallback_reason="ffmpeg unavailable"
                )
                return PreparedAudio(metadata, segmentation, workdir)

            try:
                working = await self.transcoder.transcode(path, metadata, workdir)
            except TranscodeFailed as e:
                logger.warning("%s. Falling back to byte-based segmentation", e)
                segmentation = await self.segmenter.segment_by_bytes(
                    path, metadata, limits, workdir, fallback_reason=str(e)
                )
                return PreparedAudio(metadata, segmentation, workdir)

            segmentation = await self.segmenter.segment_by_time(
                working,
                metadata,
                decision.effective_duration,
                limits,
                workdir,
                duration_estimated=decision.duration_estimated,
                transcoded=working != path,
            )
            return PreparedAudio(metadata, segmentation, workdir)
        except BaseException:
            remove_workdir(workdir)
            raise

    async def transcribe_file(
        self,
        path: Path,
        *,
        model: str | None = None,
        response_format: ResponseFormat | str | None = None,
        language: str | None = None,
        token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Transcript:
        """Transcribe a file of any length.

        Args:
            path: Source audio file
            model: Backend model (defaults to config)
            response_format: Requested format, constrained by the model
            language: Optional language hint
            token: Optional CancellationToken
            on_progress: Called with (outcome, completed, total) per segment

        Returns:
            Transcript with status complete or partial

        Raises:
            FileNotFoundError: If the source does not exist
            UnsupportedModelError: If the model is unknown
            ConfigError: If the backend is not configured
            SegmentCreationFailed: If the source cannot be segmented
            TranscriptionFailed: If no segment was transcribed
            TranscriptionCancelled: If the token was cancelled before completion
        """
        path = Path(path)
        model = model or self.config.transcription.model
        capability = lookup_capability(model)
        transcriber = self.transcriber_for(capability.backend)
        limits = effective_limits(self.config.segmentation, capability)
        token = token or CancellationToken()

        key = (file_identity(path), limits)
        logger.info("Transcribing %s with %s", path, model)

        async with self.registry.lease(key, lambda: self._prepare(path, limits)) as prepared:
            segmentation = prepared.plan
            logger.info(
                "Prepared %d segment(s) using %s strategy%s",
                len(segmentation.segments),
                segmentation.strategy.value,
                f" ({segmentation.fallback_reason})" if segmentation.fallback_reason else "",
            )
            dispatcher = TranscriptionDispatcher(transcriber, self.config.transcription)
            outcomes = await dispatcher.dispatch(
                segmentation.segments,
                model,
                response_format=response_format,
                language=language,
                token=token,
                on_progress=on_progress,
            )

        transcript = assemble(
            outcomes,
            segmentation,
            model,
            separator=self.config.transcription.separator,
            cancelled=token.is_cancelled(),
        )

        if transcript.cancelled and transcript.overall_status is not OverallStatus.COMPLETE:
            raise TranscriptionCancelled(
                f"Transcription of {path.name} cancelled "
                f"({len(transcript.gaps)} of {len(outcomes)} segments missing)",
                transcript,
            )
        if transcript.overall_status is OverallStatus.FAILED:
            errors = "; ".join(sorted({o.error for o in outcomes if o.error}))
            raise TranscriptionFailed(
                f"No segment of {path.name} could be transcribed: {errors}", transcript
            )
        return transcript

    async def shutdown(self) -> None:
        """Shut down transcribers created by this orchestrator."""
        logger.info("Orchestrator shutdown starting")
        for backend, transcriber in self._transcribers.items():
            try:
                await transcriber.shutdown()
            except Exception as e:
                logger.warning("Error shutting down %s transcriber: %s", backend, e)
        self._transcribers.clear()
        logger.info("Orchestrator shutdown complete")
