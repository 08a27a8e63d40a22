"""Typer CLI entrypoint for transcription-app."""

import asyncio
import json
import logging
from dataclasses import asdict
from pathlib import Path

import typer

from transcription_app._types import (
    AudioMetadata,
    OverallStatus,
    ResponseFormat,
    Transcript,
    TranscriptionOutcome,
)
from transcription_app.capabilities import MODEL_CAPABILITIES
from transcription_app.config import MAX_CONCURRENCY, Config, ConfigError, load_config
from transcription_app.errors import (
    SegmentCreationFailed,
    TranscriptionCancelled,
    TranscriptionFailed,
    UnsupportedModelError,
)
from transcription_app.orchestrator import TranscriptionOrchestrator

app = typer.Typer(help="Transcribe audio files of any length with remote speech-to-text models")

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _merge_config_overrides(
    cfg: Config,
    *,
    model: str | None = None,
    response_format: str | None = None,
    language: str | None = None,
    concurrency: int | None = None,
) -> Config:
    """Apply CLI overrides to configuration.

    CLI options take precedence over config file values.

    Raises:
        ConfigError: If override values are invalid
    """
    if model is not None:
        logger.debug("Overriding model to '%s'", model)
        cfg.transcription.model = model

    if response_format is not None:
        valid_formats = tuple(f.value for f in ResponseFormat)
        if response_format not in valid_formats:
            raise ConfigError(
                f"Invalid format '{response_format}'. Must be one of: {', '.join(valid_formats)}"
            )
        logger.debug("Overriding response format to '%s'", response_format)
        cfg.transcription.response_format = response_format

    if language is not None:
        logger.debug("Overriding language to '%s'", language)
        cfg.transcription.language = language

    if concurrency is not None:
        if not 1 <= concurrency <= MAX_CONCURRENCY:
            raise ConfigError(
                f"Invalid concurrency {concurrency}. Must be between 1 and {MAX_CONCURRENCY}"
            )
        logger.debug("Overriding concurrency to %d", concurrency)
        cfg.transcription.concurrency = concurrency

    return cfg


def _outcome_to_dict(outcome: TranscriptionOutcome) -> dict:
    return {
        "segment_index": outcome.segment_index,
        "status": outcome.status.value,
        "text": outcome.text,
        "error": outcome.error,
        "attempts": outcome.attempts,
        "usage": {"kind": outcome.usage.kind.value, "amount": outcome.usage.amount},
    }


def transcript_to_dict(transcript: Transcript) -> dict:
    """JSON-serializable view of a Transcript."""
    return {
        "text": transcript.full_text,
        "status": transcript.overall_status.value,
        "model": transcript.backend_model,
        "strategy": transcript.strategy.value,
        "timing_approximate": transcript.timing_approximate,
        "gaps": list(transcript.gaps),
        "cancelled": transcript.cancelled,
        "usage": {kind.value: amount for kind, amount in transcript.usage_summary.items()},
        "segments": [_outcome_to_dict(o) for o in transcript.per_segment],
        "utterances": [asdict(u) for u in transcript.utterances],
    }


def metadata_to_dict(metadata: AudioMetadata) -> dict:
    return asdict(metadata)


def _emit(text: str, output: Path | None) -> None:
    if output is None:
        typer.echo(text)
        return
    output.write_text(text + "\n", encoding="utf-8")
    logger.info("Wrote transcript to %s", output)


def _load(config: Path | None, verbose: bool) -> Config:
    cfg = load_config(config)
    if cfg.general.verbose or cfg.general.debug or verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    logger.info("Loaded config from: %s", config or "default locations")
    logger.debug("Config: %s", cfg)
    return cfg


async def _transcribe(orchestrator: TranscriptionOrchestrator, file: Path) -> Transcript:
    def _progress(outcome: TranscriptionOutcome, completed: int, total: int) -> None:
        logger.info(
            "Progress: %d/%d segments (segment %d %s)",
            completed,
            total,
            outcome.segment_index,
            outcome.status.value,
        )

    try:
        return await orchestrator.transcribe_file(file, on_progress=_progress)
    finally:
        await orchestrator.shutdown()


@app.command()
def transcribe(
    file: Path = typer.Argument(..., help="Audio file to transcribe"),
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    model: str | None = typer.Option(
        None, "--model", "-m", help="Override model (see 'models')"
    ),
    response_format: str | None = typer.Option(
        None, "--format", "-f", help="Response format (text, json, verbose_json)"
    ),
    language: str | None = typer.Option(
        None, "--language", "-l", help="Language hint (ISO code)"
    ),
    concurrency: int | None = typer.Option(
        None, "--concurrency", "-c", help=f"Concurrent requests (1-{MAX_CONCURRENCY})"
    ),
    output: Path | None = typer.Option(
        None, "--output", "-o", help="Write the transcript to a file"
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Output the full transcript as JSON"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging"
    ),
) -> None:
    """Transcribe an audio file, segmenting it as the model requires."""
    _setup_logging(verbose)
    try:
        cfg = _load(config, verbose)
        cfg = _merge_config_overrides(
            cfg,
            model=model,
            response_format=response_format,
            language=language,
            concurrency=concurrency,
        )
        cfg.validate()
        logger.info("Configuration validated successfully")

        if not file.exists():
            raise FileNotFoundError(f"Audio file not found: {file}")

        orchestrator = TranscriptionOrchestrator(cfg)
        transcript = asyncio.run(_transcribe(orchestrator, file))

        if transcript.overall_status is OverallStatus.PARTIAL:
            logger.warning(
                "Transcript is partial: segment(s) %s missing",
                ", ".join(str(i) for i in transcript.gaps),
            )

        if json_output:
            _emit(json.dumps(transcript_to_dict(transcript), indent=2), output)
        else:
            _emit(transcript.full_text, output)

    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except FileNotFoundError as e:
        logger.error("%s", e)
        raise typer.Exit(1)
    except (UnsupportedModelError, SegmentCreationFailed) as e:
        logger.error("Transcription aborted: %s", e)
        raise typer.Exit(1)
    except TranscriptionFailed as e:
        logger.error("%s", e)
        if json_output:
            _emit(json.dumps(transcript_to_dict(e.transcript), indent=2), output)
        raise typer.Exit(1)
    except TranscriptionCancelled as e:
        logger.warning("%s", e)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        logger.info("Transcription interrupted by user")
        raise typer.Exit(130)


@app.command()
def probe(
    file: Path = typer.Argument(..., help="Audio file to inspect"),
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of text"
    ),
) -> None:
    """Show the metadata the pipeline sees for a file."""
    _setup_logging(verbose)
    try:
        cfg = _load(config, verbose)
        metadata = asyncio.run(TranscriptionOrchestrator(cfg).probe_file(file))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except FileNotFoundError as e:
        logger.error("File not found: %s", e)
        raise typer.Exit(1)

    if json_output:
        typer.echo(json.dumps(metadata_to_dict(metadata), indent=2))
        return

    typer.echo(f"File:        {file}")
    typer.echo(f"Format:      {metadata.format}")
    typer.echo(f"Size:        {metadata.size_bytes} bytes")
    if metadata.duration > 0:
        typer.echo(f"Duration:    {metadata.duration:.2f}s")
    else:
        typer.echo("Duration:    unknown")
    if metadata.bitrate:
        typer.echo(f"Bitrate:     {metadata.bitrate} bps")
    if metadata.sample_rate:
        typer.echo(f"Sample rate: {metadata.sample_rate} Hz")
    if metadata.channels:
        typer.echo(f"Channels:    {metadata.channels}")
    typer.echo(f"Probed by:   {metadata.probe_tool or 'none (basic metadata)'}")


@app.command()
def plan(
    file: Path = typer.Argument(..., help="Audio file to plan"),
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    model: str | None = typer.Option(
        None, "--model", "-m", help="Override model (see 'models')"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Show how a file would be segmented, without cutting it."""
    _setup_logging(verbose)
    try:
        cfg = _load(config, verbose)
        orchestrator = TranscriptionOrchestrator(cfg)
        metadata, limits, decision = asyncio.run(orchestrator.plan_file(file, model=model))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except UnsupportedModelError as e:
        logger.error("%s", e)
        raise typer.Exit(1)
    except FileNotFoundError as e:
        logger.error("File not found: %s", e)
        raise typer.Exit(1)

    typer.echo(f"Model:       {model or cfg.transcription.model}")
    typer.echo(
        f"Limits:      {limits.max_segment_seconds:.0f}s, {limits.max_file_size_bytes} bytes"
    )
    typer.echo(f"Strategy:    {decision.strategy.value}")
    if decision.needed:
        estimated = " (estimated)" if decision.duration_estimated else ""
        typer.echo(f"Duration:    {decision.effective_duration:.2f}s{estimated}")
    else:
        typer.echo("Segmentation not needed")
    typer.echo(f"Source size: {metadata.size_bytes} bytes")


@app.command()
def models(
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of table"
    ),
) -> None:
    """List supported transcription models."""
    if json_output:
        typer.echo(
            json.dumps(
                [
                    {
                        "model": cap.model_id,
                        "backend": cap.backend,
                        "formats": [f.value for f in cap.response_formats],
                        "default_format": cap.default_format.value,
                        "usage": cap.usage_kind.value,
                        "max_file_size_bytes": cap.max_file_size_bytes,
                        "max_duration_seconds": cap.max_duration_seconds,
                    }
                    for cap in MODEL_CAPABILITIES.values()
                ],
                indent=2,
            )
        )
        return

    typer.echo("Supported models:")
    for cap in MODEL_CAPABILITIES.values():
        formats = ", ".join(f.value for f in cap.response_formats)
        typer.echo(f"  {cap.model_id} ({cap.backend})")
        typer.echo(f"    Formats: {formats} (default {cap.default_format.value})")
        typer.echo(f"    Billing: {cap.usage_kind.value}")
        if cap.description:
            typer.echo(f"    {cap.description}")


if __name__ == "__main__":
    app()
