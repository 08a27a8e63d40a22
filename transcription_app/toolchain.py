"""Discovery and execution of the ffmpeg/ffprobe binaries."""

import asyncio
import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from transcription_app.config import ToolsConfig
from transcription_app.errors import ToolFailedError, ToolNotFoundError, ToolTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolResult:
    """Completed subprocess invocation."""

    returncode: int
    stdout: str
    stderr: str


async def run_tool(cmd: Sequence[str], timeout: float) -> ToolResult:
    """Run a command in the default executor without blocking the event loop.

    ``subprocess.run`` enforces the timeout itself so a stuck process is
    killed instead of left running behind an abandoned future.

    Raises:
        ToolNotFoundError: If the executable cannot be started
        ToolTimeoutError: If the process exceeds ``timeout`` seconds
    """
    cmd = [str(part) for part in cmd]
    logger.debug("Executing: %s", " ".join(cmd))

    def _run_subprocess():
        return subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout,
        )

    loop = asyncio.get_running_loop()
    try:
        result = await loop.run_in_executor(None, _run_subprocess)
    except subprocess.TimeoutExpired as e:
        raise ToolTimeoutError(f"{cmd[0]} timed out after {timeout}s") from e
    except (FileNotFoundError, PermissionError) as e:
        raise ToolNotFoundError(f"Cannot execute '{cmd[0]}': {e}") from e

    return ToolResult(
        returncode=result.returncode,
        stdout=result.stdout.decode("utf-8", errors="replace") if result.stdout else "",
        stderr=result.stderr.decode("utf-8", errors="replace") if result.stderr else "",
    )


async def run_checked(cmd: Sequence[str], timeout: float) -> ToolResult:
    """Run a command and raise ToolFailedError on a non-zero exit code."""
    result = await run_tool(cmd, timeout)
    if result.returncode != 0:
        raise ToolFailedError(
            f"{Path(str(cmd[0])).name} failed with exit code {result.returncode}. "
            f"stderr: {result.stderr.strip()[-500:]}",
            returncode=result.returncode,
            stderr=result.stderr,
        )
    return result


class MediaToolchain:
    """Resolves which ffmpeg/ffprobe binaries can be used on this machine.

    Each tool is configured as an ordered list of candidate names or paths.
    The first ffmpeg candidate that answers ``-version`` is cached for the
    lifetime of the instance.
    """

    def __init__(self, config: ToolsConfig | None = None):
        """Initialize toolchain.

        Args:
            config: ToolsConfig with candidate lists and timeouts
        """
        self.config = config or ToolsConfig()
        self._ffmpeg: str | None = None
        self._ffmpeg_checked = False
        self._lock = asyncio.Lock()

    @staticmethod
    def _which(candidate: str) -> str | None:
        """Resolve a candidate name or path to an executable path."""
        return shutil.which(candidate)

    async def ffmpeg(self) -> str | None:
        """Return the usable ffmpeg path, or None if no candidate works."""
        async with self._lock:
            if self._ffmpeg_checked:
                return self._ffmpeg

            for candidate in self.config.ffmpeg_paths:
                resolved = self._which(candidate)
                if not resolved:
                    logger.debug("ffmpeg candidate not found: %s", candidate)
                    continue
                try:
                    await run_checked([resolved, "-version"], self.config.probe_timeout)
                except (ToolNotFoundError, ToolTimeoutError, ToolFailedError) as e:
                    logger.debug("ffmpeg candidate %s unusable: %s", resolved, e)
                    continue
                self._ffmpeg = resolved
                logger.info("Using ffmpeg: %s", resolved)
                break
            else:
                logger.warning(
                    "ffmpeg not available (tried: %s), time-based segmentation disabled",
                    ", ".join(self.config.ffmpeg_paths),
                )

            self._ffmpeg_checked = True
            return self._ffmpeg

    async def require_ffmpeg(self) -> str:
        """Return the ffmpeg path.

        Raises:
            ToolNotFoundError: If no candidate works
        """
        path = await self.ffmpeg()
        if path is None:
            raise ToolNotFoundError(
                f"ffmpeg not found (tried: {', '.join(self.config.ffmpeg_paths)})"
            )
        return path

    async def ffprobe_candidates(self) -> list[str]:
        """Ordered, de-duplicated ffprobe invocations to try.

        Configured candidates come first, followed by the ffprobe sitting next
        to the resolved ffmpeg binary.
        """
        candidates: list[str] = []
        for candidate in self.config.ffprobe_paths:
            resolved = self._which(candidate)
            if resolved:
                candidates.append(resolved)
            else:
                logger.debug("ffprobe candidate not found: %s", candidate)

        ffmpeg = await self.ffmpeg()
        if ffmpeg:
            ffmpeg_path = Path(ffmpeg)
            sibling = ffmpeg_path.with_name(ffmpeg_path.name.replace("ffmpeg", "ffprobe"))
            if sibling != ffmpeg_path and sibling.exists():
                candidates.append(str(sibling))

        seen = set()
        ordered = []
        for candidate in candidates:
            if candidate not in seen:
                seen.add(candidate)
                ordered.append(candidate)
        return ordered
