"""
Transcode Runner - executes one FFmpeg stage command as a child process.

Responsibilities:
- Stream ``-progress pipe:1`` key=value output and report percentages
- Keep a bounded tail of stderr for diagnostics
- Enforce a wall-clock timeout (terminate, then kill after a grace period)
- Terminate the child when the awaiting task is cancelled
- Never leave a partial output file behind on failure
"""

import asyncio
import inspect
import logging
import os
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from clipforge.config import Settings, get_settings
from clipforge.services.filter_graph import StageKind, TranscodeCommand

logger = logging.getLogger(__name__)


# None means "running, percentage unknown"
ProgressCallback = Callable[[Optional[float]], Union[Awaitable[None], None]]

STDERR_TAIL_LINES = 40
STREAM_LIMIT_BYTES = 1024 * 1024


@dataclass
class TranscodeResult:
    """Result of a successful stage run."""

    output_path: str
    size_bytes: int


class _ProgressReporter:
    """Turns FFmpeg out_time values into whole, non-decreasing percentages."""

    def __init__(self, callback: Optional[ProgressCallback], duration_seconds: Optional[float]):
        self._callback = callback
        self._duration = duration_seconds if duration_seconds and duration_seconds > 0 else None
        self._last_percent = -1

    async def _emit(self, value: Optional[float]) -> None:
        if self._callback is None:
            return
        result = self._callback(value)
        if inspect.isawaitable(result):
            await result

    async def started(self) -> None:
        await self._emit(None)

    async def position(self, seconds: float) -> None:
        if self._duration is None:
            return
        # 100 is reserved for a verified, complete output
        percent = int(min(99.0, max(0.0, seconds / self._duration * 100)))
        if percent > self._last_percent:
            self._last_percent = percent
            await self._emit(float(percent))

    async def finished(self) -> None:
        self._last_percent = 100
        await self._emit(100.0)


def parse_progress_line(line: str) -> Optional[float]:
    """
    Extract the output position in seconds from one ``-progress`` line.

    Both ``out_time_us`` and ``out_time_ms`` carry microseconds.
    """
    if "=" not in line:
        return None
    key, value = line.split("=", 1)
    key = key.strip()
    value = value.strip()

    if key in ("out_time_us", "out_time_ms"):
        try:
            return int(value) / 1_000_000.0
        except ValueError:
            return None  # N/A before the first frame
    if key == "out_time":
        try:
            hours, minutes, seconds = value.split(":")
            return int(hours) * 3600 + int(minutes) * 60 + float(seconds)
        except ValueError:
            return None
    return None


class TranscodeRunner:
    """Runs stage commands; stateless apart from settings and safe to share."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def run(
        self,
        command: TranscodeCommand,
        on_progress: Optional[ProgressCallback] = None,
        timeout: Optional[float] = None,
    ) -> TranscodeResult:
        """
        Run a stage command to completion.

        Args:
            command: Fully built stage command
            on_progress: Called with None at start, then percentages 0-99, then 100
            timeout: Wall-clock limit in seconds (defaults to settings)

        Returns:
            TranscodeResult for the verified output file

        Raises:
            TranscodeFailed: Non-zero exit, spawn failure, empty output or an
                unreadable output stream
            TranscodeTimeout: Timeout exceeded
            asyncio.CancelledError: Propagated after the child is stopped
        """
        timeout = timeout if timeout is not None else self.settings.transcode_timeout_seconds
        output = Path(command.output_path)
        output.parent.mkdir(parents=True, exist_ok=True)

        reporter = _ProgressReporter(on_progress, command.duration_seconds)
        stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

        logger.info(f"Starting {command.stage.value} stage -> {output.name}")
        logger.debug(f"Command: {command.describe()}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        except OSError as e:
            raise TranscodeFailed(command.stage, None, f"Could not start {command.argv[0]}: {e}") from e

        try:
            await reporter.started()
            returncode = await asyncio.wait_for(
                self._communicate(process, reporter, stderr_tail),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"{command.stage.value} stage timed out after {timeout}s, stopping FFmpeg")
            await self._stop(process)
            self._remove_partial(output)
            raise TranscodeTimeout(command.stage, timeout) from None
        except asyncio.CancelledError:
            await self._stop(process)
            self._remove_partial(output)
            raise
        except Exception as e:
            # Overlong output line or a failing progress callback
            logger.warning(f"{command.stage.value} stage aborted: {type(e).__name__}: {e}")
            await self._stop(process)
            self._remove_partial(output)
            stderr_tail.append(f"{type(e).__name__}: {e}")
            raise TranscodeFailed(command.stage, None, "\n".join(stderr_tail)) from e

        if returncode != 0:
            self._remove_partial(output)
            raise TranscodeFailed(command.stage, returncode, "\n".join(stderr_tail))

        if not output.is_file() or output.stat().st_size == 0:
            self._remove_partial(output)
            raise TranscodeFailed(command.stage, returncode, "FFmpeg exited cleanly but wrote no output")

        await reporter.finished()
        size = output.stat().st_size
        logger.info(f"Finished {command.stage.value} stage: {output.name} ({size / 1024 / 1024:.1f} MB)")
        return TranscodeResult(output_path=str(output), size_bytes=size)

    async def _communicate(
        self,
        process: asyncio.subprocess.Process,
        reporter: _ProgressReporter,
        stderr_tail: deque,
    ) -> int:
        await asyncio.gather(
            self._read_progress(process.stdout, reporter),
            self._read_stderr(process.stderr, stderr_tail),
        )
        return await process.wait()

    async def _read_progress(self, stream: asyncio.StreamReader, reporter: _ProgressReporter) -> None:
        async for raw in stream:
            seconds = parse_progress_line(raw.decode("utf-8", errors="replace"))
            if seconds is not None:
                await reporter.position(seconds)

    async def _read_stderr(self, stream: asyncio.StreamReader, tail: deque) -> None:
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                tail.append(line)

    async def _stop(self, process: asyncio.subprocess.Process) -> None:
        """Terminate the child, escalating to kill after the grace period."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.settings.terminate_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"FFmpeg (pid {process.pid}) ignored SIGTERM, killing")
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    def _remove_partial(self, output: Path) -> None:
        try:
            os.remove(output)
            logger.debug(f"Removed partial output: {output}")
        except FileNotFoundError:
            pass


class TranscodeError(Exception):
    """Base exception for stage execution failures."""

    def __init__(self, stage: StageKind, message: str):
        super().__init__(message)
        self.stage = stage


class TranscodeFailed(TranscodeError):
    """Exception raised when FFmpeg exits non-zero or produces no output."""

    def __init__(self, stage: StageKind, exit_code: Optional[int], stderr_tail: str):
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        super().__init__(stage, f"FFmpeg {stage.value} stage failed (exit={exit_code}): {stderr_tail[-1000:]}")


class TranscodeTimeout(TranscodeError):
    """Exception raised when a stage exceeds its wall-clock limit."""

    def __init__(self, stage: StageKind, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(stage, f"FFmpeg {stage.value} stage timed out after {timeout_seconds}s")
