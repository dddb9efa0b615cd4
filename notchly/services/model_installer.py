"""Model download supervision (``<tool> pull <model>``).

The pull tool prints no machine-readable progress, so the installer
reports a *synthetic* estimate: one tick every ``progress_interval``
seconds, up to ``progress_ticks`` ticks, never reaching 1.0 on its own.
It is a time-based heuristic for UI feedback, not a byte count. Success
or failure is decided only by the process exit status.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence

from notchly.config import settings
from notchly.models.setup import InstallResult
from notchly.utils.processes import new_session_kwargs, terminate_process

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

# The synthetic counter stops short of 1.0; only a zero exit reports 1.0.
_SYNTHETIC_CEILING = 0.99
_READ_CHUNK = 4096


class BoundedOutput:
    """Keeps only the last ``limit`` characters of a stream."""

    def __init__(self, limit: int):
        self.limit = limit
        self._text = ""
        self.truncated = False

    def append(self, chunk: str) -> None:
        self._text += chunk
        if len(self._text) > self.limit:
            self._text = self._text[-self.limit:]
            self.truncated = True

    def text(self) -> str:
        if self.truncated:
            return "…" + self._text
        return self._text


class ModelInstaller:
    """Launches and supervises one model pull at a time."""

    def __init__(
        self,
        tool: str | Sequence[str] | None = None,
        progress_interval: float | None = None,
        progress_ticks: int | None = None,
        max_output_chars: int | None = None,
        shutdown_timeout: float | None = None,
    ) -> None:
        tool = tool if tool is not None else settings.tool_name
        self._argv = [tool] if isinstance(tool, str) else list(tool)
        self.progress_interval = (
            progress_interval if progress_interval is not None else settings.progress_interval
        )
        self.progress_ticks = progress_ticks if progress_ticks is not None else settings.progress_ticks
        self.max_output_chars = (
            max_output_chars if max_output_chars is not None else settings.max_output_chars
        )
        self.shutdown_timeout = (
            shutdown_timeout if shutdown_timeout is not None else settings.shutdown_timeout
        )
        self._process: asyncio.subprocess.Process | None = None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def _tick(self, on_progress: ProgressCallback) -> None:
        for tick in range(1, self.progress_ticks + 1):
            await asyncio.sleep(self.progress_interval)
            on_progress(min(tick / self.progress_ticks, _SYNTHETIC_CEILING))

    async def _read_output(self, stream: asyncio.StreamReader, output: BoundedOutput) -> None:
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            output.append(chunk.decode("utf-8", errors="replace"))

    async def pull(self, model: str, on_progress: ProgressCallback | None = None) -> InstallResult:
        """Run the pull to completion.

        Cancelling the awaiting task terminates the subprocess and stops
        progress ticks before the cancellation propagates.
        """
        cmd = [*self._argv, "pull", model]
        logger.info("Pulling model '%s'", model)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                **new_session_kwargs(),
            )
        except FileNotFoundError:
            logger.error("Pull tool not found: %s", cmd[0])
            return InstallResult(ok=False, exit_code=127, output=f"command not found: {cmd[0]}")

        self._process = process
        output = BoundedOutput(self.max_output_chars)
        reader = asyncio.create_task(self._read_output(process.stdout, output))
        ticker = asyncio.create_task(self._tick(on_progress)) if on_progress else None

        try:
            returncode = await process.wait()
            await reader
        except asyncio.CancelledError:
            logger.info("Pull of '%s' cancelled", model)
            if ticker is not None:
                ticker.cancel()
            await terminate_process(process, self.shutdown_timeout, name=f"pull {model}")
            raise
        finally:
            for task in (ticker, reader):
                if task is not None and not task.done():
                    task.cancel()
            await asyncio.gather(
                *(t for t in (ticker, reader) if t is not None), return_exceptions=True
            )
            self._process = None

        if returncode == 0:
            logger.info("Pull of '%s' finished", model)
            if on_progress:
                on_progress(1.0)
            return InstallResult(ok=True, exit_code=0, output=output.text())

        logger.error("Pull of '%s' exited with code %d", model, returncode)
        return InstallResult(ok=False, exit_code=returncode, output=output.text())
