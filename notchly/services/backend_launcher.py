"""Start the local model server and wait until it answers."""

import asyncio
import logging
from collections.abc import Sequence

from tenacity import AsyncRetrying, retry_if_result, stop_after_delay, wait_fixed

from notchly.config import settings
from notchly.models.setup import ErrorKind, ProbeResult
from notchly.services.health_probe import HealthProbe
from notchly.utils.processes import new_session_kwargs, terminate_process

logger = logging.getLogger(__name__)


def _still_waiting(result: ProbeResult) -> bool:
    return not result.ok and result.error != ErrorKind.process_exited_non_zero


class BackendLauncher:
    """Runs ``<tool> serve`` in its own session.

    Once the server answers, the process is left running for the chat
    session; :meth:`stop` only needs to be called to abandon a start
    that is still in progress.
    """

    def __init__(
        self,
        probe: HealthProbe,
        tool: str | Sequence[str] | None = None,
        url: str | None = None,
        startup_timeout: float | None = None,
        poll_interval: float = 1.0,
        shutdown_timeout: float | None = None,
    ) -> None:
        tool = tool if tool is not None else settings.tool_name
        self._argv = [tool] if isinstance(tool, str) else list(tool)
        self.probe = probe
        self.url = url or settings.tags_url
        self.startup_timeout = (
            startup_timeout if startup_timeout is not None else settings.backend_startup_timeout
        )
        self.poll_interval = poll_interval
        self.shutdown_timeout = (
            shutdown_timeout if shutdown_timeout is not None else settings.shutdown_timeout
        )
        self.process: asyncio.subprocess.Process | None = None

    async def _poll(self) -> ProbeResult:
        result = await self.probe.http_check(self.url, settings.liveness_timeout)
        if result.ok:
            return result
        if self.process is not None and self.process.returncode is not None:
            return ProbeResult(ok=False, error=ErrorKind.process_exited_non_zero)
        return result

    async def start(self) -> ProbeResult:
        """Spawn the server and poll liveness until ok or the startup timeout."""
        cmd = [*self._argv, "serve"]
        logger.info("Starting local model server: %s", " ".join(cmd))
        try:
            self.process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                **new_session_kwargs(),
            )
        except FileNotFoundError:
            logger.error("Server executable not found: %s", cmd[0])
            return ProbeResult(ok=False, error=ErrorKind.process_not_found)

        retrying = AsyncRetrying(
            retry=retry_if_result(_still_waiting),
            stop=stop_after_delay(self.startup_timeout),
            wait=wait_fixed(self.poll_interval),
            retry_error_callback=lambda state: state.outcome.result(),
        )
        try:
            result = await retrying(self._poll)
        except asyncio.CancelledError:
            await self.stop()
            raise

        if result.ok:
            logger.info("Local model server is live at %s", self.url)
        else:
            logger.warning(
                "Local model server did not become live within %.0fs (%s)",
                self.startup_timeout,
                result.error.value if result.error else "unknown",
            )
            await self.stop()
        return result

    async def stop(self) -> None:
        if self.process is not None:
            await terminate_process(self.process, self.shutdown_timeout, name="model server")
            self.process = None
