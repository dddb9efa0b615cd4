"""Single bounded-timeout checks of the model backend.

Every probe returns a fresh ``ProbeResult``; nothing here raises for
network or process failures.
"""

import asyncio
import logging
import platform

import httpx

from notchly.config import settings
from notchly.models.setup import ErrorKind, ProbeResult

logger = logging.getLogger(__name__)


class HealthProbe:
    """Executable lookup and HTTP liveness checks."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        which_timeout: float | None = None,
    ) -> None:
        self._client = client
        self.which_timeout = which_timeout if which_timeout is not None else settings.which_timeout

    def _lookup_command(self, name: str) -> list[str]:
        return ["where", name] if platform.system() == "Windows" else ["which", name]

    async def process_exists(self, name: str) -> ProbeResult:
        """Check whether *name* resolves to an executable on the search path."""
        cmd = self._lookup_command(name)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.warning("Executable lookup unavailable (%s): %s", cmd[0], e)
            return ProbeResult(ok=False, error=ErrorKind.process_not_found)

        try:
            returncode = await asyncio.wait_for(process.wait(), timeout=self.which_timeout)
        except asyncio.TimeoutError:
            logger.warning("Lookup of '%s' timed out after %.1fs", name, self.which_timeout)
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            return ProbeResult(ok=False, error=ErrorKind.process_not_found)

        if returncode != 0:
            logger.info("'%s' not found on PATH", name)
            return ProbeResult(ok=False, error=ErrorKind.process_not_found)
        return ProbeResult(ok=True)

    async def _get(self, url: str, timeout: float) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url, timeout=timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.get(url)

    async def http_check(self, url: str, timeout: float) -> ProbeResult:
        """GET *url*; ok only for an exact 200 within *timeout*."""
        try:
            response = await self._get(url, timeout)
        except httpx.TimeoutException:
            logger.info("Liveness check timed out: %s", url)
            return ProbeResult(ok=False, error=ErrorKind.timeout)
        except httpx.TransportError as e:
            logger.info("Liveness check unreachable: %s (%s)", url, type(e).__name__)
            return ProbeResult(ok=False, error=ErrorKind.unreachable)

        if response.status_code != 200:
            logger.info("Liveness check %s returned %d", url, response.status_code)
            return ProbeResult(
                ok=False,
                error=ErrorKind.unexpected_status,
                status_code=response.status_code,
            )
        return ProbeResult(ok=True, status_code=200)

    async def list_models(self, url: str, timeout: float) -> list[str]:
        """Return model names from a ``{"models": [{"name": ...}]}`` listing.

        Soft-fails to an empty list on any transport or parse problem.
        """
        try:
            response = await self._get(url, timeout)
        except httpx.HTTPError as e:
            logger.debug("Model listing failed (%s): %s", type(e).__name__, url)
            return []

        if response.status_code != 200:
            logger.debug("Model listing %s returned %d", url, response.status_code)
            return []

        try:
            data = response.json()
        except ValueError:  # JSONDecodeError, UnicodeDecodeError
            logger.debug("Model listing %s: %s", url, ErrorKind.parse_error.value)
            return []

        models = data.get("models") if isinstance(data, dict) else None
        if not isinstance(models, list):
            logger.debug("Model listing %s: %s (no models array)", url, ErrorKind.parse_error.value)
            return []

        return [
            m["name"]
            for m in models
            if isinstance(m, dict) and isinstance(m.get("name"), str) and m["name"]
        ]
