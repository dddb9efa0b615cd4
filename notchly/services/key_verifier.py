"""Remote API key verification.

The credential is sent only in the Authorization header. It is never
logged, echoed in results, or included in exception text.
"""

import logging

import httpx

from notchly.config import settings
from notchly.models.setup import ErrorKind, ProbeResult

logger = logging.getLogger(__name__)


class KeyVerifier:
    """Checks a bearer credential against the remote models endpoint."""

    def __init__(
        self,
        url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        self.url = url or settings.remote_models_url
        self.timeout = timeout if timeout is not None else settings.credential_timeout
        self._client = client

    async def _get(self, headers: dict[str, str], timeout: float) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(self.url, headers=headers, timeout=timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.get(self.url, headers=headers)

    async def verify(self, credential: str, timeout: float | None = None) -> ProbeResult:
        """Return ok only if the endpoint answers 200 for this credential."""
        headers = {"Authorization": f"Bearer {credential}"}
        try:
            response = await self._get(headers, timeout if timeout is not None else self.timeout)
        except httpx.TimeoutException:
            logger.warning("Credential check timed out against %s", self.url)
            return ProbeResult(ok=False, error=ErrorKind.timeout)
        except httpx.TransportError as e:
            logger.warning("Credential check could not reach %s (%s)", self.url, type(e).__name__)
            return ProbeResult(ok=False, error=ErrorKind.unreachable)

        status = response.status_code
        if status == 200:
            logger.info("Credential accepted by %s", self.url)
            return ProbeResult(ok=True, status_code=status)
        if status in (401, 403):
            logger.info("Credential rejected by %s (%d)", self.url, status)
            return ProbeResult(ok=False, error=ErrorKind.invalid_credential, status_code=status)

        logger.warning("Credential check got unexpected status %d from %s", status, self.url)
        return ProbeResult(ok=False, error=ErrorKind.unexpected_status, status_code=status)
