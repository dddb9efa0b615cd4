"""SetupController: the backend-readiness state machine.

Owns the current ``SetupState`` and drives probes, key verification,
server start and model download in sequence until the backend is ready.

Local pipeline:
  checking_backend
    tool missing on PATH       -> needs_install
    liveness endpoint not 200  -> needs_start
    otherwise                  -> checking_models
  checking_models
    a suitable model installed -> ready
    otherwise                  -> needs_model_download

Remote pipeline:
  checking_backend
    stored credential present  -> ready
    otherwise                  -> needs_credential

Every action validates the current state and publishes its first
transition before it suspends, so on a single event loop a second call
made while one is in flight is rejected by the state check.
"""

import asyncio
import functools
import logging
from collections.abc import Callable, Iterable

from notchly.config import settings
from notchly.core.exceptions import ControllerClosedError, InvalidTransitionError
from notchly.core.readiness_gate import ReadinessGate
from notchly.models.setup import (
    BackendKind,
    ErrorKind,
    InstallResult,
    ProbeResult,
    SetupState,
    StateChange,
)
from notchly.services.backend_launcher import BackendLauncher
from notchly.services.health_probe import HealthProbe
from notchly.services.key_verifier import KeyVerifier
from notchly.services.model_installer import ModelInstaller

logger = logging.getLogger(__name__)

StateListener = Callable[[StateChange], None]
Dispatch = Callable[[Callable[[], None]], None]

DOWNLOAD_FAILED = "download failed"


def direct_dispatch(fn: Callable[[], None]) -> None:
    fn()


def loop_dispatch(loop: asyncio.AbstractEventLoop) -> Dispatch:
    """Deliver notifications on *loop*, which may run on another thread."""

    def _dispatch(fn: Callable[[], None]) -> None:
        loop.call_soon_threadsafe(fn)

    return _dispatch


def is_suitable_model(name: str, substrings: Iterable[str]) -> bool:
    """Case-sensitive substring match against the configured families."""
    return any(s in name for s in substrings)


def has_suitable_model(names: Iterable[str], substrings: Iterable[str]) -> bool:
    subs = list(substrings)
    return any(is_suitable_model(n, subs) for n in names)


def _credential_message(result: ProbeResult) -> str:
    if result.error == ErrorKind.invalid_credential:
        return "Invalid API key. Please check and try again."
    if result.error == ErrorKind.timeout:
        return "Could not verify the API key: the request timed out. Please try again."
    if result.error == ErrorKind.unreachable:
        return "Could not reach the API to verify the key. Check your connection and try again."
    if result.status_code is not None:
        return f"Could not verify the API key (HTTP {result.status_code}). Please try again."
    return "Could not verify the API key. Please try again."


def _download_failure_message(result: InstallResult) -> str:
    output = result.output.strip()
    if output:
        return output
    return f"Model download exited with code {result.exit_code}"


class SetupController:
    """Single authoritative owner of the setup state."""

    def __init__(
        self,
        gate: ReadinessGate,
        kind: BackendKind | None = None,
        probe: HealthProbe | None = None,
        verifier: KeyVerifier | None = None,
        installer: ModelInstaller | None = None,
        launcher: BackendLauncher | None = None,
        listener: StateListener | None = None,
        dispatch: Dispatch | None = None,
        on_completed: Callable[[], None] | None = None,
        suitable_substrings: Iterable[str] | None = None,
        default_model: str | None = None,
    ) -> None:
        self.gate = gate
        self.kind = kind if kind is not None else settings.backend_kind
        self.probe = probe or HealthProbe()
        self.verifier = verifier or KeyVerifier()
        self.installer = installer or ModelInstaller()
        self.launcher = launcher or BackendLauncher(self.probe)
        self.suitable_substrings = list(
            suitable_substrings if suitable_substrings is not None
            else settings.suitable_model_substrings
        )
        self.default_model = default_model or settings.default_model
        self.tool = settings.tool_name
        self.tags_url = settings.tags_url

        self._listener = listener
        self._dispatch = dispatch or direct_dispatch
        self._on_completed = on_completed

        self._state: SetupState | None = None
        self._last_change: StateChange | None = None
        self._progress = 0.0
        self._models: list[str] = []
        self._closed = False
        self._completion_signalled = False
        self._download_task: asyncio.Task | None = None
        self._start_task: asyncio.Task | None = None

        self.completed = asyncio.Event()

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> SetupState | None:
        return self._state

    @property
    def last_change(self) -> StateChange | None:
        return self._last_change

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def closed(self) -> bool:
        return self._closed

    def set_listener(self, listener: StateListener | None) -> None:
        """Attach the single observer, replacing any previous one."""
        self._listener = listener

    def _deliver(self, change: StateChange) -> None:
        # Re-checked here because dispatch may run after teardown.
        if self._closed or self._listener is None:
            return
        self._listener(change)

    def _publish(
        self,
        state: SetupState,
        message: str | None = None,
        reason: str | None = None,
    ) -> None:
        previous = self._state
        change = StateChange(
            state=state,
            previous=previous,
            message=message,
            reason=reason,
            progress=self._progress,
            models=list(self._models),
        )
        self._state = state
        self._last_change = change
        if previous != state:
            logger.info(
                "Setup state: %s -> %s",
                previous.value if previous else "-",
                state.value,
            )
        if self._closed or self._listener is None:
            return
        self._dispatch(functools.partial(self._deliver, change))

    def _signal_completed(self) -> None:
        if self._completion_signalled:
            return
        self._completion_signalled = True
        self.completed.set()
        if self._on_completed is not None and not self._closed:
            self._dispatch(self._deliver_completed)

    def _deliver_completed(self) -> None:
        if not self._closed and self._on_completed is not None:
            self._on_completed()

    def _finish(self, credential: str | None = None, persist: bool = True) -> None:
        if persist:
            self.gate.mark_ready(self.kind, credential)
        self._publish(SetupState.ready)
        self._signal_completed()

    def _ensure_open(self) -> None:
        if self._closed:
            raise ControllerClosedError("setup controller has been closed")

    def _require(self, action: str, *allowed: SetupState) -> None:
        self._ensure_open()
        if self._state not in allowed:
            raise InvalidTransitionError(action, self._state.value if self._state else None)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def begin(self) -> None:
        """Start the pipeline, or confirm readiness recorded by an earlier run.

        A no-op once a run has reached any state other than ``failed``.
        """
        self._ensure_open()
        if self._state is not None and self._state != SetupState.failed:
            logger.debug("begin() ignored in state %s", self._state.value)
            return

        if self.gate.is_ready(self.kind):
            logger.info("Setup previously completed for %s backend", self.kind.value)
            self._finish(persist=False)
            return

        await self._check_backend()

    async def retry_check(self) -> None:
        """Re-check the backend after the user fixed things by hand."""
        self._require("retry_check", SetupState.needs_start, SetupState.needs_install)
        await self._check_backend()

    async def submit_credential(self, value: str) -> bool:
        """Verify *value* and, if accepted, persist it and become ready."""
        self._require("submit_credential", SetupState.needs_credential)
        credential = value.strip()
        if not credential:
            self._publish(SetupState.needs_credential, message="Please enter an API key.")
            return False

        self._publish(SetupState.verifying_credential)
        result = await self.verifier.verify(credential)
        if self._closed:
            return False

        if result.ok:
            self._finish(credential=credential)
            return True

        self._publish(SetupState.needs_credential, message=_credential_message(result))
        return False

    async def start_model_download(self, model: str | None = None) -> None:
        """Pull a model, then re-check the installed models.

        Allowed from ``needs_model_download`` and after a failed download.
        """
        self._ensure_open()
        retrying = (
            self._state == SetupState.failed
            and self._last_change is not None
            and self._last_change.reason == DOWNLOAD_FAILED
        )
        if not retrying:
            self._require("start_model_download", SetupState.needs_model_download)

        model = model or self.default_model
        self._progress = 0.0
        self._publish(SetupState.downloading_model, message=f"Downloading {model}…")

        task = asyncio.create_task(self.installer.pull(model, self._on_progress))
        self._download_task = task
        try:
            result = await task
        except asyncio.CancelledError:
            if self._closed:
                return
            raise
        finally:
            self._download_task = None

        if self._closed:
            return
        if result.ok:
            await self._check_models()
        else:
            self._publish(
                SetupState.failed,
                message=_download_failure_message(result),
                reason=DOWNLOAD_FAILED,
            )

    async def start_backend(self) -> None:
        """Launch the local server and re-check once it answers."""
        self._require("start_backend", SetupState.needs_start)
        self._publish(SetupState.starting_backend, message=f"Starting {self.tool}…")

        task = asyncio.create_task(self.launcher.start())
        self._start_task = task
        try:
            result = await task
        except asyncio.CancelledError:
            if self._closed:
                return
            raise
        finally:
            self._start_task = None

        if self._closed:
            return
        if result.ok:
            await self._check_backend()
        else:
            self._publish(
                SetupState.needs_start,
                message=f"{self.tool} did not start. Start it manually, then check again.",
            )

    async def aclose(self) -> None:
        """Tear down: cancel in-flight work and stop notifying.

        A running pull is terminated; no notification is delivered once
        this returns.
        """
        if self._closed:
            return
        self._closed = True
        self._listener = None

        tasks = [t for t in (self._download_task, self._start_task) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("Setup controller closed")

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    def _on_progress(self, fraction: float) -> None:
        if self._closed:
            return
        self._progress = max(self._progress, min(fraction, 1.0))
        self._publish(SetupState.downloading_model)

    async def _check_backend(self) -> None:
        self._publish(SetupState.checking_backend)

        if self.kind == BackendKind.remote:
            credential = self.gate.stored_credential(self.kind)
            if credential:
                self._finish(credential=credential)
            else:
                self._publish(SetupState.needs_credential)
            return

        exists = await self.probe.process_exists(self.tool)
        if self._closed:
            return
        if not exists.ok:
            self._publish(
                SetupState.needs_install,
                message=f"{self.tool} is not installed. Install it, then check again.",
            )
            return

        live = await self.probe.http_check(self.tags_url, settings.liveness_timeout)
        if self._closed:
            return
        if not live.ok:
            self._publish(
                SetupState.needs_start,
                message=f"{self.tool} is installed but not running.",
            )
            return

        await self._check_models()

    async def _check_models(self) -> None:
        self._publish(SetupState.checking_models)
        self._models = await self.probe.list_models(self.tags_url, settings.models_timeout)
        if self._closed:
            return

        if has_suitable_model(self._models, self.suitable_substrings):
            self._finish()
            return

        self._publish(
            SetupState.needs_model_download,
            message=f"No suitable model found. Download {self.default_model} to continue.",
        )
