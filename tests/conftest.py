"""Shared fixtures for the readiness pipeline tests.

Provides an in-memory ReadinessGate, mocked probes/verifiers, a
state-change recorder, and a factory for fake pull/serve tools.
"""

import sys
import textwrap
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from notchly.core.readiness_gate import MemoryStore, ReadinessGate
from notchly.core.setup_controller import SetupController
from notchly.models.setup import BackendKind, InstallResult, ProbeResult, StateChange
from notchly.services.backend_launcher import BackendLauncher
from notchly.services.health_probe import HealthProbe
from notchly.services.key_verifier import KeyVerifier


# ---------------------------------------------------------------------------
# Gate / store
# ---------------------------------------------------------------------------

@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def secret():
    return "test-secret-key-for-notchly"


@pytest.fixture
def gate(store, secret):
    return ReadinessGate(store, secret=secret)


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------

class Recorder:
    """Listener that records every delivered StateChange."""

    def __init__(self):
        self.changes: list[StateChange] = []

    def __call__(self, change: StateChange) -> None:
        self.changes.append(change)

    @property
    def states(self) -> list[str]:
        return [c.state.value for c in self.changes]

    def distinct_states(self) -> list[str]:
        """States with consecutive repeats (progress updates) collapsed."""
        out: list[str] = []
        for s in self.states:
            if not out or out[-1] != s:
                out.append(s)
        return out


@pytest.fixture
def recorder():
    return Recorder()


# ---------------------------------------------------------------------------
# Mocked collaborators
# ---------------------------------------------------------------------------

def make_probe(
    exists: bool = True,
    live: bool = True,
    models: list[str] | list[list[str]] | None = None,
) -> MagicMock:
    """HealthProbe mock. ``models`` may be a list of listings for successive calls."""
    probe = MagicMock(spec=HealthProbe)
    probe.process_exists = AsyncMock(return_value=ProbeResult(ok=exists))
    probe.http_check = AsyncMock(return_value=ProbeResult(ok=live))
    if models and isinstance(models[0], list):
        probe.list_models = AsyncMock(side_effect=list(models))
    else:
        probe.list_models = AsyncMock(return_value=list(models or []))
    return probe


class FakeInstaller:
    """ModelInstaller stand-in returning scripted results."""

    def __init__(self, *results: InstallResult, progress: float = 0.5):
        self.results = list(results)
        self.progress = progress
        self.calls: list[str] = []

    async def pull(self, model, on_progress=None):
        self.calls.append(model)
        if on_progress:
            on_progress(self.progress)
        return self.results.pop(0)


@pytest.fixture
def probe_factory():
    return make_probe


@pytest.fixture
def installer_factory():
    return FakeInstaller


@pytest.fixture
def controller_factory(gate, recorder):
    """Build a SetupController with mocked collaborators.

    Usage:
        controller = controller_factory(kind=BackendKind.local, probe=probe_factory(...))
    """
    def _factory(
        kind: BackendKind = BackendKind.local,
        probe=None,
        verifier=None,
        installer=None,
        launcher=None,
        **kwargs,
    ) -> SetupController:
        probe = probe or make_probe()
        controller = SetupController(
            gate,
            kind=kind,
            probe=probe,
            verifier=verifier or MagicMock(spec=KeyVerifier),
            installer=installer or FakeInstaller(),
            launcher=launcher or MagicMock(spec=BackendLauncher),
            listener=recorder,
            **kwargs,
        )
        return controller

    return _factory


# ---------------------------------------------------------------------------
# Fake external tool
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_tool(tmp_path: Path):
    """Factory: write a Python script acting as the model tool.

    The body runs with ``command`` (``sys.argv[1]``) and ``args``
    already bound. Returns the argv prefix to pass as ``tool``.
    """

    def _factory(body: str) -> list[str]:
        script = tmp_path / "fake_tool.py"
        script.write_text(
            "import os, sys, time\n"
            "command = sys.argv[1]\n"
            "args = sys.argv[2:]\n"
            + textwrap.dedent(body)
        )
        return [sys.executable, str(script)]

    return _factory
