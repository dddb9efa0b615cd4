"""Backend-readiness state and probe result models."""

import enum

from pydantic import BaseModel, ConfigDict, Field


class BackendKind(str, enum.Enum):
    remote = "remote"  # hosted API, gated on a bearer credential
    local = "local"  # process-based model server


class SetupState(str, enum.Enum):
    """Current step of the readiness pipeline.

    Exactly one is current at any time. ``ready`` is terminal; ``failed``
    is terminal for the current run but can be retried.
    """

    checking_backend = "checking_backend"
    needs_install = "needs_install"
    needs_start = "needs_start"
    starting_backend = "starting_backend"
    checking_models = "checking_models"
    needs_model_download = "needs_model_download"
    downloading_model = "downloading_model"
    needs_credential = "needs_credential"
    verifying_credential = "verifying_credential"
    ready = "ready"
    failed = "failed"


class ErrorKind(str, enum.Enum):
    unreachable = "unreachable"
    timeout = "timeout"
    unexpected_status = "unexpected_status"
    process_not_found = "process_not_found"
    process_exited_non_zero = "process_exited_non_zero"
    invalid_credential = "invalid_credential"
    parse_error = "parse_error"


class ProbeResult(BaseModel):
    """Outcome of a single bounded check. Produced fresh per probe."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    payload: list[str] | None = None
    error: ErrorKind | None = None
    status_code: int | None = None


class InstallResult(BaseModel):
    """Outcome of one model pull attempt.

    ``output`` is the merged stdout/stderr tail, bounded in size.
    """

    model_config = ConfigDict(frozen=True)

    ok: bool
    exit_code: int | None = None
    output: str = ""
    cancelled: bool = False


class StateChange(BaseModel):
    """A single transition published to the presentation layer."""

    model_config = ConfigDict(frozen=True)

    state: SetupState
    previous: SetupState | None = None
    message: str | None = None  # user-facing error or hint
    reason: str | None = None  # set when state is failed
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    models: list[str] = Field(default_factory=list)
