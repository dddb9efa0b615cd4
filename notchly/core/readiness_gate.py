"""ReadinessGate: remembers whether backend setup already completed.

Records are kept per backend kind in a small key-value store:

  <backend>SetupCompleted  bool
  <backend>ApiKey          encrypted credential (remote only)

A missing key always means "not ready", never an error.
"""

import json
import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from notchly.models.setup import BackendKind
from notchly.utils.encryption import decrypt_credential, encrypt_credential
from notchly.utils.files import atomic_write

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    """Durable key-value storage the gate reads and writes through."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """Process-local store, used by tests and ephemeral sessions."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self._data: dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """Key-value store persisted as a JSON file.

    Every write rewrites the file atomically, and the in-memory copy is
    only updated once the write succeeded. An unreadable or corrupt file
    (bad JSON, bad encoding) is treated as empty.
    """

    def __init__(self, path: Path):
        self.path = path
        self._data: dict[str, Any] = self._load()

    def _load(self) -> dict[str, Any]:
        try:
            if self.path.exists():
                data = json.loads(self.path.read_text())
                if isinstance(data, dict):
                    return data
                logger.warning("Ignoring setup state at %s: not a JSON object", self.path)
        except (ValueError, OSError) as e:  # JSONDecodeError, UnicodeDecodeError
            logger.warning("Ignoring unreadable setup state at %s: %s", self.path, e)
        return {}

    def _save(self, data: dict[str, Any]) -> None:
        atomic_write(self.path, json.dumps(data, indent=2, sort_keys=True) + "\n")

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        data = {**self._data, key: value}
        self._save(data)
        self._data = data

    def delete(self, key: str) -> None:
        if key in self._data:
            data = {k: v for k, v in self._data.items() if k != key}
            self._save(data)
            self._data = data


def completed_key(kind: BackendKind) -> str:
    return f"{kind.value}SetupCompleted"


def credential_key(kind: BackendKind) -> str:
    return f"{kind.value}ApiKey"


class ReadinessGate:
    """Reads and writes the "setup previously completed" record."""

    def __init__(self, store: KeyValueStore, secret: str | None = None):
        self.store = store
        self._secret = secret

    def is_ready(self, kind: BackendKind) -> bool:
        """True if setup completed for *kind*.

        A remote backend additionally needs a non-empty stored credential.
        """
        if self.store.get(completed_key(kind)) is not True:
            return False
        if kind == BackendKind.remote:
            return bool(self.stored_credential(kind))
        return True

    def stored_credential(self, kind: BackendKind) -> str:
        """Return the decrypted stored credential, or "" if there is none."""
        if kind != BackendKind.remote:
            return ""
        ciphertext = self.store.get(credential_key(kind))
        if not isinstance(ciphertext, str) or not ciphertext:
            return ""
        return decrypt_credential(ciphertext, self._secret)

    def mark_ready(self, kind: BackendKind, credential: str | None = None) -> None:
        """Record completion for *kind*. Idempotent; last write wins."""
        if kind == BackendKind.remote and credential:
            self.store.set(credential_key(kind), encrypt_credential(credential, self._secret))
        self.store.set(completed_key(kind), True)
        logger.info("Setup marked complete for %s backend", kind.value)

    def reset(self, kind: BackendKind) -> None:
        """Forget completion (and any stored credential) for *kind*."""
        self.store.delete(completed_key(kind))
        self.store.delete(credential_key(kind))
        logger.info("Setup record cleared for %s backend", kind.value)
