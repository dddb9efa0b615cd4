"""Filesystem helpers."""

from pathlib import Path


def atomic_write(target: Path, content: str) -> None:
    """Write content to a file atomically via a temp file + rename.

    On POSIX, Path.replace() is atomic within the same filesystem.
    This prevents partial writes if the process is interrupted.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_suffix(target.suffix + ".tmp")
    tmp_path.write_text(content)
    tmp_path.replace(target)
