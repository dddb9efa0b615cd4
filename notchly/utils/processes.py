"""Subprocess lifecycle helpers."""

import asyncio
import logging
import os
import platform
import signal

logger = logging.getLogger(__name__)


def new_session_kwargs() -> dict:
    """Spawn kwargs that put the child in its own process group (POSIX)."""
    if platform.system() == "Windows":
        return {}
    return {"start_new_session": True}


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        if platform.system() != "Windows":
            os.killpg(process.pid, sig)
        elif sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
    except (ProcessLookupError, PermissionError, OSError):
        if sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()


async def terminate_process(
    process: asyncio.subprocess.Process,
    timeout: float,
    name: str = "process",
) -> None:
    """Stop a process and its process group: SIGTERM, then SIGKILL after *timeout*."""
    if process.returncode is not None:
        return

    logger.info("Stopping %s (pid %d)", name, process.pid)
    try:
        _signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%s did not exit within %.1fs, force killing", name, timeout)
            _signal_group(process, getattr(signal, "SIGKILL", signal.SIGTERM))
            await process.wait()
    except ProcessLookupError:
        # Already dead
        pass
