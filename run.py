#!/usr/bin/env python3
"""
Notchly - Backend Setup Launcher

Drives the backend-readiness pipeline from a terminal: checks the
configured model backend, walks through install / start / model download
or API key entry, and exits once the chat backend is ready.

Usage:
    python run.py                    # Use the configured backend (NOTCHLY_BACKEND_KIND)
    python run.py --backend local    # Local model server (ollama)
    python run.py --backend remote   # Hosted API (Groq key)
    python run.py --backend local -y # Start server / download model without asking
    python run.py --reset            # Forget previous setup and run it again

Environment Variables:
    - NOTCHLY_BACKEND_KIND: remote | local (default remote)
    - NOTCHLY_LOCAL_PORT: local server port (default 11434)
    - NOTCHLY_DEFAULT_MODEL: model pulled when none is suitable (default llama3)
    - NOTCHLY_STATE_FILE: where setup completion is recorded
    - NOTCHLY_SECRET_KEY: key used to encrypt the stored API key
"""

import argparse
import asyncio
import getpass
import logging
import signal
import sys
from pathlib import Path

from notchly.config import settings
from notchly.core.exceptions import SetupError
from notchly.core.readiness_gate import JsonFileStore, ReadinessGate
from notchly.core.setup_controller import SetupController
from notchly.models.setup import BackendKind, SetupState, StateChange

logger = logging.getLogger("notchly")


# ANSI color codes
class Color:
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'
    CYAN = '\033[36m'
    GRAY = '\033[90m'


STATE_LABELS = {
    SetupState.checking_backend: ("Checking backend", Color.BLUE),
    SetupState.needs_install: ("Needs install", Color.YELLOW),
    SetupState.needs_start: ("Server not running", Color.YELLOW),
    SetupState.starting_backend: ("Starting server", Color.BLUE),
    SetupState.checking_models: ("Checking models", Color.BLUE),
    SetupState.needs_model_download: ("Needs a model", Color.YELLOW),
    SetupState.downloading_model: ("Downloading model", Color.CYAN),
    SetupState.needs_credential: ("Needs API key", Color.YELLOW),
    SetupState.verifying_credential: ("Verifying API key", Color.BLUE),
    SetupState.ready: ("Ready", Color.GREEN),
    SetupState.failed: ("Failed", Color.RED),
}


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    if not settings.dev_mode:
        logging.basicConfig(
            level=level,
            format='{"time":"%(asctime)s","level":"%(levelname)s","name":"%(name)s","message":"%(message)s"}',
        )
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


class StatePrinter:
    """Terminal listener for controller state changes."""

    def __init__(self, color_enabled: bool = True):
        self.color_enabled = color_enabled
        self._progress_line = False

    def colorize(self, text: str, color: str) -> str:
        if not self.color_enabled:
            return text
        return f"{color}{text}{Color.RESET}"

    def __call__(self, change: StateChange) -> None:
        if change.state == SetupState.downloading_model and change.previous == SetupState.downloading_model:
            width = 30
            filled = int(change.progress * width)
            bar = "#" * filled + "-" * (width - filled)
            print(f"\r  [{bar}] {change.progress * 100:5.1f}% (estimated)", end="", flush=True)
            self._progress_line = True
            return

        if self._progress_line:
            print()
            self._progress_line = False

        label, color = STATE_LABELS[change.state]
        print(f"{self.colorize('●', color)} {self.colorize(label, Color.BOLD)}")
        if change.message:
            print(f"  {self.colorize(change.message, Color.GRAY if change.state != SetupState.failed else Color.RED)}")


async def ainput(prompt: str) -> str:
    """Read one line from stdin without blocking the event loop."""
    print(prompt, end="", flush=True)
    loop = asyncio.get_running_loop()
    try:
        future: asyncio.Future[str] = loop.create_future()

        def _on_ready() -> None:
            loop.remove_reader(sys.stdin)
            if not future.done():
                future.set_result(sys.stdin.readline())

        loop.add_reader(sys.stdin, _on_ready)
    except NotImplementedError:
        # Proactor loops (Windows) cannot watch stdin
        line = await asyncio.to_thread(sys.stdin.readline)
    else:
        try:
            line = await future
        finally:
            loop.remove_reader(sys.stdin)
    if not line:
        raise EOFError
    return line.strip()


async def drive(controller: SetupController, yes: bool, model: str | None) -> bool:
    """Answer each remediation state until ready. Returns False if the user quit."""
    await controller.begin()

    while controller.state != SetupState.ready:
        state = controller.state

        if state == SetupState.needs_credential:
            print(f"  Get an API key at {settings.credential_console_url}")
            value = await asyncio.to_thread(getpass.getpass, "  API key (empty to quit): ")
            if not value.strip():
                return False
            await controller.submit_credential(value)

        elif state == SetupState.needs_install:
            answer = await ainput("  Install it, then press Enter to check again (q to quit): ")
            if answer.lower() == "q":
                return False
            await controller.retry_check()

        elif state == SetupState.needs_start:
            answer = "s" if yes else await ainput("  [s]tart it now, [r]echeck, or [q]uit: ")
            if answer.lower() == "q":
                return False
            if answer.lower() == "r":
                await controller.retry_check()
            else:
                await controller.start_backend()
                if yes and controller.state == SetupState.needs_start:
                    return False

        elif state in (SetupState.needs_model_download, SetupState.failed):
            target = model or controller.default_model
            verb = "Retry download of" if state == SetupState.failed else "Download"
            answer = "y" if yes else await ainput(f"  {verb} {target}? [Y/n]: ")
            if answer.lower() in ("n", "q"):
                return False
            await controller.start_model_download(target)
            if controller.state == SetupState.needs_model_download:
                # Pulled fine, but the model is not one of the accepted families
                families = ", ".join(controller.suitable_substrings)
                print(f"  {target} is not a supported model (expected one of: {families}).")
                if yes:
                    return False
            elif yes and controller.state == SetupState.failed:
                return False

        else:
            # Transient states only appear while an action is running
            return False

    return True


class SignalHandler:
    """Handles graceful shutdown on SIGINT/SIGTERM."""

    def __init__(self):
        self.shutdown_event = asyncio.Event()

    def setup(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.shutdown_event.set)
            except (NotImplementedError, RuntimeError):
                signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(self.shutdown_event.set))

    async def wait_for_shutdown(self):
        await self.shutdown_event.wait()


def create_argument_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser."""
    parser = argparse.ArgumentParser(
        description='Notchly - Backend Setup Launcher',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py --backend local        # Check ollama, offer start/download
  python run.py --backend local -y     # Same, without prompts
  python run.py --backend remote       # Ask for and verify a Groq API key
  python run.py --reset                # Forget the previous setup
        """
    )
    parser.add_argument(
        '--backend',
        choices=[k.value for k in BackendKind],
        default=None,
        help='Backend to prepare (default: NOTCHLY_BACKEND_KIND)'
    )
    parser.add_argument(
        '--model',
        default=None,
        help=f'Model to download when none is suitable (default: {settings.default_model})'
    )
    parser.add_argument(
        '--state-file',
        type=Path,
        default=None,
        help=f'Setup record location (default: {settings.state_file})'
    )
    parser.add_argument(
        '--reset',
        action='store_true',
        help='Forget previous setup completion before starting'
    )
    parser.add_argument(
        '-y', '--yes',
        action='store_true',
        help='Start the server and download models without asking'
    )
    parser.add_argument(
        '--no-color',
        action='store_true',
        help='Disable colored output'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable debug logging'
    )
    return parser


async def main(argv: list[str] | None = None) -> int:
    args = create_argument_parser().parse_args(argv)
    configure_logging(args.verbose)

    kind = BackendKind(args.backend) if args.backend else settings.backend_kind
    gate = ReadinessGate(JsonFileStore(args.state_file or settings.state_file))
    if args.reset:
        gate.reset(kind)
    logger.debug("Preparing %s backend (state file %s)", kind.value, gate.store.path)

    printer = StatePrinter(color_enabled=not args.no_color and sys.stdout.isatty())
    controller = SetupController(gate, kind=kind, listener=printer)

    signal_handler = SignalHandler()
    signal_handler.setup()

    drive_task = asyncio.create_task(drive(controller, args.yes, args.model))
    shutdown_task = asyncio.create_task(signal_handler.wait_for_shutdown())
    try:
        done, _ = await asyncio.wait(
            {drive_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if shutdown_task in done:
            print("\nInterrupted.")
            drive_task.cancel()
            await asyncio.gather(drive_task, return_exceptions=True)
            return 130

        try:
            finished = drive_task.result()
        except EOFError:
            finished = False
        except SetupError as e:
            logger.error("Setup stopped: %s", e)
            finished = False
        if not finished:
            print("Setup not finished. Run again to continue.")
            return 1

        print(printer.colorize("Backend ready. You can start chatting.", Color.GREEN + Color.BOLD))
        return 0
    finally:
        shutdown_task.cancel()
        await controller.aclose()


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == '__main__':
    cli()
