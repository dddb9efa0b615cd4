"""Tests for ModelInstaller using a scripted stand-in for the pull tool."""

import asyncio
import os

import pytest

from notchly.services.model_installer import BoundedOutput, ModelInstaller


def _installer(tool, **kwargs) -> ModelInstaller:
    kwargs.setdefault("progress_interval", 0.01)
    kwargs.setdefault("progress_ticks", 100)
    kwargs.setdefault("shutdown_timeout", 2.0)
    return ModelInstaller(tool=tool, **kwargs)


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


# ---------------------------------------------------------------------------
# Exit status decides the outcome
# ---------------------------------------------------------------------------


class TestPullOutcome:

    async def test_exit_zero_is_success(self, fake_tool):
        tool = fake_tool("""
            print("pulling manifest")
            print("success " + args[0])
            sys.exit(0)
        """)
        progress: list[float] = []
        result = await _installer(tool).pull("llama3", progress.append)

        assert result.ok is True
        assert result.exit_code == 0
        assert "success llama3" in result.output
        assert progress[-1] == 1.0

    async def test_passes_pull_subcommand(self, fake_tool):
        tool = fake_tool("""
            print(command, *args)
        """)
        result = await _installer(tool).pull("mistral:7b")
        assert result.output.strip() == "pull mistral:7b"

    async def test_nonzero_exit_is_failure_with_output(self, fake_tool):
        tool = fake_tool("""
            print("pulling manifest")
            print("Error: pull model manifest: file does not exist", file=sys.stderr)
            sys.exit(1)
        """)
        progress: list[float] = []
        result = await _installer(tool).pull("nope", progress.append)

        assert result.ok is False
        assert result.exit_code == 1
        # stderr is merged into the captured output
        assert "pulling manifest" in result.output
        assert "file does not exist" in result.output
        assert 1.0 not in progress

    async def test_missing_tool(self, tmp_path):
        result = await _installer(str(tmp_path / "no-such-tool")).pull("llama3")
        assert result.ok is False
        assert result.exit_code == 127

    async def test_noisy_output_is_bounded(self, fake_tool):
        tool = fake_tool("""
            for i in range(2000):
                print("x" * 50)
            print("TAIL-MARKER")
            sys.exit(3)
        """)
        result = await _installer(tool, max_output_chars=200).pull("llama3")

        assert result.exit_code == 3
        assert len(result.output) <= 201
        assert "TAIL-MARKER" in result.output


# ---------------------------------------------------------------------------
# Synthetic progress
# ---------------------------------------------------------------------------


class TestSyntheticProgress:

    async def test_monotonic_and_below_one_while_running(self, fake_tool):
        tool = fake_tool("""
            time.sleep(0.3)
            sys.exit(1)
        """)
        progress: list[float] = []
        await _installer(tool, progress_interval=0.01, progress_ticks=10).pull("llama3", progress.append)

        assert progress, "expected synthetic ticks while the pull ran"
        assert progress == sorted(progress)
        assert all(0.0 < p < 1.0 for p in progress)
        # ticks stop at the configured count
        assert len(progress) <= 10

    async def test_completion_not_driven_by_counter(self, fake_tool):
        # The counter saturates long before the process exits.
        tool = fake_tool("""
            time.sleep(0.3)
            sys.exit(0)
        """)
        progress: list[float] = []
        result = await _installer(tool, progress_interval=0.005, progress_ticks=3).pull("llama3", progress.append)

        assert result.ok is True
        assert progress[:-1] and max(progress[:-1]) < 1.0
        assert progress[-1] == 1.0


class TestBoundedOutput:

    def test_keeps_tail(self):
        out = BoundedOutput(5)
        out.append("abc")
        out.append("defgh")
        assert out.text() == "…defgh"
        assert out.truncated is True

    def test_short_output_untouched(self):
        out = BoundedOutput(100)
        out.append("hello")
        assert out.text() == "hello"


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:

    @pytest.mark.skipif(os.name == "nt", reason="POSIX process checks")
    async def test_cancel_terminates_process_and_stops_ticks(self, fake_tool, tmp_path):
        pid_file = tmp_path / "pid"
        tool = fake_tool(f"""
            open({str(pid_file)!r}, "w").write(str(os.getpid()))
            time.sleep(60)
        """)
        progress: list[float] = []
        installer = _installer(tool, progress_interval=0.01)
        task = asyncio.create_task(installer.pull("llama3", progress.append))

        await _wait_for(lambda: pid_file.exists() and pid_file.read_text())
        await _wait_for(lambda: len(progress) > 2)
        pid = int(pid_file.read_text())
        assert installer.running is True

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert installer.running is False
        assert not _pid_alive(pid)

        seen = len(progress)
        await asyncio.sleep(0.1)
        assert len(progress) == seen
