"""SandboxedExecutor tests against real child processes (POSIX).

Covers: normal exit, exit codes, wall-clock timeout, process-group kill,
cancellation, output cap, spawn failure, scratch-file lifecycle.
"""

from __future__ import annotations

import asyncio
import sys
import time

import pytest

from acai.infra.cancellation import CancellationSignal
from acai.sandbox.executor import ExecResult, SandboxedExecutor
from acai.sandbox.scratch import scratch_script

pytestmark = [
    pytest.mark.slow,
    pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX-only"),
]


@pytest.fixture()
def executor():
    return SandboxedExecutor()


class TestNormalExit:
    @pytest.mark.asyncio()
    async def test_stdout_captured(self, executor, workspace):
        result = await executor.run(["echo", "hello"], cwd=workspace, timeout_s=5)
        assert result.stdout == "hello\n"
        assert result.exit_code == 0
        assert not result.timed_out
        assert not result.cancelled

    @pytest.mark.asyncio()
    async def test_non_zero_exit(self, executor, workspace):
        result = await executor.run(["sh", "-c", "echo oops >&2; exit 3"], cwd=workspace, timeout_s=5)
        assert result.exit_code == 3
        assert result.stderr == "oops\n"
        assert result.signal is None

    @pytest.mark.asyncio()
    async def test_runs_in_cwd(self, executor, workspace):
        result = await executor.run(["pwd"], cwd=workspace / "src", timeout_s=5)
        assert result.stdout.strip() == str(workspace / "src")

    @pytest.mark.asyncio()
    async def test_run_shell(self, executor, workspace):
        result = await executor.run_shell("ls", cwd=workspace, timeout_s=5)
        assert "README.md" in result.stdout

    @pytest.mark.asyncio()
    async def test_stdin_is_closed(self, executor, workspace):
        result = await executor.run(["cat"], cwd=workspace, timeout_s=5)
        assert result.exit_code == 0
        assert not result.timed_out


class TestTimeout:
    @pytest.mark.asyncio()
    async def test_sleep_is_killed_promptly(self, executor, workspace):
        started = time.monotonic()
        result = await executor.run(["sleep", "5"], cwd=workspace, timeout_s=0.2)
        elapsed = time.monotonic() - started

        assert result.timed_out
        assert not result.cancelled
        assert result.exit_code is None
        assert result.signal == 9
        assert elapsed < 3

    @pytest.mark.asyncio()
    async def test_background_children_are_killed(self, executor, workspace):
        """Grandchildren holding the pipes open must not stall the result."""
        started = time.monotonic()
        result = await executor.run(
            ["sh", "-c", "sleep 30 & sleep 30"], cwd=workspace, timeout_s=0.2
        )
        assert result.timed_out
        assert time.monotonic() - started < 3


class TestCancellation:
    @pytest.mark.asyncio()
    async def test_cancel_signal_kills_child(self, executor, workspace):
        signal = CancellationSignal()
        asyncio.get_running_loop().call_later(0.1, signal.cancel, "user pressed ctrl-c")
        started = time.monotonic()
        result = await executor.run(["sleep", "5"], cwd=workspace, timeout_s=30, cancel=signal)

        assert result.cancelled
        assert not result.timed_out
        assert time.monotonic() - started < 3

    @pytest.mark.asyncio()
    async def test_already_cancelled_never_spawns(self, executor, workspace):
        signal = CancellationSignal()
        signal.cancel()
        result = await executor.run(["touch", "spawned"], cwd=workspace, timeout_s=5, cancel=signal)
        assert result.cancelled
        assert not (workspace / "spawned").exists()

    @pytest.mark.asyncio()
    async def test_task_cancellation_propagates(self, executor, workspace):
        task = asyncio.ensure_future(executor.run(["sleep", "5"], cwd=workspace, timeout_s=30))
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class TestOutputCap:
    @pytest.mark.asyncio()
    async def test_stdout_capped(self, workspace):
        executor = SandboxedExecutor(max_buffer_bytes=100)
        result = await executor.run(
            [sys.executable, "-c", "print('x' * 10000)"], cwd=workspace, timeout_s=10
        )
        assert result.output_truncated
        assert len(result.stdout) == 100
        assert result.exit_code == 0


class TestSpawnFailure:
    @pytest.mark.asyncio()
    async def test_missing_binary(self, executor, workspace):
        result = await executor.run(["/nonexistent/acai-binary"], cwd=workspace, timeout_s=5)
        assert result.exit_code is None
        assert result.error.startswith("Failed to start process:")


class TestExecResult:
    def test_combined_output_skips_empty_parts(self):
        assert ExecResult(stdout="out", stderr="", exit_code=0).combined_output == "out"
        assert ExecResult(stdout="out", stderr="err", exit_code=0).combined_output == "out\nerr"


class TestScratchScript:
    @pytest.mark.asyncio()
    async def test_removed_after_block(self, workspace):
        async with scratch_script("print(1)", workspace) as script:
            assert script.read_text(encoding="utf-8") == "print(1)"
            assert script.parent.parent == workspace
            assert script.parent.name.startswith(".acai-ci-")
            assert script.name.startswith("temp_script_")
        assert not script.parent.exists()

    @pytest.mark.asyncio()
    async def test_removed_on_error(self, workspace):
        with pytest.raises(RuntimeError):
            async with scratch_script("print(1)", workspace) as script:
                raise RuntimeError("boom")
        assert not script.parent.exists()
