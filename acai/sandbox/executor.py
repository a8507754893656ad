from __future__ import annotations

import asyncio
import os
import shutil
import signal
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import structlog

from acai.infra.cancellation import CancellationSignal
from acai.sandbox.permissions import AuditHookPermissions, InterpreterPermissions
from acai.sandbox.scratch import scratch_script

logger = structlog.get_logger()

_READ_CHUNK = 64 * 1024
# Grace period for pipe readers once the child is gone.
_READER_GRACE_S = 1.0


@dataclass(frozen=True)
class ExecResult:
    """Outcome of one child process.

    exit_code is None when the child was killed by a signal (see `signal`) or
    never started (see `error`). timed_out and cancelled are never both set.
    """

    stdout: str
    stderr: str
    exit_code: int | None
    signal: int | None = None
    timed_out: bool = False
    cancelled: bool = False
    duration_ms: int = 0
    output_truncated: bool = False
    error: str = ""

    @property
    def combined_output(self) -> str:
        parts = [p for p in (self.stdout, self.stderr) if p]
        return "\n".join(parts)


async def _read_capped(stream: asyncio.StreamReader | None, limit: int) -> tuple[bytes, bool]:
    """Drain stream to EOF, keeping at most limit bytes."""
    if stream is None:
        return b"", False
    buf = bytearray()
    truncated = False
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        room = limit - len(buf)
        if room > 0:
            buf.extend(chunk[:room])
        if len(chunk) > room:
            truncated = True
    return bytes(buf), truncated


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the child's whole process group."""
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        elif proc.returncode is None:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


def default_shell() -> str:
    return shutil.which("bash") or "/bin/sh"


class SandboxedExecutor:
    """Runs child processes under a wall-clock timer and a cancel signal.

    Every child is the leader of a new session, so killing it takes down
    anything it spawned. The timer is an explicit task raced against process
    exit; when it or the cancel signal fires, the group gets SIGKILL.
    """

    def __init__(
        self,
        max_buffer_bytes: int = 1_000_000,
        *,
        shell: str | None = None,
        permissions: InterpreterPermissions | None = None,
    ) -> None:
        self._max_buffer_bytes = max_buffer_bytes
        self._shell = shell or default_shell()
        self._permissions = permissions or AuditHookPermissions()

    async def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        timeout_s: float,
        env: Mapping[str, str] | None = None,
        cancel: CancellationSignal | None = None,
    ) -> ExecResult:
        started = time.monotonic()

        if cancel is not None and cancel.cancelled:
            return ExecResult(stdout="", stderr="", exit_code=None, cancelled=True)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                env=dict(env) if env is not None else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            logger.warning("process_spawn_failed", program=argv[0] if argv else "", error=str(e))
            return ExecResult(
                stdout="",
                stderr="",
                exit_code=None,
                error=f"Failed to start process: {e}",
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        logger.debug("process_started", pid=proc.pid, program=argv[0], timeout_s=timeout_s)

        limit = self._max_buffer_bytes
        stdout_task = asyncio.ensure_future(_read_capped(proc.stdout, limit))
        stderr_task = asyncio.ensure_future(_read_capped(proc.stderr, limit))
        exit_task = asyncio.ensure_future(proc.wait())
        timer_task = asyncio.ensure_future(asyncio.sleep(timeout_s))
        waiters = {exit_task, timer_task}
        cancel_task = None
        if cancel is not None:
            cancel_task = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_task)

        timed_out = False
        cancelled = False
        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if exit_task not in done:
                timed_out = timer_task in done
                cancelled = not timed_out
                _kill_group(proc)
                await exit_task
            else:
                # Reap stragglers that inherited the session.
                _kill_group(proc)

            readers_done, readers_pending = await asyncio.wait(
                {stdout_task, stderr_task}, timeout=_READER_GRACE_S
            )
            for task in readers_pending:
                task.cancel()
        except asyncio.CancelledError:
            _kill_group(proc)
            for task in (stdout_task, stderr_task, exit_task):
                task.cancel()
            logger.info("process_killed_on_cancel", pid=proc.pid)
            raise
        finally:
            timer_task.cancel()
            if cancel_task is not None:
                cancel_task.cancel()

        stdout, out_truncated = stdout_task.result() if stdout_task in readers_done else (b"", False)
        stderr, err_truncated = stderr_task.result() if stderr_task in readers_done else (b"", False)

        returncode = proc.returncode
        exit_code = returncode if returncode is not None and returncode >= 0 else None
        killed_by = -returncode if returncode is not None and returncode < 0 else None
        duration_ms = int((time.monotonic() - started) * 1000)

        if timed_out:
            logger.warning("command_timed_out", pid=proc.pid, timeout_s=timeout_s)
        elif cancelled:
            logger.info("command_cancelled", pid=proc.pid)
        else:
            logger.debug("process_exited", pid=proc.pid, exit_code=exit_code, duration_ms=duration_ms)

        return ExecResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=exit_code,
            signal=killed_by,
            timed_out=timed_out,
            cancelled=cancelled,
            duration_ms=duration_ms,
            output_truncated=out_truncated or err_truncated,
        )

    async def run_shell(
        self,
        command: str,
        *,
        cwd: Path,
        timeout_s: float,
        env: Mapping[str, str] | None = None,
        cancel: CancellationSignal | None = None,
    ) -> ExecResult:
        """Run an already validated command line through the shell."""
        return await self.run(
            [self._shell, "-c", command], cwd=cwd, timeout_s=timeout_s, env=env, cancel=cancel
        )

    async def run_code(
        self,
        source: str,
        *,
        working_dir: Path,
        timeout_s: float,
        cancel: CancellationSignal | None = None,
    ) -> ExecResult:
        """Run Python source in a restricted interpreter from a scratch file."""
        async with scratch_script(source, working_dir) as script:
            argv = self._permissions.command_for(script, root=working_dir)
            return await self.run(argv, cwd=working_dir, timeout_s=timeout_s, cancel=cancel)
