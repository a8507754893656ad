from __future__ import annotations

from collections.abc import AsyncIterator

import structlog
from pydantic import BaseModel, Field

from acai.agent.approval import rejection_text
from acai.sandbox.executor import ExecResult, SandboxedExecutor
from acai.security.command_validator import (
    CommandValidator,
    is_mutating_command,
    validate_paths,
)
from acai.tools.base import BaseTool, ToolDone, ToolFailed, ToolOk, ToolProgress, ToolStep
from acai.tools.context import ToolContext

logger = structlog.get_logger()


class BashArguments(BaseModel):
    command: str = Field(
        description="Full CLI command to execute. Must be from the allowed list "
        "without chaining operators."
    )
    cwd: str | None = Field(
        None,
        description="Working directory (default: project root). "
        "Must be within the project directory.",
    )
    timeout: int | None = Field(
        None, gt=0, description="Command execution timeout in milliseconds."
    )


def format_exec_output(result: ExecResult) -> str:
    """Combined stdout+stderr, with a trailing note for non-zero exits."""
    text = result.combined_output
    if result.output_truncated:
        text += "\n[output exceeded the capture buffer and was cut]"
    if result.exit_code not in (0, None):
        text = f"{text}\n(exit code {result.exit_code})" if text else f"(exit code {result.exit_code})"
    elif result.signal is not None:
        text = f"{text}\n(killed by signal {result.signal})" if text else f"(killed by signal {result.signal})"
    return text or "(no output)"


class BashTool(BaseTool):
    """Run an allow-listed command line inside the allowed directories."""

    def __init__(
        self,
        executor: SandboxedExecutor,
        validator: CommandValidator,
        *,
        default_timeout_ms: int = 90_000,
    ) -> None:
        self._executor = executor
        self._validator = validator
        self._default_timeout_ms = default_timeout_ms

    @property
    def name(self) -> str:
        return "bash"

    @property
    def description(self) -> str:
        return (
            "Execute commands in a shell. Commands execute only within the project "
            "directory. Pipes, redirects and chaining are not available. "
            f"Allowed commands: {', '.join(self._validator.allowed_programs)}"
        )

    @property
    def arguments_model(self) -> type[BaseModel]:
        return BashArguments

    @property
    def output_subject(self) -> str:
        return "command"

    @property
    def truncation_guidance(self) -> str:
        return "Adjust the command to return more specific results."

    async def execute(self, arguments: BashArguments, context: ToolContext) -> AsyncIterator[ToolStep]:
        command = arguments.command
        guard = context.path_guard
        timeout_ms = arguments.timeout or self._default_timeout_ms

        cwd_resolution = guard.resolve(arguments.cwd or str(context.working_dir), context.working_dir)
        if not cwd_resolution.ok:
            yield ToolDone(ToolFailed(
                f"Working directory must be within the allowed directories: {guard.describe_roots()}",
                code="ACCESS_DENIED",
            ))
            return
        cwd = cwd_resolution.path
        if not cwd.is_dir():
            yield ToolDone(ToolFailed(f"Working directory does not exist: {cwd}", code="NOT_FOUND"))
            return

        check = self._validator.validate(command)
        if not check.ok:
            yield ToolDone(ToolFailed(f"Command not allowed: {check.reason}", code="COMMAND_DENIED"))
            return

        path_check = validate_paths(command, guard, cwd)
        if not path_check.ok:
            yield ToolDone(ToolFailed(path_check.reason, code="ACCESS_DENIED"))
            return

        if is_mutating_command(command):
            decision = await context.request_approval(f"Run command: {command}\n  in {cwd}")
            if not decision.approved:
                yield ToolDone(ToolFailed(rejection_text(decision), code="REJECTED"))
                return

        yield ToolProgress(f"$ {command}")
        result = await self._executor.run_shell(
            command, cwd=cwd, timeout_s=timeout_ms / 1000, cancel=context.cancel
        )

        if result.timed_out:
            yield ToolDone(ToolFailed(
                f"Command timed out after {timeout_ms}ms. The process may be waiting for input.",
                code="TIMEOUT",
            ))
            return
        if result.cancelled:
            yield ToolDone(ToolFailed("Command was cancelled.", code="CANCELLED"))
            return
        if result.error:
            yield ToolDone(ToolFailed(result.error, code="SPAWN_FAILED"))
            return

        logger.info(
            "bash_command_finished",
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
        )
        yield ToolDone(ToolOk(format_exec_output(result)))
