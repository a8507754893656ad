from __future__ import annotations

import json
from collections.abc import AsyncIterator

import structlog
from pydantic import BaseModel, Field

from acai.constants import CODE_TIMEOUT_CEILING_S
from acai.sandbox.executor import SandboxedExecutor
from acai.tools.base import BaseTool, ToolDone, ToolFailed, ToolOk, ToolProgress, ToolStep
from acai.tools.context import ToolContext

logger = structlog.get_logger()

_PREVIEW_CHARS = 500


class CodeInterpreterArguments(BaseModel):
    code: str = Field(description="Python source code to execute.")
    timeout_seconds: int | None = Field(
        None,
        ge=1,
        le=CODE_TIMEOUT_CEILING_S,
        description=f"Execution timeout in seconds (1-{CODE_TIMEOUT_CEILING_S}).",
    )


class CodeInterpreterTool(BaseTool):
    """Run model-written Python in a restricted interpreter process."""

    def __init__(
        self,
        executor: SandboxedExecutor,
        *,
        default_timeout_s: int = 5,
        max_timeout_s: int = CODE_TIMEOUT_CEILING_S,
    ) -> None:
        self._executor = executor
        self._default_timeout_s = default_timeout_s
        self._max_timeout_s = max_timeout_s

    @property
    def name(self) -> str:
        return "code_interpreter"

    @property
    def description(self) -> str:
        return (
            "Executes Python code in a separate, isolated interpreter process. "
            "The process may read and write files only inside the project directory; "
            "network access, subprocesses and native libraries are blocked. "
            "Returns stdout, stderr and exitCode as JSON. Use print() to produce output. "
            "Scripts run from a temporary directory inside the project; the working "
            "directory is the project root. "
            f"Timeout defaults to {self._default_timeout_s} seconds and can be extended "
            f"up to {self._max_timeout_s} seconds."
        )

    @property
    def arguments_model(self) -> type[BaseModel]:
        return CodeInterpreterArguments

    @property
    def output_subject(self) -> str:
        return "script"

    @property
    def truncation_guidance(self) -> str:
        return "Print less output, for example a summary or a slice of the data."

    async def execute(
        self, arguments: CodeInterpreterArguments, context: ToolContext
    ) -> AsyncIterator[ToolStep]:
        code = arguments.code
        if not code.strip():
            yield ToolDone(ToolFailed("Error: No code provided", code="INVALID_ARGS"))
            return

        timeout_s = arguments.timeout_seconds or self._default_timeout_s
        timeout_s = min(max(timeout_s, 1), self._max_timeout_s)

        yield ToolProgress(f"Executing...\n```python\n{code[:_PREVIEW_CHARS]}\n```")
        result = await self._executor.run_code(
            code,
            working_dir=context.working_dir,
            timeout_s=timeout_s,
            cancel=context.cancel,
        )

        if result.timed_out:
            yield ToolDone(ToolFailed("Script timed out", code="TIMEOUT"))
            return
        if result.cancelled:
            yield ToolDone(ToolFailed("Script was cancelled", code="CANCELLED"))
            return
        if result.error:
            yield ToolDone(ToolFailed(f"Error: {result.error}", code="SPAWN_FAILED"))
            return
        if result.exit_code is None:
            yield ToolDone(ToolFailed(
                f"Error: Process terminated by signal {result.signal}", code="KILLED"
            ))
            return
        if result.exit_code != 0:
            yield ToolDone(ToolFailed(
                f"Error: Process exited with code {result.exit_code}. "
                f"Stderr: {result.stderr.strip()}",
                code="NON_ZERO_EXIT",
            ))
            return

        payload = {
            "stdout": result.stdout.strip(),
            "stderr": result.stderr.strip(),
            "exitCode": result.exit_code,
        }
        logger.info("code_interpreter_finished", duration_ms=result.duration_ms)
        yield ToolDone(ToolOk(json.dumps(payload, indent=2)))
