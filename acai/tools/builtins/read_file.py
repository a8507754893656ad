from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import structlog
from pydantic import BaseModel, Field

from acai.security.path_guard import AccessError
from acai.tools.base import BaseTool, ToolDone, ToolFailed, ToolOk, ToolStep
from acai.tools.context import ToolContext

logger = structlog.get_logger()


class ReadFileArguments(BaseModel):
    path: str = Field(description="Path of the file to read, absolute or relative to the project root.")
    start_line: int | None = Field(None, ge=1, description="1-based line to start reading from.")
    line_count: int | None = Field(None, ge=1, description="Number of lines to read.")


class ReadFileTool(BaseTool):
    """Read a file inside the allowed directories, optionally a line range."""

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return (
            "Read the complete contents of a file unless start_line and line_count "
            "are given to read a selection. Only works within allowed directories."
        )

    @property
    def arguments_model(self) -> type[BaseModel]:
        return ReadFileArguments

    @property
    def output_subject(self) -> str:
        return "file"

    @property
    def truncation_guidance(self) -> str:
        return "Use start_line and line_count to read a smaller selection of the file."

    async def execute(self, arguments: ReadFileArguments, context: ToolContext) -> AsyncIterator[ToolStep]:
        resolution = context.path_guard.resolve(arguments.path, context.working_dir)
        if resolution.error == AccessError.parent_missing:
            yield ToolDone(ToolFailed(f"File not found: {arguments.path}", code="FILE_NOT_FOUND"))
            return
        if not resolution.ok:
            yield ToolDone(ToolFailed(
                f"Path '{arguments.path}' resolves outside the project directory. "
                f"All paths must be within {context.path_guard.describe_roots()}",
                code="ACCESS_DENIED",
            ))
            return

        target = resolution.path
        if not target.is_file():
            yield ToolDone(ToolFailed(f"File not found: {arguments.path}", code="FILE_NOT_FOUND"))
            return

        try:
            content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
        except OSError as e:
            logger.exception("read_file_failed", path=str(target))
            yield ToolDone(ToolFailed(f"Failed to read file: {e}", code="READ_ERROR"))
            return

        if arguments.start_line is None and arguments.line_count is None:
            yield ToolDone(ToolOk(content))
            return

        lines = content.splitlines(keepends=True)
        start = (arguments.start_line or 1) - 1
        if start >= len(lines):
            yield ToolDone(ToolFailed(
                f"start_line {arguments.start_line} is out of bounds for file with {len(lines)} lines.",
                code="OUT_OF_RANGE",
            ))
            return
        count = arguments.line_count or len(lines) - start
        yield ToolDone(ToolOk("".join(lines[start:start + count])))
