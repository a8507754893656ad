from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

import structlog
from pydantic import BaseModel, Field

from acai.agent.approval import rejection_text
from acai.security.path_guard import AccessError
from acai.tools.base import BaseTool, ToolDone, ToolFailed, ToolOk, ToolProgress, ToolStep
from acai.tools.context import ToolContext

logger = structlog.get_logger()

_PREVIEW_LINES = 20


class WriteFileArguments(BaseModel):
    path: str = Field(description="Path of the file to write, absolute or relative to the project root.")
    content: str = Field(description="Complete new content of the file.")


def _preview(content: str) -> str:
    lines = content.splitlines()
    shown = "\n".join(lines[:_PREVIEW_LINES])
    if len(lines) > _PREVIEW_LINES:
        shown += f"\n... ({len(lines) - _PREVIEW_LINES} more lines)"
    return shown


def _write(target: Path, content: str) -> None:
    target.write_text(content, encoding="utf-8")


class WriteFileTool(BaseTool):
    """Create or overwrite a file inside the allowed directories."""

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return (
            "Create a new file or completely overwrite an existing one. The parent "
            "directory must already exist. Only works within allowed directories."
        )

    @property
    def arguments_model(self) -> type[BaseModel]:
        return WriteFileArguments

    async def execute(self, arguments: WriteFileArguments, context: ToolContext) -> AsyncIterator[ToolStep]:
        guard = context.path_guard
        resolution = guard.resolve(arguments.path, context.working_dir)
        if resolution.error == AccessError.parent_missing:
            yield ToolDone(ToolFailed(
                f"Parent directory does not exist: {Path(arguments.path).parent}",
                code="PARENT_MISSING",
            ))
            return
        if not resolution.ok:
            yield ToolDone(ToolFailed(
                f"Path '{arguments.path}' resolves outside the project directory "
                f"({resolution.detail}). All paths must be within {guard.describe_roots()}",
                code="ACCESS_DENIED",
            ))
            return

        target = resolution.path
        if target.is_dir():
            yield ToolDone(ToolFailed(f"Path is a directory: {arguments.path}", code="IS_DIRECTORY"))
            return

        verb = "Overwrite" if target.exists() else "Create"
        decision = await context.request_approval(
            f"{verb} file: {target}\n{_preview(arguments.content)}"
        )
        if not decision.approved:
            yield ToolDone(ToolFailed(rejection_text(decision, "save"), code="REJECTED"))
            return

        yield ToolProgress(f"Writing {target}")
        try:
            await asyncio.to_thread(_write, target, arguments.content)
        except OSError as e:
            logger.exception("write_file_failed", path=str(target))
            yield ToolDone(ToolFailed(f"Failed to write file: {e}", code="WRITE_ERROR"))
            return

        logger.info("file_written", path=str(target), chars=len(arguments.content))
        yield ToolDone(ToolOk(f"File saved: {target} ({len(arguments.content)} characters)"))
