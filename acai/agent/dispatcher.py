"""Runs one tool call from lookup to resolved outcome.

Every dispatch emits exactly one ToolCallStart and then exactly one of
ToolCallEnd / ToolCallError, with ToolCallUpdate events in between. Nothing a
tool or the repair step does (returning a failure, raising, being cancelled)
escapes as an exception except cancellation, which is re-raised after the
error event. The pending entry is dropped on every exit path.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog
from pydantic import BaseModel

from acai.agent.events import (
    ToolCallEnd,
    ToolCallError,
    ToolCallEvent,
    ToolCallStart,
    ToolCallUpdate,
)
from acai.agent.repair import ToolCallRepairer
from acai.agent.token_budget import TokenCounting, budget_output
from acai.config.settings import ToolSettings
from acai.infra.errors import NoSuchToolError, ToolArgumentsError
from acai.tools.base import (
    BaseTool,
    ToolCall,
    ToolDone,
    ToolFailed,
    ToolOutcome,
    ToolProgress,
    ToolTruncated,
)
from acai.tools.context import ToolContext
from acai.tools.registry import ToolRegistry

logger = structlog.get_logger()

Emit = Callable[[ToolCallEvent], None]


@dataclass
class PendingToolCall:
    tool_call_id: str
    tool_name: str
    started_at: float
    repaired: bool = False


class PendingTools:
    """In-flight tool calls keyed by id. The dispatcher is the only writer."""

    def __init__(self) -> None:
        self._entries: dict[str, PendingToolCall] = {}

    def add(self, entry: PendingToolCall) -> bool:
        if entry.tool_call_id in self._entries:
            return False
        self._entries[entry.tool_call_id] = entry
        return True

    def remove(self, tool_call_id: str) -> PendingToolCall | None:
        return self._entries.pop(tool_call_id, None)

    def get(self, tool_call_id: str) -> PendingToolCall | None:
        return self._entries.get(tool_call_id)

    def snapshot(self) -> list[PendingToolCall]:
        return list(self._entries.values())

    def __contains__(self, tool_call_id: object) -> bool:
        return tool_call_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class ToolCallDispatcher:
    def __init__(
        self,
        registry: ToolRegistry,
        *,
        token_counter: TokenCounting,
        tool_settings: ToolSettings,
        repairer: ToolCallRepairer | None = None,
        pending: PendingTools | None = None,
    ) -> None:
        self._registry = registry
        self._token_counter = token_counter
        self._tool_settings = tool_settings
        self._repairer = repairer
        self.pending = pending if pending is not None else PendingTools()

    async def dispatch(self, call: ToolCall, context: ToolContext, emit: Emit) -> ToolOutcome:
        entry = PendingToolCall(call.id, call.tool_name, time.monotonic())
        if not self.pending.add(entry):
            # The open span for this id belongs to the first dispatch.
            logger.warning("duplicate_tool_call_id", tool_call_id=call.id, tool_name=call.tool_name)
            return ToolFailed(f"Tool call {call.id} is already in progress", code="DUPLICATE_CALL")

        try:
            emit(ToolCallStart(call.id, call.tool_name, call.raw_arguments))
            logger.info("tool_call_started", tool_call_id=call.id, tool_name=call.tool_name)
            try:
                outcome = await self._resolve(call, context, emit, entry)
            except asyncio.CancelledError:
                emit(ToolCallError(call.id, call.tool_name, "Tool call cancelled", code="CANCELLED"))
                logger.info("tool_call_cancelled", tool_call_id=call.id, tool_name=call.tool_name)
                raise
            except Exception as e:
                logger.exception("tool_call_internal_error", tool_name=call.tool_name, tool_call_id=call.id)
                outcome = ToolFailed(
                    f"Internal error while handling {call.tool_name}: {str(e) or type(e).__name__}",
                    code="INTERNAL_ERROR",
                )
            self._finish(call, outcome, emit, entry)
            return outcome
        finally:
            self.pending.remove(call.id)

    async def _resolve(
        self, call: ToolCall, context: ToolContext, emit: Emit, entry: PendingToolCall
    ) -> ToolOutcome:
        tool = self._registry.get(call.tool_name)
        if tool is None:
            error = NoSuchToolError(call.tool_name)
            logger.warning("unknown_tool", tool_name=call.tool_name)
            return ToolFailed(str(error), code=error.code)

        try:
            arguments = await self._parse_arguments(call, tool, emit, entry)
        except ToolArgumentsError as e:
            return ToolFailed(f"Invalid arguments for {call.tool_name}: {e}", code=e.code)

        try:
            outcome = await self._run(tool, arguments, call, context, emit)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("tool_execution_failed", tool_name=call.tool_name, tool_call_id=call.id)
            return ToolFailed(str(e) or type(e).__name__, code="EXECUTION_ERROR")

        return self._budget(tool, outcome)

    async def _parse_arguments(
        self, call: ToolCall, tool: BaseTool, emit: Emit, entry: PendingToolCall
    ) -> BaseModel:
        try:
            return tool.parse_arguments(call.raw_arguments)
        except ToolArgumentsError as first_error:
            logger.info(
                "tool_call_args_invalid",
                tool_name=call.tool_name,
                error=str(first_error)[:200],
                raw_args=call.raw_arguments[:200],
            )
            if self._repairer is None:
                raise
            repaired = await self._repairer.repair(call, tool, first_error)
            if repaired is None:
                raise
            entry.repaired = True
            emit(ToolCallUpdate(call.id, call.tool_name, "Repaired malformed tool arguments"))
            return tool.parse_arguments(repaired.raw_arguments)

    async def _run(
        self,
        tool: BaseTool,
        arguments: BaseModel,
        call: ToolCall,
        context: ToolContext,
        emit: Emit,
    ) -> ToolOutcome:
        steps = tool.execute(arguments, context)
        outcome: ToolOutcome | None = None
        try:
            async for step in steps:
                if isinstance(step, ToolProgress):
                    emit(ToolCallUpdate(call.id, call.tool_name, step.text))
                elif isinstance(step, ToolDone):
                    outcome = step.outcome
                    break
        finally:
            aclose = getattr(steps, "aclose", None)
            if aclose is not None:
                await aclose()

        if outcome is None:
            logger.error("tool_returned_no_result", tool_name=call.tool_name)
            return ToolFailed(f"Tool {call.tool_name} finished without a result", code="NO_RESULT")
        return outcome

    def _budget(self, tool: BaseTool, outcome: ToolOutcome) -> ToolOutcome:
        if isinstance(outcome, ToolTruncated):
            return outcome
        budgeted = budget_output(
            outcome.text,
            self._token_counter,
            self._tool_settings.token_limit_for(tool.name),
            subject=tool.output_subject,
            guidance=tool.truncation_guidance,
        )
        if not budgeted.was_truncated:
            return outcome
        if isinstance(outcome, ToolFailed):
            return ToolFailed(budgeted.text, code=outcome.code)
        return ToolTruncated(budgeted.text, budgeted.token_count, budgeted.limit)

    def _finish(
        self, call: ToolCall, outcome: ToolOutcome, emit: Emit, entry: PendingToolCall
    ) -> None:
        elapsed_ms = int((time.monotonic() - entry.started_at) * 1000)
        if isinstance(outcome, ToolFailed):
            emit(ToolCallError(call.id, call.tool_name, outcome.reason, code=outcome.code))
            logger.info(
                "tool_call_failed",
                tool_call_id=call.id,
                tool_name=call.tool_name,
                code=outcome.code,
                elapsed_ms=elapsed_ms,
            )
            return
        emit(ToolCallEnd(
            call.id, call.tool_name, outcome.text, truncated=isinstance(outcome, ToolTruncated)
        ))
        logger.info(
            "tool_call_finished",
            tool_call_id=call.id,
            tool_name=call.tool_name,
            truncated=isinstance(outcome, ToolTruncated),
            elapsed_ms=elapsed_ms,
        )
