"""Drives one conversational turn.

The model stream is read by a producer task. Text goes onto a queue; each
completed tool call is launched at once as its own task whose lifecycle
events go onto the same queue. run() drains the queue and yields AgentEvents
in arrival order, then folds tool results back into the conversation and
asks the model again while it keeps calling tools.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from acai.agent.dispatcher import PendingTools, ToolCallDispatcher
from acai.agent.events import (
    AgentEvent,
    AgentFailure,
    AgentStart,
    AgentStop,
    MessageDelta,
    MessageEnd,
    MessageStart,
    StepStart,
)
from acai.agent.model_client import ContentDelta, ModelClient, ToolCallReady, UsageReport
from acai.infra.cancellation import CancellationSignal
from acai.infra.errors import AcaiError
from acai.tools.base import ToolCall, ToolFailed, ToolOutcome
from acai.tools.context import ToolSession
from acai.tools.registry import ToolRegistry

logger = structlog.get_logger()


class TurnState(StrEnum):
    idle = "idle"
    streaming = "streaming"
    draining = "draining"


@dataclass
class UsageTotals:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def add(self, report: UsageReport) -> None:
        self.prompt_tokens += report.prompt_tokens
        self.completion_tokens += report.completion_tokens


@dataclass(frozen=True)
class _ToolLaunched:
    call: ToolCall


@dataclass(frozen=True)
class _ToolFinished:
    call: ToolCall
    outcome: ToolOutcome | None


@dataclass(frozen=True)
class _StreamFinished:
    error: str | None = None
    code: str = "LLM_ERROR"


@dataclass
class _Step:
    text_parts: list[str] = field(default_factory=list)
    calls: list[ToolCall] = field(default_factory=list)
    outcomes: dict[str, ToolOutcome] = field(default_factory=dict)
    message_open: bool = False
    stream_done: bool = False
    outstanding: int = 0
    error: _StreamFinished | None = None

    @property
    def finished(self) -> bool:
        return self.stream_done and self.outstanding == 0


_CANCELLED_TEXT = "Tool call cancelled"


class StreamCoordinator:
    def __init__(
        self,
        model_client: ModelClient,
        registry: ToolRegistry,
        dispatcher: ToolCallDispatcher,
        session: ToolSession,
        *,
        model: str,
        max_steps: int = 25,
        temperature: float | None = None,
    ) -> None:
        self._model_client = model_client
        self._registry = registry
        self._dispatcher = dispatcher
        self._session = session
        self._model = model
        self._max_steps = max_steps
        self._temperature = temperature

        self._state = TurnState.idle
        self._running = False
        self._cancel: CancellationSignal | None = None
        self._producer: asyncio.Task | None = None
        self._tool_tasks: set[asyncio.Task] = set()
        self.usage = UsageTotals()

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> PendingTools:
        return self._dispatcher.pending

    def cancel(self, reason: str = "cancelled by user") -> bool:
        """Abort the running turn. Idempotent; returns False if nothing changed."""
        if not self._running or self._cancel is None:
            return False
        if not self._cancel.cancel(reason):
            return False
        logger.info("turn_cancelled", state=self._state.value, in_flight=len(self._tool_tasks))
        self._state = TurnState.idle
        if self._producer is not None and not self._producer.done():
            self._producer.cancel()
        for task in self._tool_tasks:
            if not task.done():
                task.cancel()
        return True

    async def run(self, messages: list[dict[str, Any]]) -> AsyncIterator[AgentEvent]:
        """Run one turn, appending assistant and tool messages to `messages`."""
        if self._running:
            raise RuntimeError("A turn is already running")
        self._running = True
        cancel = CancellationSignal()
        self._cancel = cancel
        self._tool_tasks = set()
        steps = 0

        try:
            yield AgentStart()
            while steps < self._max_steps and not cancel.cancelled:
                steps += 1
                yield StepStart(steps)

                queue: asyncio.Queue = asyncio.Queue()
                step = _Step()
                self._state = TurnState.streaming
                self._producer = asyncio.create_task(self._produce(messages, queue, cancel))

                while not step.finished:
                    if cancel.cancelled:
                        for item in await self._abort(queue):
                            for event in self._apply(item, step):
                                yield event
                        break
                    item = await self._next_item(queue, cancel)
                    if item is None:
                        continue
                    for event in self._apply(item, step):
                        yield event
                    if step.stream_done and self._state == TurnState.streaming:
                        self._state = TurnState.draining

                if step.message_open:
                    step.message_open = False
                    yield MessageEnd("".join(step.text_parts))

                if step.error is not None and not cancel.cancelled:
                    yield AgentFailure(step.error.error, code=step.error.code)
                    break

                self._append_step(messages, step)
                if not step.calls or cancel.cancelled:
                    break
                logger.info("tool_call_iteration", step=steps, tools_called=len(step.calls))
            else:
                if not cancel.cancelled:
                    logger.warning("max_steps_reached", max_steps=self._max_steps)

            if len(self.pending):
                logger.error("pending_tools_leaked", ids=[p.tool_call_id for p in self.pending.snapshot()])
            yield AgentStop(steps=steps, cancelled=cancel.cancelled)
        finally:
            for task in (self._producer, *self._tool_tasks):
                if task is not None and not task.done():
                    task.cancel()
            self._producer = None
            self._tool_tasks = set()
            self._state = TurnState.idle
            self._running = False

    async def _produce(
        self,
        messages: list[dict[str, Any]],
        queue: asyncio.Queue,
        cancel: CancellationSignal,
    ) -> None:
        finished = _StreamFinished()
        seen_ids: set[str] = set()
        try:
            async for event in self._model_client.chat_stream_with_tools(
                messages,
                self._model,
                tools=self._registry.get_tools_schema(),
                temperature=self._temperature,
            ):
                if isinstance(event, ToolCallReady):
                    if event.id in seen_ids:
                        # History may hold each tool_call_id once per assistant message.
                        logger.warning("duplicate_tool_call_dropped", tool_call_id=event.id, tool_name=event.name)
                        continue
                    seen_ids.add(event.id)
                    call = ToolCall(id=event.id, tool_name=event.name, raw_arguments=event.arguments)
                    queue.put_nowait(_ToolLaunched(call))
                    task = asyncio.create_task(self._run_tool(call, queue, cancel))
                    self._tool_tasks.add(task)
                else:
                    queue.put_nowait(event)
        except AcaiError as e:
            logger.warning("model_stream_failed", error=str(e), code=e.code)
            finished = _StreamFinished(error=str(e), code=e.code)
        except asyncio.CancelledError:
            logger.info("model_stream_aborted")
            raise
        except Exception as e:
            logger.exception("model_stream_crashed")
            finished = _StreamFinished(error=str(e) or type(e).__name__, code="INTERNAL_ERROR")
        finally:
            queue.put_nowait(finished)

    async def _run_tool(
        self, call: ToolCall, queue: asyncio.Queue, cancel: CancellationSignal
    ) -> None:
        outcome: ToolOutcome | None = None
        try:
            context = self._session.context_for(call.id, cancel)
            outcome = await self._dispatcher.dispatch(call, context, queue.put_nowait)
        finally:
            queue.put_nowait(_ToolFinished(call, outcome))

    async def _next_item(self, queue: asyncio.Queue, cancel: CancellationSignal) -> object | None:
        """Next queue item, or None when the cancel signal wins the race."""
        get_task = asyncio.ensure_future(queue.get())
        cancel_task = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({get_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_task.cancel()
            if not get_task.done():
                get_task.cancel()
        if get_task.done() and not get_task.cancelled():
            return get_task.result()
        return None

    async def _abort(self, queue: asyncio.Queue) -> list[object]:
        """Cancel the producer and every tool task, wait for them, drain the queue."""
        tasks = [t for t in (self._producer, *self._tool_tasks) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        drained: list[object] = []
        while not queue.empty():
            drained.append(queue.get_nowait())
        return drained

    def _apply(self, item: object, step: _Step) -> list[AgentEvent]:
        if isinstance(item, ContentDelta):
            events: list[AgentEvent] = []
            if not step.message_open:
                step.message_open = True
                events.append(MessageStart())
            step.text_parts.append(item.text)
            events.append(MessageDelta(item.text))
            return events
        if isinstance(item, UsageReport):
            self.usage.add(item)
            return []
        if isinstance(item, _ToolLaunched):
            step.calls.append(item.call)
            step.outstanding += 1
            return []
        if isinstance(item, _ToolFinished):
            step.outstanding -= 1
            if item.outcome is not None:
                step.outcomes[item.call.id] = item.outcome
            return []
        if isinstance(item, _StreamFinished):
            step.stream_done = True
            if item.error is not None:
                step.error = item
            return []
        # Lifecycle events from the dispatcher pass straight through.
        return [item]  # type: ignore[list-item]

    def _append_step(self, messages: list[dict[str, Any]], step: _Step) -> None:
        text = "".join(step.text_parts)
        if not step.calls:
            if text:
                messages.append({"role": "assistant", "content": text})
            return
        messages.append({
            "role": "assistant",
            "content": text,
            "tool_calls": [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.tool_name, "arguments": call.raw_arguments},
                }
                for call in step.calls
            ],
        })
        for call in step.calls:
            outcome = step.outcomes.get(call.id) or ToolFailed(_CANCELLED_TEXT, code="CANCELLED")
            messages.append({"role": "tool", "tool_call_id": call.id, "content": outcome.text})
