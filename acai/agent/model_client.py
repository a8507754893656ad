from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Coroutine
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog
from openai import (
    NOT_GIVEN,
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    RateLimitError,
)

from acai.infra.errors import LLMError

logger = structlog.get_logger()

T = TypeVar("T")

_RETRYABLE = (APIConnectionError, APITimeoutError, RateLimitError)


@dataclass
class ContentDelta:
    """A chunk of streamed text content."""

    text: str


@dataclass
class ToolCallReady:
    """One tool call whose fragments are complete."""

    id: str
    name: str
    arguments: str
    index: int


@dataclass
class UsageReport:
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


StreamEvent = ContentDelta | ToolCallReady | UsageReport


class ModelClient(ABC):
    """Abstract base class for LLM model clients."""

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float | None = None,
    ) -> str:
        """Send messages and return the complete response content."""
        ...

    @abstractmethod
    def chat_stream_with_tools(
        self,
        messages: list[dict[str, Any]],
        model: str,
        *,
        tools: list[dict] | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream response with tool call support.

        Content tokens yield immediately as ContentDelta. Each tool call is
        yielded as ToolCallReady as soon as the stream moves past it, so
        callers can start executing it while the model is still talking.
        """
        ...


def _first_choice(response, *, context: str = ""):
    """Extract first choice from response, raising LLMError if empty."""
    if not response.choices:
        raise LLMError(f"Empty choices from provider ({context})")
    return response.choices[0]


class _ToolCallAssembler:
    """Joins streamed tool-call fragments into whole calls.

    OpenAI streaming tool_calls format:
    - First chunk per tool: {index, id, function: {name, arguments: ""}}
    - Subsequent chunks: {index, function: {arguments: "partial..."}}
    Calls arrive one after another, so a fragment for a new slot means the
    previous slot is complete. Some providers send index=None with one
    complete call per fragment; a new id then opens a new slot.
    """

    def __init__(self) -> None:
        self._slots: dict[int, dict[str, str]] = {}
        self._emitted: set[int] = set()
        self._current: int | None = None

    def feed(self, tc_delta) -> list[ToolCallReady]:
        slot = tc_delta.index
        if slot is None:
            if tc_delta.id or self._current is None:
                slot = len(self._slots)
            else:
                slot = self._current

        ready: list[ToolCallReady] = []
        if self._current is not None and slot != self._current:
            ready.extend(self._flush(self._current))
        self._current = slot

        entry = self._slots.setdefault(slot, {"id": "", "name": "", "arguments": ""})
        if tc_delta.id:
            entry["id"] = tc_delta.id
        if tc_delta.function:
            if tc_delta.function.name:
                entry["name"] = tc_delta.function.name
            if tc_delta.function.arguments:
                entry["arguments"] += tc_delta.function.arguments
        return ready

    def finish(self) -> list[ToolCallReady]:
        ready: list[ToolCallReady] = []
        for slot in sorted(self._slots):
            ready.extend(self._flush(slot))
        return ready

    def _flush(self, slot: int) -> list[ToolCallReady]:
        if slot in self._emitted:
            return []
        self._emitted.add(slot)
        entry = self._slots[slot]
        return [ToolCallReady(entry["id"], entry["name"], entry["arguments"], slot)]


class OpenAICompatModelClient(ModelClient):
    """Model client using the OpenAI SDK.

    Works with OpenAI and any OpenAI-compatible endpoint.
    Includes exponential backoff retry for transient errors.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        *,
        max_retries: int = 3,
        base_delay: float = 1.0,
        include_usage: bool = True,
    ) -> None:
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._include_usage = include_usage

    async def _retry_call(
        self,
        coro_factory: Callable[[], Coroutine[Any, Any, T]],
        *,
        context: str = "",
    ) -> T:
        """Execute an async call with exponential backoff retry.

        Retries on: APIConnectionError, APITimeoutError, RateLimitError.
        Non-retryable API errors are wrapped in LLMError.
        """
        for attempt in range(self._max_retries + 1):
            try:
                return await coro_factory()
            except _RETRYABLE as e:
                if attempt == self._max_retries:
                    raise LLMError(
                        f"LLM call failed after {self._max_retries + 1} attempts: {e}"
                    ) from e
                delay = self._base_delay * (2**attempt) + random.uniform(0, 0.5)
                logger.warning(
                    "llm_retry",
                    attempt=attempt + 1,
                    max_retries=self._max_retries,
                    delay=round(delay, 2),
                    error=str(e),
                    context=context,
                )
                await asyncio.sleep(delay)
            except APIStatusError as e:
                raise LLMError(
                    f"LLM API error: {e.status_code} {e.message}"
                ) from e
        # Unreachable, but satisfies type checker
        raise LLMError("Retry loop exhausted")  # pragma: no cover

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float | None = None,
    ) -> str:
        """Send messages and return the complete response content."""
        logger.debug("chat_request", model=model, message_count=len(messages))
        response = await self._retry_call(
            lambda: self._client.chat.completions.create(
                model=model,
                messages=messages,
                **({"temperature": temperature} if temperature is not None else {}),
            ),
            context="chat",
        )
        content = _first_choice(response, context="chat").message.content or ""
        logger.debug("chat_response", chars=len(content))
        return content

    async def chat_stream_with_tools(
        self,
        messages: list[dict[str, Any]],
        model: str,
        *,
        tools: list[dict] | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream LLM response, yielding content deltas, tool calls and usage."""
        logger.debug(
            "chat_stream_with_tools_request",
            model=model,
            message_count=len(messages),
            tool_count=len(tools) if tools else 0,
        )
        stream = await self._retry_call(
            lambda: self._client.chat.completions.create(
                model=model,
                messages=messages,
                tools=tools if tools else NOT_GIVEN,
                stream=True,
                stream_options={"include_usage": True} if self._include_usage else NOT_GIVEN,
                **({"temperature": temperature} if temperature is not None else {}),
            ),
            context="chat_stream_with_tools",
        )

        assembler = _ToolCallAssembler()
        try:
            async for chunk in stream:
                usage = getattr(chunk, "usage", None)
                if usage is not None and isinstance(getattr(usage, "prompt_tokens", None), int):
                    yield UsageReport(usage.prompt_tokens, usage.completion_tokens or 0)

                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta

                if delta.content:
                    yield ContentDelta(text=delta.content)

                if delta.tool_calls:
                    for tc_delta in delta.tool_calls:
                        for ready in assembler.feed(tc_delta):
                            yield ready
        except _RETRYABLE as e:
            raise LLMError(f"LLM stream interrupted: {e}") from e
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                await close()

        for ready in assembler.finish():
            yield ready
