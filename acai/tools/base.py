from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from acai.agent.token_budget import DEFAULT_GUIDANCE
from acai.infra.errors import ToolArgumentsError

if TYPE_CHECKING:
    from acai.tools.context import ToolContext


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation as parsed from the model stream. Consumed once."""

    id: str
    tool_name: str
    raw_arguments: str


@dataclass(frozen=True)
class ToolOk:
    text: str


@dataclass(frozen=True)
class ToolTruncated:
    """Output replaced by a budget notice; text is the notice."""

    text: str
    token_count: int
    limit: int


@dataclass(frozen=True)
class ToolFailed:
    reason: str
    code: str = "TOOL_FAILED"

    @property
    def text(self) -> str:
        return self.reason


ToolOutcome = ToolOk | ToolTruncated | ToolFailed


@dataclass(frozen=True)
class ToolProgress:
    """Intermediate status line; never shown to the model."""

    text: str


@dataclass(frozen=True)
class ToolDone:
    outcome: ToolOutcome


ToolStep = ToolProgress | ToolDone


class BaseTool(ABC):
    """Abstract base class for agent tools.

    execute() is an async iterator of steps: zero or more ToolProgress
    followed by exactly one ToolDone.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique tool name used in function calling."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description of what the tool does."""
        ...

    @property
    @abstractmethod
    def arguments_model(self) -> type[BaseModel]:
        """Pydantic model the raw arguments are validated against."""
        ...

    @property
    def parameters(self) -> dict:
        """JSON Schema describing the tool's input parameters."""
        return self.arguments_model.model_json_schema()

    @property
    def output_subject(self) -> str:
        """Noun used in the truncation notice: "Output of <subject> ..."."""
        return self.name

    @property
    def truncation_guidance(self) -> str:
        return DEFAULT_GUIDANCE

    def parse_arguments(self, raw: str) -> BaseModel:
        """Decode and validate raw JSON arguments. Raises ToolArgumentsError."""
        try:
            data: Any = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as e:
            raise ToolArgumentsError(f"Invalid JSON arguments: {e}") from e
        if not isinstance(data, dict):
            raise ToolArgumentsError(f"Expected dict arguments, got {type(data).__name__}")
        try:
            return self.arguments_model.model_validate(data)
        except ValidationError as e:
            raise ToolArgumentsError(str(e)) from e

    @abstractmethod
    def execute(self, arguments: BaseModel, context: ToolContext) -> AsyncIterator[ToolStep]:
        """Run the tool. Implementations are async generators."""
        ...
