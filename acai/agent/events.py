from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar


@dataclass(frozen=True)
class AgentStart:
    """A turn began."""

    kind: ClassVar[str] = "agent-start"


@dataclass(frozen=True)
class StepStart:
    kind: ClassVar[str] = "step-start"

    step: int


@dataclass(frozen=True)
class MessageStart:
    kind: ClassVar[str] = "message-start"


@dataclass(frozen=True)
class MessageDelta:
    """A chunk of assistant text."""

    kind: ClassVar[str] = "message"

    content: str


@dataclass(frozen=True)
class MessageEnd:
    kind: ClassVar[str] = "message-end"

    content: str


@dataclass(frozen=True)
class ToolCallStart:
    kind: ClassVar[str] = "tool-call-start"

    tool_call_id: str
    tool_name: str
    arguments: str


@dataclass(frozen=True)
class ToolCallUpdate:
    kind: ClassVar[str] = "tool-call-update"

    tool_call_id: str
    tool_name: str
    message: str


@dataclass(frozen=True)
class ToolCallEnd:
    kind: ClassVar[str] = "tool-call-end"

    tool_call_id: str
    tool_name: str
    result: str
    truncated: bool = False


@dataclass(frozen=True)
class ToolCallError:
    kind: ClassVar[str] = "tool-call-error"

    tool_call_id: str
    tool_name: str
    error: str
    code: str = "TOOL_FAILED"


@dataclass(frozen=True)
class AgentFailure:
    """The model layer failed; the turn ends. Never used for tool failures."""

    kind: ClassVar[str] = "agent-error"

    message: str
    code: str = "LLM_ERROR"


@dataclass(frozen=True)
class AgentStop:
    kind: ClassVar[str] = "agent-stop"

    steps: int
    cancelled: bool = False


AgentEvent = (
    AgentStart
    | StepStart
    | MessageStart
    | MessageDelta
    | MessageEnd
    | ToolCallStart
    | ToolCallUpdate
    | ToolCallEnd
    | ToolCallError
    | AgentFailure
    | AgentStop
)

ToolCallEvent = ToolCallStart | ToolCallUpdate | ToolCallEnd | ToolCallError
