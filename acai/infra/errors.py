"""Custom exception hierarchy for acai.

All application-specific exceptions inherit from AcaiError, which carries an
error code. Exceptions never cross the dispatcher boundary: the dispatcher maps
them to ToolFailed outcomes and tool-call-error events.
"""

from __future__ import annotations


class AcaiError(Exception):
    """Base exception for all acai errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ConfigError(AcaiError):
    """Invalid or unreadable configuration."""

    def __init__(self, message: str, *, code: str = "CONFIG_ERROR") -> None:
        super().__init__(message, code=code)


class AgentError(AcaiError):
    """Errors in the agent runtime."""

    def __init__(self, message: str, *, code: str = "AGENT_ERROR") -> None:
        super().__init__(message, code=code)


class LLMError(AgentError):
    """Errors from LLM API calls (timeouts, rate limits, failures)."""

    def __init__(self, message: str, *, code: str = "LLM_ERROR") -> None:
        super().__init__(message, code=code)


class ToolError(AgentError):
    """Errors during tool resolution or execution."""

    def __init__(self, message: str, *, code: str = "TOOL_ERROR") -> None:
        super().__init__(message, code=code)


class NoSuchToolError(ToolError):
    """The model called a tool name that is not registered."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"No such tool: {tool_name}", code="NO_SUCH_TOOL")
        self.tool_name = tool_name


class ToolArgumentsError(ToolError):
    """Tool call arguments do not satisfy the tool's parameter schema."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_ARGS")
