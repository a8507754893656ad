from __future__ import annotations

from acai.config.settings import ToolSettings
from acai.sandbox.executor import SandboxedExecutor
from acai.security.command_validator import CommandValidator
from acai.tools.builtins.bash import BashTool
from acai.tools.builtins.code_interpreter import CodeInterpreterTool
from acai.tools.builtins.read_file import ReadFileTool
from acai.tools.builtins.write_file import WriteFileTool
from acai.tools.registry import ToolRegistry


def register_builtins(
    registry: ToolRegistry,
    tool_settings: ToolSettings,
    *,
    executor: SandboxedExecutor | None = None,
) -> None:
    """Register all built-in tools with the registry.

    The command validator is built once here so every shell-running tool
    shares the same allow-list and pipe policy.
    """
    executor = executor or SandboxedExecutor(tool_settings.max_buffer_bytes)
    validator = CommandValidator(
        tool_settings.allowed_commands, pipe_policy=tool_settings.pipe_policy
    )

    registry.register(ReadFileTool())
    registry.register(WriteFileTool())
    registry.register(
        BashTool(executor, validator, default_timeout_ms=tool_settings.bash_timeout_ms)
    )
    registry.register(
        CodeInterpreterTool(
            executor,
            default_timeout_s=tool_settings.code_timeout_s,
            max_timeout_s=tool_settings.code_timeout_max_s,
        )
    )
