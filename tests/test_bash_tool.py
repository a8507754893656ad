"""BashTool tests: validation gates, approval, execution results.

Validation failures must never reach the executor; those tests use a
recording fake. Execution tests run a real shell.
"""

from __future__ import annotations

import json
import shutil
import sys

import pytest

from acai.agent.approval import ApprovalChoice, ApprovalGate
from acai.sandbox.executor import ExecResult, SandboxedExecutor
from acai.security.command_validator import DANGEROUS_PATTERNS_MESSAGE, CommandValidator
from acai.tools.base import ToolDone, ToolFailed, ToolOk, ToolProgress
from acai.tools.builtins.bash import BashTool, format_exec_output
from acai.tools.context import ToolSession

ALLOWED = ("ls", "cat", "rg", "grep", "echo", "rm", "mkdir", "sleep", "sh", "pwd")


class RecordingExecutor:
    def __init__(self, result: ExecResult | None = None) -> None:
        self.calls: list[tuple[str, dict]] = []
        self._result = result or ExecResult(stdout="ok\n", stderr="", exit_code=0)

    async def run_shell(self, command, **kwargs):
        self.calls.append((command, kwargs))
        return self._result


class ScriptedPrompter:
    def __init__(self, choice: ApprovalChoice, reason: str = "") -> None:
        self.choice = choice
        self.reason = reason
        self.asked: list[str] = []

    async def choose(self, description: str) -> ApprovalChoice:
        self.asked.append(description)
        return self.choice

    async def ask_reason(self) -> str:
        return self.reason


@pytest.fixture()
def validator():
    return CommandValidator(ALLOWED)


@pytest.fixture()
def fake_executor():
    return RecordingExecutor()


@pytest.fixture()
def fake_tool(fake_executor, validator):
    return BashTool(fake_executor, validator)


async def _execute(tool, args: dict, context):
    steps = [step async for step in tool.execute(tool.parse_arguments(json.dumps(args)), context)]
    assert isinstance(steps[-1], ToolDone)
    return steps, steps[-1].outcome


class TestValidationGates:
    @pytest.mark.asyncio()
    async def test_chained_command_never_runs(self, fake_tool, fake_executor, context):
        steps, outcome = await _execute(fake_tool, {"command": "rm -rf / ; echo pwned"}, context)
        assert outcome == ToolFailed(f"Command not allowed: {DANGEROUS_PATTERNS_MESSAGE}", code="COMMAND_DENIED")
        assert len(steps) == 1
        assert fake_executor.calls == []

    @pytest.mark.asyncio()
    async def test_unlisted_program(self, fake_tool, fake_executor, context):
        _, outcome = await _execute(fake_tool, {"command": "curl example.com"}, context)
        assert outcome.code == "COMMAND_DENIED"
        assert outcome.reason == (
            "Command not allowed: 'curl' is not in the allow-list. "
            f"Allowed commands: {', '.join(ALLOWED)}"
        )
        assert outcome.reason.count("not allowed") == 1
        assert fake_executor.calls == []

    @pytest.mark.asyncio()
    async def test_path_argument_outside(self, fake_tool, fake_executor, context):
        _, outcome = await _execute(fake_tool, {"command": "cat /etc/passwd"}, context)
        assert outcome.code == "ACCESS_DENIED"
        assert "resolves outside the project directory" in outcome.reason
        assert fake_executor.calls == []

    @pytest.mark.asyncio()
    async def test_cwd_outside(self, fake_tool, fake_executor, context, workspace):
        _, outcome = await _execute(fake_tool, {"command": "ls", "cwd": "/"}, context)
        assert outcome.code == "ACCESS_DENIED"
        assert outcome.reason == (
            f"Working directory must be within the allowed directories: {workspace}"
        )
        assert fake_executor.calls == []

    @pytest.mark.asyncio()
    async def test_cwd_missing(self, fake_tool, context):
        _, outcome = await _execute(fake_tool, {"command": "ls", "cwd": "README.md"}, context)
        assert outcome.code == "NOT_FOUND"

    @pytest.mark.asyncio()
    async def test_cwd_subdirectory_passed_through(self, fake_tool, fake_executor, context, workspace):
        _, outcome = await _execute(fake_tool, {"command": "ls", "cwd": "src", "timeout": 1500}, context)
        assert isinstance(outcome, ToolOk)
        command, kwargs = fake_executor.calls[0]
        assert command == "ls"
        assert kwargs["cwd"] == workspace / "src"
        assert kwargs["timeout_s"] == 1.5
        assert kwargs["cancel"] is context.cancel


class TestApproval:
    @pytest.mark.asyncio()
    async def test_rejected_mutating_command(self, fake_executor, validator, workspace, cancel):
        prompter = ScriptedPrompter(ApprovalChoice.reject, "use git clean instead")
        session = ToolSession(workspace, approval_gate=ApprovalGate(prompter, first_prompt_delay_s=0))
        tool = BashTool(fake_executor, validator)

        _, outcome = await _execute(tool, {"command": "rm README.md"}, session.context_for("c1", cancel))

        assert outcome == ToolFailed(
            "The user rejected this command. Reason: use git clean instead", code="REJECTED"
        )
        assert fake_executor.calls == []
        assert prompter.asked[0].startswith("Run command: rm README.md")

    @pytest.mark.asyncio()
    async def test_read_only_command_not_prompted(self, fake_executor, validator, workspace, cancel):
        prompter = ScriptedPrompter(ApprovalChoice.reject)
        session = ToolSession(workspace, approval_gate=ApprovalGate(prompter, first_prompt_delay_s=0))
        tool = BashTool(fake_executor, validator)

        _, outcome = await _execute(tool, {"command": "ls"}, session.context_for("c1", cancel))

        assert isinstance(outcome, ToolOk)
        assert prompter.asked == []

    @pytest.mark.asyncio()
    async def test_approved_mutating_command_runs(self, fake_executor, validator, workspace, cancel):
        prompter = ScriptedPrompter(ApprovalChoice.accept)
        session = ToolSession(workspace, approval_gate=ApprovalGate(prompter, first_prompt_delay_s=0))
        tool = BashTool(fake_executor, validator)

        _, outcome = await _execute(tool, {"command": "mkdir build"}, session.context_for("c1", cancel))

        assert isinstance(outcome, ToolOk)
        assert [c for c, _ in fake_executor.calls] == ["mkdir build"]


class TestExecutionResults:
    @pytest.mark.asyncio()
    async def test_timeout_message(self, validator, context):
        tool = BashTool(RecordingExecutor(ExecResult("", "", None, signal=9, timed_out=True)), validator)
        _, outcome = await _execute(tool, {"command": "sleep 100", "timeout": 200}, context)
        assert outcome == ToolFailed(
            "Command timed out after 200ms. The process may be waiting for input.", code="TIMEOUT"
        )

    @pytest.mark.asyncio()
    async def test_cancelled_message(self, validator, context):
        tool = BashTool(RecordingExecutor(ExecResult("", "", None, signal=9, cancelled=True)), validator)
        _, outcome = await _execute(tool, {"command": "sleep 100"}, context)
        assert outcome == ToolFailed("Command was cancelled.", code="CANCELLED")

    @pytest.mark.asyncio()
    async def test_spawn_failure(self, validator, context):
        result = ExecResult("", "", None, error="Failed to start process: no such file")
        tool = BashTool(RecordingExecutor(result), validator)
        _, outcome = await _execute(tool, {"command": "ls"}, context)
        assert outcome == ToolFailed("Failed to start process: no such file", code="SPAWN_FAILED")

    @pytest.mark.asyncio()
    async def test_progress_before_result(self, fake_tool, context):
        steps, _ = await _execute(fake_tool, {"command": "ls"}, context)
        assert steps[0] == ToolProgress("$ ls")


class TestFormatExecOutput:
    def test_success(self):
        assert format_exec_output(ExecResult("a\n", "", 0)) == "a\n"

    def test_non_zero_exit_appended(self):
        assert format_exec_output(ExecResult("", "boom", 2)) == "boom\n(exit code 2)"

    def test_empty_output(self):
        assert format_exec_output(ExecResult("", "", 0)) == "(no output)"

    def test_exit_code_only(self):
        assert format_exec_output(ExecResult("", "", 1)) == "(exit code 1)"

    def test_buffer_cut_noted(self):
        text = format_exec_output(ExecResult("x" * 10, "", 0, output_truncated=True))
        assert text.endswith("[output exceeded the capture buffer and was cut]")


@pytest.mark.slow
@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell required")
class TestRealShell:
    @pytest.fixture()
    def tool(self, validator):
        return BashTool(SandboxedExecutor(), validator)

    @pytest.mark.asyncio()
    async def test_echo(self, tool, context):
        _, outcome = await _execute(tool, {"command": "echo hello"}, context)
        assert outcome == ToolOk("hello\n")

    @pytest.mark.asyncio()
    @pytest.mark.skipif(shutil.which("rg") is None, reason="ripgrep not installed")
    async def test_rg_finds_todo(self, tool, context):
        _, outcome = await _execute(tool, {"command": "rg TODO src"}, context)
        assert isinstance(outcome, ToolOk)
        assert "TODO: wire up" in outcome.text

    @pytest.mark.asyncio()
    async def test_exit_code_reported(self, tool, context):
        _, outcome = await _execute(tool, {"command": "ls does-not-exist"}, context)
        assert isinstance(outcome, ToolOk)
        assert "(exit code " in outcome.text

    @pytest.mark.asyncio()
    async def test_real_timeout(self, tool, context):
        _, outcome = await _execute(tool, {"command": "sleep 5", "timeout": 200}, context)
        assert outcome.code == "TIMEOUT"
