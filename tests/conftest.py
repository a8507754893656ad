"""Shared pytest fixtures for acai tests.

Every test that touches the filesystem gets its own workspace directory under
tmp_path; nothing writes outside it.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from acai.agent.approval import ApprovalState
from acai.config.settings import ToolSettings
from acai.infra.cancellation import CancellationSignal
from acai.tools.context import ToolContext, ToolSession


class CharCounter:
    """One token per character, so budgets are easy to reason about."""

    def count_text(self, text: str) -> int:
        return len(text)


@pytest.fixture()
def workspace(tmp_path) -> Path:
    ws = tmp_path / "workspace"
    ws.mkdir()
    (ws / "README.md").write_text("hello\n", encoding="utf-8")
    (ws / "src").mkdir()
    (ws / "src" / "main.py").write_text("# TODO: wire up\nprint('hi')\n", encoding="utf-8")
    return ws.resolve()


@pytest.fixture()
def session(workspace) -> ToolSession:
    return ToolSession(workspace)


@pytest.fixture()
def cancel() -> CancellationSignal:
    return CancellationSignal()


@pytest.fixture()
def context(session, cancel) -> ToolContext:
    return session.context_for("call_1", cancel)


@pytest.fixture()
def tool_settings() -> ToolSettings:
    return ToolSettings()


@pytest.fixture()
def char_counter() -> CharCounter:
    return CharCounter()


@pytest.fixture()
def approval_state() -> ApprovalState:
    return ApprovalState()
