from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from acai.agent.approval import ApprovalDecision, ApprovalGate, ApprovalState
from acai.infra.cancellation import CancellationSignal
from acai.security.path_guard import PathGuard

if TYPE_CHECKING:
    from acai.config.settings import Settings


@dataclass(frozen=True)
class ToolContext:
    """Runtime context injected into one tool execution by the dispatcher.

    approval_state is a shared handle owned by the session; every context of
    that session points at the same object. approval_gate is None when no
    interactive surface is attached, in which case approval is implicit.
    """

    tool_call_id: str
    working_dir: Path
    allowed_roots: tuple[Path, ...]
    path_guard: PathGuard
    cancel: CancellationSignal
    approval_state: ApprovalState
    approval_gate: ApprovalGate | None = None

    async def request_approval(self, description: str) -> ApprovalDecision:
        if self.approval_gate is None:
            return ApprovalDecision.accept()
        return await self.approval_gate.decide(description, self.approval_state, self.cancel)


class ToolSession:
    """Session-scoped source of ToolContexts.

    Holds the one piece of intentional cross-call state (ApprovalState).
    Independent sessions share nothing.
    """

    def __init__(
        self,
        working_dir: Path,
        allowed_roots: Iterable[Path] | None = None,
        *,
        approval_gate: ApprovalGate | None = None,
        approval_state: ApprovalState | None = None,
    ) -> None:
        self.working_dir = working_dir.resolve()
        roots = tuple(allowed_roots) if allowed_roots is not None else (self.working_dir,)
        self.allowed_roots = roots or (self.working_dir,)
        self.path_guard = PathGuard(self.allowed_roots)
        self.approval_gate = approval_gate
        self.approval_state = approval_state or ApprovalState()

    @classmethod
    def from_settings(
        cls, settings: Settings, *, approval_gate: ApprovalGate | None = None
    ) -> ToolSession:
        return cls(
            settings.workspace_dir,
            settings.allowed_roots(),
            approval_gate=approval_gate,
        )

    def context_for(self, tool_call_id: str, cancel: CancellationSignal) -> ToolContext:
        return ToolContext(
            tool_call_id=tool_call_id,
            working_dir=self.working_dir,
            allowed_roots=self.allowed_roots,
            path_guard=self.path_guard,
            cancel=cancel,
            approval_state=self.approval_state,
            approval_gate=self.approval_gate,
        )
