"""ApprovalGate tests: sticky accept-all, one prompt at a time, rejection
reasons, cancellation as implicit reject."""

from __future__ import annotations

import asyncio

import pytest

from acai.agent.approval import (
    ApprovalChoice,
    ApprovalDecision,
    ApprovalGate,
    ApprovalMode,
    rejection_text,
)
from acai.infra.cancellation import CancellationSignal


class QueuePrompter:
    """Answers prompts from a list; records how many prompts overlap."""

    def __init__(self, *choices: ApprovalChoice, reason: str = "", delay: float = 0.0) -> None:
        self._choices = list(choices)
        self._reason = reason
        self._delay = delay
        self.asked: list[str] = []
        self.active = 0
        self.max_active = 0

    async def choose(self, description: str) -> ApprovalChoice:
        self.asked.append(description)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self._delay)
            return self._choices.pop(0)
        finally:
            self.active -= 1

    async def ask_reason(self) -> str:
        return self._reason


class HangingPrompter:
    def __init__(self) -> None:
        self.cancelled = False

    async def choose(self, description: str) -> ApprovalChoice:
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return ApprovalChoice.accept

    async def ask_reason(self) -> str:
        return ""


class TestApprovalState:
    def test_starts_normal(self, approval_state):
        assert approval_state.mode == ApprovalMode.normal
        assert not approval_state.auto_accepting

    def test_auto_accept_is_sticky(self, approval_state):
        approval_state.enable_auto_accept()
        approval_state.enable_auto_accept()
        assert approval_state.mode == ApprovalMode.auto_accepting


class TestDecide:
    @pytest.mark.asyncio()
    async def test_accept(self, approval_state):
        gate = ApprovalGate(QueuePrompter(ApprovalChoice.accept), first_prompt_delay_s=0)
        decision = await gate.decide("Run command: rm x", approval_state)
        assert decision.approved
        assert not approval_state.auto_accepting

    @pytest.mark.asyncio()
    async def test_reject_with_reason(self, approval_state):
        prompter = QueuePrompter(ApprovalChoice.reject, reason="too risky")
        gate = ApprovalGate(prompter, first_prompt_delay_s=0)
        decision = await gate.decide("Run command: rm x", approval_state)
        assert decision == ApprovalDecision(ApprovalChoice.reject, "too risky")
        assert not decision.approved

    @pytest.mark.asyncio()
    async def test_accept_all_skips_later_prompts(self, approval_state):
        prompter = QueuePrompter(ApprovalChoice.accept_all)
        gate = ApprovalGate(prompter, first_prompt_delay_s=0)

        first = await gate.decide("one", approval_state)
        second = await gate.decide("two", approval_state)
        third = await gate.decide("three", approval_state)

        assert first.approved and second.approved and third.approved
        assert prompter.asked == ["one"]
        assert approval_state.auto_accepting

    @pytest.mark.asyncio()
    async def test_prompts_never_overlap(self, approval_state):
        prompter = QueuePrompter(*[ApprovalChoice.accept] * 4, delay=0.02)
        gate = ApprovalGate(prompter, first_prompt_delay_s=0)

        decisions = await asyncio.gather(*(gate.decide(f"call {i}", approval_state) for i in range(4)))

        assert all(d.approved for d in decisions)
        assert prompter.max_active == 1
        assert len(prompter.asked) == 4

    @pytest.mark.asyncio()
    async def test_accept_all_releases_queued_prompts(self, approval_state):
        prompter = QueuePrompter(ApprovalChoice.accept_all, delay=0.02)
        gate = ApprovalGate(prompter, first_prompt_delay_s=0)

        decisions = await asyncio.gather(*(gate.decide(f"call {i}", approval_state) for i in range(3)))

        assert all(d.approved for d in decisions)
        assert prompter.asked == ["call 0"]


class TestCancellation:
    @pytest.mark.asyncio()
    async def test_cancel_abandons_prompt(self, approval_state):
        prompter = HangingPrompter()
        gate = ApprovalGate(prompter, first_prompt_delay_s=0)
        signal = CancellationSignal()
        asyncio.get_running_loop().call_later(0.05, signal.cancel, "turn cancelled")

        decision = await asyncio.wait_for(gate.decide("Run command: rm x", approval_state, signal), 2)
        await asyncio.sleep(0.01)

        assert decision == ApprovalDecision.reject("turn cancelled")
        assert prompter.cancelled

    @pytest.mark.asyncio()
    async def test_already_cancelled_never_prompts(self, approval_state):
        prompter = QueuePrompter(ApprovalChoice.accept)
        gate = ApprovalGate(prompter, first_prompt_delay_s=0)
        signal = CancellationSignal()
        signal.cancel("stop")

        decision = await gate.decide("x", approval_state, signal)

        assert not decision.approved
        assert prompter.asked == []

    @pytest.mark.asyncio()
    async def test_auto_accept_wins_over_cancel(self, approval_state):
        approval_state.enable_auto_accept()
        gate = ApprovalGate(QueuePrompter(), first_prompt_delay_s=0)
        signal = CancellationSignal()
        signal.cancel()
        assert (await gate.decide("x", approval_state, signal)).approved


class TestRejectionText:
    def test_with_reason(self):
        decision = ApprovalDecision.reject("  prefer ripgrep ")
        assert rejection_text(decision) == "The user rejected this command. Reason: prefer ripgrep"

    def test_without_reason(self):
        assert rejection_text(ApprovalDecision.reject(""), "save") == (
            "The user rejected this save. Reason: No reason provided"
        )