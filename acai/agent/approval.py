from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

import structlog

from acai.infra.cancellation import CancellationSignal

logger = structlog.get_logger()


class ApprovalChoice(StrEnum):
    accept = "accept"
    accept_all = "accept_all"
    reject = "reject"


class ApprovalMode(StrEnum):
    normal = "normal"
    auto_accepting = "auto_accepting"


@dataclass(frozen=True)
class ApprovalDecision:
    choice: ApprovalChoice
    reason: str = ""

    @property
    def approved(self) -> bool:
        return self.choice != ApprovalChoice.reject

    @classmethod
    def accept(cls) -> ApprovalDecision:
        return cls(ApprovalChoice.accept)

    @classmethod
    def reject(cls, reason: str) -> ApprovalDecision:
        return cls(ApprovalChoice.reject, reason)


class ApprovalState:
    """Session-scoped approval mode.

    The only transition is normal -> auto_accepting, made when the human picks
    "accept all". It is never reset within a session.
    """

    def __init__(self) -> None:
        self._mode = ApprovalMode.normal

    @property
    def mode(self) -> ApprovalMode:
        return self._mode

    @property
    def auto_accepting(self) -> bool:
        return self._mode == ApprovalMode.auto_accepting

    def enable_auto_accept(self) -> None:
        if self._mode == ApprovalMode.normal:
            self._mode = ApprovalMode.auto_accepting
            logger.info("approval_auto_accept_enabled")


class Prompter(Protocol):
    """Interactive surface that asks the human."""

    async def choose(self, description: str) -> ApprovalChoice: ...

    async def ask_reason(self) -> str: ...


def rejection_text(decision: ApprovalDecision, subject: str = "command") -> str:
    """Tool result text for a rejected action, shown to the model."""
    reason = decision.reason.strip() or "No reason provided"
    return f"The user rejected this {subject}. Reason: {reason}"


class ApprovalGate:
    """Asks a Prompter to approve mutating actions, one prompt at a time.

    Concurrent tool calls queue on a lock so only one prompt is on screen.
    The first prompt of a batch (lock free on arrival) is preceded by a short
    delay. Cancelling the turn abandons the prompt as an implicit reject.
    """

    def __init__(self, prompter: Prompter, *, first_prompt_delay_s: float = 0.15) -> None:
        self._prompter = prompter
        self._first_prompt_delay_s = first_prompt_delay_s
        self._lock = asyncio.Lock()

    async def decide(
        self,
        description: str,
        state: ApprovalState,
        cancel: CancellationSignal | None = None,
    ) -> ApprovalDecision:
        if state.auto_accepting:
            return ApprovalDecision.accept()
        if cancel is not None and cancel.cancelled:
            return ApprovalDecision.reject(cancel.reason)

        first_of_batch = not self._lock.locked()
        async with self._lock:
            # Another prompt in the queue may have switched to auto-accept.
            if state.auto_accepting:
                return ApprovalDecision.accept()
            if first_of_batch and self._first_prompt_delay_s > 0:
                await asyncio.sleep(self._first_prompt_delay_s)

            decision = await self._prompt_until_cancelled(description, cancel)
            if decision is None:
                logger.info("approval_abandoned", description=description[:200])
                return ApprovalDecision.reject(cancel.reason if cancel else "cancelled")

            if decision.choice == ApprovalChoice.accept_all:
                state.enable_auto_accept()
            logger.info("approval_decided", choice=decision.choice.value)
            return decision

    async def _ask(self, description: str) -> ApprovalDecision:
        choice = await self._prompter.choose(description)
        if choice == ApprovalChoice.reject:
            return ApprovalDecision.reject(await self._prompter.ask_reason())
        return ApprovalDecision(choice)

    async def _prompt_until_cancelled(
        self, description: str, cancel: CancellationSignal | None
    ) -> ApprovalDecision | None:
        if cancel is None:
            return await self._ask(description)

        prompt_task = asyncio.ensure_future(self._ask(description))
        cancel_task = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({prompt_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
            if prompt_task.done():
                return prompt_task.result()
            return None
        finally:
            for task in (prompt_task, cancel_task):
                if not task.done():
                    task.cancel()
