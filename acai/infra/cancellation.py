from __future__ import annotations

import asyncio

import structlog

logger = structlog.get_logger()


class CancellationSignal:
    """Shared per-turn cancellation flag.

    One signal is created per conversational turn and handed to every tool
    call of that turn. cancel() is idempotent: only the first call records a
    reason and wakes waiters.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled by user") -> bool:
        """Trip the signal. Returns False when it was already tripped."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        logger.info("cancellation_signalled", reason=reason)
        return True

    async def wait(self) -> None:
        await self._event.wait()
