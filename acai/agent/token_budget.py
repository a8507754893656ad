from __future__ import annotations

import math
from dataclasses import dataclass
from types import TracebackType
from typing import Literal, Protocol

import structlog

from acai.constants import MIN_TOKEN_LIMIT

logger = structlog.get_logger()

DEFAULT_GUIDANCE = "Narrow the request, for example with line ranges or a more specific search."


class TokenCounting(Protocol):
    def count_text(self, text: str) -> int: ...


class TokenCounter:
    """Token counter with tiktoken precision and chars/4 fallback.

    Binds to a specific model at construction time. Automatically
    resolves tiktoken encoding; falls back to estimate mode if
    encoding is unavailable (non-OpenAI models).

    Use as a context manager so the encoding is released deterministically.
    """

    def __init__(self, model: str) -> None:
        self._model = model
        self._encoding = None
        self._mode: Literal["exact", "estimate"] = "estimate"
        self._closed = False

        try:
            import tiktoken

            self._encoding = tiktoken.encoding_for_model(model)
            self._mode = "exact"
        except Exception:
            logger.warning("tokenizer_fallback", model=model, mode="estimate")

    @property
    def tokenizer_mode(self) -> Literal["exact", "estimate"]:
        return self._mode

    @property
    def closed(self) -> bool:
        return self._closed

    def count_text(self, text: str) -> int:
        """Count tokens for a plain text string."""
        if self._closed:
            raise RuntimeError("TokenCounter is closed")
        if not text:
            return 0
        if self._encoding is not None:
            # Tool output may legitimately contain special-token text.
            return len(self._encoding.encode(text, disallowed_special=()))
        return math.ceil(len(text) / 4)

    def close(self) -> None:
        self._encoding = None
        self._closed = True

    def __enter__(self) -> TokenCounter:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


@dataclass(frozen=True)
class BudgetedOutput:
    """Result of a budget check on one tool result."""

    text: str
    token_count: int
    was_truncated: bool
    limit: int


def truncation_notice(subject: str, token_count: int, limit: int, guidance: str) -> str:
    return (
        f"Output of {subject} ({token_count} tokens) exceeds maximum allowed "
        f"tokens ({limit}). {guidance}"
    )


def budget_output(
    text: str,
    counter: TokenCounting,
    limit: int,
    *,
    subject: str = "tool",
    guidance: str = DEFAULT_GUIDANCE,
) -> BudgetedOutput:
    """Meter text against a token ceiling.

    Over-limit text is replaced whole by a notice; it is never partially
    emitted. The ceiling is floored at MIN_TOKEN_LIMIT so the notice itself
    always fits, which makes budgeting a notice a no-op. Counting failures are
    logged and the text passes through as zero tokens.
    """
    effective_limit = max(limit, MIN_TOKEN_LIMIT)

    try:
        token_count = counter.count_text(text)
    except Exception:
        logger.exception("token_count_failed", subject=subject, chars=len(text))
        return BudgetedOutput(text=text, token_count=0, was_truncated=False, limit=effective_limit)

    if token_count <= effective_limit:
        return BudgetedOutput(
            text=text, token_count=token_count, was_truncated=False, limit=effective_limit
        )

    logger.info(
        "tool_output_over_budget",
        subject=subject,
        token_count=token_count,
        limit=effective_limit,
    )
    return BudgetedOutput(
        text=truncation_notice(subject, token_count, effective_limit, guidance),
        token_count=token_count,
        was_truncated=True,
        limit=effective_limit,
    )
