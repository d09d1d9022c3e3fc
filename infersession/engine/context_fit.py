"""Fit prompt tokens into a bounded context window.

System tokens are always kept in full. User tokens are truncatable and keep
their tail, so the most recent content survives.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FitResult:
    tokens: list[int]
    reserve: int
    budget: int
    dropped: int = 0

    @property
    def truncated(self) -> bool:
        return self.dropped > 0


def _tail(tokens: Sequence[int], n: int) -> list[int]:
    if n <= 0:
        return []
    return list(tokens[-n:])


def fit_chat_prompt(
    context_size: int,
    system_tokens: Sequence[int],
    user_tokens: Sequence[int],
    max_new_tokens: int,
    *,
    max_user_tokens: int | None = None,
) -> FitResult:
    """Fit `system ++ user` so that `max_new_tokens` stay free for generation.

    Note: the result can still exceed `context_size` when the system segment
    alone does not fit; the session reports that as a full context.
    """
    if context_size <= 0:
        raise ValueError(f"context_size must be > 0, got {context_size}")

    user = list(user_tokens)
    dropped = 0

    if max_user_tokens is not None and len(user) > max_user_tokens:
        dropped += len(user) - max_user_tokens
        user = _tail(user, max_user_tokens)
        logger.info("user segment capped to max_user_tokens=%d", max_user_tokens)

    reserve = min(max_new_tokens, context_size - 1)
    prompt_budget = max(1, context_size - reserve)
    user_budget = max(0, prompt_budget - len(system_tokens))

    if len(user) > user_budget:
        dropped += len(user) - user_budget
        user = _tail(user, user_budget)
        logger.info("user segment trimmed to %d tokens to fit n_ctx=%d (reserved %d)", len(user), context_size, reserve)

    return FitResult(tokens=list(system_tokens) + user, reserve=reserve, budget=prompt_budget, dropped=dropped)


def fit_completion_prompt(context_size: int, tokens: Sequence[int], max_new_tokens: int) -> FitResult:
    """Single-string mode: keep the tail of the whole prompt."""
    if context_size <= 0:
        raise ValueError(f"context_size must be > 0, got {context_size}")

    budget = max(1, context_size - max_new_tokens)
    out = list(tokens)
    dropped = 0
    if len(out) > budget:
        dropped = len(out) - budget
        out = _tail(out, budget)
        logger.info("prefill truncated to %d tokens to fit n_ctx=%d with %d reserved", budget, context_size, max_new_tokens)

    return FitResult(tokens=out, reserve=min(max_new_tokens, context_size - 1), budget=budget, dropped=dropped)
