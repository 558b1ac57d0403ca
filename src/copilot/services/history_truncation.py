"""Character-count token estimates and budget-aware history truncation."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, TypeVar

from src.copilot.config import (
    CHARS_PER_TOKEN,
    DEFAULT_MODEL_TOKEN_LIMIT,
    MIN_HISTORY_TOKENS,
    MODEL_TOKEN_LIMITS,
    RESPONSE_RESERVE,
)

T = TypeVar("T")

logger = logging.getLogger(__name__)


def _content_of(message: Any) -> str:
    if isinstance(message, Mapping):
        content = message.get("content")
    else:
        content = getattr(message, "content", None)
    return content if isinstance(content, str) else ""


class HistoryTruncator:
    """
    Fits conversation history into a model's context window.

    Tokens are estimated as ``characters / chars_per_token``. A fixed number
    of tokens is reserved for the response; whatever the system prompt and
    extra context leave over is the budget for history.
    """

    def __init__(
        self,
        chars_per_token: float = CHARS_PER_TOKEN,
        response_reserve: int = RESPONSE_RESERVE,
        model_limits: Optional[Dict[str, int]] = None,
        default_limit: int = DEFAULT_MODEL_TOKEN_LIMIT,
        min_history_tokens: int = MIN_HISTORY_TOKENS,
    ) -> None:
        self.chars_per_token = chars_per_token
        self.response_reserve = response_reserve
        self.model_limits = dict(MODEL_TOKEN_LIMITS if model_limits is None else model_limits)
        self.default_limit = default_limit
        self.min_history_tokens = min_history_tokens

    def estimate_tokens(self, text: str) -> float:
        return len(text or "") / self.chars_per_token

    def estimate_message_tokens(self, messages: Sequence[Any]) -> float:
        return sum(self.estimate_tokens(_content_of(message)) for message in messages)

    def get_model_token_limit(self, model_name: Optional[str]) -> int:
        """Token ceiling for a model; provider prefixes such as ``openai/`` are optional."""
        if not model_name:
            return self.default_limit
        if model_name in self.model_limits:
            return self.model_limits[model_name]
        bare_name = model_name.split("/", 1)[-1]
        return self.model_limits.get(bare_name, self.default_limit)

    def available_history_tokens(
        self,
        model_name: Optional[str],
        system_prompt_chars: int,
        extra_context_chars: int = 0,
    ) -> float:
        used_tokens = (system_prompt_chars + extra_context_chars) / self.chars_per_token
        return self.get_model_token_limit(model_name) - used_tokens - self.response_reserve

    def truncate_for_budget(
        self,
        history: Sequence[T],
        model_name: Optional[str],
        system_prompt_chars: int,
        extra_context_chars: int = 0,
    ) -> List[T]:
        """
        Keep the most recent messages that fit the history budget.

        Args:
            history: Messages ordered oldest to newest (anything with ``content``).
            model_name: Model the request is for.
            system_prompt_chars: Length of the system prompt in characters.
            extra_context_chars: Length of any extra context (code, schema) in characters.

        Returns:
            A suffix of ``history``. When not even the last message fits, the
            last message alone; an empty list only for an empty history.
        """
        if not history:
            return []

        available = self.available_history_tokens(model_name, system_prompt_chars, extra_context_chars)
        if available < self.min_history_tokens:
            logger.warning(
                "Only %.0f tokens left for history on model %s; sending the last message only.",
                available,
                model_name,
            )
            return [history[-1]]

        history_tokens = 0.0
        start_index = len(history)
        for index in range(len(history) - 1, -1, -1):
            message_tokens = self.estimate_tokens(_content_of(history[index]))
            if history_tokens + message_tokens > available:
                break
            history_tokens += message_tokens
            start_index = index

        if start_index == len(history):
            logger.warning("Last message alone exceeds the history budget of %.0f tokens.", available)
            return [history[-1]]

        if start_index > 0:
            logger.debug(
                "Truncated history from %d to %d messages (%.0f/%.0f tokens).",
                len(history),
                len(history) - start_index,
                history_tokens,
                available,
            )
        return list(history[start_index:])


def truncate_history_for_token_limit(
    history: Sequence[T],
    model_name: Optional[str],
    system_prompt_length: int,
    code_length: int = 0,
) -> List[T]:
    """Truncate ``history`` with the default estimator settings."""
    return HistoryTruncator().truncate_for_budget(history, model_name, system_prompt_length, code_length)
