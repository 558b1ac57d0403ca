from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    """How a failure in the streaming pipeline is handled."""

    FATAL = "fatal"
    RETRIABLE = "retriable"
    UNKNOWN = "unknown"
    PARSE_IGNORABLE = "parse_ignorable"
    BUDGET_EXCEEDED = "budget_exceeded"


@dataclass(frozen=True)
class RetryState:
    """Retry bookkeeping for one logical request, including all its retries."""

    attempts_remaining: int
    current_attempt: int = 0


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of asking the policy what to do about a failure."""

    retry: bool
    delay: float
    state: RetryState
