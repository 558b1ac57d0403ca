"""Exponential backoff shared by every call site that talks to a remote service."""
from __future__ import annotations

import logging
import random
import socket
import time
from typing import Callable, Optional, TypeVar

import requests

from src.copilot.config import RETRY_CONFIG
from src.copilot.models.retry import ErrorKind, RetryDecision, RetryState

T = TypeVar("T")

logger = logging.getLogger(__name__)

_CONNECTION_INDICATORS = (
    "connection reset",
    "connection aborted",
    "connection refused",
    "temporary failure in name resolution",
    "network unreachable",
    "connection closed",
    "dns failure",
    "timed out",
    "timeout",
)


def classify_status(status_code: int) -> ErrorKind:
    """
    Classify an HTTP status returned when opening a stream.

    Args:
        status_code: The response status.

    Returns:
        FATAL for client errors other than 429, RETRIABLE for everything else
        that is not a success.
    """
    if 400 <= status_code < 500 and status_code != 429:
        return ErrorKind.FATAL
    return ErrorKind.RETRIABLE


def classify_exception(exc: BaseException) -> ErrorKind:
    """
    Classify an exception raised while setting up or reading a stream.

    Transport-level problems (DNS, connection resets, timeouts) are RETRIABLE,
    HTTP errors are classified by status, anything else is UNKNOWN.
    """
    kind = getattr(exc, "kind", None)
    if isinstance(kind, ErrorKind):
        return kind

    if isinstance(exc, requests.exceptions.HTTPError):
        status_code = getattr(getattr(exc, "response", None), "status_code", None)
        if isinstance(status_code, int):
            return classify_status(status_code)
        return ErrorKind.RETRIABLE

    retriable_types = (
        requests.exceptions.Timeout,
        requests.exceptions.ConnectionError,
        requests.exceptions.ChunkedEncodingError,
        socket.gaierror,
        socket.timeout,
        ConnectionError,
        TimeoutError,
    )
    if isinstance(exc, retriable_types):
        return ErrorKind.RETRIABLE

    message = str(exc).lower()
    if any(indicator in message for indicator in _CONNECTION_INDICATORS):
        return ErrorKind.RETRIABLE
    return ErrorKind.UNKNOWN


class RetryPolicy:
    """
    Pure backoff policy: computes delays and retry/abort decisions.

    delay(attempt) = min(max_delay, initial_delay * multiplier ** attempt) + uniform(0, jitter_max)
    """

    def __init__(
        self,
        max_retries: int = RETRY_CONFIG["max_retries"],
        initial_delay: float = RETRY_CONFIG["initial_delay"],
        max_delay: float = RETRY_CONFIG["max_delay"],
        multiplier: float = RETRY_CONFIG["multiplier"],
        jitter_max: float = RETRY_CONFIG["jitter_max"],
        random_source: Optional[Callable[[float, float], float]] = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter_max = jitter_max
        self._uniform = random_source or random.uniform

    def initial_state(self) -> RetryState:
        return RetryState(attempts_remaining=self.max_retries, current_attempt=0)

    def delay_for(self, attempt: int) -> float:
        base = min(self.max_delay, self.initial_delay * (self.multiplier ** attempt))
        jitter = self._uniform(0, self.jitter_max) if self.jitter_max > 0 else 0.0
        return base + jitter

    def decide(self, kind: ErrorKind, state: RetryState) -> RetryDecision:
        """
        Decide whether a failure should be retried.

        Args:
            kind: Classification of the failure.
            state: Retry bookkeeping before this failure.

        Returns:
            The decision, carrying the updated state. The attempt counter only
            moves for RETRIABLE and UNKNOWN failures that are retried.
        """
        if kind not in (ErrorKind.RETRIABLE, ErrorKind.UNKNOWN):
            return RetryDecision(retry=False, delay=0.0, state=state)

        if state.attempts_remaining <= 0:
            return RetryDecision(retry=False, delay=0.0, state=state)

        next_state = RetryState(
            attempts_remaining=state.attempts_remaining - 1,
            current_attempt=state.current_attempt + 1,
        )
        return RetryDecision(
            retry=True,
            delay=self.delay_for(next_state.current_attempt),
            state=next_state,
        )

    def call_with_retries(
        self,
        operation: Callable[[], T],
        *,
        operation_name: str = "operation",
        classify: Callable[[BaseException], ErrorKind] = classify_exception,
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """
        Execute a non-streaming operation under this policy.

        Args:
            operation: Callable performing the remote request.
            operation_name: Human-readable identifier for logging.
            classify: Maps a raised exception to an ErrorKind.
            sleep: Backoff wait, injectable for tests.

        Returns:
            The operation's result.

        Raises:
            The last exception raised by the operation once it is fatal or
            retries are exhausted.
        """
        state = self.initial_state()
        while True:
            try:
                result = operation()
            except Exception as exc:  # noqa: BLE001 - classification occurs below
                decision = self.decide(classify(exc), state)
                if not decision.retry:
                    logger.error(
                        "%s failed after %d attempts: %s",
                        operation_name,
                        state.current_attempt + 1,
                        exc,
                    )
                    raise
                state = decision.state
                logger.warning(
                    "%s failed (%s). Retrying in %.2fs (%d attempts remaining).",
                    operation_name,
                    exc,
                    decision.delay,
                    state.attempts_remaining,
                )
                sleep(decision.delay)
                continue

            logger.info("%s succeeded on attempt %d.", operation_name, state.current_attempt + 1)
            return result
