from __future__ import annotations

import socket
from typing import List

import pytest
import requests

from src.copilot.models.exceptions import AiRequestFatalError
from src.copilot.models.retry import ErrorKind, RetryState
from src.copilot.services.retry_policy import RetryPolicy, classify_exception, classify_status
from tests.conftest import FakeResponse


def _no_jitter(low: float, high: float) -> float:
    return 0.0


@pytest.mark.parametrize(
    ("status_code", "expected"),
    [
        (400, ErrorKind.FATAL),
        (401, ErrorKind.FATAL),
        (404, ErrorKind.FATAL),
        (429, ErrorKind.RETRIABLE),
        (500, ErrorKind.RETRIABLE),
        (503, ErrorKind.RETRIABLE),
    ],
)
def test_classify_status(status_code: int, expected: ErrorKind) -> None:
    assert classify_status(status_code) is expected


def test_classify_exception_covers_transport_http_and_unknown_errors() -> None:
    rate_limited = requests.exceptions.HTTPError("429", response=FakeResponse(status_code=429))
    bad_request = requests.exceptions.HTTPError("400", response=FakeResponse(status_code=400))

    assert classify_exception(requests.exceptions.ConnectionError("reset")) is ErrorKind.RETRIABLE
    assert classify_exception(requests.exceptions.ReadTimeout("slow")) is ErrorKind.RETRIABLE
    assert classify_exception(socket.gaierror("dns")) is ErrorKind.RETRIABLE
    assert classify_exception(TimeoutError()) is ErrorKind.RETRIABLE
    assert classify_exception(rate_limited) is ErrorKind.RETRIABLE
    assert classify_exception(bad_request) is ErrorKind.FATAL
    assert classify_exception(AiRequestFatalError("no key")) is ErrorKind.FATAL
    assert classify_exception(RuntimeError("weird")) is ErrorKind.UNKNOWN


def test_delay_grows_exponentially_and_is_capped() -> None:
    policy = RetryPolicy(initial_delay=1.0, max_delay=10.0, multiplier=2.0, random_source=_no_jitter)

    assert [policy.delay_for(attempt) for attempt in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


def test_delay_adds_bounded_jitter() -> None:
    calls: List[tuple] = []

    def _uniform(low: float, high: float) -> float:
        calls.append((low, high))
        return high

    policy = RetryPolicy(initial_delay=1.0, jitter_max=0.5, random_source=_uniform)

    assert policy.delay_for(0) == pytest.approx(1.5)
    assert calls == [(0, 0.5)]


def test_fatal_decision_never_retries_or_counts() -> None:
    policy = RetryPolicy(random_source=_no_jitter)
    state = policy.initial_state()

    decision = policy.decide(ErrorKind.FATAL, state)

    assert decision.retry is False
    assert decision.state == state


def test_retriable_and_unknown_share_the_retry_budget() -> None:
    policy = RetryPolicy(max_retries=3, random_source=_no_jitter)
    state = policy.initial_state()
    delays: List[float] = []

    for kind in (ErrorKind.RETRIABLE, ErrorKind.UNKNOWN, ErrorKind.RETRIABLE):
        decision = policy.decide(kind, state)
        assert decision.retry is True
        delays.append(decision.delay)
        state = decision.state

    assert state == RetryState(attempts_remaining=0, current_attempt=3)
    assert delays == [2.0, 4.0, 8.0]
    assert policy.decide(ErrorKind.RETRIABLE, state).retry is False


def test_parse_and_budget_kinds_are_not_retried() -> None:
    policy = RetryPolicy()
    state = policy.initial_state()

    assert policy.decide(ErrorKind.PARSE_IGNORABLE, state).retry is False
    assert policy.decide(ErrorKind.BUDGET_EXCEEDED, state).retry is False


def test_negative_retry_count_is_rejected() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_retries=-1)


def test_call_with_retries_recovers_after_transient_failures() -> None:
    policy = RetryPolicy(max_retries=2, initial_delay=0.5, random_source=_no_jitter)
    sleeps: List[float] = []
    attempts: List[int] = []

    def _fetch_schema() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise requests.exceptions.ConnectionError("connection refused")
        return "schema"

    result = policy.call_with_retries(_fetch_schema, operation_name="schema fetch", sleep=sleeps.append)

    assert result == "schema"
    assert len(attempts) == 3
    assert sleeps == [1.0, 2.0]


def test_call_with_retries_raises_fatal_errors_immediately() -> None:
    policy = RetryPolicy(random_source=_no_jitter)
    sleeps: List[float] = []
    error = requests.exceptions.HTTPError("forbidden", response=FakeResponse(status_code=403))

    def _operation() -> None:
        raise error

    with pytest.raises(requests.exceptions.HTTPError) as exc_info:
        policy.call_with_retries(_operation, sleep=sleeps.append)

    assert exc_info.value is error
    assert sleeps == []


def test_call_with_retries_gives_up_after_ceiling() -> None:
    policy = RetryPolicy(max_retries=3, random_source=_no_jitter)
    attempts: List[int] = []

    def _operation() -> None:
        attempts.append(1)
        raise TimeoutError("timed out")

    with pytest.raises(TimeoutError):
        policy.call_with_retries(_operation, sleep=lambda delay: None)

    assert len(attempts) == 4
