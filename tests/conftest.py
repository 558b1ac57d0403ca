from __future__ import annotations

import io
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from src.copilot.models.events import Event


class RecordingEventBus:
    """Synchronous in-memory event bus used by tests."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Callable[[Event], None]]] = {}
        self.dispatched: List[Event] = []

    def subscribe(self, event_type: str, callback: Callable[[Event], None]) -> None:
        self._subscribers.setdefault(event_type, []).append(callback)

    def dispatch(self, event: Event) -> None:
        self.dispatched.append(event)
        for callback in self._subscribers.get(event.event_type, []):
            callback(event)

    def of_type(self, event_type: str) -> List[Event]:
        return [event for event in self.dispatched if event.event_type == event_type]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Line = Union[str, BaseException]


class FakeResponse:
    """Stands in for a streamed ``requests.Response``."""

    def __init__(
        self,
        lines: Sequence[Line] = (),
        status_code: int = 200,
        content_type: str = "text/event-stream; charset=utf-8",
    ) -> None:
        self.status_code = status_code
        self.headers = CaseInsensitiveDict({"content-type": content_type})
        self.encoding: Optional[str] = "utf-8"
        self.closed = False
        self._lines = list(lines)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def iter_lines(
        self,
        chunk_size: Optional[int] = 512,
        decode_unicode: bool = False,
        delimiter: Optional[str] = None,
    ) -> Iterator[str]:
        for line in self._lines:
            if isinstance(line, BaseException):
                raise line
            yield line

    def close(self) -> None:
        self.closed = True


@dataclass
class FakeSession:
    """Returns (or raises) scripted outcomes for successive POSTs."""

    outcomes: List[Union[FakeResponse, BaseException]]
    calls: List[Dict[str, Any]] = field(default_factory=list)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"url": url, **kwargs})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class ChunkedRaw(io.BytesIO):
    """Raw body that hands out at most ``chunk`` bytes per read, like a socket."""

    def __init__(self, body: bytes, chunk: int) -> None:
        super().__init__(body)
        self.chunk = chunk

    def read(self, size: Optional[int] = -1) -> bytes:
        return super().read(self.chunk)


def streamed_response(body: bytes, chunk: int = 7, content_type: str = "text/event-stream") -> requests.Response:
    """A real ``requests.Response`` whose body is read from memory in small chunks."""
    response = requests.Response()
    response.status_code = 200
    response.headers["Content-Type"] = content_type
    response.raw = ChunkedRaw(body, chunk)
    return response


def sse_lines(*payloads: Any) -> List[str]:
    """Encode payloads as event-stream lines; dicts become JSON, strings are sent raw."""
    lines: List[str] = []
    for payload in payloads:
        data = json.dumps(payload) if isinstance(payload, dict) else payload
        lines.extend([f"data: {data}", ""])
    return lines


def delta(text: Optional[str]) -> Dict[str, Any]:
    return {"choices": [{"delta": {"content": text}}]}


@pytest.fixture
def event_bus() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
