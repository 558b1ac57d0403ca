"""
Custom exceptions raised by the AI streaming pipeline.

Every error that reaches a caller carries a user-presentable message so the
editor can show an actionable notice, while the raw transport failure is
kept on ``__cause__`` for operators.
"""
from __future__ import annotations

from typing import Any, Optional

from src.copilot.models.retry import ErrorKind


class AiServiceError(Exception):
    """
    Base exception for failures that originate from the AI service layer.

    Args:
        message: Human-readable description of the error.
        model: Optional model identifier associated with the failure.
        cause: Optional underlying exception that triggered the failure.
        kind: Classification that decided how the failure was handled.
        partial_text: Text already delivered before the failure; it stays valid.
    """

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        model: Optional[str] = None,
        cause: Optional[BaseException] = None,
        kind: Optional[ErrorKind] = None,
        partial_text: str = "",
    ) -> None:
        super().__init__(message)
        self.model = model
        self.partial_text = partial_text
        if kind is not None:
            self.kind = kind
        self.__cause__ = cause

    @property
    def user_message(self) -> str:
        return str(self)


class AiRequestFatalError(AiServiceError):
    """
    Raised when the service rejects the request outright (bad credentials or a
    malformed request). Never retried.
    """

    kind = ErrorKind.FATAL


class AiServiceBusyError(AiServiceError):
    """
    Raised when rate limiting or server errors persisted through every retry.
    """

    kind = ErrorKind.RETRIABLE


class AiNetworkError(AiServiceError):
    """
    Raised when an unclassified failure during stream setup persisted through
    every retry.
    """

    kind = ErrorKind.UNKNOWN


class StreamParseError(AiServiceError):
    """
    Raised for a single malformed stream event. Recovered locally: the event
    is skipped and the stream keeps going.
    """

    kind = ErrorKind.PARSE_IGNORABLE


class DanglingCommandError(ValueError):
    """
    Raised when a stream ends inside a bracket command whose ``]`` never arrived
    and the caller asked for strict handling.
    """

    def __init__(self, message: str, *, command: Optional[Any] = None) -> None:
        super().__init__(message)
        self.command = command
