import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import requests

from src.copilot.app.event_bus import EventBus
from src.copilot.config import STREAM_CONFIG
from src.copilot.models.chat import StreamResult
from src.copilot.models.event_types import (
    AI_STREAM_COMPLETED,
    AI_STREAM_FAILED,
    AI_STREAM_RETRYING,
)
from src.copilot.models.events import Event
from src.copilot.models.exceptions import (
    AiNetworkError,
    AiRequestFatalError,
    AiServiceBusyError,
    AiServiceError,
    StreamParseError,
)
from src.copilot.models.retry import ErrorKind, RetryState
from src.copilot.services.retry_policy import RetryPolicy, classify_exception

logger = logging.getLogger(__name__)

EVENT_STREAM_CONTENT_TYPE = "text/event-stream"
DONE_SENTINEL = "[DONE]"

FATAL_MESSAGE = "AI request failed. Please check your API key and request, then try again."
BUSY_MESSAGE = (
    "Apologies, the AI service is currently facing heavy traffic, causing delays in "
    "processing requests. Please be patient and try again later."
)
NETWORK_MESSAGE = "Network connection failed. Please check your internet connection."


def build_chat_headers(api_key: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "Accept": EVENT_STREAM_CONTENT_TYPE,
    }


def _split_sse_lines(lines: Iterable[Optional[str]]) -> Iterator[str]:
    # Chunks are split on "\n" only; "\r\n" and bare "\r" are handled here.
    for raw_line in lines:
        if raw_line is None:
            continue
        if raw_line.endswith("\r"):
            raw_line = raw_line[:-1]
        yield from raw_line.split("\r")


def iter_sse_data(lines: Iterable[Optional[str]]) -> Iterator[str]:
    """
    Group decoded event-stream lines into events and yield each event's data.

    Multiple ``data:`` lines of one event are joined with a newline. Comment
    lines and fields other than ``data`` are ignored. Only ``\\r\\n``, ``\\n``
    and ``\\r`` end a line; characters such as U+2028 stay in the payload.
    """
    data_lines: List[str] = []
    for line in _split_sse_lines(lines):
        if line == "":
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            data_lines.append(value)

    if data_lines:
        yield "\n".join(data_lines)


def extract_delta(data: str) -> str:
    """
    Pull ``choices[0].delta.content`` out of one event payload.

    Raises:
        StreamParseError: If the payload is not JSON or has a different shape.
    """
    try:
        payload = json.loads(data)
        content = payload["choices"][0]["delta"].get("content")
    except (ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
        raise StreamParseError(f"Unexpected stream event: {data[:120]!r}", cause=exc) from exc

    if content is None:
        return ""
    if not isinstance(content, str):
        raise StreamParseError(f"Unexpected delta content type: {type(content).__name__}")
    return content


class AbortHandle:
    """
    Cooperative cancellation for one stream.

    Aborting closes the live response so a blocked read returns, and wakes any
    backoff wait. Fragments are never interrupted mid-delivery.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._response: Optional[requests.Response] = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self) -> None:
        self._event.set()
        with self._lock:
            response = self._response
        if response is not None:
            try:
                response.close()
            except Exception:  # noqa: BLE001
                logger.debug("Error while closing aborted response", exc_info=True)

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True if aborted meanwhile."""
        return self._event.wait(timeout)

    def attach(self, response: Optional[requests.Response]) -> None:
        with self._lock:
            self._response = response
        if response is not None and self.aborted:
            response.close()


class StreamHandle:
    """Returned by ``StreamTransport.open``; holds the abort function and the pending result."""

    def __init__(self, future: "Future[StreamResult]", abort: AbortHandle) -> None:
        self._future = future
        self._abort = abort

    def cancel(self) -> None:
        self._abort.abort()

    @property
    def cancelled(self) -> bool:
        return self._abort.aborted

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: Optional[float] = None) -> StreamResult:
        """
        Wait for the stream to finish.

        Raises:
            AiServiceError: If the stream failed for good.
        """
        return self._future.result(timeout)


class _FragmentCallbackError(Exception):
    """Carries an exception raised by the consumer's fragment callback."""

    def __init__(self, original: BaseException) -> None:
        super().__init__(str(original))
        self.original = original


class StreamTransport:
    """
    Opens one streaming chat completions request and delivers its text fragments.

    Responsibilities:
    - Open the event stream and validate the response.
    - Classify failures and retry them under a RetryPolicy.
    - Deliver fragments in arrival order, exactly once each, without the
      ``[DONE]`` sentinel.
    - Honour cooperative cancellation at fragment boundaries and backoff waits.
    """

    _FAILURE_SUGGESTIONS: Tuple[str, ...] = (
        "Check your AI API key configuration.",
        "Verify your provider quota usage.",
        "Ensure your network connection is stable.",
    )

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
        event_bus: Optional[EventBus] = None,
        sleep: Optional[Callable[[float], None]] = None,
        timeout: Tuple[float, float] = (STREAM_CONFIG["connect_timeout"], STREAM_CONFIG["read_timeout"]),
        max_workers: int = 4,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.session = session or requests.Session()
        self.event_bus = event_bus
        self.timeout = timeout
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ai-stream")

    # ------------------- Public APIs -------------------
    def open(
        self,
        url: str,
        headers: Dict[str, str],
        body: Dict[str, Any],
        on_fragment: Callable[[str], None],
        on_complete: Optional[Callable[[], None]] = None,
    ) -> StreamHandle:
        """
        Start streaming on a worker thread.

        Returns:
            A StreamHandle whose ``cancel()`` aborts the stream and whose
            ``result()`` waits for the StreamResult.
        """
        abort = AbortHandle()
        future = self._executor.submit(
            self.stream, url, headers, body, on_fragment, on_complete, abort
        )
        return StreamHandle(future, abort)

    def stream(
        self,
        url: str,
        headers: Dict[str, str],
        body: Dict[str, Any],
        on_fragment: Callable[[str], None],
        on_complete: Optional[Callable[[], None]] = None,
        abort: Optional[AbortHandle] = None,
    ) -> StreamResult:
        """
        Stream on the calling thread until ``[DONE]``, the end of the response,
        cancellation or a permanent failure.

        Args:
            url: Chat completions endpoint.
            headers: Request headers, including authorization.
            body: JSON request body.
            on_fragment: Receives each text fragment in arrival order.
            on_complete: Invoked once when the stream closes normally.
            abort: Optional handle used to cancel the stream.

        Returns:
            The accumulated text and completion token estimate. ``cancelled``
            is set when the stream was aborted.

        Raises:
            AiRequestFatalError: The service rejected the request.
            AiServiceBusyError: Rate limiting or server errors outlasted the retries.
            AiNetworkError: Unclassified setup failures outlasted the retries.
        """
        abort = abort or AbortHandle()
        state = self.policy.initial_state()
        fragments: List[str] = []
        model = body.get("model") if isinstance(body, dict) else None

        while True:
            if abort.aborted:
                return self._cancelled_result(fragments)

            delivered_before = len(fragments)
            response: Optional[requests.Response] = None
            try:
                response = self._connect(url, headers, body, abort)
                self._consume(response, on_fragment, fragments, abort)
            except _FragmentCallbackError as exc:
                raise exc.original
            except Exception as exc:  # noqa: BLE001 - classification occurs below
                if abort.aborted:
                    logger.info("AI stream cancelled after %d fragments.", len(fragments))
                    return self._cancelled_result(fragments)

                kind = classify_exception(exc)
                if len(fragments) > delivered_before:
                    # Reconnecting would replay text that was already delivered.
                    raise self._permanent_failure(kind, exc, state, fragments, model)

                decision = self.policy.decide(kind, state)
                if not decision.retry:
                    raise self._permanent_failure(kind, exc, state, fragments, model)

                state = decision.state
                self._handle_retry(exc, state, decision.delay)
                if self._backoff(abort, decision.delay):
                    return self._cancelled_result(fragments)
                continue
            finally:
                abort.attach(None)
                if response is not None:
                    response.close()

            if abort.aborted:
                return self._cancelled_result(fragments)

            result = StreamResult(full_text="".join(fragments), completion_token_count=len(fragments))
            logger.info(
                "AI stream completed on attempt %d/%d (%d fragments).",
                state.current_attempt + 1,
                self.policy.max_retries + 1,
                len(fragments),
            )
            self._dispatch_service_event(
                AI_STREAM_COMPLETED,
                {"completion_token_count": result.completion_token_count, "length": len(result.full_text)},
            )
            if on_complete:
                on_complete()
            return result

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    # ------------------- Connection -------------------
    def _connect(
        self,
        url: str,
        headers: Dict[str, str],
        body: Dict[str, Any],
        abort: AbortHandle,
    ) -> requests.Response:
        request_headers = {"Accept": EVENT_STREAM_CONTENT_TYPE}
        request_headers.update(headers or {})
        response = self.session.post(
            url,
            headers=request_headers,
            json=body,
            stream=True,
            timeout=self.timeout,
        )
        abort.attach(response)

        content_type = response.headers.get("content-type", "")
        if response.ok and EVENT_STREAM_CONTENT_TYPE in content_type:
            return response

        message = f"AI stream rejected: HTTP {response.status_code} ({content_type or 'no content type'})"
        response.close()
        raise requests.exceptions.HTTPError(message, response=response)

    def _consume(
        self,
        response: requests.Response,
        on_fragment: Callable[[str], None],
        fragments: List[str],
        abort: AbortHandle,
    ) -> None:
        if response.encoding is None:
            response.encoding = "utf-8"

        # Without a delimiter iter_lines uses str.splitlines, which also breaks on U+2028 and friends.
        lines = response.iter_lines(chunk_size=None, decode_unicode=True, delimiter="\n")
        for data in iter_sse_data(lines):
            if abort.aborted:
                return
            if data.strip() == DONE_SENTINEL:
                logger.debug("AI stream received end-of-stream marker.")
                return

            try:
                delta = extract_delta(data)
            except StreamParseError as exc:
                logger.warning("Skipping malformed AI stream event: %s", exc)
                continue

            if not delta:
                continue

            fragments.append(delta)
            try:
                on_fragment(delta)
            except Exception as exc:  # noqa: BLE001 - re-raised unchanged by stream()
                raise _FragmentCallbackError(exc) from exc

    def _backoff(self, abort: AbortHandle, delay: float) -> bool:
        if self._sleep is not None:
            self._sleep(delay)
            return abort.aborted
        return abort.wait(delay)

    # ------------------- Failure handling -------------------
    def _handle_retry(self, error: BaseException, state: RetryState, delay: float) -> None:
        logger.warning(
            "AI stream failed (%s). Retrying in %.2fs (attempt %d/%d).",
            error,
            delay,
            state.current_attempt,
            self.policy.max_retries,
        )
        self._dispatch_service_event(
            AI_STREAM_RETRYING,
            {
                "message": f"Retrying AI request (attempt {state.current_attempt}/{self.policy.max_retries})...",
                "attempt": state.current_attempt,
                "max_retries": self.policy.max_retries,
                "delay": delay,
            },
        )

    def _permanent_failure(
        self,
        kind: ErrorKind,
        error: BaseException,
        state: RetryState,
        fragments: List[str],
        model: Optional[str],
    ) -> AiServiceError:
        partial_text = "".join(fragments)
        if kind is ErrorKind.FATAL:
            final_error: AiServiceError = AiRequestFatalError(
                FATAL_MESSAGE, model=model, cause=error, partial_text=partial_text
            )
        elif kind is ErrorKind.RETRIABLE:
            final_error = AiServiceBusyError(BUSY_MESSAGE, model=model, cause=error, partial_text=partial_text)
        else:
            final_error = AiNetworkError(NETWORK_MESSAGE, model=model, cause=error, partial_text=partial_text)

        logger.error(
            "AI stream failed after %d attempts (%s): %s",
            state.current_attempt + 1,
            kind.value,
            error,
        )
        self._dispatch_service_event(
            AI_STREAM_FAILED,
            {
                "message": str(final_error),
                "kind": kind.value,
                "suggestions": list(self._FAILURE_SUGGESTIONS),
            },
        )
        return final_error

    @staticmethod
    def _cancelled_result(fragments: List[str]) -> StreamResult:
        return StreamResult(
            full_text="".join(fragments),
            completion_token_count=len(fragments),
            cancelled=True,
        )

    def _dispatch_service_event(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.event_bus is None:
            return
        try:
            self.event_bus.dispatch(Event(event_type=event_type, payload=payload))
        except Exception:  # pragma: no cover
            logger.debug(
                "Failed to dispatch '%s' event with payload %s",
                event_type,
                payload,
                exc_info=True,
            )
