import argparse
import logging
import sys
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import List, Optional

import requests

from src.copilot.app.event_bus import EventBus
from src.copilot.models.chat import ChatRequest, Message, Role
from src.copilot.models.event_types import AI_STREAM_FAILED, AI_STREAM_RETRYING
from src.copilot.models.events import Event
from src.copilot.models.exceptions import AiServiceError
from src.copilot.services.ai_query import AiQuery, ChatStreamSession
from src.copilot.services.chat_history import ChatHistory
from src.copilot.services.logging_service import LoggingService
from src.copilot.services.retry_policy import RetryPolicy
from src.copilot.services.stream_transport import AbortHandle, StreamTransport
from src.copilot.services.user_settings_manager import get_model, is_enabled, load_user_settings

logger = logging.getLogger(__name__)

MODES = ("chat", "react", "xml")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command line options for a one-shot streamed query.

    Args:
        argv: Optional list of CLI arguments to inspect.
    """
    parser = argparse.ArgumentParser(description="Stream an answer from the AI copilot.")
    parser.add_argument("prompt", help="The question to send.")
    parser.add_argument("--mode", choices=MODES, default="chat", help="Response grammar to parse.")
    parser.add_argument("--model", help="Model identifier; defaults to the saved setting.")
    parser.add_argument("--system", default="", help="Optional system prompt.")
    parser.add_argument("--temperature", type=float)
    parser.add_argument("--max-tokens", type=int, dest="max_tokens")
    parser.add_argument("--verbose", action="store_true", help="Log debug output to the console.")
    return parser.parse_args(argv)


class CopilotApp:
    """
    Wires settings, transport and query services for command line use.
    """

    def __init__(self, args: argparse.Namespace):
        self.args = args
        self.event_bus = EventBus()
        self.settings = load_user_settings()
        self.model = args.model or get_model(self.settings)

        self.transport = StreamTransport(
            policy=RetryPolicy(), session=requests.Session(), event_bus=self.event_bus
        )
        self.query = AiQuery(self.transport)
        self.history = ChatHistory(event_bus=self.event_bus)
        self.session = ChatStreamSession(self.history, self.query, system_prompt=args.system)

        self.event_bus.subscribe(AI_STREAM_RETRYING, self._on_retrying)
        self.event_bus.subscribe(AI_STREAM_FAILED, self._on_failed)

    def _on_retrying(self, event: Event) -> None:
        print(f"\n[{event.payload.get('message')}]", file=sys.stderr)

    def _on_failed(self, event: Event) -> None:
        for suggestion in event.payload.get("suggestions") or []:
            print(f"  - {suggestion}", file=sys.stderr)

    def _request(self) -> ChatRequest:
        messages = []
        if self.args.system:
            messages.append(Message(role=Role.SYSTEM, content=self.args.system))
        messages.append(Message(role=Role.USER, content=self.args.prompt))
        return ChatRequest(
            model=self.model,
            temperature=self.args.temperature,
            max_tokens=self.args.max_tokens,
            messages=messages,
        )

    def _run_chat(self, abort: AbortHandle) -> None:
        self.session.ask(
            self.args.prompt,
            model=self.model,
            temperature=self.args.temperature,
            max_tokens=self.args.max_tokens,
            abort=abort,
        )
        print(self.history.messages[-1].content)

    def _run_react(self, abort: AbortHandle) -> None:
        result = self.query.chat_react(self._request(), abort=abort)
        for command in result.commands:
            print(f"{command.type} {command.args}")

    def _run_xml(self, abort: AbortHandle) -> None:
        self.query.chat_stream_xml(
            self._request(),
            on_tag_open=lambda name, attributes: print(f"<{name}> {attributes}"),
            on_tag_end=lambda name, text: print(f"</{name}> {text!r}"),
            abort=abort,
        )

    def _await(self, future: "Future[None]") -> None:
        future.result()

    def run(self) -> int:
        """
        Run the selected query on a worker thread so Ctrl+C on the main thread
        can abort the live stream and wait for it to wind down.
        """
        if not is_enabled(self.settings):
            print("The AI copilot is disabled in the settings file.", file=sys.stderr)
            return 1

        abort = AbortHandle()
        runner = {"chat": self._run_chat, "react": self._run_react, "xml": self._run_xml}[self.args.mode]
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="copilot-cli")
        future = executor.submit(runner, abort)
        try:
            self._await(future)
        except KeyboardInterrupt:
            abort.abort()
            wait([future])
            logger.info("Stream cancelled by user.")
            return 130
        except AiServiceError as exc:
            print(exc.user_message, file=sys.stderr)
            return 1
        finally:
            executor.shutdown(wait=False)
            self.transport.shutdown()
        return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    LoggingService.setup_logging(console_level=logging.DEBUG if args.verbose else logging.WARNING)
    return CopilotApp(args).run()
