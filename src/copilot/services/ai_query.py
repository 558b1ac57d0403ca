import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from src.copilot.config import STREAM_CONFIG
from src.copilot.models.chat import (
    ChatHistoryActivity,
    ChatMessageType,
    ChatRequest,
    Message,
    Role,
    StreamResult,
)
from src.copilot.models.commands import ReActCommand
from src.copilot.models.exceptions import AiRequestFatalError
from src.copilot.services.chat_history import ChatHistory
from src.copilot.services.command_lexer import BracketCommandLexer
from src.copilot.services.history_truncation import HistoryTruncator
from src.copilot.services.stream_transport import AbortHandle, StreamTransport, build_chat_headers
from src.copilot.services.tag_parser import IncrementalTagParser
from src.copilot.services.user_settings_manager import get_api_key, get_endpoint

logger = logging.getLogger(__name__)

PROCESSING_ACTIVITY_ID = "processing"


@dataclass
class ReActResult:
    commands: List[ReActCommand] = field(default_factory=list)
    full_text: str = ""
    cancelled: bool = False


class AiQuery:
    """
    Runs one chat turn through the transport and the parser matching the
    expected response grammar.
    """

    def __init__(
        self,
        transport: StreamTransport,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        update_interval: float = STREAM_CONFIG["content_update_interval"],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.transport = transport
        self._api_key = api_key
        self._endpoint = endpoint
        self.update_interval = update_interval
        self._clock = clock

    # ------------------- Request plumbing -------------------
    def _resolve_api_key(self) -> str:
        api_key = self._api_key or get_api_key()
        if not api_key:
            raise AiRequestFatalError("No AI API key is configured. Add one in the editor settings.")
        return api_key

    def _headers(self) -> Dict[str, str]:
        return build_chat_headers(self._resolve_api_key())

    def _url(self) -> str:
        return self._endpoint or get_endpoint()

    # ------------------- Queries -------------------
    def chat_stream(
        self,
        request: ChatRequest,
        on_text: Optional[Callable[[str, str], None]] = None,
        on_end: Optional[Callable[[], None]] = None,
        abort: Optional[AbortHandle] = None,
    ) -> StreamResult:
        """
        Stream a plain answer.

        Args:
            request: The chat request.
            on_text: Receives ``(full_text_so_far, fragment)`` for every fragment.
            on_end: Invoked when the stream closes normally.
            abort: Optional cancellation handle.
        """
        parts: List[str] = []

        def _on_fragment(fragment: str) -> None:
            parts.append(fragment)
            if on_text:
                on_text("".join(parts), fragment)

        return self.transport.stream(
            self._url(), self._headers(), request.to_body(), _on_fragment, on_end, abort
        )

    def chat_react(
        self,
        request: ChatRequest,
        on_command: Optional[Callable[[ReActCommand], None]] = None,
        abort: Optional[AbortHandle] = None,
        strict: bool = False,
    ) -> ReActResult:
        """
        Stream an answer written as bracket commands.

        ``on_command`` receives every command that is new or changed after each
        fragment. A command still open when the stream ends is discarded
        (or raises with ``strict``).
        """
        lexer = BracketCommandLexer()

        def _on_fragment(fragment: str) -> None:
            for command in lexer.append(fragment):
                if on_command:
                    on_command(command)

        result = self.transport.stream(
            self._url(), self._headers(), request.to_body(), _on_fragment, None, abort
        )
        commands = lexer.finish(strict=strict)
        logger.info("ReAct query produced %d commands.", len(commands))
        return ReActResult(commands=list(commands), full_text=result.full_text, cancelled=result.cancelled)

    def chat_stream_xml(
        self,
        request: ChatRequest,
        on_content: Optional[Callable[[str, str], None]] = None,
        on_tag_open: Optional[Callable[[str, Dict[str, str]], None]] = None,
        on_tag_end: Optional[Callable[[str, str], None]] = None,
        on_end: Optional[Callable[[], None]] = None,
        abort: Optional[AbortHandle] = None,
    ) -> str:
        """
        Stream an answer written in tag markup.

        Content updates are coalesced to ``update_interval``; tag events are
        delivered immediately. Returns the full streamed text.
        """
        parser = IncrementalTagParser(
            on_content=on_content,
            on_tag_open=on_tag_open,
            on_tag_end=on_tag_end,
            update_interval=self.update_interval,
            clock=self._clock,
        )
        try:
            self.transport.stream(
                self._url(), self._headers(), request.to_body(), parser.append, on_end, abort
            )
        finally:
            parser.finish()
        return parser.get_full_text()


class ChatStreamSession:
    """
    Ties a ChatHistory to AiQuery: each turn is budgeted against the model's
    context window and the answer is revealed progressively in the history.
    """

    def __init__(
        self,
        history: ChatHistory,
        query: AiQuery,
        system_prompt: str = "",
        truncator: Optional[HistoryTruncator] = None,
    ):
        self.history = history
        self.query = query
        self.system_prompt = system_prompt
        self.truncator = truncator or HistoryTruncator()

    def build_request(
        self,
        model: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        extra_context: str = "",
    ) -> ChatRequest:
        turns = [
            message
            for message in self.history.to_messages()
            if message.role is not Role.SYSTEM
        ]
        turns = self.truncator.truncate_for_budget(
            turns, model, len(self.system_prompt), len(extra_context)
        )

        messages: List[Message] = []
        system_content = "\n\n".join(part for part in (self.system_prompt, extra_context) if part)
        if system_content:
            messages.append(Message(role=Role.SYSTEM, content=system_content))
        messages.extend(turns)
        return ChatRequest(model=model, temperature=temperature, max_tokens=max_tokens, messages=messages)

    def ask(
        self,
        user_text: str,
        model: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        extra_context: str = "",
        abort: Optional[AbortHandle] = None,
    ) -> StreamResult:
        """
        Send a user turn and stream the assistant's answer into the history.

        On failure or cancellation the partial answer stays in the history; an
        answer that produced no text at all is removed again.
        """
        self.history.add(user_text, ChatMessageType.USER)
        request = self.build_request(model, temperature, max_tokens, extra_context)

        self.history.add_activity(ChatHistoryActivity(id=PROCESSING_ACTIVITY_ID, name="Processing..."))
        self.history.add("", ChatMessageType.ASSISTANT)
        try:
            result = self.query.chat_stream(
                request,
                on_text=lambda full_text, _fragment: self.history.update_last(content=full_text),
                abort=abort,
            )
        except Exception:
            if not self.history.messages[-1].content:
                self.history.remove_last()
            raise
        finally:
            self.history.remove_activity(PROCESSING_ACTIVITY_ID)

        if result.cancelled and not self.history.messages[-1].content:
            self.history.remove_last()
            return result

        self.history.update_last(
            metadata={"completion_token_count": result.completion_token_count, "cancelled": result.cancelled}
        )
        return result
