import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessageType(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Message(BaseModel):
    """A single wire-level message sent to the chat completions endpoint."""

    role: Role
    content: str


class ChatMessage(BaseModel):
    """
    A persisted conversation turn.

    Attributes:
        id: Unique identifier assigned when the turn is added to a history.
        type: Who authored the turn.
        content: The turn's text. Replaced in place while an answer streams in.
        metadata: Free-form data attached by the editor (suggestions, node ids, ...).
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: ChatMessageType = ChatMessageType.USER
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChatHistoryActivity(BaseModel):
    """An in-flight operation shown next to the conversation (e.g. "Generating code...")."""

    id: str
    name: str
    status: Optional[str] = None


class ChatRequest(BaseModel):
    """
    The inbound request for one chat turn.

    Attributes:
        model: Provider model identifier, e.g. ``openai/gpt-4``.
        temperature: Optional sampling temperature.
        max_tokens: Optional cap on completion tokens.
        messages: Ordered conversation to send.
    """

    model: str
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    messages: List[Message] = Field(default_factory=list)

    def to_body(self) -> Dict[str, Any]:
        """Build the JSON body for a streaming chat completions call."""
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": [message.model_dump(mode="json") for message in self.messages],
            "stream": True,
        }
        if self.temperature is not None:
            body["temperature"] = self.temperature
        if self.max_tokens is not None:
            body["max_tokens"] = self.max_tokens
        return body


class StreamResult(BaseModel):
    """Resolved value of a chat stream."""

    full_text: str = ""
    completion_token_count: int = 0
    cancelled: bool = False
