import logging
import uuid
from typing import Any, Dict, List, Optional

from src.copilot.app.event_bus import EventBus
from src.copilot.config import MAX_MESSAGES, TRUNCATE_TO
from src.copilot.models.chat import (
    ChatHistoryActivity,
    ChatMessage,
    ChatMessageType,
    Message,
    Role,
)
from src.copilot.models.event_types import CHAT_ACTIVITIES_CHANGED, CHAT_MESSAGES_CHANGED
from src.copilot.models.events import Event

logger = logging.getLogger(__name__)


class ChatHistory:
    """
    Ordered, bounded log of conversation turns plus transient activities.

    When an ``add`` pushes the log past ``max_messages`` it is compacted once
    to the leading system message (if the log starts with one) followed by the
    ``truncate_to`` most recent messages.
    """

    def __init__(
        self,
        messages: Optional[List[ChatMessage]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        event_bus: Optional[EventBus] = None,
        max_messages: int = MAX_MESSAGES,
        truncate_to: int = TRUNCATE_TO,
    ):
        if not 0 < truncate_to < max_messages:
            raise ValueError("truncate_to must be positive and smaller than max_messages")
        self.id = str(uuid.uuid4())
        self.event_bus = event_bus
        self.max_messages = max_messages
        self.truncate_to = truncate_to
        self._messages: List[ChatMessage] = list(messages or [])
        self._metadata: Dict[str, Any] = dict(metadata or {})
        self._activities: List[ChatHistoryActivity] = []

    # ------------------------------------------------------------------ #
    # Read access
    # ------------------------------------------------------------------ #

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    @property
    def metadata(self) -> Dict[str, Any]:
        return self._metadata

    @property
    def activities(self) -> List[ChatHistoryActivity]:
        return list(self._activities)

    @property
    def suggestions(self) -> List[Any]:
        """Follow-up suggestions attached to the most recent message."""
        if not self._messages:
            return []
        return list(self._messages[-1].metadata.get("suggestions") or [])

    def __len__(self) -> int:
        return len(self._messages)

    def to_messages(self) -> List[Message]:
        """Convert the turns into wire-level messages for a request."""
        return [Message(role=Role(message.type.value), content=message.content) for message in self._messages]

    # ------------------------------------------------------------------ #
    # Messages
    # ------------------------------------------------------------------ #

    def add(
        self,
        content: str,
        message_type: ChatMessageType = ChatMessageType.USER,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Append a turn and compact the history if it grew past the limit.

        Args:
            content: The turn's text.
            message_type: Author of the turn.
            metadata: Optional metadata stored with the turn.

        Returns:
            The identifier assigned to the new turn.
        """
        if content is None:
            raise ValueError("A chat message requires content")

        message = ChatMessage(
            id=str(uuid.uuid4()),
            type=message_type,
            content=content,
            metadata=dict(metadata or {}),
        )
        self._messages.append(message)
        truncated = self._truncate_if_needed()
        self._emit_messages_changed(truncated=truncated)
        return message.id

    def update_last(self, content: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> None:
        """
        Replace the content and merge the metadata of the most recent turn.

        Used to reveal a streaming answer progressively without adding a turn
        per fragment.
        """
        if not self._messages:
            raise ValueError("Cannot update the last message of an empty history")

        last = self._messages[-1]
        update: Dict[str, Any] = {}
        if content is not None:
            update["content"] = content
        if metadata:
            update["metadata"] = {**last.metadata, **metadata}
        if update:
            self._messages[-1] = last.model_copy(update=update)
        self._emit_messages_changed()

    def remove_last(self) -> None:
        if self._messages:
            self._messages.pop()
            self._emit_messages_changed()

    def clear(self) -> None:
        self._messages.clear()
        self._emit_messages_changed()

    def _truncate_if_needed(self) -> bool:
        if len(self._messages) <= self.max_messages:
            return False

        first_message = self._messages[:1] if self._messages[0].type is ChatMessageType.SYSTEM else []
        recent_messages = self._messages[-self.truncate_to:]
        self._messages = first_message + recent_messages
        logger.info("Chat history %s truncated to %d messages", self.id, len(self._messages))
        return True

    # ------------------------------------------------------------------ #
    # Activities
    # ------------------------------------------------------------------ #

    def add_activity(self, activity: ChatHistoryActivity) -> None:
        self._activities.append(activity)
        self._emit_activities_changed()

    def remove_activity(self, activity_id: str) -> None:
        count = len(self._activities)
        self._activities = [activity for activity in self._activities if activity.id != activity_id]
        if len(self._activities) != count:
            self._emit_activities_changed()

    def clear_activities(self) -> None:
        if not self._activities:
            return
        self._activities.clear()
        self._emit_activities_changed()

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #

    def to_json(self) -> Dict[str, Any]:
        """Serialise turns and metadata; activities are transient and not included."""
        return {
            "history": [message.model_dump(mode="json") for message in self._messages],
            "metadata": dict(self._metadata),
        }

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]], **kwargs: Any) -> "ChatHistory":
        data = data or {}
        messages = [ChatMessage.model_validate(item) for item in data.get("history") or []]
        return cls(messages=messages, metadata=data.get("metadata") or {}, **kwargs)

    # ------------------------------------------------------------------ #
    # Notifications
    # ------------------------------------------------------------------ #

    def _emit_messages_changed(self, truncated: bool = False) -> None:
        payload: Dict[str, Any] = {"history_id": self.id, "message_count": len(self._messages)}
        if truncated:
            payload["truncated"] = True
        self._dispatch(CHAT_MESSAGES_CHANGED, payload)

    def _emit_activities_changed(self) -> None:
        self._dispatch(
            CHAT_ACTIVITIES_CHANGED,
            {
                "history_id": self.id,
                "activities": [activity.model_dump() for activity in self._activities],
            },
        )

    def _dispatch(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.event_bus is None:
            return
        self.event_bus.dispatch(Event(event_type=event_type, payload=payload))
