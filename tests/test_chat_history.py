"""Tests for ChatHistory - bounded turn log, activities and persistence."""

from __future__ import annotations

import pytest

from src.copilot.models.chat import ChatHistoryActivity, ChatMessage, ChatMessageType, Role
from src.copilot.models.event_types import CHAT_ACTIVITIES_CHANGED, CHAT_MESSAGES_CHANGED
from src.copilot.services.chat_history import ChatHistory
from tests.conftest import RecordingEventBus


def test_add_assigns_unique_ids_and_emits_change(event_bus: RecordingEventBus) -> None:
    history = ChatHistory(event_bus=event_bus)

    first = history.add("Hello")
    second = history.add("Hi there", ChatMessageType.ASSISTANT)

    assert first != second
    assert [message.id for message in history.messages] == [first, second]
    assert history.messages[1].type is ChatMessageType.ASSISTANT
    changes = event_bus.of_type(CHAT_MESSAGES_CHANGED)
    assert [event.payload["message_count"] for event in changes] == [1, 2]
    assert all(event.payload["history_id"] == history.id for event in changes)


def test_history_never_exceeds_max_messages() -> None:
    history = ChatHistory(max_messages=5, truncate_to=3)

    for index in range(40):
        history.add(f"turn {index}")
        assert len(history) <= 5

    assert history.messages[-1].content == "turn 39"


def test_truncation_keeps_leading_system_message(event_bus: RecordingEventBus) -> None:
    history = ChatHistory(event_bus=event_bus)
    history.add("You are a helpful editor assistant.", ChatMessageType.SYSTEM)
    for index in range(49):
        history.add(f"question {index}")
    assert len(history) == 50

    history.add("question 49")

    messages = history.messages
    assert len(messages) == 31
    assert messages[0].type is ChatMessageType.SYSTEM
    assert [message.content for message in messages[1:]] == [f"question {index}" for index in range(20, 50)]
    assert event_bus.of_type(CHAT_MESSAGES_CHANGED)[-1].payload["truncated"] is True


def test_truncation_without_system_message_keeps_most_recent() -> None:
    history = ChatHistory()
    for index in range(51):
        history.add(f"question {index}")

    assert len(history) == 30
    assert history.messages[0].content == "question 21"


def test_system_message_not_in_first_position_is_not_preserved() -> None:
    history = ChatHistory(max_messages=4, truncate_to=2)
    history.add("hello")
    history.add("be brief", ChatMessageType.SYSTEM)
    for content in ("a", "b", "c"):
        history.add(content)

    assert [message.content for message in history.messages] == ["b", "c"]


def test_invalid_limits_are_rejected() -> None:
    with pytest.raises(ValueError):
        ChatHistory(max_messages=10, truncate_to=10)
    with pytest.raises(ValueError):
        ChatHistory(max_messages=10, truncate_to=0)


def test_update_last_replaces_content_and_merges_metadata() -> None:
    history = ChatHistory()
    history.add("question")
    message_id = history.add("", ChatMessageType.ASSISTANT, metadata={"model": "openai/gpt-4"})

    history.update_last(content="Partial ans")
    history.update_last(content="Partial answer", metadata={"cancelled": False})

    last = history.messages[-1]
    assert last.id == message_id
    assert last.content == "Partial answer"
    assert last.metadata == {"model": "openai/gpt-4", "cancelled": False}
    assert len(history) == 2


def test_update_last_on_empty_history_raises() -> None:
    with pytest.raises(ValueError):
        ChatHistory().update_last(content="x")


def test_messages_property_returns_a_copy() -> None:
    history = ChatHistory()
    history.add("hello")

    history.messages.clear()

    assert len(history) == 1


def test_remove_last_and_clear(event_bus: RecordingEventBus) -> None:
    history = ChatHistory(event_bus=event_bus)
    history.add("one")
    history.add("two")

    history.remove_last()
    assert [message.content for message in history.messages] == ["one"]

    history.clear()
    assert len(history) == 0
    assert event_bus.of_type(CHAT_MESSAGES_CHANGED)[-1].payload["message_count"] == 0


def test_activities_are_tracked_and_announced(event_bus: RecordingEventBus) -> None:
    history = ChatHistory(event_bus=event_bus)

    history.add_activity(ChatHistoryActivity(id="gen", name="Generating code..."))
    history.add_activity(ChatHistoryActivity(id="schema", name="Reading schema", status="running"))
    history.remove_activity("gen")
    history.remove_activity("missing")
    history.clear_activities()
    history.clear_activities()

    changes = event_bus.of_type(CHAT_ACTIVITIES_CHANGED)
    assert [len(event.payload["activities"]) for event in changes] == [1, 2, 1, 0]
    assert changes[1].payload["activities"][1] == {"id": "schema", "name": "Reading schema", "status": "running"}
    assert history.activities == []


def test_suggestions_come_from_last_message_metadata() -> None:
    history = ChatHistory()
    assert history.suggestions == []

    history.add("Try this", ChatMessageType.ASSISTANT, metadata={"suggestions": ["Add a button", "Add a form"]})

    assert history.suggestions == ["Add a button", "Add a form"]


def test_to_messages_maps_types_to_roles() -> None:
    history = ChatHistory()
    history.add("be brief", ChatMessageType.SYSTEM)
    history.add("hello")
    history.add("hi", ChatMessageType.ASSISTANT)

    assert [(message.role, message.content) for message in history.to_messages()] == [
        (Role.SYSTEM, "be brief"),
        (Role.USER, "hello"),
        (Role.ASSISTANT, "hi"),
    ]


def test_json_round_trip_preserves_turns_and_metadata() -> None:
    history = ChatHistory(metadata={"project": "demo"})
    history.add("hello")
    history.add("hi", ChatMessageType.ASSISTANT, metadata={"suggestions": ["next"]})
    history.add_activity(ChatHistoryActivity(id="gen", name="Generating"))

    data = history.to_json()
    restored = ChatHistory.from_json(data)

    assert data["history"][1]["type"] == "assistant"
    assert restored.metadata == {"project": "demo"}
    assert restored.messages == history.messages
    assert restored.activities == []


def test_from_json_accepts_missing_payload() -> None:
    restored = ChatHistory.from_json(None, max_messages=10, truncate_to=5)

    assert len(restored) == 0
    assert restored.max_messages == 10


def test_constructor_accepts_existing_messages() -> None:
    seeded = [ChatMessage(content="earlier"), ChatMessage(type=ChatMessageType.ASSISTANT, content="reply")]

    history = ChatHistory(messages=seeded)

    assert [message.content for message in history.messages] == ["earlier", "reply"]
