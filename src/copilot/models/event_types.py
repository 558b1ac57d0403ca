"""
Event Type Constants

Centralized definitions for all event types used on the copilot event bus.
"""

# Chat history events
CHAT_MESSAGES_CHANGED = "CHAT_MESSAGES_CHANGED"
"""
Dispatched whenever a history's message list changes (add, update_last,
remove_last, clear or truncation).

Payload:
    history_id (str): Identifier of the ChatHistory instance
    message_count (int): Number of messages after the change
    truncated (bool, optional): True when the change compacted the history
"""

CHAT_ACTIVITIES_CHANGED = "CHAT_ACTIVITIES_CHANGED"
"""
Dispatched when the transient activity list of a history changes.

Payload:
    history_id (str): Identifier of the ChatHistory instance
    activities (list[dict]): Current activities ({id, name, status})
"""

# Stream lifecycle events
AI_STREAM_RETRYING = "AI_STREAM_RETRYING"
"""
Dispatched before the transport waits to retry a failed connection.

Payload:
    message (str): User-facing notice
    attempt (int): One-based retry number
    max_retries (int): Retry ceiling
    delay (float): Seconds until the next attempt
"""

AI_STREAM_FAILED = "AI_STREAM_FAILED"
"""
Dispatched once when a stream fails for good.

Payload:
    message (str): User-facing failure message
    kind (str): ErrorKind value that decided the failure
    suggestions (list[str]): Actionable hints for the user
"""

AI_STREAM_COMPLETED = "AI_STREAM_COMPLETED"
"""
Dispatched when a stream closes normally.

Payload:
    completion_token_count (int): Estimated completion tokens
    length (int): Characters received
"""
