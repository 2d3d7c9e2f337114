"""Conversation agent package."""

from .conversation import (
    ABORTED_TOOL_RESULT_TEXT,
    Agent,
    AgentConfig,
    AgentEvent,
    MessagesChanged,
    StatusChanged,
    StreamingBlockChanged,
)

__all__ = [
    "ABORTED_TOOL_RESULT_TEXT",
    "Agent",
    "AgentConfig",
    "AgentEvent",
    "MessagesChanged",
    "StatusChanged",
    "StreamingBlockChanged",
]
