"""Shared typing contracts for the conversation engine.

Content blocks, statuses, and tool requests are closed sets of frozen
dataclasses combined into ``Union`` aliases. Consumers dispatch with
``match`` statements that end in ``assert_never`` so a new variant is a
type-checking error everywhere it is not handled.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Protocol, Union


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


class StopReason(str, Enum):
    """Terminal classification of one streaming turn."""

    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    ABORTED = "aborted"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


# -----------------------------------------------------------------------------
# Tool requests
# -----------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class ToolRequest:
    """A validated tool invocation."""

    id: str
    tool_name: str
    input: Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class InvalidToolRequest:
    """A tool invocation whose input failed parsing or validation.

    The raw input is retained so the error can be reported back to the
    model and audited later.
    """

    id: str
    tool_name: str
    error: str
    raw_input: Any


ToolRequestResult = Union[ToolRequest, InvalidToolRequest]


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """Backend-neutral tool description: name, description, JSON schema."""

    name: str
    description: str
    input_schema: Mapping[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": dict(self.input_schema),
        }


# -----------------------------------------------------------------------------
# Content blocks
# -----------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Citation:
    cited_text: str
    title: str | None = None
    url: str | None = None
    document_index: int | None = None


@dataclass(frozen=True, slots=True)
class TextBlock:
    text: str
    citations: tuple[Citation, ...] = ()


@dataclass(frozen=True, slots=True)
class ToolUseBlock:
    id: str
    name: str
    request: ToolRequestResult

    @property
    def is_valid(self) -> bool:
        return isinstance(self.request, ToolRequest)


@dataclass(frozen=True, slots=True)
class ToolResultOk:
    content: tuple["ContentBlock", ...]


@dataclass(frozen=True, slots=True)
class ToolResultError:
    message: str


ToolResultValue = Union[ToolResultOk, ToolResultError]


@dataclass(frozen=True, slots=True)
class ToolResultBlock:
    tool_use_id: str
    result: ToolResultValue

    @property
    def is_error(self) -> bool:
        return isinstance(self.result, ToolResultError)


@dataclass(frozen=True, slots=True)
class ImageBlock:
    media_type: str
    data: str


@dataclass(frozen=True, slots=True)
class DocumentBlock:
    media_type: str
    data: str
    title: str | None = None


@dataclass(frozen=True, slots=True)
class ThinkingBlock:
    thinking: str
    signature: str = ""


@dataclass(frozen=True, slots=True)
class RedactedThinkingBlock:
    data: str


@dataclass(frozen=True, slots=True)
class ServerToolUseBlock:
    """A tool executed by the backend itself (e.g. web search)."""

    id: str
    name: str
    input: Any


@dataclass(frozen=True, slots=True)
class ServerToolResultBlock:
    tool_use_id: str
    content: Any


@dataclass(frozen=True, slots=True)
class SystemReminderBlock:
    text: str


@dataclass(frozen=True, slots=True)
class ContextUpdateBlock:
    text: str


@dataclass(frozen=True, slots=True)
class CheckpointBlock:
    id: str


ContentBlock = Union[
    TextBlock,
    ToolUseBlock,
    ToolResultBlock,
    ImageBlock,
    DocumentBlock,
    ThinkingBlock,
    RedactedThinkingBlock,
    ServerToolUseBlock,
    ServerToolResultBlock,
    SystemReminderBlock,
    ContextUpdateBlock,
    CheckpointBlock,
]


@dataclass(frozen=True, slots=True)
class Message:
    role: Role
    content: tuple[ContentBlock, ...]

    def tool_uses(self) -> tuple[ToolUseBlock, ...]:
        return tuple(block for block in self.content if isinstance(block, ToolUseBlock))

    def tool_results(self) -> tuple[ToolResultBlock, ...]:
        return tuple(block for block in self.content if isinstance(block, ToolResultBlock))

    def text(self) -> str:
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))


def user_message(*blocks: ContentBlock) -> Message:
    return Message(role=Role.USER, content=tuple(blocks))


def assistant_message(*blocks: ContentBlock) -> Message:
    return Message(role=Role.ASSISTANT, content=tuple(blocks))


# -----------------------------------------------------------------------------
# Thread status
# -----------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Idle:
    pass


@dataclass(frozen=True, slots=True)
class Streaming:
    start_time: float = field(default_factory=time.monotonic)


@dataclass(frozen=True, slots=True)
class Stopped:
    stop_reason: StopReason


@dataclass(frozen=True, slots=True)
class Errored:
    detail: str


AgentStatus = Union[Idle, Streaming, Stopped, Errored]


# -----------------------------------------------------------------------------
# Usage and results
# -----------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_hits: int | None = None
    cache_misses: int | None = None

    def as_payload(self) -> dict[str, int]:
        payload = {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
        }
        return {key: value for key, value in payload.items() if value is not None}


@dataclass(frozen=True, slots=True)
class StreamResult:
    stop_reason: StopReason
    usage: Usage


@dataclass(frozen=True, slots=True)
class ToolUseResult:
    """Outcome of a forced tool call."""

    tool_request: ToolRequestResult
    stop_reason: StopReason
    usage: Usage


__all__ = [
    "AgentStatus",
    "CheckpointBlock",
    "Citation",
    "ContentBlock",
    "ContextUpdateBlock",
    "DocumentBlock",
    "Errored",
    "Idle",
    "ImageBlock",
    "InvalidToolRequest",
    "Message",
    "RedactedThinkingBlock",
    "Role",
    "ServerToolResultBlock",
    "ServerToolUseBlock",
    "StopReason",
    "Stopped",
    "StreamResult",
    "Streaming",
    "SystemReminderBlock",
    "TextBlock",
    "ThinkingBlock",
    "TokenCounterProtocol",
    "ToolRequest",
    "ToolRequestResult",
    "ToolResultBlock",
    "ToolResultError",
    "ToolResultOk",
    "ToolResultValue",
    "ToolSpec",
    "ToolUseBlock",
    "ToolUseResult",
    "Usage",
    "assistant_message",
    "user_message",
]
