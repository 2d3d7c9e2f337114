"""Canonical provider contract shared by every backend adapter."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Mapping, Protocol, Sequence, TypeVar, Union

from ..ai_types import (
    Citation,
    InvalidToolRequest,
    Message,
    RedactedThinkingBlock,
    ServerToolResultBlock,
    StreamResult,
    TextBlock,
    ThinkingBlock,
    ToolRequest,
    ToolRequestResult,
    ToolSpec,
    ToolUseResult,
)
from ..tools.errors import AbortedByUser

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


# -----------------------------------------------------------------------------
# Canonical events
# -----------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class ToolUseStart:
    id: str
    name: str


@dataclass(frozen=True, slots=True)
class ServerToolUseStart:
    id: str
    name: str


BlockStartPayload = Union[
    TextBlock,
    ToolUseStart,
    ThinkingBlock,
    RedactedThinkingBlock,
    ServerToolUseStart,
    ServerToolResultBlock,
]


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str


@dataclass(frozen=True, slots=True)
class InputJsonDelta:
    partial_json: str


@dataclass(frozen=True, slots=True)
class ThinkingDelta:
    thinking: str


@dataclass(frozen=True, slots=True)
class SignatureDelta:
    signature: str


@dataclass(frozen=True, slots=True)
class CitationsDelta:
    citation: Citation


BlockDeltaPayload = Union[TextDelta, InputJsonDelta, ThinkingDelta, SignatureDelta, CitationsDelta]


@dataclass(frozen=True, slots=True)
class BlockStart:
    index: int
    block: BlockStartPayload


@dataclass(frozen=True, slots=True)
class BlockDelta:
    index: int
    delta: BlockDeltaPayload


@dataclass(frozen=True, slots=True)
class BlockStop:
    index: int


StreamEvent = Union[BlockStart, BlockDelta, BlockStop]
EventHandler = Callable[[StreamEvent], None]
ToolInputValidator = Callable[[str, str, Any], ToolRequestResult]


def accept_any_input(request_id: str, tool_name: str, raw_input: Any) -> ToolRequestResult:
    """Default validator: any JSON object is accepted as tool input."""

    if isinstance(raw_input, Mapping):
        return ToolRequest(id=request_id, tool_name=tool_name, input=dict(raw_input))
    return InvalidToolRequest(
        id=request_id,
        tool_name=tool_name,
        error=f"expected tool input to be an object but it was {type(raw_input).__name__}",
        raw_input=raw_input,
    )


# -----------------------------------------------------------------------------
# Request handle
# -----------------------------------------------------------------------------

class ProviderRequest(Generic[T]):
    """Handle for one in-flight provider call: ``abort()`` plus awaitable ``result()``.

    Aborting cancels the underlying task; awaiting the result afterwards
    raises :class:`AbortedByUser` rather than ``CancelledError``.
    """

    def __init__(self, work: Awaitable[T], *, label: str = "provider") -> None:
        self._label = label
        self._aborted = False
        self._task: asyncio.Future[T] = asyncio.ensure_future(work)

    @property
    def aborted(self) -> bool:
        return self._aborted

    def done(self) -> bool:
        return self._task.done()

    def abort(self) -> None:
        if self._task.done():
            return
        LOGGER.debug("Aborting %s request", self._label)
        self._aborted = True
        self._task.cancel()

    async def result(self) -> T:
        try:
            return await self._task
        except asyncio.CancelledError:
            if self._aborted and self._task.cancelled():
                raise AbortedByUser(origin=self._label) from None
            raise


# -----------------------------------------------------------------------------
# Provider protocol
# -----------------------------------------------------------------------------

class Provider(Protocol):
    """Backend adapter contract."""

    name: str
    supports_parallel_tool_use: bool

    def send_message(
        self,
        *,
        model: str,
        messages: Sequence[Message],
        tools: Sequence[ToolSpec],
        system_prompt: str | None,
        on_event: EventHandler,
        disable_caching: bool = False,
        parallel_tool_calls: bool = True,
    ) -> ProviderRequest[StreamResult]:
        ...

    def force_tool_use(
        self,
        *,
        model: str,
        messages: Sequence[Message],
        spec: ToolSpec,
        system_prompt: str | None = None,
        validate_input: ToolInputValidator | None = None,
        disable_caching: bool = False,
    ) -> ProviderRequest[ToolUseResult]:
        ...


# -----------------------------------------------------------------------------
# Shared helpers
# -----------------------------------------------------------------------------

_MAX_TOKEN_RULES: tuple[tuple[re.Pattern[str], int], ...] = (
    (re.compile(r"^claude-(opus-4-5|sonnet-4-5|haiku-4-5)"), 32000),
    (re.compile(r"^claude-(opus-4|sonnet-4|4-opus|4-sonnet)"), 32000),
    (re.compile(r"^claude-3-7-sonnet"), 32000),
    (re.compile(r"^claude-3-5-(sonnet|haiku)"), 8192),
    (re.compile(r"^claude-3-(opus|sonnet|haiku)"), 4096),
    (re.compile(r"^claude-2\."), 4096),
)
_DEFAULT_MAX_TOKENS = 4096


def get_max_tokens_for_model(model: str) -> int:
    """Return the output token ceiling used when requesting *model*."""

    for pattern, limit in _MAX_TOKEN_RULES:
        if pattern.match(model):
            return limit
    return _DEFAULT_MAX_TOKENS


def merge_consecutive_messages(messages: Sequence[Message]) -> list[Message]:
    """Merge adjacent same-role messages; backends require strict alternation."""

    merged: list[Message] = []
    for message in messages:
        if not message.content:
            continue
        if merged and merged[-1].role == message.role:
            previous = merged[-1]
            merged[-1] = Message(role=previous.role, content=previous.content + message.content)
        else:
            merged.append(message)
    return merged


__all__ = [
    "BlockDelta",
    "BlockDeltaPayload",
    "BlockStart",
    "BlockStartPayload",
    "BlockStop",
    "CitationsDelta",
    "EventHandler",
    "InputJsonDelta",
    "Provider",
    "ProviderRequest",
    "ServerToolUseStart",
    "SignatureDelta",
    "StreamEvent",
    "TextDelta",
    "ThinkingDelta",
    "ToolInputValidator",
    "ToolUseStart",
    "accept_any_input",
    "get_max_tokens_for_model",
    "merge_consecutive_messages",
]
