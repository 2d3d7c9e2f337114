"""Index-addressed accumulation of canonical stream events into content blocks."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Union, assert_never

from ..ai_types import (
    Citation,
    ContentBlock,
    InvalidToolRequest,
    RedactedThinkingBlock,
    ServerToolResultBlock,
    ServerToolUseBlock,
    TextBlock,
    ThinkingBlock,
    ToolRequestResult,
    ToolUseBlock,
)
from ..tools.errors import ProtocolViolation
from .base import (
    BlockDelta,
    BlockStart,
    BlockStartPayload,
    BlockStop,
    CitationsDelta,
    InputJsonDelta,
    ServerToolUseStart,
    SignatureDelta,
    StreamEvent,
    TextDelta,
    ThinkingDelta,
    ToolInputValidator,
    ToolUseStart,
    accept_any_input,
)

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class StreamingText:
    text: str = ""
    citations: list[Citation] = field(default_factory=list)


@dataclass(slots=True)
class StreamingToolUse:
    id: str
    name: str
    input_json: str = ""


@dataclass(slots=True)
class StreamingServerToolUse:
    id: str
    name: str
    input_json: str = ""


@dataclass(slots=True)
class StreamingThinking:
    thinking: str = ""
    signature: str = ""


@dataclass(slots=True)
class StreamingComplete:
    """Blocks that arrive whole in their start event."""

    block: Union[RedactedThinkingBlock, ServerToolResultBlock]


StreamingBlock = Union[StreamingText, StreamingToolUse, StreamingServerToolUse, StreamingThinking, StreamingComplete]


def init_streaming_block(payload: BlockStartPayload) -> StreamingBlock:
    match payload:
        case TextBlock(text=text, citations=citations):
            return StreamingText(text=text, citations=list(citations))
        case ToolUseStart(id=block_id, name=name):
            return StreamingToolUse(id=block_id, name=name)
        case ServerToolUseStart(id=block_id, name=name):
            return StreamingServerToolUse(id=block_id, name=name)
        case ThinkingBlock(thinking=thinking, signature=signature):
            return StreamingThinking(thinking=thinking, signature=signature)
        case RedactedThinkingBlock() | ServerToolResultBlock():
            return StreamingComplete(block=payload)
        case _:
            assert_never(payload)


def apply_delta(block: StreamingBlock, delta: Any, *, index: int) -> None:
    """Mutate *block* in place with *delta*; illegal pairings are protocol violations."""

    match delta:
        case TextDelta(text=text) if isinstance(block, StreamingText):
            block.text += text
        case CitationsDelta(citation=citation) if isinstance(block, StreamingText):
            block.citations.append(citation)
        case InputJsonDelta(partial_json=chunk) if isinstance(block, (StreamingToolUse, StreamingServerToolUse)):
            block.input_json += chunk
        case ThinkingDelta(thinking=thinking) if isinstance(block, StreamingThinking):
            block.thinking += thinking
        case SignatureDelta(signature=signature) if isinstance(block, StreamingThinking):
            block.signature += signature
        case _:
            raise ProtocolViolation(
                message=f"{type(delta).__name__} is not valid for a {type(block).__name__} block",
                details={"index": index},
            )


def parse_streamed_json(raw: str) -> tuple[Any, str | None]:
    """Parse accumulated tool input; returns ``(value, error)``.

    Empty input is an empty object. On failure the raw text is kept as
    ``{"streamed_json": raw}``.
    """

    if not raw.strip():
        return {}, None
    try:
        return json.loads(raw), None
    except json.JSONDecodeError as exc:
        return {"streamed_json": raw}, f"Failed to parse tool input JSON: {exc.msg}"


def finalize_streaming_block(block: StreamingBlock, validate: ToolInputValidator = accept_any_input) -> ContentBlock:
    match block:
        case StreamingText(text=text, citations=citations):
            return TextBlock(text=text, citations=tuple(citations))
        case StreamingToolUse(id=block_id, name=name, input_json=raw):
            value, error = parse_streamed_json(raw)
            request: ToolRequestResult
            if error is not None:
                request = InvalidToolRequest(id=block_id, tool_name=name, error=error, raw_input=value)
            else:
                request = validate(block_id, name, value)
            return ToolUseBlock(id=block_id, name=name, request=request)
        case StreamingServerToolUse(id=block_id, name=name, input_json=raw):
            value, _error = parse_streamed_json(raw)
            return ServerToolUseBlock(id=block_id, name=name, input=value)
        case StreamingThinking(thinking=thinking, signature=signature):
            return ThinkingBlock(thinking=thinking, signature=signature)
        case StreamingComplete(block=complete):
            return complete
        case _:
            assert_never(block)


class StreamingBlockAccumulator:
    """Applies canonical events for one turn and yields finalized blocks.

    Enforces ``start -> delta* -> stop`` per index. Several indexes may be
    open at once, but a second start on an open index, or a delta/stop for
    an index that is not open, raises :class:`ProtocolViolation`.
    """

    def __init__(self, validate: ToolInputValidator | None = None) -> None:
        self._validate = validate or accept_any_input
        self._open: dict[int, StreamingBlock] = {}
        self._finalized: dict[int, ContentBlock] = {}

    @property
    def open_blocks(self) -> dict[int, StreamingBlock]:
        return dict(self._open)

    @property
    def finalized(self) -> list[ContentBlock]:
        """Finalized blocks in index order."""

        return [self._finalized[index] for index in sorted(self._finalized)]

    def apply(self, event: StreamEvent) -> ContentBlock | None:
        """Apply *event*; returns the finalized block when *event* is a stop."""

        match event:
            case BlockStart(index=index, block=payload):
                if index in self._open:
                    raise ProtocolViolation(
                        message=f"Block {index} started twice without an intervening stop",
                        details={"index": index},
                    )
                if index in self._finalized:
                    raise ProtocolViolation(
                        message=f"Block {index} was already finalized in this turn",
                        details={"index": index},
                    )
                self._open[index] = init_streaming_block(payload)
                return None
            case BlockDelta(index=index, delta=delta):
                block = self._open.get(index)
                if block is None:
                    raise ProtocolViolation(message=f"Delta for block {index} which is not open", details={"index": index})
                apply_delta(block, delta, index=index)
                return None
            case BlockStop(index=index):
                block = self._open.pop(index, None)
                if block is None:
                    raise ProtocolViolation(message=f"Stop for block {index} which is not open", details={"index": index})
                finalized = finalize_streaming_block(block, self._validate)
                self._finalized[index] = finalized
                return finalized
            case _:
                assert_never(event)

    def discard_open(self) -> list[StreamingBlock]:
        """Drop every incomplete block (abort / error) and return what was dropped."""

        dropped = list(self._open.values())
        if dropped:
            LOGGER.debug("Discarding %s incomplete streaming block(s)", len(dropped))
        self._open.clear()
        return dropped


def replay_events(events: list[StreamEvent], validate: ToolInputValidator | None = None) -> list[ContentBlock]:
    """Accumulate a complete event sequence and return its finalized blocks."""

    accumulator = StreamingBlockAccumulator(validate)
    for event in events:
        accumulator.apply(event)
    if accumulator.open_blocks:
        raise ProtocolViolation(message="Stream ended with unterminated blocks", details={"open": sorted(accumulator.open_blocks)})
    return accumulator.finalized


__all__ = [
    "StreamingBlock",
    "StreamingBlockAccumulator",
    "StreamingComplete",
    "StreamingServerToolUse",
    "StreamingText",
    "StreamingThinking",
    "StreamingToolUse",
    "apply_delta",
    "finalize_streaming_block",
    "init_streaming_block",
    "parse_streamed_json",
    "replay_events",
]
