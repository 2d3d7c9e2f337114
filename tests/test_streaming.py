"""Tests for the streaming block accumulator and provider request handle."""

from __future__ import annotations

import asyncio
import json

import pytest

from threadwright.ai.ai_types import (
    InvalidToolRequest,
    Role,
    TextBlock,
    ThinkingBlock,
    ToolRequest,
    ToolUseBlock,
    assistant_message,
    user_message,
)
from threadwright.ai.providers.base import (
    BlockDelta,
    BlockStart,
    BlockStop,
    InputJsonDelta,
    ProviderRequest,
    SignatureDelta,
    TextDelta,
    ThinkingDelta,
    ToolUseStart,
    get_max_tokens_for_model,
    merge_consecutive_messages,
)
from threadwright.ai.providers.streaming import StreamingBlockAccumulator, parse_streamed_json, replay_events
from threadwright.ai.tools.errors import AbortedByUser, ProtocolViolation


def _text_events(index: int, pieces: list[str]) -> list:
    events: list = [BlockStart(index=index, block=TextBlock(text=""))]
    events.extend(BlockDelta(index=index, delta=TextDelta(text=piece)) for piece in pieces)
    events.append(BlockStop(index=index))
    return events


def _tool_events(index: int, tool_id: str, name: str, pieces: list[str]) -> list:
    events: list = [BlockStart(index=index, block=ToolUseStart(id=tool_id, name=name))]
    events.extend(BlockDelta(index=index, delta=InputJsonDelta(partial_json=piece)) for piece in pieces)
    events.append(BlockStop(index=index))
    return events


def test_streamed_text_matches_single_chunk_text() -> None:
    streamed = replay_events(_text_events(0, ["Hel", "lo, ", "wor", "ld"]))
    whole = replay_events(_text_events(0, ["Hello, world"]))

    assert streamed == whole == [TextBlock(text="Hello, world")]


def test_streamed_tool_input_matches_parsed_json() -> None:
    payload = {"path": "src/app.py", "lines": [1, 2, 3], "nested": {"flag": True}}
    raw = json.dumps(payload)
    chunks = [raw[i : i + 5] for i in range(0, len(raw), 5)]

    (block,) = replay_events(_tool_events(0, "tool_1", "read", chunks))

    assert isinstance(block, ToolUseBlock)
    assert isinstance(block.request, ToolRequest)
    assert dict(block.request.input) == payload


def test_interleaved_indexes_finalize_in_index_order() -> None:
    events = [
        BlockStart(index=0, block=TextBlock(text="")),
        BlockStart(index=1, block=ToolUseStart(id="t1", name="echo")),
        BlockDelta(index=1, delta=InputJsonDelta(partial_json='{"text": "a"}')),
        BlockDelta(index=0, delta=TextDelta(text="first")),
        BlockStop(index=1),
        BlockStop(index=0),
    ]

    blocks = replay_events(events)

    assert blocks[0] == TextBlock(text="first")
    assert isinstance(blocks[1], ToolUseBlock)


def test_thinking_block_accumulates_signature() -> None:
    events = [
        BlockStart(index=0, block=ThinkingBlock(thinking="")),
        BlockDelta(index=0, delta=ThinkingDelta(thinking="hmm ")),
        BlockDelta(index=0, delta=ThinkingDelta(thinking="ok")),
        BlockDelta(index=0, delta=SignatureDelta(signature="abc")),
        BlockStop(index=0),
    ]

    assert replay_events(events) == [ThinkingBlock(thinking="hmm ok", signature="abc")]


def test_double_start_is_protocol_violation() -> None:
    accumulator = StreamingBlockAccumulator()
    accumulator.apply(BlockStart(index=0, block=TextBlock(text="")))

    with pytest.raises(ProtocolViolation):
        accumulator.apply(BlockStart(index=0, block=TextBlock(text="")))


def test_delta_without_start_is_protocol_violation() -> None:
    accumulator = StreamingBlockAccumulator()

    with pytest.raises(ProtocolViolation) as excinfo:
        accumulator.apply(BlockDelta(index=3, delta=TextDelta(text="x")))

    assert excinfo.value.details == {"index": 3}


def test_stop_without_start_is_protocol_violation() -> None:
    with pytest.raises(ProtocolViolation):
        StreamingBlockAccumulator().apply(BlockStop(index=0))


def test_restart_of_finalized_index_is_protocol_violation() -> None:
    accumulator = StreamingBlockAccumulator()
    for event in _text_events(0, ["done"]):
        accumulator.apply(event)

    with pytest.raises(ProtocolViolation):
        accumulator.apply(BlockStart(index=0, block=TextBlock(text="")))


def test_mismatched_delta_type_is_protocol_violation() -> None:
    accumulator = StreamingBlockAccumulator()
    accumulator.apply(BlockStart(index=0, block=TextBlock(text="")))

    with pytest.raises(ProtocolViolation, match="InputJsonDelta"):
        accumulator.apply(BlockDelta(index=0, delta=InputJsonDelta(partial_json="{}")))


def test_unterminated_stream_is_rejected_on_replay() -> None:
    with pytest.raises(ProtocolViolation, match="unterminated"):
        replay_events([BlockStart(index=0, block=TextBlock(text=""))])


def test_malformed_json_keeps_raw_input() -> None:
    (block,) = replay_events(_tool_events(0, "t1", "echo", ['{"text": ']))

    assert isinstance(block, ToolUseBlock)
    assert isinstance(block.request, InvalidToolRequest)
    assert block.request.raw_input == {"streamed_json": '{"text": '}
    assert block.request.error.startswith("Failed to parse tool input JSON")


def test_empty_tool_input_is_empty_object() -> None:
    assert parse_streamed_json("  ") == ({}, None)


def test_validator_receives_parsed_input() -> None:
    seen: list[tuple[str, str, object]] = []

    def validate(request_id: str, tool_name: str, raw_input: object):
        seen.append((request_id, tool_name, raw_input))
        return InvalidToolRequest(id=request_id, tool_name=tool_name, error="nope", raw_input=raw_input)

    (block,) = replay_events(_tool_events(0, "t9", "echo", ['{"a": 1}']), validate)

    assert seen == [("t9", "echo", {"a": 1})]
    assert isinstance(block.request, InvalidToolRequest)


def test_discard_open_drops_incomplete_blocks() -> None:
    accumulator = StreamingBlockAccumulator()
    for event in _text_events(0, ["kept"]):
        accumulator.apply(event)
    accumulator.apply(BlockStart(index=1, block=ToolUseStart(id="t1", name="echo")))

    dropped = accumulator.discard_open()

    assert len(dropped) == 1
    assert accumulator.open_blocks == {}
    assert accumulator.finalized == [TextBlock(text="kept")]


@pytest.mark.asyncio
async def test_provider_request_abort_raises_aborted_by_user() -> None:
    gate: asyncio.Future[str] = asyncio.get_running_loop().create_future()

    async def work() -> str:
        return await gate

    request = ProviderRequest(work(), label="test")
    request.abort()

    with pytest.raises(AbortedByUser) as excinfo:
        await request.result()

    assert request.aborted
    assert excinfo.value.origin == "test"


@pytest.mark.asyncio
async def test_provider_request_returns_result() -> None:
    async def work() -> int:
        return 7

    request = ProviderRequest(work())

    assert await request.result() == 7
    request.abort()
    assert not request.aborted


@pytest.mark.parametrize(
    ("model", "expected"),
    [
        ("claude-opus-4-5-20251101", 32000),
        ("claude-sonnet-4-20250514", 32000),
        ("claude-3-7-sonnet-latest", 32000),
        ("claude-3-5-haiku-20241022", 8192),
        ("claude-3-opus-20240229", 4096),
        ("gpt-4o", 4096),
    ],
)
def test_max_tokens_per_model_family(model: str, expected: int) -> None:
    assert get_max_tokens_for_model(model) == expected


def test_merge_consecutive_messages_joins_same_role_and_drops_empty() -> None:
    merged = merge_consecutive_messages(
        [
            user_message(TextBlock(text="a")),
            user_message(),
            user_message(TextBlock(text="b")),
            assistant_message(TextBlock(text="c")),
        ]
    )

    assert [message.role for message in merged] == [Role.USER, Role.ASSISTANT]
    assert merged[0].content == (TextBlock(text="a"), TextBlock(text="b"))
