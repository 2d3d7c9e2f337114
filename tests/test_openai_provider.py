"""Tests for the OpenAI-compatible adapter."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest

from threadwright.ai.ai_types import (
    CheckpointBlock,
    InvalidToolRequest,
    Message,
    Role,
    StopReason,
    SystemReminderBlock,
    TextBlock,
    ThinkingBlock,
    ToolRequest,
    ToolResultBlock,
    ToolResultError,
    ToolResultOk,
    ToolSpec,
    ToolUseBlock,
)
from threadwright.ai.client import ClientSettings
from threadwright.ai.providers.base import BlockDelta, BlockStart, BlockStop, InputJsonDelta, ToolUseStart
from threadwright.ai.providers.openai import (
    OpenAIChunkNormalizer,
    OpenAIProvider,
    ThinkTagFilter,
    map_finish_reason,
    map_usage,
    messages_to_chat_params,
    tool_to_function,
)
from threadwright.ai.providers.streaming import replay_events
from threadwright.ai.tools.errors import ProtocolViolation


def _chunk(*, content: str | None = None, tool_calls: list | None = None, finish_reason: str | None = None, usage: Any = None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)], usage=usage)


def _tool_delta(index: int, *, id: str | None = None, name: str | None = None, arguments: str | None = None):
    return SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))


def _run(chunks: list) -> tuple[list, StopReason, OpenAIChunkNormalizer]:
    events: list = []
    normalizer = OpenAIChunkNormalizer(events.append)
    for chunk in chunks:
        normalizer.feed(chunk)
    return events, normalizer.finish(), normalizer


def test_tool_call_start_waits_for_id_and_name() -> None:
    events, stop_reason, _ = _run(
        [
            _chunk(tool_calls=[_tool_delta(0, arguments='{"te')]),
            _chunk(tool_calls=[_tool_delta(0, id="call_1", name="echo", arguments='xt": ')]),
            _chunk(tool_calls=[_tool_delta(0, arguments='"hi"}')], finish_reason="tool_calls"),
        ]
    )

    assert events[0] == BlockStart(index=0, block=ToolUseStart(id="call_1", name="echo"))
    assert events[1] == BlockDelta(index=0, delta=InputJsonDelta(partial_json='{"text": '))
    assert events[-1] == BlockStop(index=0)
    assert stop_reason is StopReason.TOOL_USE
    (block,) = replay_events(events)
    assert isinstance(block, ToolUseBlock)
    assert isinstance(block.request, ToolRequest)
    assert dict(block.request.input) == {"text": "hi"}


def test_parallel_tool_calls_get_distinct_blocks() -> None:
    events, _stop, normalizer = _run(
        [
            _chunk(content="Let me check."),
            _chunk(tool_calls=[_tool_delta(0, id="a", name="echo", arguments="{}")]),
            _chunk(tool_calls=[_tool_delta(1, id="b", name="read", arguments='{"p": 1}')], finish_reason="tool_calls"),
        ]
    )

    blocks = replay_events(events)

    assert blocks[0] == TextBlock(text="Let me check.")
    assert [block.id for block in blocks[1:]] == ["a", "b"]
    assert normalizer.started_tool_blocks == 2


def test_tool_call_without_id_is_flushed_with_generated_id() -> None:
    events, stop_reason, _ = _run([_chunk(tool_calls=[_tool_delta(0, name="echo", arguments="{}")], finish_reason="stop")])

    (block,) = replay_events(events)

    assert block.id == "call_0"
    assert stop_reason is StopReason.TOOL_USE


def test_tool_call_without_name_is_dropped() -> None:
    events, stop_reason, _ = _run([_chunk(tool_calls=[_tool_delta(0, id="x", arguments="{}")], finish_reason="stop")])

    assert events == []
    assert stop_reason is StopReason.END_TURN


def test_think_sections_are_filtered_across_chunks() -> None:
    events, stop_reason, _ = _run(
        [
            _chunk(content="Hello <thi"),
            _chunk(content="nk>secret plan</think> world"),
            _chunk(content="", finish_reason="length"),
        ]
    )

    assert replay_events(events) == [TextBlock(text="Hello  world")]
    assert stop_reason is StopReason.MAX_TOKENS


def test_think_filter_passes_plain_angle_brackets() -> None:
    think = ThinkTagFilter()

    assert think.feed("a < b and <b>bold</b>") == "a < b and <b>bold</b>"
    assert think.feed("<") == ""
    assert think.flush() == "<"


def test_usage_is_taken_from_final_chunk() -> None:
    usage = SimpleNamespace(prompt_tokens=12, completion_tokens=3, prompt_tokens_details=SimpleNamespace(cached_tokens=8))
    _events, _stop, normalizer = _run([_chunk(content="hi"), SimpleNamespace(choices=[], usage=usage)])

    assert normalizer.usage.input_tokens == 12
    assert normalizer.usage.output_tokens == 3
    assert normalizer.usage.cache_hits == 8


def test_map_helpers_default_sensibly() -> None:
    assert map_finish_reason(None) is StopReason.END_TURN
    assert map_finish_reason("tool_calls") is StopReason.TOOL_USE
    assert map_usage(None).input_tokens == 0


def test_messages_to_chat_params_places_tool_results_first() -> None:
    valid = ToolRequest(id="t1", tool_name="echo", input={"text": "x"})
    messages = [
        Message(role=Role.USER, content=(SystemReminderBlock(text="be brief"), TextBlock(text="hi"), CheckpointBlock(id="000001"))),
        Message(role=Role.ASSISTANT, content=(ThinkingBlock(thinking="..."), TextBlock(text="calling"), ToolUseBlock(id="t1", name="echo", request=valid))),
        Message(
            role=Role.USER,
            content=(
                ToolResultBlock(tool_use_id="t1", result=ToolResultOk(content=(TextBlock(text="out"),))),
                TextBlock(text="next"),
            ),
        ),
    ]

    params = messages_to_chat_params(messages, "system text")

    assert params[0] == {"role": "system", "content": "system text"}
    assert params[1]["role"] == "user"
    assert [part["text"] for part in params[1]["content"]] == [
        "<system-reminder>\nbe brief\n</system-reminder>",
        "hi",
        "<checkpoint:000001>",
    ]
    assert params[2]["content"] == "calling"
    assert params[2]["tool_calls"][0]["function"] == {"name": "echo", "arguments": '{"text": "x"}'}
    assert params[3] == {"role": "tool", "tool_call_id": "t1", "content": "out"}
    assert params[4] == {"role": "user", "content": [{"type": "text", "text": "next"}]}


def test_error_results_and_invalid_requests_round_trip_to_wire() -> None:
    invalid = InvalidToolRequest(id="t2", tool_name="echo", error="bad", raw_input={"streamed_json": "{"})
    messages = [
        Message(role=Role.USER, content=(TextBlock(text="go"),)),
        Message(role=Role.ASSISTANT, content=(ToolUseBlock(id="t2", name="echo", request=invalid),)),
        Message(role=Role.USER, content=(ToolResultBlock(tool_use_id="t2", result=ToolResultError(message="Malformed")),)),
    ]

    params = messages_to_chat_params(messages, None)

    assert params[1]["content"] is None
    assert params[1]["tool_calls"][0]["function"]["arguments"] == '{"streamed_json": "{"}'
    assert params[2] == {"role": "tool", "tool_call_id": "t2", "content": "Error: Malformed"}


def test_tool_to_function_uses_sanitized_schema() -> None:
    spec = ToolSpec(
        name="fetch",
        description="Fetch",
        input_schema={"type": "object", "properties": {"url": {"type": "string", "format": "uri"}, "depth": {"type": "integer"}}},
    )

    function = tool_to_function(spec)["function"]

    assert function["parameters"]["required"] == ["url", "depth"]
    assert "format" not in function["parameters"]["properties"]["url"]


def test_chat_payload_disables_parallel_calls_on_request() -> None:
    provider = OpenAIProvider(ClientSettings(api_key="k", model="gpt-test"), client=SimpleNamespace())
    spec = ToolSpec(name="echo", description="Echo", input_schema={"type": "object", "properties": {}})

    payload = provider.build_chat_payload(
        model="gpt-test",
        messages=[Message(role=Role.USER, content=(TextBlock(text="hi"),))],
        tools=[spec],
        system_prompt=None,
        parallel_tool_calls=False,
    )

    assert payload["parallel_tool_calls"] is False
    assert payload["stream_options"] == {"include_usage": True}


class _FakeCompletions:
    def __init__(self, response: Any) -> None:
        self.response = response
        self.calls: list[dict] = []

    async def create(self, **payload: Any) -> Any:
        self.calls.append(payload)
        return self.response


def _client(response: Any) -> SimpleNamespace:
    return SimpleNamespace(chat=SimpleNamespace(completions=_FakeCompletions(response)))


@pytest.mark.asyncio
async def test_force_tool_use_validates_arguments() -> None:
    call = SimpleNamespace(id="c1", function=SimpleNamespace(name="thread_title", arguments='{"title": "Fix bug"}'))
    response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(tool_calls=[call]))], usage=None)
    client = _client(response)
    provider = OpenAIProvider(ClientSettings(api_key="k", model="gpt-test"), client=client)
    spec = ToolSpec(name="thread_title", description="Title", input_schema={"type": "object", "properties": {}})

    result = await provider.force_tool_use(
        model="gpt-test",
        messages=[Message(role=Role.USER, content=(TextBlock(text="hi"),))],
        spec=spec,
    ).result()

    assert isinstance(result.tool_request, ToolRequest)
    assert dict(result.tool_request.input) == {"title": "Fix bug"}
    assert client.chat.completions.calls[0]["tool_choice"] == {"type": "function", "function": {"name": "thread_title"}}


@pytest.mark.asyncio
async def test_force_tool_use_without_tool_call_is_protocol_violation() -> None:
    response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(tool_calls=None))], usage=None)
    provider = OpenAIProvider(ClientSettings(api_key="k", model="gpt-test"), client=_client(response))
    spec = ToolSpec(name="thread_title", description="Title", input_schema={"type": "object", "properties": {}})

    with pytest.raises(ProtocolViolation):
        await provider.force_tool_use(model="gpt-test", messages=[], spec=spec).result()
