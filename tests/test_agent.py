"""Tests for the conversation agent state machine."""

from __future__ import annotations

import asyncio

import pytest

from threadwright.ai.agents.conversation import (
    ABORTED_TOOL_RESULT_TEXT,
    Agent,
    AgentConfig,
    MessagesChanged,
    StatusChanged,
    StreamingBlockChanged,
)
from threadwright.ai.ai_types import (
    CheckpointBlock,
    Errored,
    Idle,
    Role,
    StopReason,
    Stopped,
    Streaming,
    TextBlock,
    ToolResultError,
    ToolUseBlock,
    Usage,
)
from threadwright.ai.orchestration.compaction import CompactReplacement
from threadwright.ai.providers.base import BlockDelta, TextDelta
from threadwright.ai.providers.mock import MockProvider
from threadwright.ai.tools.errors import InvalidOperationError, TransportError
from threadwright.services.telemetry import InMemoryTelemetrySink
from tests.helpers import result_text, tool_results


def _agent(provider: MockProvider, **kwargs) -> Agent:
    return Agent(provider, AgentConfig(model="test-model", system_prompt="You help."), thread_id=1, **kwargs)


def _assert_every_tool_use_answered(agent: Agent) -> None:
    messages = agent.messages
    for idx, message in enumerate(messages):
        uses = message.tool_uses()
        if not uses:
            continue
        following = messages[idx + 1] if idx + 1 < len(messages) else None
        assert following is not None and following.role == Role.USER
        answered = [block.tool_use_id for block in following.tool_results()]
        assert sorted(answered) == sorted(block.id for block in uses)


@pytest.mark.asyncio
async def test_simple_turn_reaches_end_turn(provider: MockProvider) -> None:
    sink = InMemoryTelemetrySink()
    agent = _agent(provider, usage_sink=sink)
    events: list = []
    agent.subscribe(events.append)

    agent.append_user_message(TextBlock(text="Hello"))
    task = agent.continue_conversation()
    request = await provider.next_stream_request()
    assert agent.is_streaming
    request.stream_text("Hi", chunks=2)
    request.finish(StopReason.END_TURN, Usage(input_tokens=11, output_tokens=2))
    result = await task

    assert result is not None and result.stop_reason is StopReason.END_TURN
    assert agent.status == Stopped(StopReason.END_TURN)
    assert [(message.role, message.text()) for message in agent.messages] == [
        (Role.USER, "Hello"),
        (Role.ASSISTANT, "Hi"),
    ]
    assert agent.usage == Usage(input_tokens=11, output_tokens=2)
    assert sink.tail()[0].input_tokens == 11
    assert request.system_prompt == "You help."
    statuses = [event.status for event in events if isinstance(event, StatusChanged)]
    assert isinstance(statuses[0], Streaming)
    assert statuses[-1] == Stopped(StopReason.END_TURN)
    assert any(isinstance(event, StreamingBlockChanged) for event in events)
    assert any(isinstance(event, MessagesChanged) for event in events)


@pytest.mark.asyncio
async def test_operations_refused_in_wrong_state(provider: MockProvider) -> None:
    agent = _agent(provider)
    assert agent.status == Idle()

    with pytest.raises(InvalidOperationError):
        agent.continue_conversation()

    agent.append_user_message(TextBlock(text="Hello"))
    task = agent.continue_conversation()
    request = await provider.next_stream_request()

    with pytest.raises(InvalidOperationError):
        agent.append_user_message(TextBlock(text="more"))
    with pytest.raises(InvalidOperationError):
        agent.continue_conversation()
    with pytest.raises(InvalidOperationError):
        agent.tool_result("x", ToolResultError(message="no"))

    request.respond(text="Hi")
    await task
    with pytest.raises(InvalidOperationError, match="last message is from the assistant"):
        agent.continue_conversation()


@pytest.mark.asyncio
async def test_tool_use_turn_collects_results_then_continues(provider: MockProvider) -> None:
    agent = _agent(provider)
    agent.append_user_message(TextBlock(text="Use tools"))
    task = agent.continue_conversation()
    request = await provider.next_stream_request()
    request.respond(text="Calling", tool_requests=[("t1", "echo", {"text": "a"}), ("t2", "echo", {"text": "b"})])
    await task

    assert agent.status == Stopped(StopReason.TOOL_USE)
    assert [block.id for block in agent.pending_tool_uses()] == ["t1", "t2"]
    with pytest.raises(InvalidOperationError):
        agent.append_user_message(TextBlock(text="skip the tools"))

    agent.tool_result("t1", ToolResultError(message="first"))
    with pytest.raises(InvalidOperationError, match="no tool_result"):
        agent.continue_conversation()
    with pytest.raises(InvalidOperationError, match="already has a result"):
        agent.tool_result("t1", ToolResultError(message="again"))
    with pytest.raises(InvalidOperationError, match="no tool_use block"):
        agent.tool_result("t9", ToolResultError(message="unknown"))
    agent.tool_result("t2", ToolResultError(message="second"))

    assert len(agent.messages) == 3
    assert list(tool_results(agent.messages[-1])) == ["t1", "t2"]

    task = agent.continue_conversation()
    request = await provider.next_stream_request()
    request.respond(text="Done")
    await task
    assert agent.status == Stopped(StopReason.END_TURN)
    _assert_every_tool_use_answered(agent)


@pytest.mark.asyncio
async def test_end_turn_with_tool_use_is_treated_as_tool_use(provider: MockProvider) -> None:
    agent = _agent(provider)
    agent.append_user_message(TextBlock(text="go"))
    task = agent.continue_conversation()
    request = await provider.next_stream_request()
    request.respond(tool_requests=[("t1", "echo", {"text": "a"})], stop_reason=StopReason.END_TURN)

    result = await task

    assert result is not None and result.stop_reason is StopReason.TOOL_USE
    assert agent.status == Stopped(StopReason.TOOL_USE)


@pytest.mark.asyncio
async def test_abort_mid_stream_discards_partial_blocks_and_answers_tool_uses(provider: MockProvider) -> None:
    agent = _agent(provider)
    agent.append_user_message(TextBlock(text="run it"))
    task = agent.continue_conversation()
    request = await provider.next_stream_request()
    request.stream_text("Working")
    request.stream_tool_use("t1", "echo", {"text": "a"})
    request.start_tool_use("t2", "echo", '{"te')

    assert 2 in agent.streaming_blocks
    agent.abort()
    result = await task

    assert result is None
    assert request.aborted
    assert agent.status == Stopped(StopReason.ABORTED)
    assistant = agent.messages[1]
    assert assistant.text() == "Working"
    assert [block.id for block in assistant.tool_uses()] == ["t1"]
    (answer,) = agent.messages[2].tool_results()
    assert answer.tool_use_id == "t1"
    assert result_text(answer) == ABORTED_TOOL_RESULT_TEXT
    assert agent.streaming_blocks == {}
    _assert_every_tool_use_answered(agent)


@pytest.mark.asyncio
async def test_abort_before_any_block_leaves_only_user_message(provider: MockProvider) -> None:
    agent = _agent(provider)
    agent.append_user_message(TextBlock(text="hello"))
    task = agent.continue_conversation()
    await provider.next_stream_request()

    agent.abort()
    await task

    assert agent.status == Stopped(StopReason.ABORTED)
    assert [message.role for message in agent.messages] == [Role.USER]


@pytest.mark.asyncio
async def test_abort_while_waiting_for_tool_results(provider: MockProvider) -> None:
    agent = _agent(provider)
    agent.append_user_message(TextBlock(text="go"))
    task = agent.continue_conversation()
    request = await provider.next_stream_request()
    request.respond(tool_requests=[("t1", "echo", {"text": "a"}), ("t2", "echo", {"text": "b"})])
    await task
    agent.tool_result("t1", ToolResultError(message="done"))

    agent.abort()

    assert agent.status == Stopped(StopReason.ABORTED)
    results = tool_results(agent.messages[-1])
    assert result_text(results["t1"]) == "done"
    assert result_text(results["t2"]) == ABORTED_TOOL_RESULT_TEXT
    _assert_every_tool_use_answered(agent)


@pytest.mark.asyncio
async def test_transport_failure_sets_error_and_synthesizes_results(provider: MockProvider) -> None:
    agent = _agent(provider)
    agent.append_user_message(TextBlock(text="go"))
    task = agent.continue_conversation()
    request = await provider.next_stream_request()
    request.stream_tool_use("t1", "echo", {"text": "a"})
    request.fail(RuntimeError("connection reset"))

    await task

    assert agent.status == Errored("mock: connection reset")
    (answer,) = agent.messages[-1].tool_results()
    assert result_text(answer) == "Stream error occurred: connection reset"
    _assert_every_tool_use_answered(agent)


@pytest.mark.asyncio
async def test_engine_errors_keep_their_origin(provider: MockProvider) -> None:
    agent = _agent(provider)
    agent.append_user_message(TextBlock(text="go"))
    task = agent.continue_conversation()
    request = await provider.next_stream_request()
    request.fail(TransportError(message="rate limited", origin="anthropic"))

    await task

    assert agent.status == Errored("anthropic: rate limited")


@pytest.mark.asyncio
async def test_protocol_violation_ends_turn_with_error(provider: MockProvider) -> None:
    agent = _agent(provider)
    agent.append_user_message(TextBlock(text="go"))
    task = agent.continue_conversation()
    request = await provider.next_stream_request()
    request.stream_text("partial")
    request.emit(BlockDelta(index=7, delta=TextDelta(text="stray")))

    await task

    assert isinstance(agent.status, Errored)
    assert "Delta for block 7" in agent.status.detail
    assert agent.messages[-1].text() == "partial"


@pytest.mark.asyncio
async def test_stream_ending_with_open_block_is_an_error(provider: MockProvider) -> None:
    agent = _agent(provider)
    agent.append_user_message(TextBlock(text="go"))
    task = agent.continue_conversation()
    request = await provider.next_stream_request()
    request.start_tool_use("t1", "echo")
    request.finish(StopReason.TOOL_USE)

    await task

    assert isinstance(agent.status, Errored)
    assert "unterminated" in agent.status.detail
    assert agent.pending_tool_uses() == []


@pytest.mark.asyncio
async def test_compact_rewrites_history_and_continues(provider: MockProvider) -> None:
    agent = _agent(provider)
    agent.append_user_message(TextBlock(text="first"), CheckpointBlock(id="cp0"))
    task = agent.continue_conversation()
    (await provider.next_stream_request()).respond(text="one")
    await task
    agent.append_user_message(TextBlock(text="second"), CheckpointBlock(id="cp1"))
    task = agent.continue_conversation()
    (await provider.next_stream_request()).respond(
        tool_requests=[("c1", "compact", {"replacements": [{"to": "cp0", "summary": "Said one"}]})]
    )
    await task

    continued = agent.compact([CompactReplacement(summary="Said one", to_checkpoint="cp0")], "carry on")
    assert continued is not None
    request = await provider.next_stream_request()

    assert request.messages[0].content == (TextBlock(text="Said one"), CheckpointBlock(id="cp0"))
    assert not any(isinstance(block, ToolUseBlock) for message in request.messages for block in message.content)
    assert request.messages[-1].text() == "carry on"
    request.respond(text="ok")
    await continued
    assert agent.status == Stopped(StopReason.END_TURN)


@pytest.mark.asyncio
async def test_unsubscribe_stops_notifications(provider: MockProvider) -> None:
    agent = _agent(provider)
    events: list = []
    unsubscribe = agent.subscribe(events.append)
    unsubscribe()

    agent.append_user_message(TextBlock(text="quiet"))

    assert events == []


@pytest.mark.asyncio
async def test_abort_after_stream_finished_but_before_turn_commits(provider: MockProvider) -> None:
    agent = _agent(provider)
    agent.append_user_message(TextBlock(text="go"))
    task = agent.continue_conversation()
    request = await provider.next_stream_request()
    request.respond(tool_requests=[("t1", "echo", {"text": "a"})])
    await asyncio.sleep(0)
    assert request.handle.done()
    assert agent.is_streaming

    agent.abort()
    result = await task

    assert result is None
    assert agent.status == Stopped(StopReason.ABORTED)
    assert agent.pending_tool_uses() == []
    (answer,) = agent.messages[-1].tool_results()
    assert answer.tool_use_id == "t1"
    assert result_text(answer) == ABORTED_TOOL_RESULT_TEXT
    _assert_every_tool_use_answered(agent)

    agent.append_user_message(TextBlock(text="again"))
    task = agent.continue_conversation()
    (await provider.next_stream_request()).respond(text="ok")
    await task
    assert agent.status == Stopped(StopReason.END_TURN)


@pytest.mark.asyncio
async def test_user_message_cannot_split_tool_results(provider: MockProvider) -> None:
    agent = _agent(provider)
    agent.append_user_message(TextBlock(text="go"))
    task = agent.continue_conversation()
    (await provider.next_stream_request()).respond(
        tool_requests=[("a", "echo", {"text": "a"}), ("b", "echo", {"text": "b"})]
    )
    await task

    agent.tool_result("a", ToolResultError(message="first"))
    with pytest.raises(InvalidOperationError, match="lack results") as excinfo:
        agent.append_user_message(TextBlock(text="interjection"))
    assert excinfo.value.details == {"missing": ["b"]}
    agent.tool_result("b", ToolResultError(message="second"))

    assert len(agent.messages) == 3
    assert list(tool_results(agent.messages[2])) == ["a", "b"]
    assert "interjection" not in agent.messages[2].text()


async def _two_turns(provider: MockProvider, agent: Agent) -> None:
    agent.append_user_message(TextBlock(text="first"), CheckpointBlock(id="cp0"))
    task = agent.continue_conversation()
    (await provider.next_stream_request()).respond(text="one")
    await task
    agent.append_user_message(TextBlock(text="second"), CheckpointBlock(id="cp1"))
    task = agent.continue_conversation()
    (await provider.next_stream_request()).respond(text="two")
    await task


@pytest.mark.asyncio
async def test_clone_copies_history_without_subscribers(provider: MockProvider) -> None:
    agent = _agent(provider)
    await _two_turns(provider, agent)
    events: list = []
    agent.subscribe(events.append)

    cloned = agent.clone(thread_id=2)

    assert cloned is not agent
    assert cloned.messages == agent.messages
    assert cloned.status == agent.status == Stopped(StopReason.END_TURN)
    assert cloned.usage == agent.usage
    assert cloned.config == agent.config and cloned.config is not agent.config

    cloned.append_user_message(TextBlock(text="only in the copy"))
    assert events == []
    assert len(cloned.messages) == 5
    assert len(agent.messages) == 4


@pytest.mark.asyncio
async def test_clone_refused_while_streaming(provider: MockProvider) -> None:
    agent = _agent(provider)
    agent.append_user_message(TextBlock(text="go"))
    task = agent.continue_conversation()
    request = await provider.next_stream_request()

    with pytest.raises(InvalidOperationError, match="clone"):
        agent.clone()

    request.respond(text="done")
    await task


@pytest.mark.asyncio
async def test_truncate_messages_keeps_prefix(provider: MockProvider) -> None:
    agent = _agent(provider)
    await _two_turns(provider, agent)

    with pytest.raises(InvalidOperationError, match="out of range"):
        agent.truncate_messages(4)
    agent.truncate_messages(1)

    assert [message.text() for message in agent.messages] == ["first", "one"]
    assert agent.status == Stopped(StopReason.END_TURN)
    with pytest.raises(InvalidOperationError, match="last message is from the assistant"):
        agent.continue_conversation()


@pytest.mark.asyncio
async def test_truncate_refuses_to_orphan_tool_uses(provider: MockProvider) -> None:
    agent = _agent(provider)
    agent.append_user_message(TextBlock(text="go"))
    task = agent.continue_conversation()
    (await provider.next_stream_request()).respond(tool_requests=[("t1", "echo", {"text": "a"})])
    await task
    agent.tool_result("t1", ToolResultError(message="done"))

    with pytest.raises(InvalidOperationError, match="lose their results"):
        agent.truncate_messages(1)
    with pytest.raises(InvalidOperationError, match="lose their results"):
        agent.compact([], truncate_at=1)

    agent.truncate_messages(2)
    assert len(agent.messages) == 3
    _assert_every_tool_use_answered(agent)


@pytest.mark.asyncio
async def test_compact_with_truncation_drops_the_tail(provider: MockProvider) -> None:
    agent = _agent(provider)
    await _two_turns(provider, agent)

    continued = agent.compact([CompactReplacement(summary="Said one", to_checkpoint="cp0")], truncate_at=1)

    assert continued is None
    assert [message.content for message in agent.messages] == [
        (TextBlock(text="Said one"), CheckpointBlock(id="cp0")),
        (TextBlock(text="one"),),
    ]
    assert agent.status == Stopped(StopReason.END_TURN)
