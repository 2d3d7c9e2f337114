"""Scriptable in-process provider used by tests and offline runs.

Each ``send_message`` call produces a :class:`MockStreamRequest` that the
caller drives explicitly: push text or tool-use blocks, then ``finish``
or ``fail`` the turn. Requests are queued so a test can await the next
one the engine issues.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Mapping, Sequence

from ..ai_types import Message, StopReason, StreamResult, ThinkingBlock, TextBlock, ToolSpec, ToolUseResult, Usage
from .base import (
    BlockDelta,
    BlockStart,
    BlockStop,
    EventHandler,
    InputJsonDelta,
    ProviderRequest,
    SignatureDelta,
    StreamEvent,
    TextDelta,
    ThinkingDelta,
    ToolInputValidator,
    ToolUseStart,
    accept_any_input,
)

LOGGER = logging.getLogger(__name__)


class MockStreamRequest:
    """One scripted streaming turn."""

    def __init__(
        self,
        *,
        model: str,
        messages: Sequence[Message],
        tools: Sequence[ToolSpec],
        system_prompt: str | None,
        on_event: EventHandler,
    ) -> None:
        self.model = model
        self.messages = list(messages)
        self.tools = list(tools)
        self.system_prompt = system_prompt
        self.events: list[StreamEvent] = []
        self._on_event = on_event
        self._next_index = 0
        self._result: asyncio.Future[StreamResult] = asyncio.get_running_loop().create_future()
        self.handle: ProviderRequest[StreamResult] = ProviderRequest(self._wait(), label="mock")

    async def _wait(self) -> StreamResult:
        return await self._result

    @property
    def aborted(self) -> bool:
        return self.handle.aborted

    @property
    def tool_names(self) -> list[str]:
        return [spec.name for spec in self.tools]

    def emit(self, event: StreamEvent) -> None:
        if self._result.done():
            raise RuntimeError("cannot emit events after the turn finished")
        self.events.append(event)
        self._on_event(event)

    def allocate_index(self) -> int:
        index = self._next_index
        self._next_index += 1
        return index

    def stream_text(self, text: str, *, chunks: int = 1) -> int:
        index = self.allocate_index()
        self.emit(BlockStart(index=index, block=TextBlock(text="")))
        for piece in _split(text, chunks):
            self.emit(BlockDelta(index=index, delta=TextDelta(text=piece)))
        self.emit(BlockStop(index=index))
        return index

    def stream_thinking(self, thinking: str, signature: str = "sig") -> int:
        index = self.allocate_index()
        self.emit(BlockStart(index=index, block=ThinkingBlock(thinking="")))
        self.emit(BlockDelta(index=index, delta=ThinkingDelta(thinking=thinking)))
        self.emit(BlockDelta(index=index, delta=SignatureDelta(signature=signature)))
        self.emit(BlockStop(index=index))
        return index

    def start_tool_use(self, tool_id: str, name: str, partial_json: str = "") -> int:
        """Open a tool_use block without closing it (mid-stream state)."""

        index = self.allocate_index()
        self.emit(BlockStart(index=index, block=ToolUseStart(id=tool_id, name=name)))
        if partial_json:
            self.emit(BlockDelta(index=index, delta=InputJsonDelta(partial_json=partial_json)))
        return index

    def stream_tool_use(self, tool_id: str, name: str, tool_input: Mapping[str, Any] | str, *, chunks: int = 1) -> int:
        raw = tool_input if isinstance(tool_input, str) else json.dumps(dict(tool_input))
        index = self.allocate_index()
        self.emit(BlockStart(index=index, block=ToolUseStart(id=tool_id, name=name)))
        for piece in _split(raw, chunks):
            self.emit(BlockDelta(index=index, delta=InputJsonDelta(partial_json=piece)))
        self.emit(BlockStop(index=index))
        return index

    def finish(self, stop_reason: StopReason = StopReason.END_TURN, usage: Usage | None = None) -> None:
        if not self._result.done():
            self._result.set_result(StreamResult(stop_reason=stop_reason, usage=usage or Usage(input_tokens=10, output_tokens=5)))

    def respond(
        self,
        *,
        text: str | None = None,
        tool_requests: Sequence[tuple[str, str, Mapping[str, Any]]] = (),
        stop_reason: StopReason | None = None,
    ) -> None:
        """Stream a complete turn: optional text, then tool calls, then finish."""

        if text:
            self.stream_text(text)
        for tool_id, name, tool_input in tool_requests:
            self.stream_tool_use(tool_id, name, tool_input)
        if stop_reason is None:
            stop_reason = StopReason.TOOL_USE if tool_requests else StopReason.END_TURN
        self.finish(stop_reason)

    def fail(self, error: BaseException) -> None:
        if not self._result.done():
            self._result.set_exception(error)


class MockForceToolUseRequest:
    """One scripted forced tool call."""

    def __init__(
        self,
        *,
        model: str,
        messages: Sequence[Message],
        spec: ToolSpec,
        system_prompt: str | None,
        validate_input: ToolInputValidator,
    ) -> None:
        self.model = model
        self.messages = list(messages)
        self.spec = spec
        self.system_prompt = system_prompt
        self._validate = validate_input
        self._result: asyncio.Future[ToolUseResult] = asyncio.get_running_loop().create_future()
        self.handle: ProviderRequest[ToolUseResult] = ProviderRequest(self._wait(), label="mock:force_tool_use")

    async def _wait(self) -> ToolUseResult:
        return await self._result

    def respond(self, tool_input: Any, *, tool_id: str = "force_tool_1", usage: Usage | None = None) -> None:
        request = self._validate(tool_id, self.spec.name, tool_input)
        if not self._result.done():
            self._result.set_result(ToolUseResult(tool_request=request, stop_reason=StopReason.TOOL_USE, usage=usage or Usage()))

    def fail(self, error: BaseException) -> None:
        if not self._result.done():
            self._result.set_exception(error)


class MockProvider:
    """Provider whose turns are scripted by the caller."""

    name = "mock"

    def __init__(self, *, supports_parallel_tool_use: bool = True) -> None:
        self.supports_parallel_tool_use = supports_parallel_tool_use
        self.stream_requests: list[MockStreamRequest] = []
        self.force_tool_use_requests: list[MockForceToolUseRequest] = []
        self._stream_queue: asyncio.Queue[MockStreamRequest] = asyncio.Queue()
        self._force_queue: asyncio.Queue[MockForceToolUseRequest] = asyncio.Queue()

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
        request = MockStreamRequest(
            model=model,
            messages=messages,
            tools=tools,
            system_prompt=system_prompt,
            on_event=on_event,
        )
        LOGGER.debug("Mock stream request #%s for %s", len(self.stream_requests) + 1, model)
        self.stream_requests.append(request)
        self._stream_queue.put_nowait(request)
        return request.handle

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
        request = MockForceToolUseRequest(
            model=model,
            messages=messages,
            spec=spec,
            system_prompt=system_prompt,
            validate_input=validate_input or accept_any_input,
        )
        self.force_tool_use_requests.append(request)
        self._force_queue.put_nowait(request)
        return request.handle

    async def next_stream_request(self, timeout: float = 1.0) -> MockStreamRequest:
        return await asyncio.wait_for(self._stream_queue.get(), timeout)

    async def next_force_tool_use_request(self, timeout: float = 1.0) -> MockForceToolUseRequest:
        return await asyncio.wait_for(self._force_queue.get(), timeout)

    def has_pending_stream_request(self) -> bool:
        return not self._stream_queue.empty()


def _split(text: str, chunks: int) -> list[str]:
    if chunks <= 1 or len(text) <= 1:
        return [text] if text else []
    size = max(1, -(-len(text) // chunks))
    return [text[start : start + size] for start in range(0, len(text), size)]


__all__ = ["MockForceToolUseRequest", "MockProvider", "MockStreamRequest"]
