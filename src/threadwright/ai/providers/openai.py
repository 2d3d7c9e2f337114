"""OpenAI-compatible chat-completions adapter.

Chat-completions streams deliver a tool call's id, name, and arguments
in separate chunks. :class:`OpenAIChunkNormalizer` buffers them per
native tool index and only emits the canonical ``start`` once the id and
name are both known, so consumers always see well-formed blocks.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence

import httpx
from openai import APIConnectionError, APIError, AsyncOpenAI, InternalServerError, RateLimitError

from ..ai_types import (
    CheckpointBlock,
    ContentBlock,
    ContextUpdateBlock,
    DocumentBlock,
    ImageBlock,
    InvalidToolRequest,
    Message,
    RedactedThinkingBlock,
    Role,
    ServerToolResultBlock,
    ServerToolUseBlock,
    StopReason,
    StreamResult,
    SystemReminderBlock,
    TextBlock,
    ThinkingBlock,
    ToolRequest,
    ToolResultBlock,
    ToolResultError,
    ToolResultOk,
    ToolSpec,
    ToolUseBlock,
    ToolUseResult,
    Usage,
)
from ..client import ClientSettings, build_retrying, close_client, log_payload
from ..tools.errors import ProtocolViolation, TransportError
from .anthropic import checkpoint_text, system_reminder_text
from .base import (
    BlockDelta,
    BlockStart,
    BlockStop,
    EventHandler,
    InputJsonDelta,
    ProviderRequest,
    TextDelta,
    ToolInputValidator,
    ToolUseStart,
    accept_any_input,
    merge_consecutive_messages,
)
from .schema import sanitize_tool_spec
from .streaming import parse_streamed_json

LOGGER = logging.getLogger(__name__)

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (APIConnectionError, RateLimitError, InternalServerError)
_TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (APIError, httpx.HTTPError)

_FINISH_REASONS: Mapping[str, StopReason] = {
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "length": StopReason.MAX_TOKENS,
    "stop": StopReason.END_TURN,
    "content_filter": StopReason.END_TURN,
}


def map_finish_reason(value: str | None) -> StopReason:
    if not value:
        return StopReason.END_TURN
    return _FINISH_REASONS.get(value, StopReason.END_TURN)


def map_usage(usage: Any) -> Usage:
    if usage is None:
        return Usage()
    details = getattr(usage, "prompt_tokens_details", None)
    cached = getattr(details, "cached_tokens", None) if details is not None else None
    return Usage(
        input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
        output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
        cache_hits=cached,
    )


# -----------------------------------------------------------------------------
# Canonical -> wire
# -----------------------------------------------------------------------------

def _text_of(block: ContentBlock) -> str | None:
    match block:
        case TextBlock(text=text) | ContextUpdateBlock(text=text):
            return text
        case SystemReminderBlock(text=text):
            return system_reminder_text(text)
        case CheckpointBlock(id=checkpoint_id):
            return checkpoint_text(checkpoint_id)
        case DocumentBlock(media_type=media_type, title=title):
            return f"[document {title or 'untitled'} ({media_type}) omitted]"
        case _:
            return None


def _tool_result_text(block: ToolResultBlock) -> str:
    result = block.result
    if isinstance(result, ToolResultError):
        return f"Error: {result.message}"
    parts = [text for text in (_text_of(item) for item in result.content) if text]
    return "\n".join(parts)


def _tool_call_arguments(block: ToolUseBlock) -> str:
    request = block.request
    if isinstance(request, ToolRequest):
        return json.dumps(dict(request.input), ensure_ascii=False)
    return json.dumps(request.raw_input, ensure_ascii=False, default=str)


def messages_to_chat_params(messages: Sequence[Message], system_prompt: str | None) -> List[Dict[str, Any]]:
    """Convert canonical history to chat-completions messages.

    Tool results become ``role=tool`` messages placed before any other
    user content of the same turn. Thinking and server-tool blocks have no
    chat-completions equivalent and are dropped.
    """

    params: List[Dict[str, Any]] = []
    if system_prompt:
        params.append({"role": "system", "content": system_prompt})
    for message in merge_consecutive_messages(messages):
        if message.role is Role.ASSISTANT:
            text = "".join(part for part in (_text_of(block) for block in message.content) if part)
            tool_calls = [
                {
                    "id": block.id,
                    "type": "function",
                    "function": {"name": block.name, "arguments": _tool_call_arguments(block)},
                }
                for block in message.tool_uses()
            ]
            entry: Dict[str, Any] = {"role": "assistant", "content": text or None}
            if tool_calls:
                entry["tool_calls"] = tool_calls
            params.append(entry)
            continue

        parts: List[Dict[str, Any]] = []
        for block in message.content:
            if isinstance(block, ToolResultBlock):
                params.append({"role": "tool", "tool_call_id": block.tool_use_id, "content": _tool_result_text(block)})
            elif isinstance(block, ImageBlock):
                parts.append({"type": "image_url", "image_url": {"url": f"data:{block.media_type};base64,{block.data}"}})
            elif isinstance(block, (ThinkingBlock, RedactedThinkingBlock, ServerToolUseBlock, ServerToolResultBlock, ToolUseBlock)):
                continue
            else:
                text = _text_of(block)
                if text:
                    parts.append({"type": "text", "text": text})
        if parts:
            params.append({"role": "user", "content": parts})
    return params


def tool_to_function(spec: ToolSpec) -> Dict[str, Any]:
    sanitized = sanitize_tool_spec(spec)
    return {
        "type": "function",
        "function": {
            "name": sanitized.name,
            "description": sanitized.description,
            "parameters": dict(sanitized.input_schema),
        },
    }


# -----------------------------------------------------------------------------
# Wire -> canonical
# -----------------------------------------------------------------------------

class ThinkTagFilter:
    """Incrementally removes ``<think>...</think>`` sections from streamed text.

    Tags may be split across chunks, so a trailing partial tag is held back
    until the next chunk decides it.
    """

    OPEN = "<think>"
    CLOSE = "</think>"

    def __init__(self) -> None:
        self._depth = 0
        self._pending = ""

    def feed(self, text: str) -> str:
        data = self._pending + text
        self._pending = ""
        output: list[str] = []
        position = 0
        while position < len(data):
            if data.startswith(self.OPEN, position):
                self._depth += 1
                position += len(self.OPEN)
                continue
            if self._depth and data.startswith(self.CLOSE, position):
                self._depth -= 1
                position += len(self.CLOSE)
                continue
            if data[position] == "<":
                rest = data[position:]
                if self.OPEN.startswith(rest) or self.CLOSE.startswith(rest):
                    self._pending = rest
                    break
            if not self._depth:
                output.append(data[position])
            position += 1
        return "".join(output)

    def flush(self) -> str:
        pending, self._pending = self._pending, ""
        return "" if self._depth else pending


@dataclass(slots=True)
class _PendingToolCall:
    id: str = ""
    name: str = ""
    buffered_arguments: str = ""
    block_index: int | None = None


class OpenAIChunkNormalizer:
    """Adapter-local state turning chat-completion chunks into canonical events."""

    def __init__(self, on_event: EventHandler) -> None:
        self._on_event = on_event
        self._next_index = 0
        self._text_index: int | None = None
        self._tool_calls: dict[int, _PendingToolCall] = {}
        self._think_filter = ThinkTagFilter()
        self._finish_reason: str | None = None
        self.usage = Usage()

    @property
    def started_tool_blocks(self) -> int:
        return sum(1 for call in self._tool_calls.values() if call.block_index is not None)

    def feed(self, chunk: Any) -> None:
        usage = getattr(chunk, "usage", None)
        if usage is not None:
            self.usage = map_usage(usage)
        choices = getattr(chunk, "choices", None) or ()
        if not choices:
            return
        choice = choices[0]
        finish_reason = getattr(choice, "finish_reason", None)
        if finish_reason:
            self._finish_reason = finish_reason
        delta = getattr(choice, "delta", None)
        if delta is None:
            return
        content = getattr(delta, "content", None)
        if content:
            self._emit_text(self._think_filter.feed(content))
        for tool_delta in getattr(delta, "tool_calls", None) or ():
            self._feed_tool_call(tool_delta)

    def finish(self) -> StopReason:
        """Close every open block and return the turn's stop reason."""

        self._emit_text(self._think_filter.flush())
        self._close_text()
        for native_index, call in sorted(self._tool_calls.items()):
            if call.block_index is None:
                if not call.name:
                    LOGGER.warning("Dropping tool call %s that never received a name", native_index)
                    continue
                call.id = call.id or f"call_{native_index}"
                self._start_tool_block(call)
            self._on_event(BlockStop(index=call.block_index))
        stop_reason = map_finish_reason(self._finish_reason)
        if self.started_tool_blocks and stop_reason is StopReason.END_TURN:
            stop_reason = StopReason.TOOL_USE
        return stop_reason

    def _emit_text(self, text: str) -> None:
        if not text:
            return
        if self._text_index is None:
            self._text_index = self._allocate_index()
            self._on_event(BlockStart(index=self._text_index, block=TextBlock(text="")))
        self._on_event(BlockDelta(index=self._text_index, delta=TextDelta(text=text)))

    def _close_text(self) -> None:
        if self._text_index is not None:
            self._on_event(BlockStop(index=self._text_index))
            self._text_index = None

    def _feed_tool_call(self, tool_delta: Any) -> None:
        native_index = getattr(tool_delta, "index", None) or 0
        call = self._tool_calls.setdefault(native_index, _PendingToolCall())
        if getattr(tool_delta, "id", None):
            call.id = tool_delta.id
        function = getattr(tool_delta, "function", None)
        arguments = ""
        if function is not None:
            if getattr(function, "name", None):
                call.name = function.name
            arguments = getattr(function, "arguments", None) or ""

        if call.block_index is None:
            call.buffered_arguments += arguments
            if call.id and call.name:
                self._start_tool_block(call)
            return
        if arguments:
            self._on_event(BlockDelta(index=call.block_index, delta=InputJsonDelta(partial_json=arguments)))

    def _start_tool_block(self, call: _PendingToolCall) -> None:
        self._close_text()
        call.block_index = self._allocate_index()
        self._on_event(BlockStart(index=call.block_index, block=ToolUseStart(id=call.id, name=call.name)))
        if call.buffered_arguments:
            self._on_event(BlockDelta(index=call.block_index, delta=InputJsonDelta(partial_json=call.buffered_arguments)))
            call.buffered_arguments = ""

    def _allocate_index(self) -> int:
        index = self._next_index
        self._next_index += 1
        return index


# -----------------------------------------------------------------------------
# Provider
# -----------------------------------------------------------------------------

class OpenAIProvider:
    """Streams OpenAI-compatible chat completions as canonical block events."""

    name = "openai"
    supports_parallel_tool_use = True

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
        )

    def build_chat_payload(
        self,
        *,
        model: str,
        messages: Sequence[Message],
        tools: Sequence[ToolSpec],
        system_prompt: str | None,
        parallel_tool_calls: bool = True,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages_to_chat_params(messages, system_prompt),
            "stream_options": {"include_usage": True},
        }
        if tools:
            payload["tools"] = [tool_to_function(spec) for spec in tools]
            if not parallel_tool_calls:
                payload["parallel_tool_calls"] = False
        return payload

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
        payload = self.build_chat_payload(
            model=model,
            messages=messages,
            tools=tools,
            system_prompt=system_prompt,
            parallel_tool_calls=parallel_tool_calls,
        )
        LOGGER.debug("Starting streamed chat completion via %s with %s message(s)", model, len(payload["messages"]))
        if self._settings.debug_logging:
            log_payload(LOGGER, "Chat completion payload", payload)
        return ProviderRequest(self._stream(payload, on_event), label=self.name)

    async def _stream(self, payload: Mapping[str, Any], on_event: EventHandler) -> StreamResult:
        emitted = False

        def _forward(event: Any) -> None:
            nonlocal emitted
            emitted = True
            on_event(event)

        normalizer = OpenAIChunkNormalizer(_forward)
        try:
            async for attempt in build_retrying(self._settings, RETRYABLE_ERRORS):
                with attempt:
                    try:
                        async with self._client.chat.completions.stream(**payload) as stream:
                            async for event in stream:
                                if getattr(event, "type", None) == "chunk":
                                    normalizer.feed(event.chunk)
                    except RETRYABLE_ERRORS as exc:
                        # Events already reached the consumer; a replay would duplicate blocks.
                        if emitted:
                            raise TransportError.from_exception(exc, origin=self.name) from exc
                        raise
        except _TRANSPORT_ERRORS as exc:
            raise TransportError.from_exception(exc, origin=self.name) from exc
        stop_reason = normalizer.finish()
        return StreamResult(stop_reason=stop_reason, usage=normalizer.usage)

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
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages_to_chat_params(messages, system_prompt),
            "tools": [tool_to_function(spec)],
            "tool_choice": {"type": "function", "function": {"name": spec.name}},
        }
        return ProviderRequest(self._force(payload, validate_input or accept_any_input), label=f"{self.name}:force_tool_use")

    async def _force(self, payload: Mapping[str, Any], validate: ToolInputValidator) -> ToolUseResult:
        try:
            async for attempt in build_retrying(self._settings, RETRYABLE_ERRORS):
                with attempt:
                    response = await self._client.chat.completions.create(**payload)
        except _TRANSPORT_ERRORS as exc:
            raise TransportError.from_exception(exc, origin=self.name) from exc

        choice = response.choices[0] if response.choices else None
        message = getattr(choice, "message", None)
        tool_calls = getattr(message, "tool_calls", None) or ()
        if not tool_calls:
            raise ProtocolViolation(message="Response did not contain a tool call", origin=self.name)
        call = tool_calls[0]
        raw, error = parse_streamed_json(call.function.arguments or "")
        if error is not None:
            request = InvalidToolRequest(id=call.id, tool_name=call.function.name, error=error, raw_input=raw)
        else:
            request = validate(call.id, call.function.name, raw)
        return ToolUseResult(
            tool_request=request,
            stop_reason=StopReason.TOOL_USE,
            usage=map_usage(getattr(response, "usage", None)),
        )

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        await close_client(self._client)


__all__ = [
    "OpenAIChunkNormalizer",
    "OpenAIProvider",
    "RETRYABLE_ERRORS",
    "ThinkTagFilter",
    "map_finish_reason",
    "map_usage",
    "messages_to_chat_params",
    "tool_to_function",
]
