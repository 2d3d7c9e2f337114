"""Anthropic Messages API adapter."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Sequence, assert_never

import anthropic
import httpx
from anthropic import AsyncAnthropic

from ..ai_types import (
    CheckpointBlock,
    Citation,
    ContentBlock,
    ContextUpdateBlock,
    DocumentBlock,
    ImageBlock,
    InvalidToolRequest,
    Message,
    RedactedThinkingBlock,
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
from .base import (
    BlockDelta,
    BlockStart,
    BlockStop,
    CitationsDelta,
    EventHandler,
    InputJsonDelta,
    ProviderRequest,
    ServerToolUseStart,
    SignatureDelta,
    StreamEvent,
    TextDelta,
    ThinkingDelta,
    ToolInputValidator,
    ToolUseStart,
    accept_any_input,
    get_max_tokens_for_model,
    merge_consecutive_messages,
)
from .caching import MAX_BREAKPOINTS, place_cache_breakpoints, with_cache_control

LOGGER = logging.getLogger(__name__)

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    anthropic.APIConnectionError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
)
_TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (anthropic.APIError, httpx.HTTPError)

_STOP_REASONS: Mapping[str, StopReason] = {
    "end_turn": StopReason.END_TURN,
    "tool_use": StopReason.TOOL_USE,
    "max_tokens": StopReason.MAX_TOKENS,
    "stop_sequence": StopReason.END_TURN,
    "pause_turn": StopReason.END_TURN,
    "refusal": StopReason.END_TURN,
}
_EPHEMERAL = {"type": "ephemeral"}


def checkpoint_text(checkpoint_id: str) -> str:
    return f"<checkpoint:{checkpoint_id}>"


def system_reminder_text(text: str) -> str:
    return f"<system-reminder>\n{text}\n</system-reminder>"


def map_stop_reason(value: str | None) -> StopReason:
    if value is None:
        return StopReason.END_TURN
    return _STOP_REASONS.get(value, StopReason.END_TURN)


def map_usage(usage: Any) -> Usage:
    if usage is None:
        return Usage()
    return Usage(
        input_tokens=int(getattr(usage, "input_tokens", 0) or 0),
        output_tokens=int(getattr(usage, "output_tokens", 0) or 0),
        cache_hits=getattr(usage, "cache_read_input_tokens", None),
        cache_misses=getattr(usage, "cache_creation_input_tokens", None),
    )


# -----------------------------------------------------------------------------
# Canonical -> wire
# -----------------------------------------------------------------------------

def _tool_use_input(block: ToolUseBlock) -> dict[str, Any]:
    request = block.request
    if isinstance(request, ToolRequest):
        return dict(request.input)
    raw = request.raw_input
    return dict(raw) if isinstance(raw, Mapping) else {"raw_input": raw}


def block_to_param(block: ContentBlock) -> dict[str, Any]:
    match block:
        case TextBlock(text=text):
            return {"type": "text", "text": text}
        case ToolUseBlock(id=block_id, name=name):
            return {"type": "tool_use", "id": block_id, "name": name, "input": _tool_use_input(block)}
        case ToolResultBlock(tool_use_id=tool_use_id, result=ToolResultOk(content=content)):
            return {
                "type": "tool_result",
                "tool_use_id": tool_use_id,
                "content": [block_to_param(item) for item in content],
            }
        case ToolResultBlock(tool_use_id=tool_use_id, result=ToolResultError(message=message)):
            return {
                "type": "tool_result",
                "tool_use_id": tool_use_id,
                "content": [{"type": "text", "text": message}],
                "is_error": True,
            }
        case ImageBlock(media_type=media_type, data=data):
            return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}
        case DocumentBlock(media_type=media_type, data=data, title=title):
            param: dict[str, Any] = {
                "type": "document",
                "source": {"type": "base64", "media_type": media_type, "data": data},
            }
            if title:
                param["title"] = title
            return param
        case ThinkingBlock(thinking=thinking, signature=signature):
            return {"type": "thinking", "thinking": thinking, "signature": signature}
        case RedactedThinkingBlock(data=data):
            return {"type": "redacted_thinking", "data": data}
        case ServerToolUseBlock(id=block_id, name=name, input=raw_input):
            return {"type": "server_tool_use", "id": block_id, "name": name, "input": raw_input}
        case ServerToolResultBlock(tool_use_id=tool_use_id, content=content):
            return {"type": "web_search_tool_result", "tool_use_id": tool_use_id, "content": content}
        case SystemReminderBlock(text=text):
            return {"type": "text", "text": system_reminder_text(text)}
        case ContextUpdateBlock(text=text):
            return {"type": "text", "text": text}
        case CheckpointBlock(id=checkpoint_id):
            return {"type": "text", "text": checkpoint_text(checkpoint_id)}
        case ToolResultBlock():
            raise TypeError(f"Unhandled tool result value {block.result!r}")
        case _:
            assert_never(block)


def messages_to_params(messages: Sequence[Message]) -> list[dict[str, Any]]:
    return [
        {"role": message.role.value, "content": [block_to_param(block) for block in message.content]}
        for message in merge_consecutive_messages(messages)
    ]


# -----------------------------------------------------------------------------
# Wire -> canonical
# -----------------------------------------------------------------------------

def _citation_from_wire(raw: Any) -> Citation:
    return Citation(
        cited_text=str(getattr(raw, "cited_text", "") or ""),
        title=getattr(raw, "title", None) or getattr(raw, "document_title", None),
        url=getattr(raw, "url", None),
        document_index=getattr(raw, "document_index", None),
    )


def _dump(value: Any) -> Any:
    if isinstance(value, list):
        return [_dump(item) for item in value]
    dump = getattr(value, "model_dump", None)
    if callable(dump):
        return dump()
    return value


class AnthropicEventNormalizer:
    """Translates native stream events to canonical ones.

    Blocks of unknown native type are skipped together with their deltas
    and stop, so they never reach the accumulator.
    """

    def __init__(self) -> None:
        self._skipped: set[int] = set()

    def normalize(self, event: Any) -> StreamEvent | None:
        event_type = getattr(event, "type", None)
        index = getattr(event, "index", None)
        if event_type == "content_block_start":
            start = self._start_payload(event.content_block)
            if start is None:
                LOGGER.debug("Skipping unsupported content block %r at index %s", getattr(event.content_block, "type", None), index)
                self._skipped.add(index)
                return None
            return BlockStart(index=index, block=start)
        if event_type == "content_block_delta":
            if index in self._skipped:
                return None
            delta = self._delta_payload(event.delta)
            if delta is None:
                return None
            return BlockDelta(index=index, delta=delta)
        if event_type == "content_block_stop":
            if index in self._skipped:
                self._skipped.discard(index)
                return None
            return BlockStop(index=index)
        return None

    @staticmethod
    def _start_payload(block: Any) -> Any:
        block_type = getattr(block, "type", None)
        if block_type == "text":
            citations = tuple(_citation_from_wire(item) for item in (getattr(block, "citations", None) or ()))
            return TextBlock(text=getattr(block, "text", "") or "", citations=citations)
        if block_type == "tool_use":
            return ToolUseStart(id=block.id, name=block.name)
        if block_type == "server_tool_use":
            return ServerToolUseStart(id=block.id, name=block.name)
        if block_type == "thinking":
            return ThinkingBlock(thinking=getattr(block, "thinking", "") or "", signature=getattr(block, "signature", "") or "")
        if block_type == "redacted_thinking":
            return RedactedThinkingBlock(data=block.data)
        if block_type == "web_search_tool_result":
            return ServerToolResultBlock(tool_use_id=block.tool_use_id, content=_dump(block.content))
        return None

    @staticmethod
    def _delta_payload(delta: Any) -> Any:
        delta_type = getattr(delta, "type", None)
        if delta_type == "text_delta":
            return TextDelta(text=delta.text)
        if delta_type == "input_json_delta":
            return InputJsonDelta(partial_json=delta.partial_json)
        if delta_type == "thinking_delta":
            return ThinkingDelta(thinking=delta.thinking)
        if delta_type == "signature_delta":
            return SignatureDelta(signature=delta.signature)
        if delta_type == "citations_delta":
            return CitationsDelta(citation=_citation_from_wire(delta.citation))
        LOGGER.debug("Ignoring unsupported delta type %r", delta_type)
        return None


# -----------------------------------------------------------------------------
# Provider
# -----------------------------------------------------------------------------

class AnthropicProvider:
    """Streams Anthropic Messages API turns as canonical block events."""

    name = "anthropic"
    supports_parallel_tool_use = True

    def __init__(self, settings: ClientSettings, *, client: AsyncAnthropic | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    def _build_client(self, settings: ClientSettings) -> AsyncAnthropic:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncAnthropic(
            api_key=settings.api_key or None,
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
        )

    def build_stream_params(
        self,
        *,
        model: str,
        messages: Sequence[Message],
        tools: Sequence[ToolSpec],
        system_prompt: str | None,
        disable_caching: bool = False,
        parallel_tool_calls: bool = True,
    ) -> dict[str, Any]:
        wire_messages = messages_to_params(messages)
        placed = 0
        if not disable_caching:
            wire_messages, placed = place_cache_breakpoints(wire_messages)
        params: dict[str, Any] = {
            "model": model,
            "max_tokens": get_max_tokens_for_model(model),
            "messages": wire_messages,
        }
        if system_prompt:
            system_block: dict[str, Any] = {"type": "text", "text": system_prompt}
            if not disable_caching and placed < MAX_BREAKPOINTS:
                system_block["cache_control"] = dict(_EPHEMERAL)
            params["system"] = [system_block]
        if tools:
            params["tools"] = [spec.to_dict() for spec in tools]
            tool_choice: dict[str, Any] = {"type": "auto"}
            if not parallel_tool_calls:
                tool_choice["disable_parallel_tool_use"] = True
            params["tool_choice"] = tool_choice
        return params

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
        params = self.build_stream_params(
            model=model,
            messages=messages,
            tools=tools,
            system_prompt=system_prompt,
            disable_caching=disable_caching,
            parallel_tool_calls=parallel_tool_calls,
        )
        LOGGER.debug("Starting Anthropic stream via %s with %s message(s)", model, len(params["messages"]))
        if self._settings.debug_logging:
            log_payload(LOGGER, "Anthropic request payload", params)
        return ProviderRequest(self._stream(params, on_event), label=self.name)

    async def _stream(self, params: Mapping[str, Any], on_event: EventHandler) -> StreamResult:
        normalizer = AnthropicEventNormalizer()
        emitted = False
        try:
            async for attempt in build_retrying(self._settings, RETRYABLE_ERRORS):
                with attempt:
                    try:
                        async with self._client.messages.stream(**params) as stream:
                            async for event in stream:
                                canonical = normalizer.normalize(event)
                                if canonical is not None:
                                    emitted = True
                                    on_event(canonical)
                            final = await stream.get_final_message()
                    except RETRYABLE_ERRORS as exc:
                        # Events already reached the consumer; a replay would duplicate blocks.
                        if emitted:
                            raise TransportError.from_exception(exc, origin=self.name) from exc
                        raise
        except _TRANSPORT_ERRORS as exc:
            raise TransportError.from_exception(exc, origin=self.name) from exc
        return StreamResult(stop_reason=map_stop_reason(getattr(final, "stop_reason", None)), usage=map_usage(getattr(final, "usage", None)))

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
        wire_messages = messages_to_params(messages)
        if not disable_caching:
            wire_messages = with_cache_control(wire_messages)
        params: dict[str, Any] = {
            "model": model,
            "max_tokens": get_max_tokens_for_model(model),
            "messages": wire_messages,
            "tools": [spec.to_dict()],
            "tool_choice": {"type": "tool", "name": spec.name},
        }
        if system_prompt:
            params["system"] = [{"type": "text", "text": system_prompt}]
        return ProviderRequest(self._force(params, validate_input or accept_any_input), label=f"{self.name}:force_tool_use")

    async def _force(self, params: Mapping[str, Any], validate: ToolInputValidator) -> ToolUseResult:
        try:
            async for attempt in build_retrying(self._settings, RETRYABLE_ERRORS):
                with attempt:
                    response = await self._client.messages.create(**params)
        except _TRANSPORT_ERRORS as exc:
            raise TransportError.from_exception(exc, origin=self.name) from exc

        tool_block = next((item for item in response.content if getattr(item, "type", None) == "tool_use"), None)
        if tool_block is None:
            raise ProtocolViolation(message="Response did not contain a tool_use block", origin=self.name)
        raw_input = _dump(tool_block.input)
        if isinstance(raw_input, str):
            try:
                raw_input = json.loads(raw_input)
            except json.JSONDecodeError as exc:
                request = InvalidToolRequest(id=tool_block.id, tool_name=tool_block.name, error=f"Failed to parse tool input JSON: {exc.msg}", raw_input=raw_input)
                return ToolUseResult(
                    tool_request=request,
                    stop_reason=map_stop_reason(getattr(response, "stop_reason", None)),
                    usage=map_usage(getattr(response, "usage", None)),
                )
        return ToolUseResult(
            tool_request=validate(tool_block.id, tool_block.name, raw_input),
            stop_reason=map_stop_reason(getattr(response, "stop_reason", None)),
            usage=map_usage(getattr(response, "usage", None)),
        )

    async def aclose(self) -> None:
        """Close the underlying SDK client to release network resources."""

        await close_client(self._client)


__all__ = [
    "AnthropicEventNormalizer",
    "AnthropicProvider",
    "RETRYABLE_ERRORS",
    "block_to_param",
    "checkpoint_text",
    "map_stop_reason",
    "map_usage",
    "messages_to_params",
    "system_reminder_text",
]
