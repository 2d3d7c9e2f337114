"""Conversation agent: one thread's history, stream, and status machine.

States::

    idle -> streaming -> stopped(tool_use) -> streaming ...
                      -> stopped(end_turn | max_tokens | aborted)
                      -> error

The agent owns at most one in-flight provider request. Subscribers are
notified synchronously on every status change, history change, and
streaming-block mutation. Whatever happens to a turn, every completed
tool_use block in history ends up with exactly one tool_result.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Callable, Sequence, Union

from ...services import telemetry as telemetry_service
from ...services.telemetry import TelemetrySink, TurnUsageEvent
from ..ai_types import (
    AgentStatus,
    ContentBlock,
    Errored,
    Idle,
    Message,
    Role,
    StopReason,
    Stopped,
    Streaming,
    StreamResult,
    TextBlock,
    ToolResultBlock,
    ToolResultError,
    ToolResultValue,
    ToolSpec,
    ToolUseBlock,
    Usage,
)
from ..client import TokenCounterRegistry
from ..orchestration.compaction import CompactReplacement, compact_messages, trim_compact_tool_use
from ..providers.base import Provider, ProviderRequest, StreamEvent, ToolInputValidator
from ..providers.streaming import StreamingBlock, StreamingBlockAccumulator
from ..tools.errors import AbortedByUser, EngineError, InvalidOperationError, ProtocolViolation, TransportError

LOGGER = logging.getLogger(__name__)

ABORTED_TOOL_RESULT_TEXT = "Request was aborted by the user before tool execution completed."


def stream_error_text(message: str) -> str:
    return f"Stream error occurred: {message}"


@dataclass(slots=True)
class AgentConfig:
    """Per-thread request parameters."""

    model: str
    system_prompt: str | None = None
    tools: Sequence[ToolSpec] = ()
    disable_caching: bool = False
    parallel_tool_calls: bool = True


@dataclass(frozen=True, slots=True)
class StatusChanged:
    status: AgentStatus


@dataclass(frozen=True, slots=True)
class MessagesChanged:
    message_count: int


@dataclass(frozen=True, slots=True)
class StreamingBlockChanged:
    index: int


AgentEvent = Union[StatusChanged, MessagesChanged, StreamingBlockChanged]
AgentSubscriber = Callable[[AgentEvent], None]


class Agent:
    """Drives streaming turns for one thread against a :class:`Provider`."""

    def __init__(
        self,
        provider: Provider,
        config: AgentConfig,
        *,
        validate_input: ToolInputValidator | None = None,
        thread_id: int | None = None,
        usage_sink: TelemetrySink | None = None,
    ) -> None:
        self._provider = provider
        self.config = config
        self._validate_input = validate_input
        self._thread_id = thread_id
        self._usage_sink = usage_sink
        self._messages: list[Message] = []
        self._status: AgentStatus = Idle()
        self._usage: Usage | None = None
        self._subscribers: list[AgentSubscriber] = []
        self._request: ProviderRequest[StreamResult] | None = None
        self._accumulator: StreamingBlockAccumulator | None = None
        self._turn_message_index: int | None = None
        self._violation: ProtocolViolation | None = None
        self._abort_requested = False

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def status(self) -> AgentStatus:
        return self._status

    @property
    def usage(self) -> Usage | None:
        return self._usage

    @property
    def provider(self) -> Provider:
        return self._provider

    @property
    def is_streaming(self) -> bool:
        return isinstance(self._status, Streaming)

    @property
    def streaming_blocks(self) -> dict[int, StreamingBlock]:
        """Snapshot of blocks still receiving deltas in the current turn."""

        if self._accumulator is None:
            return {}
        return self._accumulator.open_blocks

    def estimate_input_tokens(self) -> int:
        """Approximate prompt size of the history for the configured model."""

        parts = [self.config.system_prompt or ""]
        parts.extend(message.text() for message in self._messages)
        return TokenCounterRegistry.global_instance().count(self.config.model, "\n".join(parts))

    def last_assistant_index(self) -> int | None:
        for idx in range(len(self._messages) - 1, -1, -1):
            if self._messages[idx].role == Role.ASSISTANT:
                return idx
        return None

    def pending_tool_uses(self) -> list[ToolUseBlock]:
        """tool_use blocks of the last assistant message that still lack a result."""

        idx = self.last_assistant_index()
        if idx is None:
            return []
        answered = {result.tool_use_id for message in self._messages[idx + 1 :] for result in message.tool_results()}
        return [block for block in self._messages[idx].tool_uses() if block.id not in answered]

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self, callback: AgentSubscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _notify(self, event: AgentEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                LOGGER.debug("Agent subscriber failed for %s", type(event).__name__, exc_info=True)

    def _set_status(self, status: AgentStatus) -> None:
        self._status = status
        self._notify(StatusChanged(status))

    def _messages_changed(self) -> None:
        self._notify(MessagesChanged(len(self._messages)))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def append_user_message(self, *content: ContentBlock) -> None:
        """Append user content; refused mid-stream or while tool results are outstanding."""

        self._require_not_streaming("append a user message")
        missing = self.pending_tool_uses()
        if missing:
            raise InvalidOperationError(
                message="Cannot append a user message while tool_use blocks lack results; submit tool results instead",
                origin="agent",
                details={"missing": [block.id for block in missing]},
            )
        if not content:
            return
        self._messages.append(Message(role=Role.USER, content=tuple(content)))
        self._messages_changed()

    def tool_result(self, tool_use_id: str, result: ToolResultValue) -> None:
        """Record the result for one tool_use of the last assistant turn. Does not continue."""

        if self._status != Stopped(StopReason.TOOL_USE):
            raise InvalidOperationError(
                message=f"Cannot provide tool result: expected status stopped(tool_use) but got {self._status!r}",
                origin="agent",
            )
        assistant_idx = self.last_assistant_index()
        if assistant_idx is None or not any(block.id == tool_use_id for block in self._messages[assistant_idx].tool_uses()):
            raise InvalidOperationError(
                message=f"Cannot provide tool result: no tool_use block with id {tool_use_id} in the last assistant message",
                origin="agent",
            )
        if all(block.id != tool_use_id for block in self.pending_tool_uses()):
            raise InvalidOperationError(
                message=f"Cannot provide tool result: {tool_use_id} already has a result",
                origin="agent",
            )

        block = ToolResultBlock(tool_use_id=tool_use_id, result=result)
        if assistant_idx < len(self._messages) - 1:
            trailing = self._messages[-1]
            self._messages[-1] = Message(role=trailing.role, content=trailing.content + (block,))
        else:
            self._messages.append(Message(role=Role.USER, content=(block,)))
        self._messages_changed()

    def continue_conversation(self) -> asyncio.Task[StreamResult | None]:
        """Start the next streaming turn; returns the task that completes with it."""

        self._require_not_streaming("continue the conversation")
        if not self._messages:
            raise InvalidOperationError(message="Cannot continue an empty conversation", origin="agent")
        if self._messages[-1].role == Role.ASSISTANT:
            raise InvalidOperationError(
                message="Cannot continue: the last message is from the assistant",
                origin="agent",
            )
        missing = self.pending_tool_uses()
        if missing:
            raise InvalidOperationError(
                message=f"Cannot continue: tool_use {missing[0].id} has no tool_result",
                origin="agent",
                details={"missing": [block.id for block in missing]},
            )

        self._accumulator = StreamingBlockAccumulator(self._validate_input)
        self._turn_message_index = None
        self._violation = None
        self._abort_requested = False
        self._set_status(Streaming())
        telemetry_service.emit(
            "agent.turn_started",
            {
                "thread_id": self._thread_id,
                "model": self.config.model,
                "message_count": len(self._messages),
                "estimated_input_tokens": self.estimate_input_tokens(),
            },
        )
        LOGGER.debug("Starting stream for thread %s with %s message(s)", self._thread_id, len(self._messages))
        self._request = self._provider.send_message(
            model=self.config.model,
            messages=tuple(self._messages),
            tools=tuple(self.config.tools),
            system_prompt=self.config.system_prompt,
            on_event=self._on_event,
            disable_caching=self.config.disable_caching,
            parallel_tool_calls=self.config.parallel_tool_calls,
        )
        return asyncio.ensure_future(self._run_turn(self._request))

    def abort(self) -> None:
        """Abort the in-flight request, or close out a tool_use turn with abort results."""

        if self.is_streaming:
            # the request may already be done with the turn not yet committed
            self._abort_requested = True
            if self._request is not None:
                self._request.abort()
            return
        if self._status == Stopped(StopReason.TOOL_USE):
            self._synthesize_results(ABORTED_TOOL_RESULT_TEXT)
            self._set_status(Stopped(StopReason.ABORTED))

    def compact(
        self,
        replacements: Sequence[CompactReplacement],
        continuation: str | None = None,
        *,
        truncate_at: int | None = None,
    ) -> asyncio.Task[StreamResult | None] | None:
        """Rewrite history per *replacements*; optionally continue with *continuation*.

        Without *truncate_at* the model asked for the compaction, so its
        ``compact`` tool_use is trimmed first. With *truncate_at* (a user
        request) everything after that message index is dropped instead and
        checkpoints beyond the cut address the end of the thread.
        """

        self._require_not_streaming("compact")
        before = len(self._messages)
        if truncate_at is None:
            self._messages = compact_messages(trim_compact_tool_use(self._messages), replacements)
        else:
            self._check_truncation_point(truncate_at)
            self._messages = compact_messages(self._messages, replacements, truncate_at=truncate_at)
        LOGGER.debug("Compacted thread %s from %s to %s message(s)", self._thread_id, before, len(self._messages))
        telemetry_service.emit(
            "thread.compacted",
            {
                "thread_id": self._thread_id,
                "replacements": len(replacements),
                "messages_before": before,
                "messages_after": len(self._messages),
            },
        )
        self._messages_changed()
        self._set_status(Stopped(StopReason.END_TURN))
        if continuation:
            self.append_user_message(TextBlock(text=continuation))
            return self.continue_conversation()
        return None

    def truncate_messages(self, message_idx: int) -> None:
        """Keep messages ``0..message_idx`` inclusive and drop the rest."""

        self._require_not_streaming("truncate")
        self._check_truncation_point(message_idx)
        self._messages = self._messages[: message_idx + 1]
        self._messages_changed()
        self._set_status(Stopped(StopReason.END_TURN))

    def clone(
        self,
        *,
        config: AgentConfig | None = None,
        validate_input: ToolInputValidator | None = None,
        thread_id: int | None = None,
    ) -> "Agent":
        """Copy history, status, and usage into a new agent with no subscribers."""

        self._require_not_streaming("clone")
        cloned = Agent(
            self._provider,
            config or replace(self.config),
            validate_input=validate_input or self._validate_input,
            thread_id=thread_id,
            usage_sink=self._usage_sink,
        )
        # Message and its blocks are frozen dataclasses
        cloned._messages = list(self._messages)
        cloned._status = self._status
        cloned._usage = self._usage
        return cloned

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _on_event(self, event: StreamEvent) -> None:
        if self._accumulator is None or self._violation is not None:
            return
        try:
            finalized = self._accumulator.apply(event)
        except ProtocolViolation as exc:
            LOGGER.warning("Protocol violation on thread %s: %s", self._thread_id, exc.message)
            self._violation = exc
            if self._request is not None:
                self._request.abort()
            return
        if finalized is not None:
            self._commit_finalized()
        self._notify(StreamingBlockChanged(event.index))

    def _commit_finalized(self) -> None:
        assert self._accumulator is not None
        message = Message(role=Role.ASSISTANT, content=tuple(self._accumulator.finalized))
        if self._turn_message_index is None:
            self._messages.append(message)
            self._turn_message_index = len(self._messages) - 1
        else:
            self._messages[self._turn_message_index] = message
        self._messages_changed()

    async def _run_turn(self, request: ProviderRequest[StreamResult]) -> StreamResult | None:
        try:
            result = await request.result()
        except AbortedByUser:
            if self._violation is not None:
                self._fail(self._violation)
            else:
                self._finish_aborted()
            return None
        except asyncio.CancelledError:
            self._finish_aborted()
            raise
        except EngineError as exc:
            self._fail(exc)
            return None
        except Exception as exc:
            LOGGER.exception("Unexpected failure while streaming thread %s", self._thread_id)
            self._fail(TransportError.from_exception(exc, origin=self._provider.name))
            return None
        finally:
            self._request = None

        if self._violation is not None:
            self._fail(self._violation)
            return None
        if self._abort_requested:
            self._finish_aborted()
            return None
        assert self._accumulator is not None
        if self._accumulator.open_blocks:
            self._fail(
                ProtocolViolation(
                    message="Stream ended with unterminated blocks",
                    details={"open": sorted(self._accumulator.open_blocks)},
                    origin=self._provider.name,
                )
            )
            return None

        stop_reason = result.stop_reason
        if self.pending_tool_uses() and stop_reason != StopReason.TOOL_USE:
            LOGGER.debug("Turn ended with %s but carries tool_use blocks; treating as tool_use", stop_reason.value)
            stop_reason = StopReason.TOOL_USE
        self._accumulator = None
        self._usage = result.usage
        self._record_usage(stop_reason, result.usage)
        self._set_status(Stopped(stop_reason))
        return StreamResult(stop_reason=stop_reason, usage=result.usage)

    def _finish_aborted(self) -> None:
        self._discard_incomplete()
        self._synthesize_results(ABORTED_TOOL_RESULT_TEXT)
        LOGGER.debug("Thread %s turn aborted", self._thread_id)
        self._set_status(Stopped(StopReason.ABORTED))

    def _fail(self, error: EngineError) -> None:
        self._discard_incomplete()
        self._synthesize_results(stream_error_text(error.message))
        detail = error.display_text()
        LOGGER.warning("Thread %s turn failed: %s", self._thread_id, error)
        self._set_status(Errored(detail))

    def _discard_incomplete(self) -> None:
        if self._accumulator is not None:
            self._accumulator.discard_open()
        self._accumulator = None
        if self._turn_message_index is not None and not self._messages[self._turn_message_index].content:
            del self._messages[self._turn_message_index]
            self._messages_changed()
        self._turn_message_index = None

    def _synthesize_results(self, text: str) -> None:
        """Give every unanswered tool_use of the last assistant turn an error result."""

        missing = self.pending_tool_uses()
        if not missing:
            return
        assistant_idx = self.last_assistant_index()
        assert assistant_idx is not None
        blocks = tuple(ToolResultBlock(tool_use_id=block.id, result=ToolResultError(message=text)) for block in missing)
        if assistant_idx < len(self._messages) - 1:
            trailing = self._messages[-1]
            self._messages[-1] = Message(role=trailing.role, content=trailing.content + blocks)
        else:
            self._messages.append(Message(role=Role.USER, content=blocks))
        self._messages_changed()

    def _record_usage(self, stop_reason: StopReason, usage: Usage) -> None:
        payload = {"thread_id": self._thread_id, "model": self.config.model, "stop_reason": stop_reason.value}
        payload.update(usage.as_payload())
        telemetry_service.emit("agent.turn_finished", payload)
        if self._usage_sink is None:
            return
        self._usage_sink.record(
            TurnUsageEvent(
                thread_id=self._thread_id,
                model=self.config.model,
                stop_reason=stop_reason.value,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cache_hits=usage.cache_hits,
                cache_misses=usage.cache_misses,
            )
        )

    def _check_truncation_point(self, message_idx: int) -> None:
        if not 0 <= message_idx < len(self._messages):
            raise InvalidOperationError(
                message=f"Message index {message_idx} is out of range for {len(self._messages)} message(s)",
                origin="agent",
            )
        last = self._messages[message_idx]
        if last.role == Role.ASSISTANT and last.tool_uses():
            raise InvalidOperationError(
                message=f"Cannot cut history after message {message_idx}: its tool_use blocks would lose their results",
                origin="agent",
            )

    def _require_not_streaming(self, action: str) -> None:
        if self.is_streaming:
            raise InvalidOperationError(message=f"Cannot {action} while a response is streaming", origin="agent")


__all__ = [
    "ABORTED_TOOL_RESULT_TEXT",
    "Agent",
    "AgentConfig",
    "AgentEvent",
    "AgentSubscriber",
    "MessagesChanged",
    "StatusChanged",
    "StreamingBlockChanged",
    "stream_error_text",
]
