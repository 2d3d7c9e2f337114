"""Thread: one conversation, its agent, its tools, and its drive loop.

The drive loop wires the Conversation Agent to the Tool Execution Manager::

    stream -> stopped(tool_use) -> run tools -> submit results -> stream ...

and ends on a terminal stop reason, a ``yield_to_parent`` call, an abort,
or too many consecutive turns in which every tool call was malformed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Sequence, assert_never

from ..ai.agents.conversation import Agent, AgentConfig, AgentEvent
from ..ai.ai_types import (
    ContentBlock,
    ContextUpdateBlock,
    Errored,
    Idle,
    InvalidToolRequest,
    Role,
    StopReason,
    Stopped,
    Streaming,
    StreamResult,
    SystemReminderBlock,
    TextBlock,
    ToolUseBlock,
    user_message,
)
from ..ai.orchestration.compaction import COMPACT_TOOL_NAME, CompactReplacement
from ..ai.orchestration.tool_manager import ApprovalPolicy, ToolCall, ToolExecutionManager
from ..ai.providers.base import Provider
from ..ai.tools.base import BaseTool, ConfirmCallback, ToolContext
from ..ai.tools.compact import CompactTool, parse_compact_input
from ..ai.tools.errors import EngineError, InvalidOperationError
from ..ai.tools.registry import ToolRegistry
from ..ai.tools.subagent import orchestration_tools
from ..ai.tools.thread_title import THREAD_TITLE_SPEC, validate_title_input
from ..services import telemetry as telemetry_service
from ..services.settings import AgentType, Settings
from ..services.telemetry import TelemetrySink
from .checkpoint import new_checkpoint
from .prompts import SUBAGENT_REMINDER, context_files_text, system_prompt_for, title_prompt
from .types import (
    ThreadError,
    ThreadIdle,
    ThreadRunningTools,
    ThreadStatus,
    ThreadStopped,
    ThreadStreaming,
    ThreadSummary,
    ThreadYielded,
)

if TYPE_CHECKING:
    from .registry import ThreadRegistry

LOGGER = logging.getLogger(__name__)


def invalid_turns_text(count: int) -> str:
    return f"Stopped after {count} consecutive turns in which every tool call was invalid"


class Thread:
    """A conversation owned by a :class:`ThreadRegistry`.

    Parent and child links are stored as ids only; other threads are
    always resolved through the registry.
    """

    def __init__(
        self,
        thread_id: int,
        *,
        registry: "ThreadRegistry",
        provider: Provider,
        settings: Settings,
        agent_type: AgentType = "default",
        parent_id: int | None = None,
        title: str | None = None,
        tools: Sequence[BaseTool] = (),
        approval_policy: ApprovalPolicy | None = None,
        confirm: ConfirmCallback | None = None,
        usage_sink: TelemetrySink | None = None,
    ) -> None:
        self.id = thread_id
        self.parent_id = parent_id
        self.agent_type: AgentType = agent_type
        self.title = title
        self.child_ids: list[int] = []
        self._registry = registry
        self._settings = settings

        self.tools = ToolRegistry([*tools, CompactTool(), *orchestration_tools(subagent=self.is_subagent)])
        config = AgentConfig(
            model=settings.model_for_agent_type(agent_type),
            system_prompt=system_prompt_for(agent_type, subagent=self.is_subagent),
            tools=self.tools.specs(),
            disable_caching=settings.disable_caching,
            parallel_tool_calls=settings.parallel_tool_calls and getattr(provider, "supports_parallel_tool_use", True),
        )
        self.agent = Agent(
            provider,
            config,
            validate_input=self.tools.validate_request,
            thread_id=thread_id,
            usage_sink=usage_sink,
        )
        self.tool_manager = ToolExecutionManager(
            self.tools,
            approval_policy=approval_policy,
            confirm=confirm,
            telemetry=telemetry_service.emit,
            listener=self._on_tool_call,
        )
        self.agent.subscribe(self._on_agent_event)

        self._yielded: str | None = None
        self._error: str | None = None
        self._aborted = False
        self._busy = False
        self._invalid_turns = 0
        self._pending_compaction: tuple[list[CompactReplacement], str | None] | None = None
        self._drive_task: asyncio.Task[None] | None = None
        self._title_task: asyncio.Task[str | None] | None = None

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def is_subagent(self) -> bool:
        return self.parent_id is not None

    @property
    def busy(self) -> bool:
        """True while the drive loop owns the thread."""

        return self._busy

    @property
    def yielded_result(self) -> str | None:
        return self._yielded

    @property
    def drive_task(self) -> asyncio.Task[None] | None:
        return self._drive_task

    @property
    def title_task(self) -> asyncio.Task[str | None] | None:
        return self._title_task

    @property
    def status(self) -> ThreadStatus:
        if self._yielded is not None:
            return ThreadYielded(self._yielded)
        if self._error is not None:
            return ThreadError(self._error)
        if self.tool_manager.in_progress:
            return ThreadRunningTools()
        status = self.agent.status
        match status:
            case Idle():
                return ThreadIdle()
            case Streaming(start_time=start_time):
                return ThreadStreaming(start_time)
            case Stopped(stop_reason=reason):
                return ThreadStopped(reason)
            case Errored(detail=detail):
                return ThreadError(detail)
            case _:
                assert_never(status)

    def summary(self) -> ThreadSummary:
        return ThreadSummary(
            id=self.id,
            status=self.status,
            title=self.title,
            parent_id=self.parent_id,
            child_ids=tuple(self.child_ids),
            agent_type=self.agent_type,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def send_message(self, text: str, *, context_files: Sequence[str] = ()) -> asyncio.Task[None]:
        """Append a user message and start driving the thread.

        Returns the drive task, which completes when the thread stops.
        """

        if self._busy:
            raise InvalidOperationError(message=f"Thread {self.id} is already running", origin="thread")
        first_message = not any(message.role == Role.USER for message in self.agent.messages)
        blocks: list[ContentBlock] = []
        if self.is_subagent and first_message:
            blocks.append(SystemReminderBlock(text=SUBAGENT_REMINDER))
        if context_files:
            blocks.append(ContextUpdateBlock(text=context_files_text(context_files)))
        blocks.append(TextBlock(text=text))
        blocks.append(new_checkpoint())
        self.agent.append_user_message(*blocks)

        if first_message and self.title is None and self._settings.auto_title and not self.is_subagent:
            self._title_task = asyncio.ensure_future(self.generate_title(text))
            self._title_task.add_done_callback(self._log_title_failure)
        return self.start()

    def start(self) -> asyncio.Task[None]:
        self._aborted = False
        self._error = None
        self._invalid_turns = 0
        self._busy = True
        self._drive_task = asyncio.ensure_future(self.run())
        self._changed()
        return self._drive_task

    async def run(self) -> None:
        """Drive the agent until it reaches a resting state."""

        try:
            turn: asyncio.Task[StreamResult | None] | None = self.agent.continue_conversation()
            while turn is not None:
                result = await turn
                turn = await self._after_turn(result)
        except asyncio.CancelledError:
            self.abort()
            raise
        except EngineError as exc:
            LOGGER.warning("Thread %s stopped: %s", self.id, exc)
            self._error = exc.display_text()
        except Exception as exc:
            LOGGER.exception("Thread %s drive loop failed", self.id)
            self._error = f"Internal error: {exc}"
            raise
        finally:
            self._busy = False
            self._changed()

    def abort(self) -> None:
        """Abort streaming or tool execution; the thread ends as ``stopped(aborted)``."""

        self._aborted = True
        self.tool_manager.abort_all()
        self.agent.abort()
        self._changed()

    def adopt_history(self, source: "Thread") -> None:
        """Continue from a copy of *source*'s history, status, and usage."""

        if self._busy or source.busy:
            raise InvalidOperationError(
                message=f"Cannot copy thread {source.id} into thread {self.id} while either is running",
                origin="thread",
            )
        self.agent = source.agent.clone(
            config=self.agent.config,
            validate_input=self.tools.validate_request,
            thread_id=self.id,
        )
        self.agent.subscribe(self._on_agent_event)
        self._changed()

    def record_yield(self, result: str) -> None:
        if self._yielded is not None:
            LOGGER.debug("Thread %s already yielded; ignoring a second result", self.id)
            return
        LOGGER.debug("Thread %s yielded to parent %s", self.id, self.parent_id)
        self._yielded = result
        self._changed()

    def request_compaction(self, replacements: Sequence[CompactReplacement], continuation: str | None = None) -> None:
        """Compact once the current turn's tool results have been submitted."""

        self._pending_compaction = (list(replacements), continuation)

    async def generate_title(self, message: str | None = None) -> str | None:
        """Ask the fast model for a title through the forced ``thread_title`` tool."""

        text = message
        if text is None:
            first = next((m for m in self.agent.messages if m.role == Role.USER), None)
            text = first.text() if first is not None else ""
        request = self.agent.provider.force_tool_use(
            model=self._settings.fast_model,
            messages=(user_message(TextBlock(text=title_prompt(text))),),
            spec=THREAD_TITLE_SPEC,
            validate_input=validate_title_input,
            disable_caching=True,
        )
        try:
            result = await request.result()
        except EngineError as exc:
            LOGGER.warning("Failed to generate a title for thread %s: %s", self.id, exc)
            return None
        if isinstance(result.tool_request, InvalidToolRequest):
            LOGGER.warning("Title request for thread %s was malformed: %s", self.id, result.tool_request.error)
            return None
        self.title = result.tool_request.input["title"]
        self._changed()
        return self.title

    # ------------------------------------------------------------------
    # Drive loop
    # ------------------------------------------------------------------

    async def _after_turn(self, result: StreamResult | None) -> asyncio.Task[StreamResult | None] | None:
        """Handle one finished turn; returns the next turn, or None to stop."""

        if result is None or self._aborted or result.stop_reason != StopReason.TOOL_USE:
            return None

        pending = self.agent.pending_tool_uses()
        if self._is_lone_compaction(pending):
            request = pending[0].request
            replacements, continuation = parse_compact_input(request.input)
            return self.agent.compact(replacements, continuation)

        if pending and not any(block.is_valid for block in pending):
            self._invalid_turns += 1
        else:
            self._invalid_turns = 0

        results = await self.tool_manager.execute_turn(
            pending,
            ToolContext(thread_id=self.id, registry=self._registry, telemetry=telemetry_service.emit),
            parallel=self.agent.config.parallel_tool_calls,
        )
        if self._aborted:
            return None
        for block in results:
            self.agent.tool_result(block.tool_use_id, block.result)

        if self._yielded is not None:
            return None
        if self._pending_compaction is not None:
            replacements, continuation = self._pending_compaction
            self._pending_compaction = None
            return self.agent.compact(replacements, continuation)
        if self._invalid_turns >= self._settings.max_invalid_tool_turns:
            LOGGER.warning("Thread %s: %s", self.id, invalid_turns_text(self._invalid_turns))
            self._error = invalid_turns_text(self._invalid_turns)
            return None
        return self.agent.continue_conversation()

    @staticmethod
    def _is_lone_compaction(pending: Sequence[ToolUseBlock]) -> bool:
        return len(pending) == 1 and pending[0].name == COMPACT_TOOL_NAME and pending[0].is_valid

    def _log_title_failure(self, task: asyncio.Task[str | None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Title generation for thread %s failed: %s", self.id, exc, exc_info=exc)

    def _on_agent_event(self, event: AgentEvent) -> None:
        self._changed()

    def _on_tool_call(self, call: ToolCall) -> None:
        self._changed()

    def _changed(self) -> None:
        self._registry.notify(self.id)


__all__ = ["Thread", "invalid_turns_text"]
