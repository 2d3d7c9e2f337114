"""Tool Execution Manager.

Takes the tool_use blocks of one finished assistant turn, runs each call
through its lifecycle, and hands back the consolidated tool results in the
order the calls were issued:

    pending-approval -> running -> done | rejected | aborted

Invalid requests never reach a tool; they finish immediately with an error
result so the model can correct itself on the next turn.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Sequence

from ..ai_types import (
    InvalidToolRequest,
    ToolRequest,
    ToolResultBlock,
    ToolResultError,
    ToolResultValue,
    ToolUseBlock,
)
from ..tools.base import BaseTool, ConfirmCallback, TelemetryEmitter, ToolContext
from ..tools.errors import InvalidOperationError
from ..tools.registry import ToolRegistry

LOGGER = logging.getLogger(__name__)

REJECTED_TEXT = "The user did not allow running this tool."
ABORTED_TEXT = "The user aborted this request."

ApprovalPolicy = Callable[[ToolRequest], bool]


def never_requires_approval(request: ToolRequest) -> bool:
    return False


class ToolCallState(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    RUNNING = "running"
    DONE = "done"
    REJECTED = "rejected"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (ToolCallState.DONE, ToolCallState.REJECTED, ToolCallState.ABORTED)


@dataclass(slots=True)
class ToolCall:
    """Book-keeping for one tool_use block of the current turn."""

    block: ToolUseBlock
    state: ToolCallState = ToolCallState.PENDING_APPROVAL
    result: ToolResultValue | None = None
    started_at: float | None = None
    finished_at: float | None = None
    task: asyncio.Future[ToolResultValue | None] | None = field(default=None, repr=False)

    @property
    def id(self) -> str:
        return self.block.id

    @property
    def tool_name(self) -> str:
        return self.block.name

    @property
    def duration_ms(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at) * 1000.0

    def to_result_block(self) -> ToolResultBlock:
        if self.result is None:
            raise RuntimeError(f"Tool call {self.id} has not finished")
        return ToolResultBlock(tool_use_id=self.id, result=self.result)


class ToolExecutionManager:
    """Validates, approves, and dispatches the tool calls of one assistant turn.

    Example:
        manager = ToolExecutionManager(registry, approval_policy=needs_confirmation, confirm=ask_user)
        results = await manager.execute_turn(message.tool_uses(), ToolContext(thread_id=1))
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        approval_policy: ApprovalPolicy | None = None,
        confirm: ConfirmCallback | None = None,
        telemetry: TelemetryEmitter | None = None,
        listener: Callable[[ToolCall], None] | None = None,
    ) -> None:
        self._registry = registry
        self._approval_policy = approval_policy or never_requires_approval
        self._confirm = confirm
        self._telemetry = telemetry
        self._listener = listener
        self._calls: dict[str, ToolCall] = {}
        self._aborted = False

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def calls(self) -> list[ToolCall]:
        return list(self._calls.values())

    def get_call(self, request_id: str) -> ToolCall | None:
        return self._calls.get(request_id)

    @property
    def in_progress(self) -> bool:
        return any(not call.state.is_terminal for call in self._calls.values())

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_turn(
        self,
        tool_uses: Sequence[ToolUseBlock],
        context: ToolContext,
        *,
        parallel: bool = True,
    ) -> list[ToolResultBlock]:
        """Run every call of one turn and return results in issue order.

        Returns only once every call is in a terminal state. With
        ``parallel=False`` calls run one after another.
        """

        if self.in_progress:
            raise InvalidOperationError(message="A tool turn is already executing", origin="tool_manager")
        self._aborted = False
        self._calls = {block.id: ToolCall(block=block) for block in tool_uses}
        calls = list(self._calls.values())
        LOGGER.debug("Executing %s tool call(s) for thread %s (parallel=%s)", len(calls), context.thread_id, parallel)

        if parallel and len(calls) > 1:
            await asyncio.gather(*(self._run_call(call, context) for call in calls))
        else:
            for call in calls:
                await self._run_call(call, context)

        return [call.to_result_block() for call in calls]

    def abort_all(self) -> None:
        """Abort every call that has not finished; running tasks are cancelled best-effort."""

        self._aborted = True
        for call in self._calls.values():
            if call.state.is_terminal:
                continue
            if call.task is not None and not call.task.done():
                call.task.cancel()
            else:
                self._finish(call, ToolCallState.ABORTED, ToolResultError(message=ABORTED_TEXT))

    async def _run_call(self, call: ToolCall, context: ToolContext) -> None:
        request = call.block.request
        if isinstance(request, InvalidToolRequest):
            self._finish(call, ToolCallState.DONE, ToolResultError(message=f"Malformed tool request: {request.error}"))
            return

        if self._aborted:
            self._finish(call, ToolCallState.ABORTED, ToolResultError(message=ABORTED_TEXT))
            return

        tool = self._registry.get(request.tool_name)
        if tool is None:
            self._finish(call, ToolCallState.DONE, ToolResultError(message=f"Unknown tool: {request.tool_name}"))
            return

        self._notify(call)
        call.task = asyncio.ensure_future(self._approve_and_run(call, tool, request, context))
        try:
            result = await call.task
        except asyncio.CancelledError:
            if not self._aborted:
                raise
            self._finish(call, ToolCallState.ABORTED, ToolResultError(message=ABORTED_TEXT))
            return
        if self._aborted:
            # Finished after abort; the late result is discarded.
            self._finish(call, ToolCallState.ABORTED, ToolResultError(message=ABORTED_TEXT))
            return
        if result is None:
            self._finish(call, ToolCallState.REJECTED, ToolResultError(message=REJECTED_TEXT))
            return
        self._finish(call, ToolCallState.DONE, result)

    async def _approve_and_run(
        self,
        call: ToolCall,
        tool: BaseTool,
        request: ToolRequest,
        context: ToolContext,
    ) -> ToolResultValue | None:
        """Returns ``None`` when the user declines the call."""

        if self._approval_policy(request):
            if self._confirm is None:
                LOGGER.debug("Tool %s requires approval but no confirm callback is configured", request.tool_name)
                return None
            if not await self._confirm(request):
                return None

        call.state = ToolCallState.RUNNING
        call.started_at = time.perf_counter()
        self._emit("tool.call_started", {"tool": tool.name, "request_id": call.id, "thread_id": context.thread_id})
        self._notify(call)
        return await tool.run(request, context)

    def _finish(self, call: ToolCall, state: ToolCallState, result: ToolResultValue) -> None:
        if call.state.is_terminal:
            return
        call.state = state
        call.result = result
        call.finished_at = time.perf_counter()
        LOGGER.debug("Tool call %s (%s) finished as %s", call.id, call.tool_name, state.value)
        self._notify(call)

    def _notify(self, call: ToolCall) -> None:
        if self._listener is None:
            return
        try:
            self._listener(call)
        except Exception:
            LOGGER.debug("Tool call listener failed", exc_info=True)

    def _emit(self, event_name: str, payload: Mapping[str, Any]) -> None:
        if self._telemetry is None:
            return
        try:
            self._telemetry(event_name, payload)
        except Exception:
            LOGGER.debug("Failed to emit %s", event_name, exc_info=True)


__all__ = [
    "ABORTED_TEXT",
    "ApprovalPolicy",
    "REJECTED_TEXT",
    "ToolCall",
    "ToolCallState",
    "ToolExecutionManager",
    "never_requires_approval",
]
