"""Subagent Orchestrator tools.

Key components:
- SpawnSubagentTool: start one child thread, optionally waiting for it
- WaitForSubagentsTool: collect the terminal outcome of several children
- YieldToParentTool: a child's single channel back to its parent
- SpawnForeachTool: one child per element behind an admission limit
- ForeachRun: the per-element state machine and concurrency limiter

Tools never touch another thread's agent. Everything goes through the
thread registry: children are created there and observed through their
summaries.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, ClassVar, Mapping, Sequence

from ...chat.prompts import foreach_element_prompt
from ...chat.types import thread_outcome
from ...services.settings import AGENT_TYPES
from ..ai_types import ToolRequest, ToolResultError, ToolResultValue, ToolSpec
from .base import BaseTool, ToolContext, require_string, text_result
from .errors import ErrorCode, OrchestrationError, ToolExecutionError

if TYPE_CHECKING:
    from ...chat.registry import ThreadRegistry

LOGGER = logging.getLogger(__name__)

YIELD_ROOT_ERROR = "yield_to_parent can only be used by subagent threads"

_CONTEXT_FILES_SCHEMA = {
    "type": "array",
    "items": {"type": "string"},
    "description": "Optional list of file paths to provide as context to the sub-agent.",
}
_AGENT_TYPE_SCHEMA = {
    "type": "string",
    "enum": list(AGENT_TYPES),
    "description": (
        "Optional agent type for the sub-agent. Use 'explore' for answering specific questions about the "
        "codebase, 'fast' for simple tasks, and 'default' for tasks that need more thought."
    ),
}


def _require_registry(context: ToolContext) -> "ThreadRegistry":
    if context.registry is None:
        raise OrchestrationError(message="No thread registry is available to this tool", thread_id=context.thread_id)
    return context.registry


def _emit(context: ToolContext, event_name: str, payload: Mapping[str, Any]) -> None:
    if context.telemetry is None:
        return
    try:
        context.telemetry(event_name, payload)
    except Exception:
        LOGGER.debug("Failed to emit %s", event_name, exc_info=True)


# =============================================================================
# spawn_subagent
# =============================================================================


class SpawnSubagentTool(BaseTool):
    spec: ClassVar[ToolSpec] = ToolSpec(
        name="spawn_subagent",
        description=(
            "Create a sub-agent that can perform a specific task and report back the results.\n\n"
            "- Use 'explore' to answer one specific question about the code.\n"
            "- Use 'fast' for quick tasks that don't require the full model capabilities.\n"
            "- Use 'default' for everything else.\n\n"
            "Use `blocking: true` when you need the result before proceeding. Use `blocking: false` (default) "
            "to start several sub-agents in parallel, then collect them with wait_for_subagents."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "prompt": {
                    "type": "string",
                    "description": (
                        "The sub-agent prompt. This should contain a clear question, and information about what "
                        "the answer should look like."
                    ),
                },
                "contextFiles": _CONTEXT_FILES_SCHEMA,
                "agentType": _AGENT_TYPE_SCHEMA,
                "blocking": {
                    "type": "boolean",
                    "description": (
                        "Pause this thread until the subagent finishes. If false (default), the tool returns "
                        "immediately with the threadId you can use with wait_for_subagents."
                    ),
                },
            },
            "required": ["prompt"],
        },
    )

    async def execute(self, request: ToolRequest, context: ToolContext) -> ToolResultValue:
        registry = _require_registry(context)
        params = request.input
        try:
            child = registry.spawn_subagent(
                context.thread_id,
                params["prompt"],
                context_files=params.get("contextFiles") or (),
                agent_type=params.get("agentType") or "default",
            )
        except Exception as exc:
            LOGGER.warning("Failed to create sub-agent for thread %s: %s", context.thread_id, exc)
            message = exc.message if isinstance(exc, OrchestrationError) else str(exc)
            return ToolResultError(message=f"Failed to create sub-agent thread: {message}")

        if not params.get("blocking", False):
            return text_result(f"Sub-agent started with threadId: {child.id}")

        summary = await registry.wait_for_terminal(child.id)
        ok, text = thread_outcome(summary.status)
        if ok:
            return text_result(f"Sub-agent ({child.id}) completed:\n{text}")
        return ToolResultError(message=f"Sub-agent ({child.id}) failed: {text}")


# =============================================================================
# wait_for_subagents
# =============================================================================


class WaitForSubagentsTool(BaseTool):
    spec: ClassVar[ToolSpec] = ToolSpec(
        name="wait_for_subagents",
        description=(
            "Wait for one or more sub-agents to finish and return their results. Resolves once every listed "
            "thread has yielded, stopped, failed, or is unknown."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "threadIds": {
                    "type": "array",
                    "items": {"type": "integer"},
                    "minItems": 1,
                    "description": "Thread ids returned by spawn_subagent.",
                },
            },
            "required": ["threadIds"],
        },
    )

    async def execute(self, request: ToolRequest, context: ToolContext) -> str:
        registry = _require_registry(context)
        thread_ids: list[int] = list(request.input["threadIds"])
        summaries = await registry.wait_for_all(thread_ids)

        lines = ["All subagents completed:"]
        for thread_id, summary in zip(thread_ids, summaries):
            ok, text = thread_outcome(summary.status)
            lines.append(f"- Thread {thread_id}: {text}" if ok else f"- Thread {thread_id}: ❌ Error: {text}")
        return "\n".join(lines)


# =============================================================================
# yield_to_parent
# =============================================================================


class YieldToParentTool(BaseTool):
    spec: ClassVar[ToolSpec] = ToolSpec(
        name="yield_to_parent",
        description=(
            "This tool allows a sub-agent to yield results back to its parent agent.\n"
            "This tool should only be used when the sub-agent has completed its assigned task and needs to "
            "return results.\nAfter using this tool, the sub-agent thread will be terminated."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "result": {
                    "type": "string",
                    "description": "The result or information to return to the parent agent",
                },
            },
            "required": ["result"],
            "additionalProperties": False,
        },
    )

    async def execute(self, request: ToolRequest, context: ToolContext) -> str:
        registry = _require_registry(context)
        thread = registry.get_thread(context.thread_id)
        if thread is None:
            raise OrchestrationError(
                error_code=ErrorCode.THREAD_NOT_FOUND,
                message=f"Thread {context.thread_id} not found",
                thread_id=context.thread_id,
            )
        if thread.parent_id is None:
            raise ToolExecutionError(error_code=ErrorCode.NOT_A_SUBAGENT, message=YIELD_ROOT_ERROR)
        result = require_string(request.input, "result")
        thread.record_yield(result)
        return result


# =============================================================================
# spawn_foreach
# =============================================================================


class ForeachElementState(str, Enum):
    PENDING = "pending"
    SPAWNING = "spawning"
    RUNNING = "running"
    COMPLETED = "completed"


@dataclass(slots=True)
class ForeachElement:
    element: str
    state: ForeachElementState = ForeachElementState.PENDING
    thread_id: int | None = None
    ok: bool | None = None
    result: str = ""


SpawnCallback = Callable[[str], Awaitable[int]]
WaitCallback = Callable[[int], Awaitable[tuple[bool, str]]]


@dataclass(slots=True)
class ForeachRun:
    """Admission-controlled fan-out over *elements*.

    At most ``max_concurrency`` elements are ``spawning`` or ``running`` at
    once. Pending elements are admitted in order as slots free up.
    """

    elements: list[ForeachElement]
    max_concurrency: int
    active_count: int = 0
    peak_active: int = 0
    listener: Callable[[ForeachElement], None] | None = field(default=None, repr=False)

    @classmethod
    def for_elements(cls, elements: Sequence[str], max_concurrency: int) -> "ForeachRun":
        return cls(elements=[ForeachElement(element=item) for item in elements], max_concurrency=max(1, max_concurrency))

    async def run(self, spawn: SpawnCallback, wait: WaitCallback) -> list[ForeachElement]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run_element(item: ForeachElement) -> None:
            async with semaphore:
                self._admit(item)
                try:
                    item.thread_id = await spawn(item.element)
                except Exception as exc:
                    LOGGER.warning("Foreach element %r failed to spawn: %s", item.element, exc)
                    self._complete(item, False, f"Failed to create sub-agent thread: {exc}")
                    return
                self._transition(item, ForeachElementState.RUNNING)
                ok, text = await wait(item.thread_id)
                self._complete(item, ok, text)

        await asyncio.gather(*(run_element(item) for item in self.elements))
        return self.elements

    @property
    def successes(self) -> list[ForeachElement]:
        return [item for item in self.elements if item.ok]

    @property
    def failures(self) -> list[ForeachElement]:
        return [item for item in self.elements if item.ok is False]

    def _admit(self, item: ForeachElement) -> None:
        self.active_count += 1
        self.peak_active = max(self.peak_active, self.active_count)
        self._transition(item, ForeachElementState.SPAWNING)

    def _complete(self, item: ForeachElement, ok: bool, text: str) -> None:
        item.ok = ok
        item.result = text
        self.active_count -= 1
        self._transition(item, ForeachElementState.COMPLETED)

    def _transition(self, item: ForeachElement, state: ForeachElementState) -> None:
        item.state = state
        if self.listener is not None:
            self.listener(item)


def format_foreach_result(run: ForeachRun) -> str:
    successes, failures = run.successes, run.failures
    sections = [
        "Foreach subagent execution completed:",
        f"Total elements: {len(run.elements)}\nSuccessful: {len(successes)}\nFailed: {len(failures)}",
    ]
    if successes:
        sections.append("Successful results:\n" + "\n".join(f"- {item.element}: {item.result}" for item in successes))
    if failures:
        sections.append("Failed results:\n" + "\n".join(f"- {item.element}: {item.result}" for item in failures))
    return "\n\n".join(sections)


class SpawnForeachTool(BaseTool):
    spec: ClassVar[ToolSpec] = ToolSpec(
        name="spawn_foreach",
        description=(
            "Run the same prompt once per element, each in its own sub-agent, with a limit on how many run at "
            "once. Returns when every element has finished, with per-element results."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "prompt": {
                    "type": "string",
                    "description": "The prompt shared by every element's sub-agent.",
                },
                "elements": {
                    "type": "array",
                    "items": {"type": "string"},
                    "minItems": 1,
                    "description": "One sub-agent is spawned for each element.",
                },
                "contextFiles": _CONTEXT_FILES_SCHEMA,
                "agentType": _AGENT_TYPE_SCHEMA,
                "maxConcurrency": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "Optional cap on sub-agents running at once.",
                },
            },
            "required": ["prompt", "elements"],
        },
    )

    async def execute(self, request: ToolRequest, context: ToolContext) -> str:
        registry = _require_registry(context)
        params = request.input
        prompt: str = params["prompt"]
        context_files = params.get("contextFiles") or ()
        agent_type = params.get("agentType") or "default"
        max_concurrency = params.get("maxConcurrency") or registry.settings.max_concurrent_subagents

        async def spawn(element: str) -> int:
            child = registry.spawn_subagent(
                context.thread_id,
                foreach_element_prompt(prompt, element),
                context_files=context_files,
                agent_type=agent_type,
            )
            return child.id

        async def wait(thread_id: int) -> tuple[bool, str]:
            summary = await registry.wait_for_terminal(thread_id)
            return thread_outcome(summary.status)

        started = time.perf_counter()
        run = ForeachRun.for_elements(params["elements"], max_concurrency)
        await run.run(spawn, wait)
        _emit(
            context,
            "subagent.foreach_finished",
            {
                "thread_id": context.thread_id,
                "elements": len(run.elements),
                "failed": len(run.failures),
                "peak_active": run.peak_active,
                "duration_ms": round((time.perf_counter() - started) * 1000.0, 3),
            },
        )
        return format_foreach_result(run)


def orchestration_tools(*, subagent: bool) -> list[BaseTool]:
    """The orchestrator tools a thread receives; only subagents can yield."""

    tools: list[BaseTool] = [SpawnSubagentTool(), WaitForSubagentsTool(), SpawnForeachTool()]
    if subagent:
        tools.append(YieldToParentTool())
    return tools


__all__ = [
    "ForeachElement",
    "ForeachElementState",
    "ForeachRun",
    "SpawnForeachTool",
    "SpawnSubagentTool",
    "WaitForSubagentsTool",
    "YIELD_ROOT_ERROR",
    "YieldToParentTool",
    "format_foreach_result",
    "orchestration_tools",
]
