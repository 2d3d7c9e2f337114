"""Thread Registry: the single owner of every thread.

Threads reference each other by id only. Everything outside a thread sees
it through :class:`ThreadSummary` projections and change notifications.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Callable, Sequence

from ..ai.ai_types import Message
from ..ai.orchestration.tool_manager import ApprovalPolicy
from ..ai.providers.base import Provider
from ..ai.tools.base import BaseTool, ConfirmCallback
from ..ai.tools.errors import ErrorCode, InvalidOperationError, OrchestrationError
from ..services import telemetry as telemetry_service
from ..services.settings import AgentType, Settings
from ..services.telemetry import TelemetrySink
from .thread import Thread
from .types import ThreadMissing, ThreadSummary

LOGGER = logging.getLogger(__name__)

ChangeListener = Callable[[int], None]


class ThreadRegistry:
    """Creates threads, links parents to children, and resolves waits.

    Example:
        registry = ThreadRegistry(provider, Settings(), tools=[ReadFileTool()])
        thread = registry.create_thread()
        await thread.send_message("Summarize the README")
    """

    def __init__(
        self,
        provider: Provider,
        settings: Settings | None = None,
        *,
        tools: Sequence[BaseTool] = (),
        approval_policy: ApprovalPolicy | None = None,
        confirm: ConfirmCallback | None = None,
        usage_sink: TelemetrySink | None = None,
    ) -> None:
        self._provider = provider
        self._settings = (settings or Settings()).clamp()
        self._tools = tuple(tools)
        self._approval_policy = approval_policy
        self._confirm = confirm
        self._usage_sink = usage_sink
        self._threads: dict[int, Thread] = {}
        self._ids = itertools.count(1)
        self._active_id: int | None = None
        self._listeners: list[ChangeListener] = []
        self._waiters: dict[int, list[asyncio.Future[ThreadSummary]]] = {}

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def provider(self) -> Provider:
        return self._provider

    # ------------------------------------------------------------------
    # Thread lifecycle
    # ------------------------------------------------------------------

    def create_thread(
        self,
        *,
        agent_type: AgentType = "default",
        title: str | None = None,
        parent_id: int | None = None,
        select: bool = True,
    ) -> Thread:
        thread_id = next(self._ids)
        thread = Thread(
            thread_id,
            registry=self,
            provider=self._provider,
            settings=self._settings,
            agent_type=agent_type,
            parent_id=parent_id,
            title=title,
            tools=self._tools,
            approval_policy=self._approval_policy,
            confirm=self._confirm,
            usage_sink=self._usage_sink,
        )
        self._threads[thread_id] = thread
        if select and parent_id is None:
            self._active_id = thread_id
        LOGGER.debug("Created thread %s (agent_type=%s, parent=%s)", thread_id, agent_type, parent_id)
        telemetry_service.emit(
            "thread.created",
            {"thread_id": thread_id, "agent_type": agent_type, "parent_id": parent_id},
        )
        self.notify(thread_id)
        return thread

    def spawn_subagent(
        self,
        parent_id: int,
        prompt: str,
        *,
        context_files: Sequence[str] = (),
        agent_type: AgentType = "default",
    ) -> Thread:
        """Create a child of *parent_id* and start it on *prompt*."""

        parent = self._threads.get(parent_id)
        if parent is None:
            raise OrchestrationError(
                error_code=ErrorCode.THREAD_NOT_FOUND,
                message=f"Parent thread {parent_id} not found",
                thread_id=parent_id,
            )
        child = self.create_thread(agent_type=agent_type, parent_id=parent_id, select=False)
        parent.child_ids.append(child.id)
        telemetry_service.emit(
            "subagent.spawned",
            {"thread_id": child.id, "parent_id": parent_id, "agent_type": agent_type},
        )
        task = child.send_message(prompt, context_files=context_files)
        task.add_done_callback(self._log_drive_failure)
        self.notify(parent_id)
        return child

    def fork_thread(self, thread_id: int, *, title: str | None = None, select: bool = True) -> Thread:
        """Create a new root thread that starts from a copy of *thread_id*'s history."""

        source = self._require(thread_id)
        if source.busy:
            raise InvalidOperationError(
                message=f"Cannot fork thread {thread_id} while it is running",
                origin="registry",
            )
        forked = self.create_thread(
            agent_type=source.agent_type,
            title=title if title is not None else source.title,
            select=select,
        )
        forked.adopt_history(source)
        LOGGER.debug("Forked thread %s into %s", thread_id, forked.id)
        telemetry_service.emit("thread.forked", {"thread_id": forked.id, "source_id": thread_id})
        return forked

    def send_message(self, thread_id: int, text: str, *, context_files: Sequence[str] = ()) -> asyncio.Task[None]:
        return self._require(thread_id).send_message(text, context_files=context_files)

    def abort_thread(self, thread_id: int) -> None:
        self._require(thread_id).abort()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_thread(self, thread_id: int) -> Thread | None:
        return self._threads.get(thread_id)

    def get_thread_summary(self, thread_id: int) -> ThreadSummary:
        thread = self._threads.get(thread_id)
        if thread is None:
            return ThreadSummary(id=thread_id, status=ThreadMissing())
        return thread.summary()

    def summaries(self) -> list[ThreadSummary]:
        return [thread.summary() for thread in self._threads.values()]

    def get_active_thread(self) -> Thread | None:
        if self._active_id is None:
            return None
        return self._threads.get(self._active_id)

    def select_thread(self, thread_id: int) -> Thread:
        thread = self._require(thread_id)
        self._active_id = thread_id
        self.notify(thread_id)
        return thread

    def get_messages(self, thread_id: int | None = None) -> tuple[Message, ...]:
        """History of *thread_id*, or of the active thread."""

        thread = self.get_active_thread() if thread_id is None else self._threads.get(thread_id)
        if thread is None:
            return ()
        return thread.agent.messages

    # ------------------------------------------------------------------
    # Notifications and waits
    # ------------------------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def notify(self, thread_id: int) -> None:
        for listener in list(self._listeners):
            try:
                listener(thread_id)
            except Exception:
                LOGGER.debug("Thread listener failed for thread %s", thread_id, exc_info=True)
        self._resolve_waiters(thread_id)

    async def wait_for_terminal(self, thread_id: int) -> ThreadSummary:
        """Resolve once *thread_id* is terminal and its drive loop has exited.

        A missing id resolves immediately with a ``missing`` summary.
        """

        settled = self._settled_summary(thread_id)
        if settled is not None:
            return settled
        future: asyncio.Future[ThreadSummary] = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(thread_id, []).append(future)
        try:
            return await future
        finally:
            waiters = self._waiters.get(thread_id)
            if waiters is not None and future in waiters:
                waiters.remove(future)
                if not waiters:
                    del self._waiters[thread_id]

    async def wait_for_all(self, thread_ids: Sequence[int]) -> list[ThreadSummary]:
        """Summaries for every id, in order, once each one is settled."""

        return list(await asyncio.gather(*(self.wait_for_terminal(thread_id) for thread_id in thread_ids)))

    def _settled_summary(self, thread_id: int) -> ThreadSummary | None:
        thread = self._threads.get(thread_id)
        if thread is None:
            return ThreadSummary(id=thread_id, status=ThreadMissing())
        summary = thread.summary()
        if summary.is_terminal and not thread.busy:
            return summary
        return None

    def _resolve_waiters(self, thread_id: int) -> None:
        waiters = self._waiters.get(thread_id)
        if not waiters:
            return
        settled = self._settled_summary(thread_id)
        if settled is None:
            return
        for future in list(waiters):
            if not future.done():
                future.set_result(settled)

    def _require(self, thread_id: int) -> Thread:
        thread = self._threads.get(thread_id)
        if thread is None:
            raise OrchestrationError(
                error_code=ErrorCode.THREAD_NOT_FOUND,
                message=f"Thread {thread_id} not found",
                thread_id=thread_id,
            )
        return thread

    @staticmethod
    def _log_drive_failure(task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Subagent drive loop failed: %s", exc)


__all__ = ["ChangeListener", "ThreadRegistry"]
