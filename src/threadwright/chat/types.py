"""Read-only thread projections shared by the registry, tools, and renderers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union, assert_never

from ..ai.ai_types import StopReason


@dataclass(frozen=True, slots=True)
class ThreadMissing:
    pass


@dataclass(frozen=True, slots=True)
class ThreadIdle:
    pass


@dataclass(frozen=True, slots=True)
class ThreadStreaming:
    start_time: float


@dataclass(frozen=True, slots=True)
class ThreadRunningTools:
    pass


@dataclass(frozen=True, slots=True)
class ThreadStopped:
    stop_reason: StopReason


@dataclass(frozen=True, slots=True)
class ThreadYielded:
    result: str


@dataclass(frozen=True, slots=True)
class ThreadError:
    detail: str


ThreadStatus = Union[
    ThreadMissing,
    ThreadIdle,
    ThreadStreaming,
    ThreadRunningTools,
    ThreadStopped,
    ThreadYielded,
    ThreadError,
]


@dataclass(frozen=True, slots=True)
class ThreadSummary:
    """Projection of one thread for orchestration and UI."""

    id: int
    status: ThreadStatus
    title: str | None = None
    parent_id: int | None = None
    child_ids: tuple[int, ...] = field(default_factory=tuple)
    agent_type: str = "default"

    @property
    def is_terminal(self) -> bool:
        return is_terminal_status(self.status)


def is_terminal_status(status: ThreadStatus) -> bool:
    """Whether a waiter may stop waiting on a thread in *status*."""

    match status:
        case ThreadMissing() | ThreadYielded() | ThreadError():
            return True
        case ThreadStopped(stop_reason=reason):
            return reason != StopReason.TOOL_USE
        case ThreadIdle() | ThreadStreaming() | ThreadRunningTools():
            return False
        case _:
            assert_never(status)


def thread_outcome(status: ThreadStatus) -> tuple[bool, str]:
    """``(ok, text)`` reported to a parent for a terminal *status*.

    Only a yielded result is passed through; every other terminal state
    is reported as an error.
    """

    match status:
        case ThreadYielded(result=result):
            return True, result
        case ThreadMissing():
            return False, "Thread not found"
        case ThreadError(detail=detail):
            return False, detail
        case ThreadStopped(stop_reason=StopReason.ABORTED):
            return False, "Thread was aborted"
        case ThreadStopped(stop_reason=reason):
            return False, f"Thread stopped ({reason.value}) without yielding a result"
        case ThreadIdle() | ThreadStreaming() | ThreadRunningTools():
            return False, "Thread has not finished"
        case _:
            assert_never(status)


__all__ = [
    "ThreadError",
    "ThreadIdle",
    "ThreadMissing",
    "ThreadRunningTools",
    "ThreadStatus",
    "ThreadStopped",
    "ThreadStreaming",
    "ThreadSummary",
    "ThreadYielded",
    "is_terminal_status",
    "thread_outcome",
]
