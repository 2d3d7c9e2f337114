"""Base classes for engine tools.

Tools receive an already-validated :class:`ToolRequest` and report exactly
one outcome: ``ToolResultOk`` with content blocks, or ``ToolResultError``
with a message. Exceptions never escape :meth:`BaseTool.run`; they are
converted into error results the model can reason about.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, ClassVar, Mapping, Protocol, Sequence

from ..ai_types import ContentBlock, TextBlock, ToolRequest, ToolResultError, ToolResultOk, ToolResultValue, ToolSpec
from .errors import EngineError, ErrorCode, ToolExecutionError, ValidationError

if TYPE_CHECKING:
    from ...chat.registry import ThreadRegistry

LOGGER = logging.getLogger(__name__)

ConfirmCallback = Callable[[ToolRequest], Awaitable[bool]]


class TelemetryEmitter(Protocol):
    """Protocol for emitting telemetry events."""

    def __call__(self, event_name: str, payload: Mapping[str, Any] | None = None) -> None:
        ...


@dataclass(slots=True)
class ToolContext:
    """Runtime context provided to tool execution.

    Attributes:
        thread_id: Thread whose assistant turn issued the call.
        registry: Thread registry, for tools that spawn or observe threads.
        telemetry: Optional telemetry emitter.
    """

    thread_id: int
    registry: "ThreadRegistry | None" = None
    telemetry: TelemetryEmitter | None = None


def text_result(text: str) -> ToolResultOk:
    return ToolResultOk(content=(TextBlock(text=text),))


def coerce_result(value: ToolResultValue | str | Sequence[ContentBlock]) -> ToolResultValue:
    """Normalize what ``execute`` returned into a tool result value."""

    if isinstance(value, (ToolResultOk, ToolResultError)):
        return value
    if isinstance(value, str):
        return text_result(value)
    return ToolResultOk(content=tuple(value))


class BaseTool(ABC):
    """Abstract base class for all engine tools.

    Subclasses must define ``spec`` and implement ``execute()``; ``validate()``
    may add checks that JSON Schema cannot express.
    """

    spec: ClassVar[ToolSpec]

    @property
    def name(self) -> str:
        return self.spec.name

    async def run(self, request: ToolRequest, context: ToolContext) -> ToolResultValue:
        """Execute the tool with standardized error handling and telemetry."""

        start_time = time.perf_counter()
        try:
            outcome = coerce_result(await self.execute(request, context))
        except asyncio.CancelledError:
            raise
        except EngineError as exc:
            outcome = ToolResultError(message=exc.display_text())
        except Exception as exc:
            LOGGER.exception("Tool %s failed unexpectedly", self.name)
            outcome = ToolResultError(message=ToolExecutionError(message=f"Internal error: {exc}", origin=self.name).display_text())

        duration_ms = (time.perf_counter() - start_time) * 1000.0
        self._emit_telemetry(context, request, outcome, duration_ms)
        return outcome

    @abstractmethod
    async def execute(self, request: ToolRequest, context: ToolContext) -> ToolResultValue | str | Sequence[ContentBlock]:
        """Execute the tool's core logic.

        Args:
            request: Validated tool request.
            context: Runtime context (calling thread, registry).

        Returns:
            A result value, plain text, or a sequence of content blocks.

        Raises:
            EngineError: For expected error conditions.
            Exception: For unexpected errors (will be wrapped).
        """
        ...

    def validate(self, params: Mapping[str, Any]) -> None:
        """Hook for checks beyond the JSON schema. Raise ValidationError when invalid."""

    def _emit_telemetry(self, context: ToolContext, request: ToolRequest, outcome: ToolResultValue, duration_ms: float) -> None:
        if context.telemetry is None:
            return
        payload: dict[str, Any] = {
            "tool": self.name,
            "request_id": request.id,
            "thread_id": context.thread_id,
            "success": isinstance(outcome, ToolResultOk),
            "duration_ms": round(duration_ms, 3),
        }
        if isinstance(outcome, ToolResultError):
            payload["error_message"] = outcome.message
        try:
            context.telemetry("tool.call_finished", payload)
        except Exception:
            LOGGER.debug("Failed to emit telemetry for tool %s", self.name, exc_info=True)


def require_string(params: Mapping[str, Any], key: str) -> str:
    value = params.get(key)
    if not isinstance(value, str):
        raise ValidationError(
            message=f"expected req.input.{key} to be a string but it was {value!r}",
            details={"field": key},
            error_code=ErrorCode.INVALID_INPUT,
        )
    return value


__all__ = [
    "BaseTool",
    "ConfirmCallback",
    "TelemetryEmitter",
    "ToolContext",
    "coerce_result",
    "require_string",
    "text_result",
]
