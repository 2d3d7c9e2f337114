"""Error taxonomy for the conversation engine.

Every error carries a machine-readable code and a human-readable message
with consistent serialization, so failures can be surfaced to the model as
structured tool results or to the user as actionable status text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes used across the engine."""

    # Tool input
    INVALID_INPUT = "invalid_input"
    UNKNOWN_TOOL = "unknown_tool"

    # Streaming
    PROTOCOL_VIOLATION = "protocol_violation"
    TRANSPORT_ERROR = "transport_error"
    ABORTED = "aborted"

    # Execution
    TOOL_FAILED = "tool_failed"
    TOOL_REJECTED = "tool_rejected"

    # Orchestration
    THREAD_NOT_FOUND = "thread_not_found"
    SUBAGENT_FAILED = "subagent_failed"
    NOT_A_SUBAGENT = "not_a_subagent"

    # State
    INVALID_OPERATION = "invalid_operation"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class EngineError(Exception):
    """Base exception class for all engine errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
        origin: Component or backend the error came from, if known.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    origin: str = ""

    # Whether the error ends the current turn
    fatal_to_turn: ClassVar[bool] = False

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for structured results."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.origin:
            result["origin"] = self.origin
        return result

    def display_text(self) -> str:
        if self.origin:
            return f"{self.origin}: {self.message}"
        return self.message

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# -----------------------------------------------------------------------------
# Taxonomy
# -----------------------------------------------------------------------------

@dataclass
class ValidationError(EngineError):
    """Malformed tool input; recovered locally as an error tool result."""

    error_code: str = field(default=ErrorCode.INVALID_INPUT)
    message: str = field(default="Tool input failed validation")
    details: dict[str, Any] = field(default_factory=dict)
    origin: str = ""

    raw_input: Any = field(default=None)


@dataclass
class ProtocolViolation(EngineError):
    """Malformed streaming event sequence."""

    error_code: str = field(default=ErrorCode.PROTOCOL_VIOLATION)
    message: str = field(default="Malformed streaming event sequence")
    details: dict[str, Any] = field(default_factory=dict)
    origin: str = ""

    fatal_to_turn: ClassVar[bool] = True


@dataclass
class TransportError(EngineError):
    """Backend or network failure."""

    error_code: str = field(default=ErrorCode.TRANSPORT_ERROR)
    message: str = field(default="Backend request failed")
    details: dict[str, Any] = field(default_factory=dict)
    origin: str = ""

    fatal_to_turn: ClassVar[bool] = True

    @classmethod
    def from_exception(cls, exc: BaseException, *, origin: str) -> "TransportError":
        """Wrap an SDK/network exception without leaking remote stack detail."""

        message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
        details: dict[str, Any] = {"exception": exc.__class__.__name__}
        status = getattr(exc, "status_code", None)
        if status is not None:
            details["status_code"] = status
        return cls(message=str(message), details=details, origin=origin)


@dataclass
class AbortedByUser(EngineError):
    """The user aborted the in-flight request. A normal terminal state."""

    error_code: str = field(default=ErrorCode.ABORTED)
    message: str = field(default="Request was aborted by the user")
    details: dict[str, Any] = field(default_factory=dict)
    origin: str = ""


@dataclass
class ToolExecutionError(EngineError):
    """A tool implementation failed; always surfaces as an error tool result."""

    error_code: str = field(default=ErrorCode.TOOL_FAILED)
    message: str = field(default="Tool execution failed")
    details: dict[str, Any] = field(default_factory=dict)
    origin: str = ""


@dataclass
class OrchestrationError(EngineError):
    """Missing or failed child thread."""

    error_code: str = field(default=ErrorCode.SUBAGENT_FAILED)
    message: str = field(default="Subagent orchestration failed")
    details: dict[str, Any] = field(default_factory=dict)
    origin: str = ""

    thread_id: int | None = field(default=None)


@dataclass
class InvalidOperationError(EngineError):
    """An Agent or Thread operation was called in a state that forbids it."""

    error_code: str = field(default=ErrorCode.INVALID_OPERATION)
    message: str = field(default="Operation not permitted in the current state")
    details: dict[str, Any] = field(default_factory=dict)
    origin: str = ""


__all__ = [
    "AbortedByUser",
    "EngineError",
    "ErrorCode",
    "InvalidOperationError",
    "OrchestrationError",
    "ProtocolViolation",
    "ToolExecutionError",
    "TransportError",
    "ValidationError",
]
