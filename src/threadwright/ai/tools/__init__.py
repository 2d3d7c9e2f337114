"""Tool contracts, errors, and registry."""

from .base import BaseTool, ToolContext, text_result
from .errors import (
    AbortedByUser,
    EngineError,
    InvalidOperationError,
    OrchestrationError,
    ProtocolViolation,
    ToolExecutionError,
    TransportError,
    ValidationError,
)
from .registry import ToolRegistry

__all__ = [
    "AbortedByUser",
    "BaseTool",
    "EngineError",
    "InvalidOperationError",
    "OrchestrationError",
    "ProtocolViolation",
    "ToolContext",
    "ToolExecutionError",
    "ToolRegistry",
    "TransportError",
    "ValidationError",
    "text_result",
]
