"""Service layer helpers (settings, telemetry)."""

from .settings import AGENT_TYPES, Settings
from .telemetry import InMemoryTelemetrySink, TurnUsageEvent, emit, register_event_listener

__all__ = [
    "AGENT_TYPES",
    "Settings",
    "InMemoryTelemetrySink",
    "TurnUsageEvent",
    "emit",
    "register_event_listener",
]
