"""Telemetry helpers for engine instrumentation."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Mapping, Protocol, Sequence

LOGGER = logging.getLogger(__name__)

_EVENT_LISTENERS: dict[str, list[Callable[[dict[str, Any]], None]]] = {}


@dataclass(slots=True)
class TurnUsageEvent:
    """Represents a single streamed turn's token usage and metadata."""

    thread_id: int | None
    model: str
    stop_reason: str
    input_tokens: int
    output_tokens: int
    cache_hits: int | None = None
    cache_misses: int | None = None
    timestamp: float = field(default_factory=time.time)


class TelemetrySink(Protocol):
    """Sink interface used to collect telemetry events."""

    def record(self, event: TurnUsageEvent) -> None:  # pragma: no cover - protocol stub
        ...


class InMemoryTelemetrySink:
    """Simple ring-buffer telemetry sink for local inspection and tests."""

    def __init__(self, capacity: int = 200) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[TurnUsageEvent] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, event: TurnUsageEvent) -> None:
        with self._lock:
            self._buffer.append(event)

    def tail(self, limit: int | None = None) -> list[TurnUsageEvent]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:]

    def totals(self) -> dict[str, int]:
        """Aggregate token counts over the buffered turns."""

        events = self.tail()
        return {
            "turns": len(events),
            "input_tokens": sum(event.input_tokens for event in events),
            "output_tokens": sum(event.output_tokens for event in events),
            "cache_hits": sum(event.cache_hits or 0 for event in events),
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


def register_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> Callable[[], None]:
    """Subscribe *callback* to *event_name*; returns an unsubscribe function."""

    listeners = _EVENT_LISTENERS.setdefault(event_name, [])
    if callback not in listeners:
        listeners.append(callback)

    def _unsubscribe() -> None:
        remaining = _EVENT_LISTENERS.get(event_name)
        if remaining and callback in remaining:
            remaining.remove(callback)

    return _unsubscribe


def clear_event_listeners(event_names: Sequence[str] | None = None) -> None:
    if event_names is None:
        _EVENT_LISTENERS.clear()
        return
    for name in event_names:
        _EVENT_LISTENERS.pop(name, None)


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    """Broadcast a structured telemetry event to in-process listeners."""

    if not event_name:
        return
    event_payload: dict[str, Any] = {"event": event_name}
    if payload:
        event_payload.update(payload)
    listeners = list(_EVENT_LISTENERS.get(event_name, ()))
    for callback in listeners:
        try:
            callback(dict(event_payload))
        except Exception:  # pragma: no cover - listeners must not break emitters
            LOGGER.debug("Telemetry listener %s failed", callback, exc_info=True)
    LOGGER.debug("Telemetry emit %s: %s", event_name, event_payload)


__all__ = [
    "TurnUsageEvent",
    "TelemetrySink",
    "InMemoryTelemetrySink",
    "register_event_listener",
    "clear_event_listeners",
    "emit",
]
