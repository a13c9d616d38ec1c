"""Event bus — decouples the queue controller from its observers (CLI, WebSocket, logs).

* Type-safe event types via ``EventType`` enum, using the hyphenated names
  observers subscribe to (``automation-progress`` ...).
* Multiple sink pattern: a single bus emits to all registered
  ``EventSink`` implementations (JSONL stream, WebSocket broadcaster, logger).
* Snapshot caching so new WebSocket clients receive the latest status immediately.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


class EventType(str, Enum):
    """All observer events emitted during an automation run."""

    # Lifecycle
    STARTED = "automation-started"
    COMPLETE = "automation-complete"
    STOPPED = "automation-stopped"
    PAUSED = "automation-paused"
    RESUMED = "automation-resumed"

    # Progress / info
    PROGRESS = "automation-progress"
    ERROR = "automation-error"
    LOG = "log"


# Events after which the run is over
TERMINAL_EVENTS = frozenset({EventType.COMPLETE, EventType.STOPPED})


# ---------------------------------------------------------------------------
# Event payload model
# ---------------------------------------------------------------------------


class Event(BaseModel):
    """Structured event emitted by the event bus."""

    event_type: EventType
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    target_id: str = ""
    data: dict[str, Any] = Field(default_factory=dict)

    def to_jsonl(self) -> str:
        """Serialize to a single JSON line (no trailing newline)."""
        return self.model_dump_json()


# ---------------------------------------------------------------------------
# Sink protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class EventSink(Protocol):
    """Protocol for event consumers.

    Implementations may write to JSONL files, WebSocket connections,
    structured loggers, or in-memory buffers for testing.
    """

    async def handle_event(self, event: Event) -> None:
        """Process a single event."""
        ...


# ---------------------------------------------------------------------------
# Built-in sinks
# ---------------------------------------------------------------------------


class LoggingSink:
    """Emit events to the Python logger at DEBUG level."""

    def __init__(self, logger_name: str = "pqa.events") -> None:
        self._logger = logging.getLogger(logger_name)

    async def handle_event(self, event: Event) -> None:
        """Log the event."""
        self._logger.debug(
            "[%s] %s: %s",
            event.target_id or "?",
            event.event_type.value,
            json.dumps(event.data, default=str)[:200],
        )


class InMemorySink:
    """Collect events in a list (used by tests)."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    async def handle_event(self, event: Event) -> None:
        """Append the event to the in-memory list."""
        self.events.append(event)

    def clear(self) -> None:
        """Clear all collected events."""
        self.events.clear()

    def of_type(self, event_type: EventType) -> list[Event]:
        """Return the collected events of one type, in emission order."""
        return [e for e in self.events if e.event_type == event_type]

    @property
    def count(self) -> int:
        """Return the number of collected events."""
        return len(self.events)


class JsonlSink:
    """Write events as JSONL lines to a file-like object.

    Works with ``sys.stdout``, ``sys.stderr``, or an open file handle.
    """

    def __init__(self, stream: Any) -> None:
        self._stream = stream

    async def handle_event(self, event: Event) -> None:
        """Write one JSON line to the stream."""
        self._stream.write(event.to_jsonl() + "\n")
        if hasattr(self._stream, "flush"):
            self._stream.flush()


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------


class EventBus:
    """Central event dispatcher for controller-to-observer communication.

    Args:
        target_id: Optional default target ID attached to all events.
    """

    def __init__(self, target_id: str = "") -> None:
        self._target_id = target_id
        self._sinks: list[EventSink] = []

        # Snapshot for late-joining clients
        self._latest_status: str = "idle"
        self._latest_progress: dict[str, Any] = {}
        self._last_error: str = ""
        self._started_at: float = time.monotonic()

    @property
    def target_id(self) -> str:
        """Return the target this bus reports on."""
        return self._target_id

    # ------------------------------------------------------------------
    # Sink management
    # ------------------------------------------------------------------

    def add_sink(self, sink: EventSink) -> None:
        """Register an event sink."""
        self._sinks.append(sink)

    def remove_sink(self, sink: EventSink) -> None:
        """Remove a previously registered sink."""
        self._sinks = [s for s in self._sinks if s is not sink]

    @property
    def sink_count(self) -> int:
        """Return the number of registered sinks."""
        return len(self._sinks)

    # ------------------------------------------------------------------
    # Emit
    # ------------------------------------------------------------------

    async def emit(self, event_type: EventType | str, data: dict[str, Any] | None = None) -> None:
        """Emit an event to all registered sinks.

        Args:
            event_type: The event type (``EventType`` enum or raw string).
            data: Optional payload data.
        """
        # Normalise string → enum
        if isinstance(event_type, str):
            try:
                event_type = EventType(event_type)
            except ValueError:
                event_type = EventType.LOG

        payload = data or {}

        self._update_snapshot(event_type, payload)

        event = Event(
            event_type=event_type,
            target_id=self._target_id,
            data=payload,
        )

        for sink in list(self._sinks):
            try:
                await sink.handle_event(event)
            except Exception as exc:
                logger.warning("EventBus sink error (%s): %s", type(sink).__name__, exc)

    def _update_snapshot(self, event_type: EventType, data: dict[str, Any]) -> None:
        """Update internal snapshot cache."""
        if event_type == EventType.STARTED:
            self._latest_status = "running"
            self._latest_progress = {"current": 0, "total": data.get("total", 0)}
            self._last_error = ""
            self._started_at = time.monotonic()
        elif event_type == EventType.PROGRESS:
            self._latest_progress = {
                key: data[key] for key in ("current", "total", "status") if key in data
            }
        elif event_type == EventType.PAUSED:
            self._latest_status = "paused"
        elif event_type == EventType.RESUMED:
            self._latest_status = "running"
        elif event_type == EventType.ERROR:
            self._last_error = str(data.get("error", ""))
            if data.get("paused"):
                self._latest_status = "paused"
        elif event_type == EventType.COMPLETE:
            self._latest_status = "complete"
        elif event_type == EventType.STOPPED:
            self._latest_status = "stopped"

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def get_snapshot(self) -> dict[str, Any]:
        """Return latest state for new WebSocket clients."""
        return {
            "target_id": self._target_id,
            "status": self._latest_status,
            "progress": dict(self._latest_progress),
            "last_error": self._last_error,
            "uptime_sec": round(time.monotonic() - self._started_at, 1),
        }
