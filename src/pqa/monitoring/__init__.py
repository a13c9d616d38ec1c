"""Run monitoring: observer event dispatch for CLI (JSONL), WebSocket (live UI), and logging sinks.

Usage::

    from pqa.monitoring.event_bus import EventBus, EventType, LoggingSink

    bus = EventBus(target_id="chat-1")
    bus.add_sink(LoggingSink())
    await bus.emit(EventType.STARTED, {"total": 3})
"""

from __future__ import annotations

from pqa.monitoring.event_bus import Event, EventBus, EventSink, EventType, InMemorySink, JsonlSink, LoggingSink

__all__ = ["Event", "EventBus", "EventSink", "EventType", "InMemorySink", "JsonlSink", "LoggingSink"]
