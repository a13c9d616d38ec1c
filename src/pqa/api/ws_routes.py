"""WebSocket endpoint for live automation monitoring.

``/ws/automations/{target_id}`` is a read-only event stream: the client
first receives a snapshot of the current state, then every event emitted
on the target's bus (progress, pauses, errors, completion).
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from pqa.monitoring.event_bus import Event, EventBus, EventSink

logger = logging.getLogger(__name__)

ws_router = APIRouter(tags=["websocket"])

# ---------------------------------------------------------------------------
# Global bus registry: maps target_id → EventBus
# Populated when a session is opened for a target.
# ---------------------------------------------------------------------------

_active_buses: dict[str, EventBus] = {}


def register_bus(target_id: str, bus: EventBus) -> None:
    """Register the event bus of a target."""
    _active_buses[target_id] = bus
    logger.info("Registered event bus for target %s", target_id)


def unregister_bus(target_id: str) -> None:
    """Unregister a target's event bus."""
    _active_buses.pop(target_id, None)
    logger.info("Unregistered event bus for target %s", target_id)


def get_bus(target_id: str) -> EventBus | None:
    """Get the event bus for a target, or None."""
    return _active_buses.get(target_id)


# ---------------------------------------------------------------------------
# WebSocket sink: bridges events to a single WebSocket connection
# ---------------------------------------------------------------------------


class WebSocketSink(EventSink):
    """Forwards events to a WebSocket client."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket
        self._closed = False

    async def handle_event(self, event: Event) -> None:
        """Send event JSON to the WebSocket client."""
        if self._closed:
            return
        try:
            await self._ws.send_text(event.to_jsonl())
        except Exception:
            self._closed = True

    @property
    def closed(self) -> bool:
        """Whether the WebSocket connection has been closed."""
        return self._closed


@ws_router.websocket("/ws/automations/{target_id}")
async def ws_automation_events(websocket: WebSocket, target_id: str) -> None:
    """Stream automation events for a target to a WebSocket client."""
    await websocket.accept()

    bus = get_bus(target_id)
    if bus is None:
        await websocket.send_json({"error": "target_not_found", "target_id": target_id})
        await websocket.close(code=4004, reason="No automation session for this target")
        return

    await websocket.send_json({"type": "snapshot", "data": bus.get_snapshot()})

    sink = WebSocketSink(websocket)
    bus.add_sink(sink)

    try:
        while True:
            try:
                msg = await asyncio.wait_for(websocket.receive_text(), timeout=30.0)
                if msg == "ping":
                    await websocket.send_text("pong")
            except asyncio.TimeoutError:
                try:
                    await websocket.send_json({"type": "keepalive"})
                except Exception:
                    break
    except WebSocketDisconnect:
        pass
    finally:
        bus.remove_sink(sink)
        logger.debug("Monitor client disconnected from %s", target_id)
