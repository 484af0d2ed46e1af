"""
WebSocket endpoint streaming orchestrator events.
"""

import asyncio
import json
from datetime import datetime
from typing import Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.routing import APIRouter

from ..orchestration.events import EventKind, OrchestratorEvent
from ..utils.logging import get_logger

logger = get_logger(__name__)

ws_router = APIRouter()


class ConnectionManager:
    """Tracks open event-stream connections."""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.add(websocket)
        logger.info("WebSocket connected", connections=len(self.active_connections))

    def disconnect(self, websocket: WebSocket):
        self.active_connections.discard(websocket)
        logger.info("WebSocket disconnected", connections=len(self.active_connections))

    async def send_json(self, websocket: WebSocket, message: dict) -> bool:
        """Send a message; drops the connection on failure."""
        try:
            await websocket.send_text(json.dumps(message, default=str))
            return True
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.warning("Failed to send WebSocket message", error=str(e))
            self.disconnect(websocket)
            return False

    def get_connection_count(self) -> int:
        return len(self.active_connections)


manager = ConnectionManager()


def _parse_kinds(kinds: Optional[str]) -> Optional[Set[EventKind]]:
    if not kinds:
        return None
    return {EventKind(kind.strip()) for kind in kinds.split(",") if kind.strip()}


@ws_router.websocket("/ws/events")
async def events_websocket(websocket: WebSocket, since: int = 0, kinds: Optional[str] = None):
    """
    Stream orchestrator events.

    Events after ``since`` are replayed first, then live events follow.
    ``kinds`` is an optional comma-separated list of event kinds. Clients may
    send ``{"type": "ping"}`` to receive a pong.
    """
    orchestrator = websocket.app.state.orchestrator
    try:
        kind_filter = _parse_kinds(kinds)
    except ValueError:
        await websocket.close(code=4400, reason="Unknown event kind")
        return

    await manager.connect(websocket)

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def forward(event: OrchestratorEvent) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, event)

    subscription_id = orchestrator.subscribe(forward, kind_filter)
    last_sent = since

    async def pump():
        nonlocal last_sent
        while True:
            event = await queue.get()
            if event.sequence <= last_sent:
                continue
            last_sent = event.sequence
            if not await manager.send_json(websocket, {"type": "event", "event": event.to_dict()}):
                return

    await manager.send_json(websocket, {
        "type": "connected",
        "last_sequence": orchestrator.events.last_sequence,
        "timestamp": datetime.now().isoformat()
    })
    for event in orchestrator.events_since(since):
        if kind_filter is not None and event.kind not in kind_filter:
            continue
        last_sent = max(last_sent, event.sequence)
        await manager.send_json(websocket, {"type": "event", "event": event.to_dict()})

    pump_task = asyncio.create_task(pump())
    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await manager.send_json(websocket, {"type": "error", "message": "Invalid JSON"})
                continue

            if isinstance(message, dict) and message.get("type") == "ping":
                await manager.send_json(websocket, {"type": "pong", "timestamp": datetime.now().isoformat()})
    except WebSocketDisconnect:
        pass
    finally:
        orchestrator.unsubscribe(subscription_id)
        pump_task.cancel()
        manager.disconnect(websocket)
