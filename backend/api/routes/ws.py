"""WebSocket endpoint streaming hub events in real time."""

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from app.dependencies import AutomationHub, get_ws_hub
from core.constants import EventType
from events.bus import Event

logger = logging.getLogger(__name__)

router = APIRouter()

_QUEUE_SIZE = 256


def _parse_types(types: Optional[str]) -> Optional[list[EventType]]:
    if not types:
        return None
    return [EventType(t.strip()) for t in types.split(",") if t.strip()]


@router.websocket("/ws/events")
async def event_stream(
    websocket: WebSocket,
    types: Optional[str] = Query(None, description="Comma separated event types"),
    automation_id: Optional[str] = Query(None, description="Only events of this automation"),
    hub: AutomationHub = Depends(get_ws_hub),
):
    """
    Push every matching event to the client as JSON.

    Clients may send {"type": "ping"} keepalives and receive {"type": "pong"}.
    Events are dropped for a client whose queue is full.
    """
    try:
        event_types = _parse_types(types)
    except ValueError:
        await websocket.close(code=4400, reason="Unknown event type")
        return

    await websocket.accept()
    bus = hub.event_bus
    queue: asyncio.Queue = asyncio.Queue(maxsize=_QUEUE_SIZE)

    def enqueue(event: Event) -> None:
        if automation_id and event.automation_id != automation_id:
            return
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("WebSocket client too slow, dropping %s", event.type.value)

    unsubscribe = bus.subscribe(enqueue, event_types)

    async def sender() -> None:
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_dict())

    send_task = asyncio.create_task(sender())
    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                continue
            if isinstance(msg, dict) and msg.get("type") == "ping":
                await websocket.send_text(json.dumps({"type": "pong"}))
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        unsubscribe()
        send_task.cancel()
