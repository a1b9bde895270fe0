"""Recent event log endpoint."""

from fastapi import APIRouter, Depends, Query
from typing import Optional

from app.dependencies import AutomationHub, get_hub
from core.constants import EventType

router = APIRouter(tags=["events"])


@router.get("/")
async def list_recent_events(
    event_type: Optional[EventType] = Query(None, alias="type", description="Filter by event type"),
    automation_id: Optional[str] = Query(None, description="Filter by automation ID"),
    limit: int = Query(50, ge=1, le=500),
    hub: AutomationHub = Depends(get_hub),
) -> dict:
    """Buffered events, newest first."""
    events = hub.event_bus.recent(limit=limit, event_type=event_type, automation_id=automation_id)
    return {"events": [e.to_dict() for e in events], "total": len(events)}
