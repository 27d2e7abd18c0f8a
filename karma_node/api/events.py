"""
karma_node/api/events.py
------------------------
Read-only view of the audit event stream, newest first.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ..engine import KarmaEngine
from .deps import get_engine

router = APIRouter(prefix="/events", tags=["events"])


class EventOut(BaseModel):
    id: str
    name: str
    ts: int
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventsResponse(BaseModel):
    ok: bool = True
    events: List[EventOut]


@router.get("", response_model=EventsResponse)
def recent_events(
    limit: int = Query(100, ge=1, le=1000, description="Max number of events to return."),
    name: Optional[str] = Query(None, description="Filter by event name, e.g. 'AccessDenied'."),
    user_id: Optional[str] = Query(None, description="Only events about this user."),
    engine: KarmaEngine = Depends(get_engine),
) -> EventsResponse:
    events = engine.recent_events(limit=limit, name=name, user_id=user_id)
    return EventsResponse(events=[EventOut(**e) for e in events])
