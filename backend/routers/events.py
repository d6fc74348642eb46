"""Activity event API routes."""

from datetime import timezone

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_session
from models.event import Event

router = APIRouter()


class EventItem(BaseModel):
    id: int
    type: str
    level: str  # info, success, warning, error
    message: str
    details: dict | None = None
    timestamp: str | None


@router.get("/", response_model=list[EventItem])
async def list_events(
    limit: int = Query(20, ge=1, le=200),
    type: str | None = None,
    session: AsyncSession = Depends(get_session),
):
    """Most recent activity events, newest first."""
    query = select(Event).order_by(desc(Event.timestamp), desc(Event.id)).limit(limit)
    if type:
        query = query.where(Event.type == type)
    result = await session.execute(query)

    items = []
    for e in result.scalars().all():
        ts = e.timestamp
        if ts and ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        items.append(EventItem(
            id=e.id,
            type=e.type,
            level=e.level,
            message=e.message,
            details=e.details,
            timestamp=ts.isoformat() if ts else None,
        ))
    return items
