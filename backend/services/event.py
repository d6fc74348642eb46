import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import async_session
from models.event import Event

logger = logging.getLogger(__name__)


async def log_event(
    session: AsyncSession,
    type: str,
    message: str,
    level: str = "info",
    details: Optional[dict[str, Any]] = None
) -> Event:
    """Log a business event."""
    event = Event(
        type=type,
        level=level,
        message=message,
        details=details,
        timestamp=datetime.now(timezone.utc)
    )
    session.add(event)
    await session.commit()
    await session.refresh(event)
    return event


async def record_policy_event(type: str, message: str, details: dict[str, Any]) -> None:
    """Record a successful policy write from the page controller."""
    async with async_session() as session:
        await log_event(session, type, message, level="success", details=details)
    logger.info(message)
