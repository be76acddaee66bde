"""Worker: reclaim events stranded in ``processing``."""
from __future__ import annotations

from datetime import datetime, timedelta

from event_hub.db.pool import get_pool
from event_hub.repositories.events import EventRepository
from event_hub.settings import settings


async def event_reclaim_stuck(now: datetime) -> str | None:
    """Retry or fail events claimed more than ``event_stuck_minutes`` ago."""
    pool = await get_pool()
    cutoff = now - timedelta(minutes=settings.event_stuck_minutes)
    reclaimed = await EventRepository(pool).reclaim_stuck(cutoff)
    return f"reclaimed={reclaimed}" if reclaimed else None
