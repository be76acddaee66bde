"""Scheduler task: hand due events to the delivery engine."""
from __future__ import annotations

from datetime import datetime

import asyncpg  # type: ignore[import-untyped]

from event_hub.core.exceptions import SchedulerFault
from event_hub.repositories.events import EventRepository
from event_hub.services.delivery import DeliveryEngine


class DueEventSweep:
    """Lists a bounded batch of due events and dispatches each without waiting for delivery.

    A slow event therefore never delays the next sweep; claiming inside the
    engine keeps overlapping sweeps from processing the same event twice.
    """

    def __init__(self, events: EventRepository, engine: DeliveryEngine, *, batch_size: int = 10):
        self._events = events
        self._engine = engine
        self._batch_size = batch_size

    async def __call__(self, now: datetime) -> str | None:
        try:
            due = await self._events.list_due(limit=self._batch_size)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise SchedulerFault(f"Could not list due events: {exc}") from exc
        for event in due:
            self._engine.dispatch(event.event_id)
        return f"dispatched={len(due)}" if due else None
