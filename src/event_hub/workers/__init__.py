"""Background workers for the hub.

:data:`maintenance_worker` runs housekeeping tasks against the database pool.
:func:`create_event_scheduler` builds the sweep that feeds due events to the
delivery engine.
"""
from __future__ import annotations

from event_hub.repositories.events import EventRepository
from event_hub.services.delivery import DeliveryEngine
from event_hub.settings import settings
from event_hub.worker import BackgroundWorker, WorkerTask
from event_hub.workers.dispatch import DueEventSweep
from event_hub.workers.reclaim import event_reclaim_stuck

maintenance_worker = BackgroundWorker(
    name="maintenance",
    interval_seconds=settings.worker_interval_seconds,
    tasks=[
        WorkerTask(name="event_reclaim_stuck", fn=event_reclaim_stuck),
    ],
)


def create_event_scheduler(events: EventRepository, engine: DeliveryEngine) -> BackgroundWorker:
    return BackgroundWorker(
        name="event_scheduler",
        interval_seconds=settings.event_scheduler_interval_seconds,
        tasks=[
            WorkerTask(
                name="dispatch_due_events",
                fn=DueEventSweep(events, engine, batch_size=settings.event_scheduler_batch_size),
            ),
        ],
    )


__all__ = [
    "maintenance_worker",
    "create_event_scheduler",
]
