"""Domain enums for events, subscriptions and deliveries."""
from __future__ import annotations

from enum import Enum


class EventStatus(str, Enum):
    """Event lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"

    @property
    def is_terminal(self) -> bool:
        return self in (EventStatus.COMPLETED, EventStatus.FAILED)


# statuses the scheduler and the engine may claim
DUE_STATUSES = (EventStatus.PENDING, EventStatus.RETRYING)


class DeliveryStatus(str, Enum):
    """Outcome of one delivery attempt."""

    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"


class DeliveryMode(str, Enum):
    """Requested delivery mode. The engine delivers every mode asynchronously; sync and batch are recorded only."""

    SYNC = "sync"
    ASYNC = "async"
    BATCH = "batch"
