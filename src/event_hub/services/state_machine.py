"""Event status transitions and the retry policy."""
from __future__ import annotations

from datetime import datetime, timedelta

from event_hub.core.exceptions import InvalidStatusTransitionError, RetryExhausted
from event_hub.domain.enums import EventStatus
from event_hub.domain.models import Event

EVENT_TRANSITIONS: dict[EventStatus, set[EventStatus]] = {
    EventStatus.PENDING: {EventStatus.PROCESSING},
    EventStatus.PROCESSING: {
        EventStatus.COMPLETED,
        EventStatus.FAILED,
        EventStatus.RETRYING,
    },
    EventStatus.RETRYING: {EventStatus.PROCESSING, EventStatus.FAILED},
    EventStatus.COMPLETED: set(),
    EventStatus.FAILED: set(),
}


def validate_event_transition(current: EventStatus, new: EventStatus) -> None:
    if new not in EVENT_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransitionError(
            f"Invalid event status transition: {current.value} → {new.value}"
        )


def next_retry_at(event: Event, *, now: datetime, delay: timedelta) -> datetime:
    """When a failed event becomes due again.

    The delay is fixed; it does not grow with ``retry_count``.
    Raises :class:`RetryExhausted` once ``retry_count`` has reached ``max_retries``.
    """
    if event.retry_count >= event.max_retries:
        raise RetryExhausted(
            f"Event {event.event_id} exhausted {event.max_retries} retries"
        )
    return now + delay
