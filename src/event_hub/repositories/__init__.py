"""Repository package exports."""

from event_hub.repositories.deliveries import DeliveryLogRepository
from event_hub.repositories.events import EventRepository
from event_hub.repositories.subscriptions import SubscriptionRepository

__all__ = [
    "EventRepository",
    "SubscriptionRepository",
    "DeliveryLogRepository",
]
