"""Event service: publish, subscribe and query history."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, List, Mapping, Type, TypeVar
from uuid import UUID

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from event_hub.core.exceptions import ValidationError
from event_hub.domain.dto import EventHistoryQuery, EventPublishDTO, SubscriptionCreateDTO
from event_hub.domain.models import DeliveryRecord, Event, Subscription
from event_hub.repositories import DeliveryLogRepository, EventRepository, SubscriptionRepository
from event_hub.services.delivery import DeliveryEngine

logger = structlog.get_logger(__name__)

TModel = TypeVar("TModel", bound=BaseModel)


def validate_input(model: Type[TModel], data: Mapping[str, Any]) -> TModel:
    """Validate request data, converting pydantic errors into :class:`ValidationError`."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        errors = json.loads(exc.json(include_url=False, include_input=False))
        message = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'body'}: {err['msg']}"
            for err in errors
        )
        raise ValidationError(message, errors=errors) from exc


class EventService:
    def __init__(
        self,
        events: EventRepository,
        subscriptions: SubscriptionRepository,
        deliveries: DeliveryLogRepository,
        engine: DeliveryEngine,
        *,
        default_max_retries: int = 3,
    ):
        self._events = events
        self._subscriptions = subscriptions
        self._deliveries = deliveries
        self._engine = engine
        self._default_max_retries = default_max_retries

    async def publish(
        self,
        data: Mapping[str, Any],
        *,
        source_app_id: UUID | None = None,
    ) -> Event:
        """Record a new ``pending`` event and start delivering it unless it is scheduled later.

        ``source_app_id`` is the authenticated caller and takes precedence over
        the body. Delivery outcome never affects the return value.
        """
        dto = validate_input(EventPublishDTO, data)
        event = await self._events.create(
            event_type=dto.event_type,
            source_app_id=source_app_id or dto.source_app_id,
            payload=dto.payload,
            scheduled_for=dto.scheduled_for,
            max_retries=(
                dto.max_retries if dto.max_retries is not None else self._default_max_retries
            ),
            metadata=dto.metadata,
        )
        logger.info(
            "event published",
            event_id=str(event.event_id),
            event_type=event.event_type,
            scheduled_for=event.scheduled_for.isoformat() if event.scheduled_for else None,
        )
        if event.scheduled_for is None or event.scheduled_for <= datetime.now(timezone.utc):
            self._engine.dispatch(event.event_id)
        return event

    async def subscribe(
        self,
        data: Mapping[str, Any],
        *,
        app_id: UUID | None = None,
    ) -> Subscription:
        """Create or reactivate a subscription. ``app_id`` is the authenticated caller."""
        if app_id is not None:
            data = {**data, "app_id": str(app_id)}
        dto = validate_input(SubscriptionCreateDTO, data)
        subscription = await self._subscriptions.upsert(
            app_id=dto.app_id,
            event_type=dto.event_type,
            webhook_url=dto.webhook_url,
            filter_criteria=dto.filter_criteria,
            delivery_mode=dto.delivery_mode,
            secret=dto.secret,
            metadata=dto.metadata,
        )
        logger.info(
            "subscription active",
            subscription_id=str(subscription.subscription_id),
            app_id=str(subscription.app_id),
            event_type=subscription.event_type,
        )
        return subscription

    async def unsubscribe(self, subscription_id: UUID) -> bool:
        existed = await self._subscriptions.deactivate(subscription_id)
        logger.info("subscription deactivated", subscription_id=str(subscription_id), existed=existed)
        return existed

    async def get_event(self, event_id: UUID) -> Event:
        return await self._events.get(event_id)

    async def history(self, params: Mapping[str, Any]) -> tuple[List[Event], int]:
        query = validate_input(EventHistoryQuery, params)
        return await self._events.list_history(query)

    async def list_deliveries(self, event_id: UUID) -> List[DeliveryRecord]:
        await self._events.get(event_id)
        return await self._deliveries.list_by_event(event_id)

    async def list_subscriptions(
        self, app_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> tuple[List[Subscription], int]:
        return await self._subscriptions.list_by_app(app_id, limit=limit, offset=offset)
