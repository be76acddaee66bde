"""Service wiring and dependency providers for aiohttp handlers."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

import structlog
from aiohttp import ClientSession, ClientTimeout, web

from event_hub.api.utils import parse_uuid
from event_hub.db.pool import get_pool
from event_hub.middleware.trace import APP_ID_HEADER
from event_hub.repositories import DeliveryLogRepository, EventRepository, SubscriptionRepository
from event_hub.services.delivery import DeliveryEngine, WebhookSender
from event_hub.services.events import EventService
from event_hub.settings import settings
from event_hub.workers import create_event_scheduler

logger = structlog.get_logger(__name__)

SERVICES_KEY = "hub_services"
_SCHEDULER_KEY = "event_scheduler"


@dataclass
class HubServices:
    events: EventRepository
    subscriptions: SubscriptionRepository
    deliveries: DeliveryLogRepository
    engine: DeliveryEngine
    event_service: EventService
    http_session: ClientSession | None = None

    async def close(self) -> None:
        await self.engine.close()
        if self.http_session is not None:
            await self.http_session.close()


def build_services(
    events: EventRepository,
    subscriptions: SubscriptionRepository,
    deliveries: DeliveryLogRepository,
    session: ClientSession,
) -> HubServices:
    sender = WebhookSender(
        session,
        timeout_seconds=settings.webhook_request_timeout_seconds,
        max_body_chars=settings.webhook_response_body_max_chars,
    )
    engine = DeliveryEngine(
        events,
        subscriptions,
        deliveries,
        sender,
        retry_delay=timedelta(seconds=settings.event_retry_delay_seconds),
    )
    event_service = EventService(
        events,
        subscriptions,
        deliveries,
        engine,
        default_max_retries=settings.event_default_max_retries,
    )
    return HubServices(
        events=events,
        subscriptions=subscriptions,
        deliveries=deliveries,
        engine=engine,
        event_service=event_service,
        http_session=session,
    )


async def init_services(app: web.Application) -> None:
    """Build database-backed services unless the app was created with prebuilt ones."""
    if SERVICES_KEY in app:
        return
    pool = await get_pool()
    session = ClientSession(timeout=ClientTimeout(total=settings.webhook_request_timeout_seconds))
    app[SERVICES_KEY] = build_services(
        EventRepository(pool),
        SubscriptionRepository(pool),
        DeliveryLogRepository(pool),
        session,
    )
    logger.info(
        "services initialized",
        retry_delay_seconds=settings.event_retry_delay_seconds,
        webhook_timeout_seconds=settings.webhook_request_timeout_seconds,
    )


async def close_services(app: web.Application) -> None:
    services: HubServices | None = app.get(SERVICES_KEY)
    if services is not None:
        await services.close()


async def start_event_scheduler(app: web.Application) -> None:
    services: HubServices = app[SERVICES_KEY]
    scheduler = create_event_scheduler(services.events, services.engine)
    app[_SCHEDULER_KEY] = scheduler
    await scheduler.start(app)


async def stop_event_scheduler(app: web.Application) -> None:
    scheduler = app.get(_SCHEDULER_KEY)
    if scheduler is not None:
        await scheduler.stop(app)


def get_event_service(request: web.Request) -> EventService:
    return request.app[SERVICES_KEY].event_service


def caller_app_id(request: web.Request) -> UUID | None:
    """Id of the calling app as forwarded by the gateway, if any.

    Temporary auth hook: the gateway authenticates the app and forwards its id.
    """
    value = request.headers.get(APP_ID_HEADER)
    if not value:
        return None
    return parse_uuid(value, APP_ID_HEADER)
