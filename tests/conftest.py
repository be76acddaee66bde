from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import pytest
from aiohttp import ClientSession, web

from event_hub.main import create_app
from event_hub.services.delivery import DeliveryEngine, WebhookSender
from event_hub.services.dependencies import build_services
from event_hub.services.events import EventService
from tests.fakes import (
    InMemoryDeliveryLogRepository,
    InMemoryEventRepository,
    InMemorySubscriptionRepository,
)


@dataclass
class ReceivedRequest:
    path: str
    headers: dict[str, str]
    raw: bytes

    @property
    def body(self) -> dict[str, Any]:
        return json.loads(self.raw.decode("utf-8"))


@dataclass
class WebhookReceiver:
    """Local subscriber endpoint. ``statuses`` maps a hook name to the status it answers with."""

    base_url: str = ""
    statuses: dict[str, int] = field(default_factory=dict)
    delays: dict[str, float] = field(default_factory=dict)
    received: list[ReceivedRequest] = field(default_factory=list)

    def url(self, name: str = "hook") -> str:
        return f"{self.base_url}/{name}"

    def requests_for(self, name: str) -> list[ReceivedRequest]:
        return [r for r in self.received if r.path == f"/{name}"]

    async def handle(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        self.received.append(
            ReceivedRequest(
                path=request.path,
                headers=dict(request.headers),
                raw=await request.read(),
            )
        )
        delay = self.delays.get(name)
        if delay:
            await asyncio.sleep(delay)
        status = self.statuses.get(name, 200)
        return web.Response(status=status, text="ok" if status < 400 else "boom")


@pytest.fixture
async def webhook_receiver():
    receiver = WebhookReceiver()
    app = web.Application()
    app.router.add_post("/{name}", receiver.handle)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    port = site._server.sockets[0].getsockname()[1]  # type: ignore[union-attr]
    receiver.base_url = f"http://127.0.0.1:{port}"
    try:
        yield receiver
    finally:
        await runner.cleanup()


@pytest.fixture
async def http_session():
    session = ClientSession()
    try:
        yield session
    finally:
        await session.close()


@pytest.fixture
def event_repo():
    return InMemoryEventRepository()


@pytest.fixture
def subscription_repo():
    return InMemorySubscriptionRepository()


@pytest.fixture
def delivery_repo():
    return InMemoryDeliveryLogRepository()


@pytest.fixture
async def make_engine(event_repo, subscription_repo, delivery_repo, http_session):
    engines: list[DeliveryEngine] = []

    def factory(
        *,
        retry_delay: timedelta = timedelta(minutes=5),
        timeout_seconds: float = 10.0,
    ) -> DeliveryEngine:
        engine = DeliveryEngine(
            event_repo,
            subscription_repo,
            delivery_repo,
            WebhookSender(http_session, timeout_seconds=timeout_seconds),
            retry_delay=retry_delay,
        )
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        await engine.close()


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def event_service(event_repo, subscription_repo, delivery_repo, engine):
    return EventService(event_repo, subscription_repo, delivery_repo, engine)


@pytest.fixture
def hub_services(event_repo, subscription_repo, delivery_repo, http_session):
    return build_services(event_repo, subscription_repo, delivery_repo, http_session)


@pytest.fixture
async def service_client(aiohttp_client, hub_services):
    """Client for calling the service API backed by in-memory repositories."""
    app = create_app(services=hub_services, start_workers=False)
    return await aiohttp_client(app)
