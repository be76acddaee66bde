"""Delivery engine against a local webhook receiver and in-memory repositories."""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from event_hub.domain.enums import DeliveryStatus, EventStatus
from event_hub.services.delivery import (
    EVENT_ID_HEADER,
    EVENT_TYPE_HEADER,
    SIGNATURE_HEADER,
    sign,
)

APP_ID = uuid.uuid4()


async def _subscribe(subscription_repo, url, *, event_type="user.created", **kwargs):
    return await subscription_repo.upsert(
        app_id=kwargs.pop("app_id", APP_ID),
        event_type=event_type,
        webhook_url=url,
        **kwargs,
    )


async def _publish(event_repo, *, event_type="user.created", payload=None, max_retries=3):
    return await event_repo.create(
        event_type=event_type,
        source_app_id=APP_ID,
        payload=payload if payload is not None else {"user_id": 42, "region": "eu"},
        max_retries=max_retries,
    )


@pytest.mark.asyncio
async def test_successful_delivery_completes_event(
    engine, event_repo, subscription_repo, delivery_repo, webhook_receiver
):
    subscription = await _subscribe(subscription_repo, webhook_receiver.url())
    event = await _publish(event_repo)

    settled = await engine.process_event(event.event_id)

    assert settled is not None
    assert settled.status is EventStatus.COMPLETED
    assert settled.processed_at is not None
    assert event_repo.trail[event.event_id] == [
        EventStatus.PENDING,
        EventStatus.PROCESSING,
        EventStatus.COMPLETED,
    ]

    records = await delivery_repo.list_by_event(event.event_id)
    assert len(records) == 1
    assert records[0].status is DeliveryStatus.SUCCESS
    assert records[0].http_status_code == 200
    assert records[0].subscription_id == subscription.subscription_id

    (request,) = webhook_receiver.received
    assert request.headers[EVENT_ID_HEADER] == str(event.event_id)
    assert request.headers[EVENT_TYPE_HEADER] == "user.created"
    assert request.headers["Content-Type"].startswith("application/json")
    assert SIGNATURE_HEADER not in request.headers
    assert request.body == {
        "event_id": str(event.event_id),
        "event_type": "user.created",
        "source_app_id": str(APP_ID),
        "payload": {"user_id": 42, "region": "eu"},
        "created_at": event.created_at.isoformat(),
    }


@pytest.mark.asyncio
async def test_failing_subscriber_exhausts_retries(
    make_engine, event_repo, subscription_repo, delivery_repo, webhook_receiver
):
    engine = make_engine(retry_delay=timedelta(0))
    webhook_receiver.statuses["hook"] = 500
    await _subscribe(subscription_repo, webhook_receiver.url())
    event = await _publish(event_repo, max_retries=2)

    first = await engine.process_event(event.event_id)
    assert first is not None
    assert first.status is EventStatus.RETRYING
    assert first.retry_count == 1

    second = await engine.process_event(event.event_id)
    assert second is not None
    assert second.status is EventStatus.RETRYING
    assert second.retry_count == 2

    final = await engine.process_event(event.event_id)
    assert final is not None
    assert final.status is EventStatus.FAILED
    assert final.retry_count == 2
    assert final.error_message is not None
    assert "500" in final.error_message

    assert event_repo.trail[event.event_id] == [
        EventStatus.PENDING,
        EventStatus.PROCESSING,
        EventStatus.RETRYING,
        EventStatus.PROCESSING,
        EventStatus.RETRYING,
        EventStatus.PROCESSING,
        EventStatus.FAILED,
    ]

    records = await delivery_repo.list_by_event(event.event_id)
    assert [r.status for r in records] == [DeliveryStatus.FAILED] * 3
    assert [r.retry_count for r in records] == [0, 1, 2]
    assert all(r.http_status_code == 500 for r in records)
    assert len(webhook_receiver.received) == 3

    # terminal events are never claimed again
    assert await engine.process_event(event.event_id) is None
    assert len(await delivery_repo.list_by_event(event.event_id)) == 3


@pytest.mark.asyncio
async def test_retry_waits_for_fixed_delay(engine, event_repo, subscription_repo, webhook_receiver):
    webhook_receiver.statuses["hook"] = 503
    await _subscribe(subscription_repo, webhook_receiver.url())
    event = await _publish(event_repo)

    before = datetime.now(timezone.utc)
    retrying = await engine.process_event(event.event_id)

    assert retrying is not None
    assert retrying.status is EventStatus.RETRYING
    assert retrying.scheduled_for is not None
    assert retrying.scheduled_for >= before + timedelta(minutes=5)
    assert retrying.scheduled_for <= datetime.now(timezone.utc) + timedelta(minutes=5)

    # not due yet
    assert await engine.process_event(event.event_id) is None
    assert await event_repo.list_due() == []
    assert len(webhook_receiver.received) == 1


@pytest.mark.asyncio
async def test_non_matching_filter_skips_subscriber(
    engine, event_repo, subscription_repo, delivery_repo, webhook_receiver
):
    await _subscribe(
        subscription_repo, webhook_receiver.url(), filter_criteria={"region": "us"}
    )
    event = await _publish(event_repo, payload={"user_id": 1, "region": "eu"})

    settled = await engine.process_event(event.event_id)

    assert settled is not None
    assert settled.status is EventStatus.COMPLETED
    assert await delivery_repo.list_by_event(event.event_id) == []
    assert webhook_receiver.received == []


@pytest.mark.asyncio
async def test_matching_filter_delivers(engine, event_repo, subscription_repo, webhook_receiver):
    await _subscribe(
        subscription_repo, webhook_receiver.url(), filter_criteria={"region": "eu"}
    )
    event = await _publish(event_repo, payload={"user_id": 1, "region": "eu"})

    settled = await engine.process_event(event.event_id)

    assert settled is not None
    assert settled.status is EventStatus.COMPLETED
    assert len(webhook_receiver.received) == 1


@pytest.mark.asyncio
async def test_deactivated_subscription_receives_nothing(
    engine, event_repo, subscription_repo, delivery_repo, webhook_receiver
):
    subscription = await _subscribe(subscription_repo, webhook_receiver.url())
    assert await subscription_repo.deactivate(subscription.subscription_id) is True
    event = await _publish(event_repo)

    settled = await engine.process_event(event.event_id)

    assert settled is not None
    assert settled.status is EventStatus.COMPLETED
    assert await delivery_repo.list_by_event(event.event_id) == []
    assert webhook_receiver.received == []


@pytest.mark.asyncio
async def test_event_without_subscribers_completes(engine, event_repo, delivery_repo):
    event = await _publish(event_repo, event_type="nobody.listens")

    settled = await engine.process_event(event.event_id)

    assert settled is not None
    assert settled.status is EventStatus.COMPLETED
    assert await delivery_repo.list_by_event(event.event_id) == []


@pytest.mark.asyncio
async def test_one_failing_subscriber_does_not_block_others(
    engine, event_repo, subscription_repo, delivery_repo, webhook_receiver
):
    webhook_receiver.statuses["broken"] = 500
    good = await _subscribe(subscription_repo, webhook_receiver.url("good"))
    broken = await _subscribe(subscription_repo, webhook_receiver.url("broken"))
    event = await _publish(event_repo)

    settled = await engine.process_event(event.event_id)

    assert settled is not None
    assert settled.status is EventStatus.RETRYING
    records = {r.subscription_id: r for r in await delivery_repo.list_by_event(event.event_id)}
    assert records[good.subscription_id].status is DeliveryStatus.SUCCESS
    assert records[broken.subscription_id].status is DeliveryStatus.FAILED
    assert len(webhook_receiver.requests_for("good")) == 1
    assert len(webhook_receiver.requests_for("broken")) == 1


@pytest.mark.asyncio
async def test_unreachable_subscriber_is_recorded(engine, event_repo, subscription_repo, delivery_repo):
    await _subscribe(subscription_repo, "http://127.0.0.1:1/hook")
    event = await _publish(event_repo)

    settled = await engine.process_event(event.event_id)

    assert settled is not None
    assert settled.status is EventStatus.RETRYING
    (record,) = await delivery_repo.list_by_event(event.event_id)
    assert record.status is DeliveryStatus.FAILED
    assert record.http_status_code is None
    assert record.error_message


@pytest.mark.asyncio
async def test_slow_subscriber_times_out(
    make_engine, event_repo, subscription_repo, delivery_repo, webhook_receiver
):
    engine = make_engine(timeout_seconds=0.2)
    webhook_receiver.delays["slow"] = 2.0
    await _subscribe(subscription_repo, webhook_receiver.url("slow"))
    event = await _publish(event_repo)

    settled = await engine.process_event(event.event_id)

    assert settled is not None
    assert settled.status is EventStatus.RETRYING
    (record,) = await delivery_repo.list_by_event(event.event_id)
    assert record.status is DeliveryStatus.FAILED
    assert record.error_message is not None
    assert record.error_message.startswith("Timed out")


@pytest.mark.asyncio
async def test_signature_header_for_subscription_secret(
    engine, event_repo, subscription_repo, webhook_receiver
):
    await _subscribe(subscription_repo, webhook_receiver.url(), secret="s3cret")
    event = await _publish(event_repo)

    await engine.process_event(event.event_id)

    (request,) = webhook_receiver.received
    assert request.headers[SIGNATURE_HEADER] == sign("s3cret", request.raw)
    assert request.headers[SIGNATURE_HEADER].startswith("sha256=")


@pytest.mark.asyncio
async def test_concurrent_processing_claims_once(
    engine, event_repo, subscription_repo, delivery_repo, webhook_receiver
):
    await _subscribe(subscription_repo, webhook_receiver.url())
    event = await _publish(event_repo)

    results = await asyncio.gather(*(engine.process_event(event.event_id) for _ in range(5)))

    assert sum(1 for r in results if r is not None) == 1
    assert len(await delivery_repo.list_by_event(event.event_id)) == 1
    assert len(webhook_receiver.received) == 1


@pytest.mark.asyncio
async def test_dispatch_reuses_in_flight_task(
    engine, event_repo, subscription_repo, delivery_repo, webhook_receiver
):
    await _subscribe(subscription_repo, webhook_receiver.url())
    event = await _publish(event_repo)

    first = engine.dispatch(event.event_id)
    second = engine.dispatch(event.event_id)
    assert first is second
    assert engine.in_flight == 1

    await engine.drain()

    assert engine.in_flight == 0
    assert (await event_repo.get(event.event_id)).status is EventStatus.COMPLETED
    assert len(await delivery_repo.list_by_event(event.event_id)) == 1


@pytest.mark.asyncio
async def test_dispatch_of_unknown_event_is_noop(engine):
    task = engine.dispatch(uuid.uuid4())
    assert await task is None


@pytest.mark.asyncio
async def test_close_cancels_in_flight_deliveries(
    engine, event_repo, subscription_repo, webhook_receiver
):
    webhook_receiver.delays["slow"] = 1.0
    await _subscribe(subscription_repo, webhook_receiver.url("slow"))
    event = await _publish(event_repo)

    engine.dispatch(event.event_id)
    for _ in range(50):
        if webhook_receiver.received:
            break
        await asyncio.sleep(0.02)

    await engine.close()

    assert engine.in_flight == 0
    # left for the maintenance worker to reclaim
    assert (await event_repo.get(event.event_id)).status is EventStatus.PROCESSING


@pytest.mark.asyncio
async def test_rejected_request_is_recorded_as_failed_attempt(
    engine, event_repo, subscription_repo, delivery_repo, webhook_receiver
):
    # aiohttp refuses to send a header value containing a newline
    await _subscribe(subscription_repo, webhook_receiver.url(), event_type="order\ncreated")
    event = await _publish(event_repo, event_type="order\ncreated")

    settled = await engine.process_event(event.event_id)

    assert settled is not None
    assert settled.status is EventStatus.RETRYING
    (record,) = await delivery_repo.list_by_event(event.event_id)
    assert record.status is DeliveryStatus.FAILED
    assert record.http_status_code is None
    assert record.error_message
    assert webhook_receiver.received == []


@pytest.mark.asyncio
async def test_finished_dispatch_leaves_in_flight_immediately(engine, event_repo):
    event = await _publish(event_repo, event_type="nobody.listens")

    first = engine.dispatch(event.event_id)
    while not first.done():
        await asyncio.sleep(0)

    assert engine.in_flight == 0
    second = engine.dispatch(uuid.uuid4())
    assert second is not first
    await engine.drain()
    assert (await event_repo.get(event.event_id)).status is EventStatus.COMPLETED
