"""Delivery engine: drive one event to a terminal or retry state.

For a claimed event the engine loads active subscriptions for its type,
filters them with :func:`event_hub.services.matcher.matches`, posts the event
envelope to every match concurrently, appends one delivery record per attempt
and settles the event as ``completed``, ``retrying`` or ``failed``.
"""
from __future__ import annotations

import asyncio
import hmac
import json
from datetime import datetime, timedelta, timezone
from hashlib import sha256
from typing import Callable, Sequence
from uuid import UUID

import structlog
from aiohttp import ClientError, ClientSession, ClientTimeout

from event_hub.core.exceptions import DeliveryFailure, RetryExhausted
from event_hub.domain.enums import DeliveryStatus, EventStatus
from event_hub.domain.models import DeliveryRecord, Event, Subscription
from event_hub.otel import get_tracer
from event_hub.repositories import DeliveryLogRepository, EventRepository, SubscriptionRepository
from event_hub.services.matcher import matches
from event_hub.services.state_machine import next_retry_at

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)

EVENT_ID_HEADER = "X-Hub-Event-ID"
EVENT_TYPE_HEADER = "X-Hub-Event-Type"
SIGNATURE_HEADER = "X-Hub-Signature"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sign(secret: str, body_bytes: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body_bytes, sha256).hexdigest()
    return f"sha256={digest}"


def encode_envelope(event: Event) -> bytes:
    return json.dumps(event.envelope(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class WebhookSender:
    """Posts event envelopes to subscriber webhooks over a shared client session."""

    def __init__(
        self,
        session: ClientSession,
        *,
        timeout_seconds: float = 10.0,
        max_body_chars: int = 2000,
    ):
        self._session = session
        self._timeout = ClientTimeout(total=timeout_seconds)
        self._timeout_seconds = timeout_seconds
        self._max_body_chars = max_body_chars

    async def send(self, subscription: Subscription, event: Event) -> tuple[int, str]:
        """Return ``(status, body)`` for a 2xx reply; raise :class:`DeliveryFailure` otherwise."""
        body_bytes = encode_envelope(event)
        headers = {
            "Content-Type": "application/json",
            EVENT_ID_HEADER: str(event.event_id),
            EVENT_TYPE_HEADER: event.event_type,
        }
        if subscription.secret:
            headers[SIGNATURE_HEADER] = sign(subscription.secret, body_bytes)

        try:
            async with self._session.post(
                subscription.webhook_url,
                data=body_bytes,
                headers=headers,
                timeout=self._timeout,
            ) as resp:
                status = resp.status
                text = (await resp.text(errors="replace"))[: self._max_body_chars]
        except asyncio.TimeoutError as exc:
            raise DeliveryFailure(f"Timed out after {self._timeout_seconds:g}s") from exc
        except ClientError as exc:
            raise DeliveryFailure(str(exc) or type(exc).__name__) from exc
        except Exception as exc:
            # e.g. aiohttp rejecting a header value; still a failed attempt
            raise DeliveryFailure(f"{type(exc).__name__}: {exc}") from exc

        if not 200 <= status < 300:
            raise DeliveryFailure(
                f"HTTP {status}: {text[:200]}" if text else f"HTTP {status}",
                http_status_code=status,
                response_body=text or None,
            )
        return status, text


class DeliveryEngine:
    def __init__(
        self,
        events: EventRepository,
        subscriptions: SubscriptionRepository,
        deliveries: DeliveryLogRepository,
        sender: WebhookSender,
        *,
        retry_delay: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._events = events
        self._subscriptions = subscriptions
        self._deliveries = deliveries
        self._sender = sender
        self._retry_delay = retry_delay
        self._clock = clock
        self._in_flight: dict[UUID, asyncio.Task[Event | None]] = {}

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def process_event(self, event_id: UUID) -> Event | None:
        """Claim, deliver and settle one event.

        Returns the settled event, or ``None`` when the event could not be
        claimed (not due, already terminal, or taken by another worker).
        Store errors propagate; the event then stays ``processing`` until the
        maintenance worker reclaims it.
        """
        with tracer.start_as_current_span("event_hub.process_event") as span:
            span.set_attribute("event_hub.event_id", str(event_id))
            event = await self._events.claim(event_id)
            if event is None:
                logger.debug("event not claimable", event_id=str(event_id))
                return None
            span.set_attribute("event_hub.event_type", event.event_type)

            subscriptions = await self._subscriptions.list_active(event.event_type)
            targets = [s for s in subscriptions if matches(event.payload, s.filter_criteria)]
            span.set_attribute("event_hub.targets", len(targets))

            results = await asyncio.gather(
                *(self._attempt(event, subscription) for subscription in targets),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
            settled = await self._settle(event, results)  # type: ignore[arg-type]
            span.set_attribute("event_hub.status", settled.status.value)
            return settled

    async def _attempt(self, event: Event, subscription: Subscription) -> DeliveryRecord:
        delivered_at = self._clock()
        try:
            status_code, body = await self._sender.send(subscription, event)
        except DeliveryFailure as exc:
            logger.warning(
                "webhook delivery failed",
                event_id=str(event.event_id),
                subscription_id=str(subscription.subscription_id),
                webhook_url=subscription.webhook_url,
                http_status_code=exc.http_status_code,
                error=str(exc),
            )
            return await self._deliveries.append(
                event_id=event.event_id,
                subscription_id=subscription.subscription_id,
                status=DeliveryStatus.FAILED,
                http_status_code=exc.http_status_code,
                response_body=exc.response_body,
                error_message=str(exc),
                retry_count=event.retry_count,
                delivered_at=delivered_at,
            )
        return await self._deliveries.append(
            event_id=event.event_id,
            subscription_id=subscription.subscription_id,
            status=DeliveryStatus.SUCCESS,
            http_status_code=status_code,
            response_body=body or None,
            retry_count=event.retry_count,
            delivered_at=delivered_at,
        )

    async def _settle(self, event: Event, records: Sequence[DeliveryRecord]) -> Event:
        log = logger.bind(event_id=str(event.event_id), event_type=event.event_type)
        failed = [r for r in records if r.status is DeliveryStatus.FAILED]
        if not failed:
            log.info("event completed", deliveries=len(records))
            return await self._events.transition(
                event.event_id, EventStatus.COMPLETED, expected=EventStatus.PROCESSING
            )

        last_error = failed[-1].error_message
        try:
            due_at = next_retry_at(event, now=self._clock(), delay=self._retry_delay)
        except RetryExhausted as exc:
            log.error(
                "event failed",
                reason=str(exc),
                failed_deliveries=len(failed),
                last_error=last_error,
            )
            return await self._events.transition(
                event.event_id,
                EventStatus.FAILED,
                expected=EventStatus.PROCESSING,
                error_message=last_error,
            )

        log.warning(
            "event scheduled for retry",
            retry=event.retry_count + 1,
            max_retries=event.max_retries,
            due_at=due_at.isoformat(),
            failed_deliveries=len(failed),
            last_error=last_error,
        )
        return await self._events.schedule_retry(
            event.event_id, error_message=last_error, next_attempt_at=due_at
        )

    def dispatch(self, event_id: UUID) -> asyncio.Task[Event | None]:
        """Process ``event_id`` in the background; reuses the task if one is already running."""
        task = self._in_flight.get(event_id)
        if task is not None:
            return task
        task = asyncio.create_task(self._run(event_id), name=f"deliver-event-{event_id}")
        self._in_flight[event_id] = task
        # covers tasks cancelled before _run got to start
        task.add_done_callback(lambda t: self._forget(event_id, t))
        return task

    def _forget(self, event_id: UUID, task: asyncio.Task | None) -> None:
        if task is not None and self._in_flight.get(event_id) is task:
            del self._in_flight[event_id]

    async def _run(self, event_id: UUID) -> Event | None:
        try:
            return await self.process_event(event_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("event processing failed", event_id=str(event_id))
            return None
        finally:
            self._forget(event_id, asyncio.current_task())

    async def drain(self) -> None:
        """Wait until every dispatched event has been processed."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def close(self) -> None:
        """Cancel in-flight processing; interrupted events are recovered via reclaim."""
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
