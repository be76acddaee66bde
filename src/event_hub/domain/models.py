"""Pydantic domain models mirroring the event tables."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from event_hub.domain.enums import DeliveryMode, DeliveryStatus, EventStatus


class Event(BaseModel):
    event_id: UUID
    event_type: str
    source_app_id: UUID | None = None
    payload: dict[str, Any]
    status: EventStatus
    scheduled_for: datetime | None = None
    retry_count: int = 0
    max_retries: int = 3
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    claimed_at: datetime | None = None
    processed_at: datetime | None = None

    def envelope(self) -> dict[str, Any]:
        """Body sent to subscriber webhooks."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "source_app_id": str(self.source_app_id) if self.source_app_id else None,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }


class Subscription(BaseModel):
    subscription_id: UUID
    app_id: UUID
    event_type: str
    webhook_url: str
    filter_criteria: dict[str, Any] | None = None
    delivery_mode: DeliveryMode = DeliveryMode.ASYNC
    is_active: bool = True
    secret: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    def public_dump(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"secret"})


class DeliveryRecord(BaseModel):
    delivery_id: UUID
    event_id: UUID
    subscription_id: UUID
    status: DeliveryStatus
    http_status_code: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    retry_count: int = 0
    delivered_at: datetime | None = None
    created_at: datetime
