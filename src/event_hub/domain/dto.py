"""Pydantic DTOs for the service layer."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from event_hub.domain.enums import DeliveryMode, EventStatus

EVENT_TYPE_MAX_LENGTH = 100


def _normalize_event_type(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("event_type must not be blank")
    if any(ch < " " or ch == "\x7f" for ch in value):
        raise ValueError("event_type must not contain control characters")
    return value


def _strict_json(value: Any) -> Any:
    """Reject values PostgreSQL jsonb cannot store, such as NaN and Infinity."""
    try:
        json.dumps(value, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise ValueError("must be valid JSON (NaN and Infinity are not allowed)") from exc
    return value


def _assume_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class EventPublishDTO(BaseModel):
    model_config = ConfigDict(extra="forbid")

    event_type: str = Field(max_length=EVENT_TYPE_MAX_LENGTH)
    source_app_id: UUID | None = None
    payload: dict[str, Any]
    scheduled_for: datetime | None = None
    max_retries: int | None = Field(default=None, ge=0, le=20)
    metadata: dict[str, Any] = Field(default_factory=dict)

    normalize_event_type = field_validator("event_type")(_normalize_event_type)
    normalize_scheduled_for = field_validator("scheduled_for")(_assume_utc)
    check_json = field_validator("payload", "metadata")(_strict_json)


class SubscriptionCreateDTO(BaseModel):
    model_config = ConfigDict(extra="forbid")

    app_id: UUID
    event_type: str = Field(max_length=EVENT_TYPE_MAX_LENGTH)
    webhook_url: str
    filter_criteria: dict[str, Any] | None = None
    delivery_mode: DeliveryMode = DeliveryMode.ASYNC
    secret: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    normalize_event_type = field_validator("event_type")(_normalize_event_type)
    check_json = field_validator("filter_criteria", "metadata")(_strict_json)

    @field_validator("webhook_url")
    @classmethod
    def check_webhook_url(cls, value: str) -> str:
        value = value.strip()
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("webhook_url must be an absolute http(s) URL")
        return value


class EventHistoryQuery(BaseModel):
    model_config = ConfigDict(extra="ignore")

    app_id: UUID | None = None
    event_type: str | None = None
    status: EventStatus | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    limit: int = Field(default=100, gt=0, le=500)
    offset: int = Field(default=0, ge=0)

    normalize_dates = field_validator("start_date", "end_date")(_assume_utc)
