"""Delivery log: append-only record of webhook attempts."""
from __future__ import annotations

from datetime import datetime
from typing import Any, List
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from event_hub.domain.enums import DeliveryStatus
from event_hub.domain.models import DeliveryRecord
from event_hub.repositories.base import BaseRepository


class DeliveryLogRepository(BaseRepository):
    """Rows are inserted once per attempt and never updated."""

    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record | dict[str, Any]) -> DeliveryRecord:
        return DeliveryRecord.model_validate(dict(record))

    async def append(
        self,
        *,
        event_id: UUID,
        subscription_id: UUID,
        status: DeliveryStatus,
        http_status_code: int | None = None,
        response_body: str | None = None,
        error_message: str | None = None,
        retry_count: int = 0,
        delivered_at: datetime | None = None,
    ) -> DeliveryRecord:
        record = await self._fetchrow(
            """
            INSERT INTO event_delivery_log (
                event_id,
                subscription_id,
                status,
                http_status_code,
                response_body,
                error_message,
                retry_count,
                delivered_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            RETURNING *
            """,
            event_id,
            subscription_id,
            status.value,
            http_status_code,
            response_body,
            error_message,
            retry_count,
            delivered_at,
        )
        assert record is not None
        return self._to_model(record)

    async def list_by_event(self, event_id: UUID) -> List[DeliveryRecord]:
        records = await self._fetch(
            """
            SELECT *
            FROM event_delivery_log
            WHERE event_id = $1
            ORDER BY created_at ASC, delivery_id ASC
            """,
            event_id,
        )
        return [self._to_model(r) for r in records]
