"""Subscription registry: the event_subscriptions table."""
from __future__ import annotations

import json
from typing import Any, List, Tuple
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from event_hub.core.exceptions import NotFoundError
from event_hub.domain.enums import DeliveryMode
from event_hub.domain.models import Subscription
from event_hub.repositories.base import BaseRepository, decode_json_columns, rows_with_total


class SubscriptionRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record | dict[str, Any]) -> Subscription:
        return Subscription.model_validate(
            decode_json_columns(dict(record), "filter_criteria", "metadata")
        )

    async def upsert(
        self,
        *,
        app_id: UUID,
        event_type: str,
        webhook_url: str,
        filter_criteria: dict[str, Any] | None = None,
        delivery_mode: DeliveryMode = DeliveryMode.ASYNC,
        secret: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        """Create a subscription, or reactivate and update the existing one for the same target."""
        record = await self._fetchrow(
            """
            INSERT INTO event_subscriptions (
                app_id,
                event_type,
                webhook_url,
                filter_criteria,
                delivery_mode,
                secret,
                metadata,
                is_active
            )
            VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7::jsonb, true)
            ON CONFLICT (app_id, event_type, webhook_url) DO UPDATE
            SET filter_criteria = EXCLUDED.filter_criteria,
                delivery_mode = EXCLUDED.delivery_mode,
                secret = EXCLUDED.secret,
                metadata = EXCLUDED.metadata,
                is_active = true,
                updated_at = now()
            RETURNING *
            """,
            app_id,
            event_type,
            webhook_url,
            json.dumps(filter_criteria) if filter_criteria is not None else None,
            delivery_mode.value,
            secret,
            json.dumps(metadata or {}),
        )
        assert record is not None
        return self._to_model(record)

    async def deactivate(self, subscription_id: UUID) -> bool:
        """Soft-disable. Returns whether the subscription exists; history is kept."""
        record = await self._fetchrow(
            """
            UPDATE event_subscriptions
            SET is_active = false,
                updated_at = now()
            WHERE subscription_id = $1
            RETURNING subscription_id
            """,
            subscription_id,
        )
        return record is not None

    async def get(self, subscription_id: UUID) -> Subscription:
        record = await self._fetchrow(
            "SELECT * FROM event_subscriptions WHERE subscription_id = $1",
            subscription_id,
        )
        if record is None:
            raise NotFoundError("Subscription not found")
        return self._to_model(record)

    async def list_active(self, event_type: str) -> List[Subscription]:
        records = await self._fetch(
            """
            SELECT *
            FROM event_subscriptions
            WHERE event_type = $1
              AND is_active = true
            ORDER BY created_at ASC
            """,
            event_type,
        )
        return [self._to_model(r) for r in records]

    async def list_by_app(
        self, app_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[Subscription], int]:
        records = await self._fetch(
            """
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM event_subscriptions
            WHERE app_id = $1
            ORDER BY created_at DESC
            LIMIT $2 OFFSET $3
            """,
            app_id,
            limit,
            offset,
        )
        rows, total = rows_with_total(records)
        if total is None:
            record = await self._fetchrow(
                "SELECT COUNT(*) AS total FROM event_subscriptions WHERE app_id = $1",
                app_id,
            )
            total = int(record["total"]) if record else 0
        return [self._to_model(row) for row in rows], total
