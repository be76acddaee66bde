"""Event store: the event_queue table and its lifecycle transitions."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Tuple
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from event_hub.core.exceptions import NotFoundError, StatusConflictError
from event_hub.domain.dto import EventHistoryQuery
from event_hub.domain.enums import EventStatus
from event_hub.domain.models import Event
from event_hub.repositories.base import (
    BaseRepository,
    affected_rows,
    decode_json_columns,
    rows_with_total,
)
from event_hub.services.state_machine import validate_event_transition

INTERRUPTED_ERROR = "delivery interrupted while processing"


class EventRepository(BaseRepository):
    """Owns every status change of an event.

    Status updates are conditional on the expected prior state so concurrent
    sweeps never both move the same row.
    """

    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record | dict[str, Any]) -> Event:
        return Event.model_validate(decode_json_columns(dict(record), "payload", "metadata"))

    async def create(
        self,
        *,
        event_type: str,
        source_app_id: UUID | None,
        payload: dict[str, Any],
        scheduled_for: datetime | None = None,
        max_retries: int = 3,
        metadata: dict[str, Any] | None = None,
    ) -> Event:
        record = await self._fetchrow(
            """
            INSERT INTO event_queue (
                event_type,
                source_app_id,
                payload,
                scheduled_for,
                max_retries,
                metadata
            )
            VALUES ($1, $2, $3::jsonb, $4, $5, $6::jsonb)
            RETURNING *
            """,
            event_type,
            source_app_id,
            json.dumps(payload),
            scheduled_for,
            max_retries,
            json.dumps(metadata or {}),
        )
        assert record is not None
        return self._to_model(record)

    async def get(self, event_id: UUID) -> Event:
        record = await self._fetchrow("SELECT * FROM event_queue WHERE event_id = $1", event_id)
        if record is None:
            raise NotFoundError("Event not found")
        return self._to_model(record)

    async def list_due(self, *, limit: int = 10) -> List[Event]:
        """Pending/retrying events whose due time has passed, oldest first."""
        records = await self._fetch(
            """
            SELECT *
            FROM event_queue
            WHERE status IN ('pending', 'retrying')
              AND (scheduled_for IS NULL OR scheduled_for <= now())
            ORDER BY created_at ASC
            LIMIT $1
            """,
            limit,
        )
        return [self._to_model(r) for r in records]

    async def claim(self, event_id: UUID) -> Event | None:
        """Move a due event to ``processing``.

        Returns ``None`` when the event is not due or someone else claimed it;
        the row lock taken by UPDATE makes the check-and-set atomic.
        """
        record = await self._fetchrow(
            """
            UPDATE event_queue
            SET status = 'processing',
                claimed_at = now()
            WHERE event_id = $1
              AND status IN ('pending', 'retrying')
              AND (scheduled_for IS NULL OR scheduled_for <= now())
            RETURNING *
            """,
            event_id,
        )
        return self._to_model(record) if record is not None else None

    async def transition(
        self,
        event_id: UUID,
        new_status: EventStatus,
        *,
        expected: EventStatus,
        error_message: str | None = None,
    ) -> Event:
        validate_event_transition(expected, new_status)
        record = await self._fetchrow(
            """
            UPDATE event_queue
            SET status = $2,
                error_message = $3,
                processed_at = CASE WHEN $2 IN ('completed', 'failed') THEN now() ELSE processed_at END,
                claimed_at = CASE WHEN $2 = 'processing' THEN now() ELSE NULL END
            WHERE event_id = $1
              AND status = $4
            RETURNING *
            """,
            event_id,
            new_status.value,
            error_message,
            expected.value,
        )
        if record is None:
            await self._raise_conflict(event_id, expected)
        return self._to_model(record)

    async def schedule_retry(
        self,
        event_id: UUID,
        *,
        error_message: str | None,
        next_attempt_at: datetime,
    ) -> Event:
        """``processing → retrying`` with ``retry_count + 1``, due again at ``next_attempt_at``."""
        record = await self._fetchrow(
            """
            UPDATE event_queue
            SET status = 'retrying',
                retry_count = retry_count + 1,
                scheduled_for = $2,
                error_message = $3,
                claimed_at = NULL
            WHERE event_id = $1
              AND status = 'processing'
              AND retry_count < max_retries
            RETURNING *
            """,
            event_id,
            next_attempt_at,
            error_message,
        )
        if record is None:
            await self._raise_conflict(event_id, EventStatus.PROCESSING)
        return self._to_model(record)

    async def _raise_conflict(self, event_id: UUID, expected: EventStatus) -> None:
        current = await self.get(event_id)
        raise StatusConflictError(
            f"Event {event_id} is {current.status.value} "
            f"(retry {current.retry_count}/{current.max_retries}), expected {expected.value}"
        )

    async def list_history(self, query: EventHistoryQuery) -> Tuple[List[Event], int]:
        where: list[str] = []
        values: list[Any] = []
        filters: list[tuple[str, Any]] = [
            ("source_app_id = ${}", query.app_id),
            ("event_type = ${}", query.event_type),
            ("status = ${}", query.status.value if query.status else None),
            ("created_at >= ${}", query.start_date),
            ("created_at <= ${}", query.end_date),
        ]
        for clause, value in filters:
            if value is None:
                continue
            values.append(value)
            where.append(clause.format(len(values)))
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        idx = len(values) + 1
        sql = f"""
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM event_queue
            {where_sql}
            ORDER BY created_at DESC
            LIMIT ${idx} OFFSET ${idx + 1}
        """
        records = await self._fetch(sql, *values, query.limit, query.offset)
        rows, total = rows_with_total(records)
        if total is None:
            record = await self._fetchrow(
                f"SELECT COUNT(*) AS total FROM event_queue {where_sql}", *values
            )
            total = int(record["total"]) if record else 0
        return [self._to_model(row) for row in rows], total

    async def reclaim_stuck(self, claimed_before: datetime) -> int:
        """Send events stranded in ``processing`` (e.g. after a crash) through the retry path.

        Events with budget left become ``retrying`` and due immediately; the
        rest become ``failed``. Returns the number of reclaimed rows.
        """
        result = await self._execute(
            """
            UPDATE event_queue
            SET status = CASE WHEN retry_count < max_retries THEN 'retrying' ELSE 'failed' END,
                retry_count = CASE WHEN retry_count < max_retries THEN retry_count + 1 ELSE retry_count END,
                scheduled_for = CASE WHEN retry_count < max_retries THEN now() ELSE scheduled_for END,
                processed_at = CASE WHEN retry_count < max_retries THEN NULL ELSE now() END,
                error_message = $2,
                claimed_at = NULL
            WHERE status = 'processing'
              AND claimed_at < $1
            """,
            claimed_before,
            INTERRUPTED_ERROR,
        )
        return affected_rows(result)
