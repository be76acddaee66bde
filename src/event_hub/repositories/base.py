"""Shared asyncpg helpers for repositories."""
from __future__ import annotations

import json
from typing import Any, Iterable

import asyncpg  # type: ignore[import-untyped]


def decode_json_columns(row: dict[str, Any], *columns: str) -> dict[str, Any]:
    """asyncpg returns jsonb as text unless a codec is registered."""
    for column in columns:
        value = row.get(column)
        if isinstance(value, str):
            row[column] = json.loads(value)
    return row


def rows_with_total(
    records: Iterable[asyncpg.Record],
) -> tuple[list[dict[str, Any]], int | None]:
    """Split ``COUNT(*) OVER() AS total_count`` off each row."""
    rows: list[dict[str, Any]] = []
    total: int | None = None
    for record in records:
        row = dict(record)
        total_value = row.pop("total_count", None)
        if total_value is not None:
            total = int(total_value)
        rows.append(row)
    return rows, total


def affected_rows(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 3``."""
    return int(status.split()[-1])


class BaseRepository:
    """Thin wrapper over asyncpg pool operations."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        async with self._pool.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def _fetch(self, query: str, *args: Any) -> Iterable[asyncpg.Record]:
        async with self._pool.acquire() as conn:
            return await conn.fetch(query, *args)

    async def _execute(self, query: str, *args: Any) -> str:
        async with self._pool.acquire() as conn:
            return await conn.execute(query, *args)
