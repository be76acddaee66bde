"""Periodic background worker bound to the aiohttp application lifecycle.

Usage::

    from event_hub.worker import BackgroundWorker, WorkerTask

    async def reclaim(now: datetime) -> str | None:
        reclaimed = await repo.reclaim_stuck(now - timedelta(minutes=10))
        return f"reclaimed={reclaimed}" if reclaimed else None

    worker = BackgroundWorker(
        name="maintenance",
        interval_seconds=60.0,
        tasks=[WorkerTask(name="event_reclaim_stuck", fn=reclaim)],
    )

    app.on_startup.append(worker.start)
    app.on_cleanup.append(worker.stop)

Tests drive a worker deterministically through :meth:`BackgroundWorker.tick`
instead of starting the loop.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Sequence

import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

# Receives current UTC time, returns an optional summary (logged when non-empty).
TaskFn = Callable[[datetime], Awaitable[str | None]]


@dataclass
class WorkerTask:
    """A named periodic task executed by :class:`BackgroundWorker`."""

    name: str
    fn: TaskFn


@dataclass
class BackgroundWorker:
    """In-process async worker that runs a list of tasks on a fixed interval.

    Each task is executed independently; if one fails the others still run
    and the next sweep still happens.
    """

    name: str = "background_worker"
    interval_seconds: float = 60.0
    tasks: Sequence[WorkerTask] = field(default_factory=list)

    @property
    def _app_key(self) -> str:
        return f"__worker_task__{self.name}"

    async def start(self, app: web.Application) -> None:
        """Create the worker asyncio task. Register with ``app.on_startup``."""
        app[self._app_key] = asyncio.create_task(self._loop(), name=self.name)

    async def stop(self, app: web.Application) -> None:
        """Cancel the worker task. Register with ``app.on_cleanup``."""
        task = app.get(self._app_key)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def tick(self, now: datetime | None = None) -> dict[str, str | None]:
        """Run every task once. Returns summaries keyed by task name (``None`` on failure)."""
        now = now or datetime.now(timezone.utc)
        summaries: dict[str, str | None] = {}
        for task in self.tasks:
            try:
                summary = await task.fn(now)
            except Exception:
                logger.exception("background_task failed", worker=self.name, task=task.name)
                summaries[task.name] = None
                continue
            summaries[task.name] = summary
            if summary:
                logger.info(
                    "background_task completed",
                    worker=self.name,
                    task=task.name,
                    summary=summary,
                )
        return summaries

    async def _loop(self) -> None:
        logger.info(
            "background_worker started",
            worker=self.name,
            interval_seconds=self.interval_seconds,
            tasks=[t.name for t in self.tasks],
        )
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.tick()
            except asyncio.CancelledError:
                logger.info("background_worker stopped", worker=self.name)
                raise
            except Exception:
                logger.exception("background_worker sweep failed", worker=self.name)
