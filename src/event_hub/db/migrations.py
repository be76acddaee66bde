"""SQL migration runner applied on application startup."""
from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path
from typing import Awaitable, Callable, Iterable

import asyncpg
import structlog
from aiohttp import web

from event_hub.settings import settings

logger = structlog.get_logger(__name__)

_CONNECT_ATTEMPTS = 5
_CONNECT_RETRY_DELAY_SECONDS = 2


def _find_migrations_dir(candidates: list[Path]) -> Path | None:
    for path in candidates:
        if path.exists():
            return path
    return None


def load_migrations(migrations_dir: Path) -> dict[str, Path]:
    """Map migration version (file stem) to path, in lexical order."""
    migrations: dict[str, Path] = {}
    for path in sorted(migrations_dir.glob("*.sql")):
        if path.stem in migrations:
            raise ValueError(f"Duplicate migration version detected: {path.stem}")
        migrations[path.stem] = path
    return migrations


async def _connect() -> asyncpg.Connection | None:
    for attempt in range(1, _CONNECT_ATTEMPTS + 1):
        try:
            return await asyncpg.connect(str(settings.database_url))
        except (OSError, asyncpg.PostgresError) as exc:
            logger.warning(
                "migrations: database connection failed",
                attempt=attempt,
                max_attempts=_CONNECT_ATTEMPTS,
                error=str(exc),
            )
            if attempt < _CONNECT_ATTEMPTS:
                await asyncio.sleep(_CONNECT_RETRY_DELAY_SECONDS)
    return None


async def apply_migrations(conn: asyncpg.Connection, migrations: dict[str, Path]) -> int:
    """Apply migrations missing from ``schema_migrations``. Returns how many were applied."""
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version text PRIMARY KEY,
            checksum text NOT NULL,
            applied_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    applied = {row["version"]: row["checksum"] for row in rows}

    count = 0
    for version, path in migrations.items():
        sql = path.read_text(encoding="utf-8")
        checksum = hashlib.sha256(sql.encode("utf-8")).hexdigest()
        if version in applied:
            if applied[version] != checksum:
                raise RuntimeError(
                    f"Checksum mismatch for {version}: "
                    f"{applied[version]} (db) != {checksum} (file)"
                )
            continue
        logger.info("migrations: applying", version=version, file=path.name)
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, checksum) VALUES ($1, $2)",
                version,
                checksum,
            )
        count += 1
    return count


def create_migration_runner(
    possible_paths: Iterable[Path],
) -> Callable[[web.Application], Awaitable[None]]:
    """Create an aiohttp startup hook that applies pending SQL migrations."""
    candidates = list(possible_paths)

    async def apply_migrations_on_startup(_app: web.Application) -> None:
        migrations_dir = _find_migrations_dir(candidates)
        if migrations_dir is None:
            logger.warning("migrations: directory not found, skipping", tried=[str(p) for p in candidates])
            return
        migrations = load_migrations(migrations_dir)
        if not migrations:
            logger.warning("migrations: nothing to apply", directory=str(migrations_dir))
            return

        conn = await _connect()
        if conn is None:
            logger.error("migrations: giving up, database unreachable")
            return
        try:
            applied = await apply_migrations(conn, migrations)
        finally:
            await conn.close()
        logger.info("migrations: done", applied=applied, known=len(migrations))

    return apply_migrations_on_startup
