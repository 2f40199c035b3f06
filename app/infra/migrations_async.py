# app/infra/migrations_async.py
"""
Async SQL migrations runner (asyncpg).

Migrations are the ``*.sql`` files under ``app/infra/sql``, applied in
filename order.  Each file runs in its own transaction together with its
``schema_migrations`` row, so a failing file leaves no partial schema and
the next run retries it.
"""
from __future__ import annotations

from pathlib import Path

import asyncpg

from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

SCHEMA_MIGRATIONS_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations(
  version text PRIMARY KEY,
  applied_at timestamptz NOT NULL DEFAULT now()
)
"""


def sql_dir() -> Path:
    return Path(__file__).resolve().parent / "sql"


def list_migrations(directory: Path | None = None) -> list[Path]:
    """Migration files in apply order."""
    directory = directory or sql_dir()
    return sorted(p for p in directory.glob("*.sql") if p.is_file())


async def fetch_applied(conn: asyncpg.Connection) -> list[dict]:
    """Applied migrations, oldest first.  Empty when the tracking table is missing."""
    exists = await conn.fetchval("SELECT to_regclass('public.schema_migrations')")
    if exists is None:
        return []
    rows = await conn.fetch(
        "SELECT version, applied_at FROM schema_migrations ORDER BY applied_at, version"
    )
    return [{"version": r["version"], "applied_at": r["applied_at"]} for r in rows]


async def apply_migrations() -> dict:
    """
    Apply every migration not yet recorded in ``schema_migrations``.

    Returns:
        {"ok": True, "applied": [filenames applied now], "count": int}
    """
    files = list_migrations()

    async with db_conn() as conn:
        await conn.execute(SCHEMA_MIGRATIONS_DDL)
        applied = {m["version"] for m in await fetch_applied(conn)}

    applied_now: list[str] = []
    for path in files:
        version = path.name
        if version in applied:
            logger.debug(f"Migration {version} already applied, skipping")
            continue

        logger.info(f"Applying migration: {version}")
        async with db_conn(autocommit=False) as conn:
            await conn.execute(path.read_text(encoding="utf-8"))
            await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", version)
        applied_now.append(version)
        logger.info(f"Migration {version} applied")

    logger.info(f"Migrations complete: {len(applied_now)} applied, {len(files)} known")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}
