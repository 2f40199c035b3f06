# app/infra/db_async.py
"""
Async database connection pool (asyncpg).

One pool per process, created in the FastAPI lifespan (or by the migration
runner) and shared by every Postgres repository.
"""
from __future__ import annotations
from typing import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_pool: asyncpg.Pool | None = None


async def init_pool() -> None:
    """Initialize connection pool on startup"""
    global _pool

    if _pool is not None:
        return

    logger.info("Initializing asyncpg connection pool")

    _pool = await asyncpg.create_pool(
        dsn=settings.database_url,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        command_timeout=60,
        server_settings={
            "application_name": "dispatch_core",
            "statement_timeout": str(settings.pg_statement_timeout_ms),
        },
    )

    logger.info(f"Connection pool created: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    """Close connection pool on shutdown"""
    global _pool

    if _pool is None:
        return

    logger.info("Closing connection pool")
    await _pool.close()
    _pool = None
    logger.info("Connection pool closed")


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Get database connection from pool.

    Usage:
        async with db_conn(autocommit=False) as conn:
            await conn.execute("UPDATE incidents SET ... WHERE id = $1", incident_id)

    Args:
        autocommit: If True (default), every statement commits on its own.
            If False, the block runs in one transaction that commits on exit
            and rolls back on exception.
    """
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")

    conn = await _pool.acquire()

    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await _pool.release(conn)


async def get_pool() -> asyncpg.Pool:
    """Get the connection pool directly (health checks, migrations)"""
    if _pool is None:
        raise RuntimeError("Connection pool not initialized")
    return _pool
