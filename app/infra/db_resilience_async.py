# app/infra/db_resilience_async.py
"""
Retry helpers for asyncpg.

Only connection acquisition is retried by ``safe_db_conn``: once a block has
started executing statements, errors propagate to the caller so that a
compare-and-set write is never silently replayed.
"""
from __future__ import annotations
import asyncio
from typing import Callable
from contextlib import asynccontextmanager
from functools import wraps

import asyncpg
from app.infra import db_async
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_TRANSIENT_PATTERNS = (
    "connection",
    "timeout",
    "closed",
    "network",
    "deadlock",
    "too many connections",
    "server closed",
    "connection reset",
)


def is_transient_error(exc: Exception) -> bool:
    """
    Check if database error is transient (should retry).

    Connection errors, server-side disconnects, connection exhaustion,
    serialization failures and deadlocks are transient.
    """
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        asyncpg.SerializationError,
    )):
        return True

    if isinstance(exc, (ConnectionError, asyncio.TimeoutError)):
        return True

    error_message = str(exc).lower()
    return any(pattern in error_message for pattern in _TRANSIENT_PATTERNS)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    Decorator to retry an idempotent async function on transient database errors.

    Example:
        @retry_on_transient_error(max_retries=3)
        async def get_incident(incident_id: str):
            async with db_conn() as conn:
                return await conn.fetchrow("SELECT * FROM incidents WHERE id = $1", incident_id)
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc):
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            f"Max retries ({max_retries}) exceeded in {func.__name__}",
                            exc_info=True
                        )
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


@retry_on_transient_error(max_retries=3)
async def _acquire() -> asyncpg.Connection:
    pool = await db_async.get_pool()
    return await pool.acquire()


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True):
    """
    Database connection whose acquisition is retried on transient errors.

    Usage:
        async with safe_db_conn(autocommit=False) as conn:
            row = await conn.fetchrow("UPDATE offers SET ... RETURNING *", offer_id)
    """
    conn = await _acquire()
    pool = await db_async.get_pool()
    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await pool.release(conn)
