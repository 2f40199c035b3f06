# app/infra/http_client.py
"""
Shared HTTP client sessions for the application.

Named, lazy-initialized aiohttp.ClientSession singletons, so each
upstream keeps its own connection pool and timeouts.

Session profiles
~~~~~~~~~~~~~~~~
- **roster** – vendor roster queries (total=roster_timeout_seconds, connect=3 s, pool limit=20)
- **events** – outbound event webhooks (total=event_webhook_timeout_seconds, connect=5 s, pool limit=10)

Shutdown
~~~~~~~~
Call ``close_all_sessions()`` once during application shutdown.
"""
from __future__ import annotations

import aiohttp

from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_sessions: dict[str, aiohttp.ClientSession] = {}


def _get_or_create(
    name: str,
    timeout: aiohttp.ClientTimeout,
    limit: int = 10,
) -> aiohttp.ClientSession:
    """Return an existing session or create a new one."""
    session = _sessions.get(name)
    if session is None or session.closed:
        session = aiohttp.ClientSession(
            timeout=timeout,
            connector=aiohttp.TCPConnector(
                keepalive_timeout=30,
                limit=limit,
                enable_cleanup_closed=True,
            ),
        )
        _sessions[name] = session
        logger.debug("HTTP session '%s' created (limit=%d)", name, limit)
    return session


def get_roster_session() -> aiohttp.ClientSession:
    """Session for vendor roster queries (latency-sensitive, called every round)."""
    return _get_or_create(
        "roster",
        aiohttp.ClientTimeout(total=settings.roster_timeout_seconds, connect=3),
        limit=20,
    )


def get_events_session() -> aiohttp.ClientSession:
    """Session for outbound event webhooks (delivered from the job worker)."""
    return _get_or_create(
        "events",
        aiohttp.ClientTimeout(total=settings.event_webhook_timeout_seconds, connect=5),
        limit=10,
    )


async def close_all_sessions() -> None:
    """Gracefully close every managed session.  Call during app shutdown."""
    for name in list(_sessions):
        session = _sessions.pop(name, None)
        if session is not None and not session.closed:
            await session.close()
            logger.debug("HTTP session '%s' closed", name)
