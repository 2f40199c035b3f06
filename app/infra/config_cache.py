# app/infra/config_cache.py
"""
Read-through cache for the live MatchConfig.

The orchestrator reads the config at the start of every matching round;
the cache keeps that off the database.  Entries live for
``config_cache_ttl_seconds`` and are dropped explicitly by the admin
service on every update or rollback.

When the backing store fails, the last known value is served (even if
stale); with nothing cached yet, the built-in defaults are.
"""
from __future__ import annotations

import time
from typing import Callable

from app.core.dispatch.match_config import DEFAULT_MATCH_CONFIG, MatchConfig
from app.core.dispatch.ports import MatchConfigRepository
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)


class MatchConfigCache:

    def __init__(
        self,
        repo: MatchConfigRepository,
        *,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._repo = repo
        self._ttl = ttl_seconds
        self._clock = clock
        self._value: MatchConfig | None = None
        self._version: int | None = None
        self._loaded_at: float | None = None

    @property
    def version(self) -> int | None:
        """Version of the cached config (None = defaults or nothing loaded)."""
        return self._version

    def _fresh(self) -> bool:
        return self._loaded_at is not None and self._clock() - self._loaded_at < self._ttl

    async def get_config(self) -> MatchConfig:
        if self._value is not None and self._fresh():
            inc_counter("match_config_cache", result="hit")
            return self._value

        inc_counter("match_config_cache", result="miss")
        try:
            current = await self._repo.get_current()
        except Exception as exc:
            fallback = self._value or DEFAULT_MATCH_CONFIG
            logger.error(
                f"Match config load failed, serving {'stale' if self._value else 'default'} config: {exc}",
                exc_info=True,
            )
            return fallback

        self._value = current.config if current else DEFAULT_MATCH_CONFIG
        self._version = current.version if current else None
        self._loaded_at = self._clock()
        return self._value

    def invalidate(self) -> None:
        self._loaded_at = None
        logger.info("Match config cache invalidated")
