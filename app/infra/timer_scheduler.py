# app/infra/timer_scheduler.py
"""
Durable timers on top of the jobs table.

A timer becomes a job of type ``timer.kind`` scheduled at ``timer.due_at``
with ``timer.key`` as dedupe key, so re-scheduling the same logical timer
is a no-op and a scheduled timer survives process restarts.
"""
from __future__ import annotations

from app.core.dispatch.domain import Timer
from app.infra.logging_config import get_logger
from app.infra.pg_job_repo_async import AsyncPostgresJobRepository

logger = get_logger(__name__)

# Timers only re-check persisted state, so retrying them is always safe.
TIMER_MAX_ATTEMPTS = 10


class JobTimerScheduler:

    def __init__(self, repo: AsyncPostgresJobRepository):
        self._repo = repo

    async def schedule(self, timer: Timer) -> None:
        job_id = await self._repo.enqueue(
            timer.kind.value,
            {"incident_id": timer.incident_id, **timer.payload},
            priority=-1,
            max_attempts=TIMER_MAX_ATTEMPTS,
            run_at=timer.due_at,
            dedupe_key=timer.key or None,
        )
        if job_id:
            logger.debug(
                f"Timer scheduled: kind={timer.kind.value}, due={timer.due_at.isoformat()}",
                extra={"incident_id": timer.incident_id, "job_id": job_id},
            )
