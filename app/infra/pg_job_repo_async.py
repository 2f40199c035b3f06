# app/infra/pg_job_repo_async.py
"""
Async PostgreSQL job repository (asyncpg).

The jobs table carries the dispatch core's durable timers (round
timeouts, arrival deadlines) and outbound event deliveries.

- ``scheduled_at`` is the timer due time; nothing is claimed before it
- ``dedupe_key`` makes re-scheduling the same timer a no-op
- claiming uses FOR UPDATE SKIP LOCKED, so web and worker processes can
  share the table
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from app.infra.db_resilience_async import safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)

# Retry backoff ceiling; a timer retried later than this risks outliving its round
MAX_RETRY_DELAY_SECONDS = 300.0


@dataclass
class Job:
    id: str
    job_type: str
    payload: dict[str, Any]
    status: str
    priority: int
    attempts: int
    max_attempts: int
    error_message: str | None
    scheduled_at: datetime
    created_at: datetime
    dedupe_key: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


def _row_to_job(row) -> Job:
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return Job(
        id=str(row["id"]),
        job_type=row["job_type"],
        payload=payload,
        status=row["status"],
        priority=row["priority"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        error_message=row["error_message"],
        scheduled_at=row["scheduled_at"],
        created_at=row["created_at"],
        dedupe_key=row["dedupe_key"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


def _affected(status: str | None) -> int:
    """Row count from an asyncpg command tag such as ``DELETE 5``."""
    return int(status.split()[-1]) if status else 0


class AsyncPostgresJobRepository:

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        max_attempts: int = 5,
        run_at: datetime | None = None,
        dedupe_key: str | None = None,
    ) -> str | None:
        """
        Insert a pending job.

        Args:
            job_type: a ``TimerKind`` value or ``publish_event``
            priority: lower runs first; timers use -1 so they overtake event deliveries
            run_at: timer due time (None = now)
            dedupe_key: timers pass their key so a resumed incident cannot double-schedule

        Returns:
            The job id, or None when a job with ``dedupe_key`` already exists
        """
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO jobs (job_type, payload, priority, max_attempts, scheduled_at, dedupe_key)
                VALUES ($1, $2::jsonb, $3, $4, COALESCE($5, now()), $6)
                ON CONFLICT (dedupe_key) WHERE dedupe_key IS NOT NULL DO NOTHING
                RETURNING id
                """,
                job_type,
                json.dumps(payload),
                priority,
                max_attempts,
                run_at,
                dedupe_key,
            )
        if row is None:
            logger.debug(f"Job already scheduled: type={job_type}, key={dedupe_key}")
            inc_counter("jobs_deduplicated", job_type=job_type)
            return None

        job_id = str(row["id"])
        inc_counter("jobs_enqueued", job_type=job_type)
        return job_id

    async def claim_batch(self, batch_size: int = 5) -> list[Job]:
        """Mark up to ``batch_size`` due jobs ``running`` and return them, timers first."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                WITH due AS (
                    SELECT id FROM jobs
                    WHERE status = 'pending'
                      AND scheduled_at <= now()
                    ORDER BY priority, scheduled_at
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE jobs
                SET status = 'running', started_at = now()
                FROM due
                WHERE jobs.id = due.id
                RETURNING jobs.*
                """,
                batch_size,
            )
        return [_row_to_job(row) for row in rows]

    async def complete(self, job_id: str) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                "UPDATE jobs SET status = 'completed', completed_at = now() WHERE id = $1",
                job_id,
            )

    async def fail(self, job_id: str, error_message: str, *, base_delay: float = 5.0) -> bool:
        """
        Record a failed attempt.

        The job goes back to ``pending`` after ``base_delay * 2**attempts``
        seconds (capped at ``MAX_RETRY_DELAY_SECONDS``) until it runs out of
        attempts, then stays ``failed``.

        Returns:
            True if the job will be retried
        """
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                UPDATE jobs
                SET attempts = attempts + 1,
                    error_message = $2,
                    status = CASE WHEN attempts + 1 < max_attempts THEN 'pending' ELSE 'failed' END,
                    scheduled_at = CASE
                      WHEN attempts + 1 < max_attempts
                        THEN now() + make_interval(secs => LEAST($3 * power(2, attempts), $4))
                      ELSE scheduled_at
                    END,
                    completed_at = CASE WHEN attempts + 1 < max_attempts THEN NULL ELSE now() END
                WHERE id = $1
                RETURNING status
                """,
                job_id,
                error_message[:2000],
                base_delay,
                MAX_RETRY_DELAY_SECONDS,
            )
        return row is not None and row["status"] == "pending"

    async def count_by_status(self) -> dict[str, int]:
        """Timer and delivery backlog, ``{status: count}``."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT status, count(*)::int AS cnt FROM jobs GROUP BY status")
        return {row["status"]: row["cnt"] for row in rows}

    async def purge_finished(self, *, completed_ttl_days: int = 7, failed_ttl_days: int = 30) -> int:
        """Delete finished jobs past their retention.  Returns how many were deleted."""
        async with safe_db_conn() as conn:
            status = await conn.execute(
                """
                DELETE FROM jobs
                WHERE (status = 'completed' AND completed_at < now() - make_interval(days => $1))
                   OR (status = 'failed' AND completed_at < now() - make_interval(days => $2))
                """,
                completed_ttl_days,
                failed_ttl_days,
            )
        count = _affected(status)
        if count:
            logger.info(f"Purged {count} finished jobs")
        return count

    async def reset_stale_running(self, timeout_seconds: int = 300) -> int:
        """Put jobs claimed by a crashed process (running > ``timeout_seconds``) back to pending."""
        async with safe_db_conn() as conn:
            status = await conn.execute(
                """
                UPDATE jobs
                SET status = 'pending', scheduled_at = now()
                WHERE status = 'running'
                  AND started_at < now() - make_interval(secs => $1)
                """,
                timeout_seconds,
            )
        count = _affected(status)
        if count:
            logger.warning(f"Reset {count} stale running jobs (stuck > {timeout_seconds}s)")
            inc_counter("jobs_stale_reset")
        return count


_job_repo: AsyncPostgresJobRepository | None = None


def get_job_repo() -> AsyncPostgresJobRepository:
    global _job_repo
    if _job_repo is None:
        _job_repo = AsyncPostgresJobRepository()
    return _job_repo
