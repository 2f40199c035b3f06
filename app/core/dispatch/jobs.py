# app/core/dispatch/jobs.py
"""
Dispatch job handlers, executed by the job worker.

- ``match_round_timeout`` / ``arrival_deadline``: durable timers, routed to
  the orchestrator.  The orchestrator re-checks persisted state, so a
  late or repeated timer job is harmless.
- ``publish_event``: delivers one outbound event through the configured
  sink; a delivery error fails the job and the queue retries it with
  backoff.
- ``sweep_overdue``: periodic safety net for timers that were never
  enqueued (crash between the state write and the enqueue).
"""
from __future__ import annotations

from app.core.dispatch import runtime
from app.core.dispatch.domain import Timer, TimerKind
from app.infra.logging_config import get_logger
from app.infra.pg_job_repo_async import Job

logger = get_logger(__name__)

OVERDUE_SWEEP_LIMIT = 100


def timer_from_job(job: Job) -> Timer:
    payload = dict(job.payload)
    incident_id = payload.pop("incident_id")
    return Timer(
        kind=TimerKind(job.job_type),
        incident_id=incident_id,
        due_at=job.scheduled_at,
        payload=payload,
        key=job.dedupe_key or "",
    )


async def handle_timer(job: Job) -> None:
    timer = timer_from_job(job)
    logger.debug(
        f"Timer fired: kind={timer.kind.value}, attempt={job.attempts + 1}",
        extra={"incident_id": timer.incident_id, "job_id": job.id},
    )
    await runtime.get_orchestrator().handle_timer(timer)


async def handle_publish_event(job: Job) -> None:
    sink = runtime.get_event_sink()
    await sink.deliver(job.payload)


async def sweep_overdue() -> int:
    return await runtime.get_orchestrator().resume_overdue(limit=OVERDUE_SWEEP_LIMIT)
