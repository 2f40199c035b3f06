# app/infra/job_worker.py
"""
In-process async job worker with handler dispatch.

Polls the jobs table, claims due jobs, and routes them to registered
handler functions.  Also runs periodic maintenance callbacks (stale job
reset, overdue incident sweep, cleanup) on their own intervals.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter
from app.infra.pg_job_repo_async import AsyncPostgresJobRepository, Job

logger = get_logger(__name__)


@dataclass
class _PeriodicTask:
    name: str
    interval: float
    func: Callable[[], Awaitable[object]]
    last_run: float = 0.0


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------

class JobWorker:
    """
    In-process async worker that polls the jobs table and executes handlers.

    Usage:
        worker = JobWorker(repo=get_job_repo())
        worker.register(TimerKind.ROUND_TIMEOUT.value, handle_round_timeout)
        worker.register_periodic("resume_overdue", 60, sweep_overdue)
        await worker.start()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        repo: AsyncPostgresJobRepository,
        *,
        poll_interval: float = 1.0,
        batch_size: int = 5,
        base_retry_delay: float = 5.0,
        stale_timeout: int = 300,
    ):
        self._repo = repo
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._base_retry_delay = base_retry_delay
        self._handlers: dict[str, Callable[[Job], Awaitable[None]]] = {}
        self._periodic: list[_PeriodicTask] = []
        self._task: asyncio.Task | None = None
        self._running = False

        self.register_periodic(
            "reset_stale_running",
            max(stale_timeout / 5, poll_interval),
            lambda: self._repo.reset_stale_running(stale_timeout),
        )

    def register(self, job_type: str, handler: Callable[[Job], Awaitable[None]]) -> None:
        """Register a handler function for a job type."""
        self._handlers[job_type] = handler

    def register_periodic(
        self, name: str, interval_seconds: float, func: Callable[[], Awaitable[object]]
    ) -> None:
        """Run ``func`` from the poll loop at most once per ``interval_seconds``."""
        self._periodic.append(_PeriodicTask(name=name, interval=interval_seconds, func=func))

    @property
    def handlers(self) -> list[str]:
        return sorted(self._handlers)

    async def start(self) -> None:
        """Start the worker loop as an asyncio task."""
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="job_worker")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Job worker started: poll={self._poll_interval}s, "
            f"batch={self._batch_size}, handlers={self.handlers}, "
            f"periodic={[p.name for p in self._periodic]}",
        )

    async def stop(self) -> None:
        """Graceful shutdown: stop polling and wait for current batch to finish."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Job worker stopped")

    async def run_periodic(self, now: float | None = None) -> None:
        """Run every periodic task whose interval has elapsed."""
        now = time.monotonic() if now is None else now
        for task in self._periodic:
            if now - task.last_run < task.interval:
                continue
            task.last_run = now
            try:
                await task.func()
            except Exception as exc:
                logger.warning(f"Periodic task '{task.name}' failed: {exc}", exc_info=True)
                inc_counter("job_worker_periodic_errors", task=task.name)

    async def run_once(self) -> int:
        """Claim and execute one batch.  Returns the number of jobs executed."""
        jobs = await self._repo.claim_batch(self._batch_size)
        if jobs:
            await asyncio.gather(*(self._execute(job) for job in jobs), return_exceptions=True)
        return len(jobs)

    async def _loop(self) -> None:
        """Main poll loop."""
        while self._running:
            try:
                await self.run_periodic()

                if await self.run_once():
                    # Small delay between batches when there's work
                    await asyncio.sleep(0.1)
                else:
                    await asyncio.sleep(self._poll_interval)

            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Job worker loop error: {exc}", exc_info=True)
                inc_counter("job_worker_loop_errors")
                await asyncio.sleep(self._poll_interval * 2)

    async def _execute(self, job: Job) -> None:
        """Execute a single job via its registered handler."""
        handler = self._handlers.get(job.job_type)
        if handler is None:
            error = f"No handler registered for job_type={job.job_type}"
            logger.error(error)
            inc_counter("jobs_unknown_type")
            await self._fail(job, error)
            return

        try:
            await handler(job)
            await self._repo.complete(job.id)
            inc_counter("jobs_completed", job_type=job.job_type)
            logger.info(
                f"Job completed: id={job.id[:8]}, type={job.job_type}, "
                f"attempt={job.attempts + 1}",
                extra={"job_id": job.id},
            )
        except Exception as exc:
            error_msg = f"{exc.__class__.__name__}: {exc}"[:500]
            inc_counter("jobs_failed_attempt", job_type=job.job_type)
            logger.warning(
                f"Job failed: id={job.id[:8]}, type={job.job_type}, "
                f"attempt={job.attempts + 1}, error={error_msg[:100]}",
                extra={"job_id": job.id},
            )
            await self._fail(job, error_msg)

    async def _fail(self, job: Job, error: str) -> None:
        if await self._repo.fail(job.id, error, base_delay=self._base_retry_delay):
            return
        # Out of attempts: a dead timer leaves the incident to the overdue sweep
        inc_counter("jobs_dead", job_type=job.job_type)
        logger.error(
            f"Job gave up after {job.attempts + 1} attempts: type={job.job_type}, "
            f"incident={job.payload.get('incident_id', '-')}",
            extra={"job_id": job.id},
        )

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected worker death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Job worker task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
