# app/infra/health_checks_async.py
from __future__ import annotations
import time
from typing import Dict, Any
from enum import Enum

from app.infra.db_async import get_pool
from app.infra.logging_config import get_logger
from app.infra.pg_job_repo_async import AsyncPostgresJobRepository
from app.infra.schema_validator import get_schema_info

logger = get_logger(__name__)

REQUIRED_TABLES = ("incidents", "offers", "jobs", "match_config_versions", "match_config_audit")

# Pending jobs beyond this mean the worker is falling behind.
JOB_BACKLOG_DEGRADED = 1000


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class AsyncHealthCheck:
    """Base class for async health checks"""

    def __init__(self, name: str, critical: bool = True):
        self.name = name
        self.critical = critical

    async def check(self) -> Dict[str, Any]:
        """Return a dict with 'status', 'details', and optionally 'error'"""
        raise NotImplementedError


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    """Database connectivity and presence of the dispatch tables"""

    def __init__(self):
        super().__init__("database", critical=True)

    async def check(self) -> Dict[str, Any]:
        start = time.time()
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                missing = [
                    table for table in REQUIRED_TABLES
                    if await conn.fetchval("SELECT to_regclass($1)", table) is None
                ]
        except Exception as exc:
            logger.error("Database health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Database connection failed",
                "error": str(exc)[:200],
            }

        duration = time.time() - start
        if missing:
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Missing required tables",
                "error": f"Missing: {', '.join(missing)}",
            }
        if duration > 1.0:
            return {
                "status": HealthStatus.DEGRADED,
                "details": f"Slow database response: {duration:.3f}s",
                "response_time": duration,
            }
        return {
            "status": HealthStatus.HEALTHY,
            "details": "Database operational",
            "response_time": duration,
        }


class AsyncJobQueueHealthCheck(AsyncHealthCheck):
    """Timer and event-delivery backlog"""

    def __init__(self, repo: AsyncPostgresJobRepository):
        super().__init__("job_queue", critical=False)
        self._repo = repo

    async def check(self) -> Dict[str, Any]:
        try:
            counts = await self._repo.count_by_status()
        except Exception as exc:
            logger.error("Job queue health check failed", exc_info=True)
            return {
                "status": HealthStatus.DEGRADED,
                "details": "Job queue check failed",
                "error": str(exc)[:200],
            }

        pending = counts.get("pending", 0)
        status = HealthStatus.DEGRADED if pending > JOB_BACKLOG_DEGRADED else HealthStatus.HEALTHY
        return {"status": status, "details": "Job queue operational", "counts": counts}


class AsyncHealthChecker:
    """Aggregate async health checks"""

    def __init__(self, checks: list[AsyncHealthCheck], *, include_schema: bool = True):
        self.checks = checks
        self._include_schema = include_schema

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """
        Returns:
            {"status": "healthy" | "degraded" | "unhealthy", "checks": {...},
             "schema": {...}, "timestamp": float}
        """
        results = {}
        overall_status = HealthStatus.HEALTHY

        for check in self.checks:
            if not include_non_critical and not check.critical:
                continue

            result = await check.check()
            results[check.name] = result

            if result["status"] == HealthStatus.UNHEALTHY and check.critical:
                overall_status = HealthStatus.UNHEALTHY
            elif result["status"] != HealthStatus.HEALTHY and overall_status == HealthStatus.HEALTHY:
                overall_status = HealthStatus.DEGRADED

        report: Dict[str, Any] = {
            "status": overall_status.value,
            "checks": results,
            "timestamp": time.time(),
        }
        if self._include_schema and include_non_critical:
            try:
                report["schema"] = await get_schema_info()
            except Exception as exc:
                report["schema"] = {"error": str(exc)[:200]}
        return report


def build_health_checker(uses_postgres: bool, job_repo: AsyncPostgresJobRepository | None = None) -> AsyncHealthChecker:
    """Postgres deployments check the database and queue; the memory backend has nothing to check."""
    if not uses_postgres:
        return AsyncHealthChecker([], include_schema=False)
    checks: list[AsyncHealthCheck] = [AsyncDatabaseHealthCheck()]
    if job_repo is not None:
        checks.append(AsyncJobQueueHealthCheck(job_repo))
    return AsyncHealthChecker(checks)
