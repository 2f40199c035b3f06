# app/transport/http_app.py
"""
HTTP application for the dispatch core.

Inbound commands (intake, offer responses, status updates, manual
assignment, vendor positions), reads, and the match-config admin surface.
Route handlers are thin adapters: parse -> call the orchestrator or admin
service -> map ``DispatchError`` to ``HTTPException``.

The acting party comes from the ``X-Actor-Id`` / ``X-Actor-Role`` headers
set by the gateway in front of this service.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from app.admin.models import RollbackMatchConfigRequest, UpdateMatchConfigRequest
from app.admin.service import MatchConfigAdminService
from app.config import settings
from app.core.dispatch import runtime
from app.core.dispatch.domain import Actor, ActorRole, OfferStatus, TimerKind
from app.core.dispatch.orchestrator import IncidentOrchestrator
from app.core.errors import DispatchError
from app.infra.config_cache import MatchConfigCache
from app.infra.db_async import close_pool, init_pool
from app.infra.event_publisher import (
    PUBLISH_EVENT_JOB,
    DirectEventPublisher,
    QueuedEventPublisher,
    get_event_sink,
)
from app.infra.health_checks_async import AsyncHealthChecker, build_health_checker
from app.infra.http_client import close_all_sessions
from app.infra.logging_config import get_logger, setup_logging
from app.infra.metrics import get_metrics_collector
from app.infra.schema_validator import validate_schema_version
from app.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from app.transport.schemas import (
    AcceptOfferOut,
    AssignVendorIn,
    DeclineOfferIn,
    IncidentCreatedIn,
    IncidentOut,
    OfferOut,
    OfferResponseIn,
    PositionOut,
    StatusUpdateIn,
    VendorPositionIn,
)

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


@dataclass
class DispatchServices:
    orchestrator: IncidentOrchestrator
    admin: MatchConfigAdminService
    health: AsyncHealthChecker


# ============================================================================
# WIRING
# ============================================================================

def _build_roster():
    if settings.roster_url:
        from app.infra.roster_client import HttpVendorRoster
        return HttpVendorRoster(settings.roster_url)

    from app.infra.memory_store import InMemoryVendorRoster
    logger.warning("ROSTER_URL not set: using an empty in-memory roster")
    return InMemoryVendorRoster()


def _build_orchestrator(*, incidents, offers, publisher, scheduler, config_provider) -> IncidentOrchestrator:
    return IncidentOrchestrator(
        incidents=incidents,
        offers=offers,
        roster=_build_roster(),
        publisher=publisher,
        scheduler=scheduler,
        config_provider=config_provider,
        arrival_timeout=timedelta(minutes=settings.arrival_timeout_minutes),
        arrival_geofence_meters=settings.arrival_geofence_meters,
        upstream_max_retries=settings.upstream_max_retries,
        upstream_base_delay=settings.upstream_base_delay_seconds,
    )


async def _start_postgres(fastapi_app: FastAPI) -> None:
    from app.infra.job_worker import JobWorker
    from app.core.dispatch.jobs import handle_publish_event, handle_timer, sweep_overdue
    from app.infra.pg_config_repo_async import AsyncPostgresMatchConfigRepository
    from app.infra.pg_incident_repo_async import AsyncPostgresIncidentRepository
    from app.infra.pg_job_repo_async import get_job_repo
    from app.infra.pg_offer_repo_async import AsyncPostgresOfferRepository
    from app.infra.timer_scheduler import JobTimerScheduler

    await init_pool()
    logger.info("Database pool initialized")

    # Validate schema version (does NOT run migrations)
    try:
        schema_result = await validate_schema_version()
        logger.info(f"Schema validated: {schema_result['current_version']}")
    except Exception:
        logger.critical(
            "Schema validation failed. Run migrations first: python -m app.infra.migrate",
            exc_info=True
        )
        raise

    job_repo = get_job_repo()
    config_repo = AsyncPostgresMatchConfigRepository()
    cache = MatchConfigCache(config_repo, ttl_seconds=settings.config_cache_ttl_seconds)
    orchestrator = _build_orchestrator(
        incidents=AsyncPostgresIncidentRepository(),
        offers=AsyncPostgresOfferRepository(),
        publisher=QueuedEventPublisher(job_repo, max_attempts=settings.event_max_attempts),
        scheduler=JobTimerScheduler(job_repo),
        config_provider=cache,
    )
    runtime.configure(orchestrator, get_event_sink())

    fastapi_app.state.services = DispatchServices(
        orchestrator=orchestrator,
        admin=MatchConfigAdminService(config_repo, cache),
        health=build_health_checker(True, job_repo),
    )

    # Only start in "all" or "worker" mode to prevent duplicate processing.
    if settings.run_mode in ("all", "worker") and settings.job_worker_enabled:
        job_worker = JobWorker(
            job_repo,
            poll_interval=settings.job_worker_poll_interval,
            batch_size=settings.job_worker_batch_size,
            base_retry_delay=settings.job_worker_base_retry_delay,
            stale_timeout=settings.job_worker_stale_timeout,
        )
        job_worker.register(TimerKind.ROUND_TIMEOUT.value, handle_timer)
        job_worker.register(TimerKind.ARRIVAL_DEADLINE.value, handle_timer)
        job_worker.register(PUBLISH_EVENT_JOB, handle_publish_event)
        job_worker.register_periodic("resume_overdue", settings.overdue_sweep_interval_seconds, sweep_overdue)
        job_worker.register_periodic(
            "purge_finished_jobs",
            3600,
            lambda: job_repo.purge_finished(
                completed_ttl_days=settings.job_cleanup_completed_ttl_days,
                failed_ttl_days=settings.job_cleanup_failed_ttl_days,
            ),
        )
        await job_worker.start()
        fastapi_app.state.job_worker = job_worker
    elif settings.run_mode not in ("all", "worker"):
        logger.info(f"Job worker skipped (run_mode={settings.run_mode})")
    else:
        logger.info("Job worker skipped (job_worker_enabled=false)")


async def _start_memory(fastapi_app: FastAPI) -> None:
    from app.infra.memory_store import (
        InMemoryIncidentRepository,
        InMemoryMatchConfigRepository,
        InMemoryOfferRepository,
        InMemoryTimerScheduler,
    )

    config_repo = InMemoryMatchConfigRepository()
    cache = MatchConfigCache(config_repo, ttl_seconds=settings.config_cache_ttl_seconds)
    scheduler = InMemoryTimerScheduler()
    sink = get_event_sink()
    orchestrator = _build_orchestrator(
        incidents=InMemoryIncidentRepository(),
        offers=InMemoryOfferRepository(),
        publisher=DirectEventPublisher(sink),
        scheduler=scheduler,
        config_provider=cache,
    )
    runtime.configure(orchestrator, sink)

    fastapi_app.state.services = DispatchServices(
        orchestrator=orchestrator,
        admin=MatchConfigAdminService(config_repo, cache),
        health=build_health_checker(False),
    )
    fastapi_app.state.timer_task = asyncio.create_task(
        scheduler.run(orchestrator.handle_timer, poll_interval=settings.job_worker_poll_interval),
        name="memory_timers",
    )


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""
    if getattr(fastapi_app.state, "services", None) is not None:
        # Services injected by the caller (tests, embedding).
        yield
        return

    # STARTUP
    logger.info(
        f"Starting dispatch core: env={settings.app_env}, run_mode={settings.run_mode}, "
        f"storage={settings.storage_backend}"
    )
    fastapi_app.state.job_worker = None
    fastapi_app.state.timer_task = None

    if settings.uses_postgres:
        await _start_postgres(fastapi_app)
    else:
        await _start_memory(fastapi_app)

    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    if fastapi_app.state.job_worker is not None:
        await fastapi_app.state.job_worker.stop()

    timer_task = fastapi_app.state.timer_task
    if timer_task is not None:
        timer_task.cancel()
        try:
            await timer_task
        except asyncio.CancelledError:
            pass

    await close_all_sessions()
    if settings.uses_postgres:
        await close_pool()
    runtime.reset()
    logger.info("Application shutdown complete")


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_services(request: Request) -> DispatchServices:
    return request.app.state.services


def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
) -> Actor:
    """Acting party from the gateway headers."""
    if not x_actor_id or not x_actor_role:
        raise HTTPException(status_code=401, detail="X-Actor-Id and X-Actor-Role headers are required")
    try:
        role = ActorRole(x_actor_role.lower())
    except ValueError:
        raise HTTPException(status_code=403, detail=f"Unknown actor role: {x_actor_role}")
    return Actor(id=x_actor_id, role=role)


def require_dispatcher(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role not in (ActorRole.DISPATCHER, ActorRole.SYSTEM):
        raise HTTPException(status_code=403, detail="Dispatcher role required")
    return actor


def _dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True)


router = APIRouter()


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@router.get("/health")
def health():
    """Liveness check. Returns minimal information."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(services: DispatchServices = Depends(get_services)):
    """Readiness: critical checks only."""
    result = await services.health.run_checks(include_non_critical=False)
    if result["status"] == "unhealthy":
        return JSONResponse(status_code=503, content={"status": "unhealthy"})
    return {"status": "healthy"}


@router.get("/health/detailed")
async def detailed_health(services: DispatchServices = Depends(get_services)):
    return await services.health.run_checks(include_non_critical=True)


@router.get("/metrics")
def metrics():
    """In-process counters and histograms."""
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Not found")
    return get_metrics_collector().get_metrics()


# ============================================================================
# INCIDENTS
# ============================================================================

@router.post("/incidents", status_code=201)
async def create_incident(payload: IncidentCreatedIn, services: DispatchServices = Depends(get_services)):
    """Intake. Replaying the same incident_id returns the stored incident."""
    try:
        incident = await services.orchestrator.handle_incident_created(payload.to_domain())
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return _dump(IncidentOut.from_domain(incident))


@router.get("/incidents/{incident_id}")
async def get_incident(incident_id: str, services: DispatchServices = Depends(get_services)):
    try:
        incident = await services.orchestrator.get_incident(incident_id)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return _dump(IncidentOut.from_domain(incident))


@router.get("/incidents/{incident_id}/offers")
async def list_incident_offers(incident_id: str, services: DispatchServices = Depends(get_services)):
    try:
        offers = await services.orchestrator.list_offers(incident_id)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return {"offers": [_dump(OfferOut.from_domain(o)) for o in offers]}


@router.patch("/incidents/{incident_id}/status")
async def update_incident_status(
    incident_id: str,
    payload: StatusUpdateIn,
    actor: Actor = Depends(get_actor),
    services: DispatchServices = Depends(get_services),
):
    try:
        incident = await services.orchestrator.update_status(
            incident_id, payload.status, actor, payload.reason
        )
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return _dump(IncidentOut.from_domain(incident))


@router.post("/incidents/{incident_id}/assign")
async def assign_incident(
    incident_id: str,
    payload: AssignVendorIn,
    actor: Actor = Depends(get_actor),
    services: DispatchServices = Depends(get_services),
):
    """Manual assignment (dispatcher), typically after escalation."""
    try:
        incident = await services.orchestrator.assign_vendor(
            incident_id, payload.vendor_id, actor, payload.reason
        )
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return _dump(IncidentOut.from_domain(incident))


# ============================================================================
# OFFERS
# ============================================================================

@router.get("/offers/{offer_id}")
async def get_offer(offer_id: str, services: DispatchServices = Depends(get_services)):
    try:
        offer = await services.orchestrator.get_offer(offer_id)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return _dump(OfferOut.from_domain(offer))


@router.post("/offers/{offer_id}/accept")
async def accept_offer(
    offer_id: str,
    payload: OfferResponseIn,
    services: DispatchServices = Depends(get_services),
):
    """First accept wins; later accepts get 409."""
    try:
        outcome = await services.orchestrator.accept_offer(offer_id, payload.vendor_id)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return _dump(AcceptOfferOut(
        offer=OfferOut.from_domain(outcome.offer),
        incident=IncidentOut.from_domain(outcome.incident),
    ))


@router.post("/offers/{offer_id}/decline")
async def decline_offer(
    offer_id: str,
    payload: DeclineOfferIn,
    services: DispatchServices = Depends(get_services),
):
    try:
        offer = await services.orchestrator.decline_offer(offer_id, payload.vendor_id, payload.reason)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return _dump(OfferOut.from_domain(offer))


# ============================================================================
# VENDORS
# ============================================================================

@router.get("/vendors/{vendor_id}/offers")
async def list_vendor_offers(
    vendor_id: str,
    status: str | None = None,
    services: DispatchServices = Depends(get_services),
):
    """Offers addressed to the vendor, newest first.  ``?status=pending`` for the open ones."""
    try:
        wanted = OfferStatus(status) if status else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown offer status: {status}")
    offers = await services.orchestrator.list_vendor_offers(vendor_id, wanted)
    return {"offers": [_dump(OfferOut.from_domain(o)) for o in offers]}


@router.post("/vendors/{vendor_id}/position")
async def vendor_position(
    vendor_id: str,
    payload: VendorPositionIn,
    services: DispatchServices = Depends(get_services),
):
    try:
        arrived = await services.orchestrator.on_vendor_position(payload.to_domain(vendor_id))
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return _dump(PositionOut(vendor_id=vendor_id, arrived_incident_ids=[i.id for i in arrived]))


# ============================================================================
# ADMIN: MATCH CONFIG (dispatcher / system only)
# ============================================================================

@router.get("/admin/match-config")
async def admin_get_match_config(
    actor: Actor = Depends(require_dispatcher),
    services: DispatchServices = Depends(get_services),
):
    result = await services.admin.get_current()
    return result.model_dump(mode="json")


@router.put("/admin/match-config")
async def admin_update_match_config(
    payload: dict,
    actor: Actor = Depends(require_dispatcher),
    services: DispatchServices = Depends(get_services),
):
    """Validate, version and publish a new match config."""
    try:
        req = UpdateMatchConfigRequest(**payload)
    except PydanticValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        result = await services.admin.update(req, actor=actor.id)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return result.model_dump(mode="json")


@router.post("/admin/match-config/rollback")
async def admin_rollback_match_config(
    payload: dict,
    actor: Actor = Depends(require_dispatcher),
    services: DispatchServices = Depends(get_services),
):
    try:
        req = RollbackMatchConfigRequest(**payload)
    except PydanticValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        result = await services.admin.rollback(req, actor=actor.id)
    except DispatchError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    return result.model_dump(mode="json")


@router.get("/admin/match-config/history")
async def admin_match_config_history(
    limit: int = 20,
    actor: Actor = Depends(require_dispatcher),
    services: DispatchServices = Depends(get_services),
):
    result = await services.admin.history(limit=max(1, min(limit, 200)))
    return result.model_dump(mode="json")


# ============================================================================
# CREATE APP
# ============================================================================

def create_app(services: DispatchServices | None = None) -> FastAPI:
    """
    Build the FastAPI application.

    With ``services`` the lifespan skips all infrastructure setup and the
    given orchestrator/admin service are used as-is.
    """
    fastapi_app = FastAPI(
        title="Dispatch Core",
        description="Roadside-assistance incident dispatch",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )
    fastapi_app.state.services = services

    if not (settings.is_production or settings.is_staging):
        fastapi_app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    fastapi_app.add_middleware(ErrorHandlingMiddleware)
    fastapi_app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
    fastapi_app.add_middleware(RequestIDMiddleware)

    @fastapi_app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )

    @fastapi_app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "details": jsonable_errors(exc)},
        )

    fastapi_app.include_router(router)
    return fastapi_app


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.transport.http_app:app",
        host="0.0.0.0",
        port=8000,
        log_level=settings.log_level.lower(),
        proxy_headers=True,
    )
