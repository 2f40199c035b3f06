# app/core/dispatch/orchestrator.py
"""
Incident orchestrator: the durable dispatch state machine.

Every wait is persisted on the incident (``waiting_until`` + ``wait_reason``)
before a timer is scheduled, and every entry point re-reads the incident and
re-checks its preconditions.  Timers and events may therefore be delivered
late, twice, or after a restart: a handler whose precondition no longer
holds is a no-op.

Entry points:
- ``handle_incident_created``: intake, starts round 1
- ``accept_offer`` / ``decline_offer``: vendor responses
- ``assign_vendor``: manual (dispatcher) assignment
- ``update_status``: requested status transitions
- ``on_vendor_position``: geofenced arrival detection
- ``on_round_timeout`` / ``on_arrival_deadline``: timer callbacks
- ``resume`` / ``resume_overdue``: crash recovery
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from app.core.dispatch.domain import (
    ASSIGNED_STATUSES,
    AWAITING_ARRIVAL_STATUSES,
    Actor,
    ActorRole,
    DispatchEvent,
    EventType,
    Incident,
    IncidentCreated,
    IncidentStatus,
    Location,
    Offer,
    OfferStatus,
    SYSTEM_ACTOR,
    Timer,
    TimerKind,
    VendorPosition,
    WaitReason,
    utc_now,
)
from app.core.dispatch.match_config import MatchConfig
from app.core.dispatch.matching import Candidate, MatchEngine
from app.core.dispatch.offers import AcceptOutcome, OfferLifecycleManager, claim_incident
from app.core.dispatch.ports import (
    EventPublisher,
    IncidentRepository,
    MatchConfigProvider,
    OfferRepository,
    TimerScheduler,
    VendorRoster,
)
from app.core.dispatch.scoring import METERS_PER_MILE, haversine_miles
from app.core.dispatch.state_machine import authorize, make_entry, validate_transition
from app.core.errors import AuthorizationError, ConflictError, NotFoundError, UpstreamError, ValidationError
from app.infra.audit_log import audit_event
from app.infra.logging_config import LogContext, get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


def _ts(value: datetime) -> int:
    return int(value.timestamp())


class IncidentOrchestrator:

    def __init__(
        self,
        *,
        incidents: IncidentRepository,
        offers: OfferRepository,
        roster: VendorRoster,
        publisher: EventPublisher,
        scheduler: TimerScheduler,
        config_provider: MatchConfigProvider,
        clock: Callable[[], datetime] = utc_now,
        arrival_timeout: timedelta = timedelta(minutes=30),
        arrival_geofence_meters: float = 100.0,
        upstream_max_retries: int = 3,
        upstream_base_delay: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._incidents = incidents
        self._offers = offers
        self._publisher = publisher
        self._scheduler = scheduler
        self._config_provider = config_provider
        self._clock = clock
        self._arrival_timeout = arrival_timeout
        self._geofence_meters = arrival_geofence_meters
        self._upstream_max_retries = upstream_max_retries
        self._upstream_base_delay = upstream_base_delay
        self._sleep = sleep

        self.matcher = MatchEngine(roster)
        self.offer_manager = OfferLifecycleManager(offers, incidents, clock=clock)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_incident(self, incident_id: str) -> Incident:
        incident = await self._incidents.get(incident_id)
        if incident is None:
            raise NotFoundError(f"Incident {incident_id} not found")
        return incident

    async def get_offer(self, offer_id: str) -> Offer:
        offer = await self._offers.get(offer_id)
        if offer is None:
            raise NotFoundError(f"Offer {offer_id} not found")
        return offer

    async def list_offers(self, incident_id: str) -> list[Offer]:
        await self.get_incident(incident_id)
        return await self._offers.list_for_incident(incident_id)

    async def list_vendor_offers(self, vendor_id: str, status: Optional[OfferStatus] = None) -> list[Offer]:
        return await self._offers.list_for_vendor(vendor_id, status=status)

    # ------------------------------------------------------------------
    # Intake + matching rounds
    # ------------------------------------------------------------------

    async def handle_incident_created(self, event: IncidentCreated) -> Incident:
        """
        Persist a new incident and start its first matching round.

        The incident is stored with a due ``matching`` wait, so a round that
        fails to start is picked up by a replay or by the overdue sweep.
        Replays of an incident whose round is recorded are no-ops.
        """
        now = self._clock()
        incident = Incident(
            id=event.incident_id,
            driver_id=event.driver_id,
            type=event.type,
            location=event.location,
            status=IncidentStatus.CREATED,
            waiting_until=now,
            wait_reason=WaitReason.MATCHING,
            created_at=event.created_at or now,
            updated_at=now,
        )

        if not await self._incidents.create(incident):
            existing = await self.get_incident(event.incident_id)
            if existing.wait_reason == WaitReason.MATCHING:
                # The first round was never recorded.
                return await self._start_round(existing, attempt=1)
            logger.info("Duplicate intake ignored", extra={"incident_id": event.incident_id})
            return existing

        DispatchMetrics.incident_received(event.type.value)
        logger.info(
            f"Incident created: type={event.type.value}",
            extra={"incident_id": event.incident_id},
        )
        return await self._start_round(incident, attempt=1)

    async def _find_candidates(
        self, incident: Incident, radius: float, config: MatchConfig
    ) -> list[Candidate]:
        delay = self._upstream_base_delay
        for attempt in range(self._upstream_max_retries + 1):
            try:
                return await self.matcher.find_candidates(
                    incident, radius, config, exclude=incident.excluded_vendor_ids, capable_only=True
                )
            except UpstreamError as exc:
                DispatchMetrics.upstream_failure("roster")
                if attempt >= self._upstream_max_retries:
                    logger.error(
                        f"Roster unavailable after {attempt + 1} attempts, round proceeds "
                        f"with no candidates: {exc.detail}",
                        extra={"incident_id": incident.id},
                    )
                    return []
                logger.warning(
                    f"Roster query failed (attempt {attempt + 1}): {exc.detail}. "
                    f"Retrying in {delay:.2f}s...",
                    extra={"incident_id": incident.id},
                )
                await self._sleep(delay)
                delay *= 2
        return []

    async def _start_round(
        self, incident: Incident, *, attempt: int, radius: Optional[float] = None
    ) -> Incident:
        """
        Run one matching round and persist it as the incident's current wait.

        The round is recorded with a compare-and-set on the previous attempt
        counter; if another delivery already recorded it, the offers created
        here are withdrawn and the stored incident is returned.
        """
        config = await self._config_provider.get_config()
        radius = radius if radius is not None else config.default_radius_miles
        log = LogContext(logger, incident_id=incident.id)

        with DispatchMetrics.track_matching_time(attempt):
            candidates = await self._find_candidates(incident, radius, config)
        offers = await self.offer_manager.create_offers(
            incident.id, candidates, config, attempt, assignment_cycle=incident.assignment_cycle
        )

        now = self._clock()
        waiting_until = now + timedelta(seconds=config.offer_timeout_seconds)
        updated = await self._incidents.compare_and_set(
            incident.id,
            expected={
                "status": IncidentStatus.CREATED,
                "assigned_vendor_id": None,
                "matching_attempts": incident.matching_attempts,
                "wait_reason": incident.wait_reason,
            },
            changes={
                "matching_attempts": attempt,
                "search_radius_miles": radius,
                "round_config": config.model_dump(),
                "round_offer_count": len(offers),
                "waiting_until": waiting_until,
                "wait_reason": WaitReason.OFFER_RESPONSE,
                "updated_at": now,
            },
        )
        if updated is None:
            await self.offer_manager.withdraw(offers)
            log.info(f"Round {attempt} already recorded elsewhere, discarding duplicate")
            return await self.get_incident(incident.id)

        DispatchMetrics.round_started(attempt)
        log.info(
            f"Round {attempt} started: radius={radius:.3f} mi, offers={len(offers)}, "
            f"deadline={waiting_until.isoformat()}"
        )

        await self._schedule(Timer(
            kind=TimerKind.ROUND_TIMEOUT,
            incident_id=incident.id,
            due_at=waiting_until,
            payload={"attempt": attempt},
            key=f"round:{incident.id}:{attempt}:{_ts(waiting_until)}",
        ))
        for offer in offers:
            await self._publish(EventType.OFFER_CREATED, incident.id, {
                "offer_id": offer.id,
                "vendor_id": offer.vendor_id,
                "round": attempt,
                "match_score": offer.match_score,
                "estimated_payout_cents": offer.estimated_payout_cents,
                "expires_at": offer.expires_at.isoformat(),
            })
        return updated

    async def _round_config(self, incident: Incident) -> MatchConfig:
        if incident.round_config:
            return MatchConfig.model_validate(incident.round_config)
        return await self._config_provider.get_config()

    async def _is_round_due(self, incident: Incident, now: datetime) -> bool:
        if incident.waiting_until is not None and now >= incident.waiting_until:
            return True
        if incident.round_offer_count > 0:
            pending = await self.offer_manager.pending_count(
                incident.id, round_number=incident.matching_attempts
            )
            return pending == 0
        return False

    async def on_round_timeout(self, incident_id: str, attempt: int) -> Optional[Incident]:
        """
        Close matching round ``attempt``: expand the radius, or escalate
        after the last attempt.  Stale or premature deliveries are no-ops.
        """
        incident = await self._incidents.get(incident_id)
        if incident is None:
            logger.warning("Round timeout for unknown incident", extra={"incident_id": incident_id})
            return None

        log = LogContext(logger, incident_id=incident_id)
        if (
            incident.status != IncidentStatus.CREATED
            or incident.assigned_vendor_id is not None
            or incident.matching_attempts != attempt
            or incident.wait_reason != WaitReason.OFFER_RESPONSE
        ):
            log.debug(f"Stale round timeout ignored: attempt={attempt}, status={incident.status.value}")
            return incident

        now = self._clock()
        if not await self._is_round_due(incident, now):
            log.debug(f"Round {attempt} not due yet")
            return incident

        config = await self._round_config(incident)
        withdrawn = await self.offer_manager.withdraw_pending(incident_id)
        await self._publish_expired(withdrawn)

        if attempt >= config.max_expansion_attempts:
            return await self._escalate(incident, attempt)

        next_radius = config.next_radius(incident.search_radius_miles or config.default_radius_miles)
        log.info(f"Round {attempt} closed without acceptance, expanding to {next_radius:.3f} mi")
        return await self._start_round(incident, attempt=attempt + 1, radius=next_radius)

    async def _escalate(self, incident: Incident, attempt: int) -> Incident:
        now = self._clock()
        updated = await self._incidents.compare_and_set(
            incident.id,
            expected={
                "status": IncidentStatus.CREATED,
                "assigned_vendor_id": None,
                "matching_attempts": attempt,
                "wait_reason": WaitReason.OFFER_RESPONSE,
            },
            changes={
                "escalated_at": now,
                "waiting_until": None,
                "wait_reason": WaitReason.MANUAL_ASSIGNMENT,
                "updated_at": now,
            },
        )
        if updated is None:
            return await self.get_incident(incident.id)

        DispatchMetrics.escalated()
        logger.warning(
            f"Incident escalated to manual dispatch after {attempt} matching attempts "
            f"(radius {incident.search_radius_miles} mi)",
            extra={"incident_id": incident.id},
        )
        await self._publish(EventType.INCIDENT_ESCALATED, incident.id, {
            "reason": f"No vendor accepted after {attempt} matching attempts",
            "attempts": attempt,
            "search_radius_miles": incident.search_radius_miles,
            "requires_manual_intervention": True,
        })
        return updated

    # ------------------------------------------------------------------
    # Vendor responses + manual assignment
    # ------------------------------------------------------------------

    def _arrival_wait(self, now: datetime) -> dict[str, Any]:
        return {
            "waiting_until": now + self._arrival_timeout,
            "wait_reason": WaitReason.VENDOR_ARRIVAL,
        }

    async def _after_assignment(self, incident: Incident, withdrawn: list[Offer], actor_id: str) -> None:
        await self._publish_expired(withdrawn)
        await self._schedule(Timer(
            kind=TimerKind.ARRIVAL_DEADLINE,
            incident_id=incident.id,
            due_at=incident.waiting_until,
            payload={"vendor_id": incident.assigned_vendor_id},
            key=f"arrival:{incident.id}:{incident.assigned_vendor_id}:{_ts(incident.assigned_at)}",
        ))
        DispatchMetrics.status_changed(IncidentStatus.VENDOR_ASSIGNED.value)
        await self._publish(EventType.INCIDENT_STATUS_CHANGED, incident.id, {
            "from": IncidentStatus.CREATED.value,
            "to": IncidentStatus.VENDOR_ASSIGNED.value,
            "actor": actor_id,
            "vendor_id": incident.assigned_vendor_id,
        })

    async def accept_offer(self, offer_id: str, vendor_id: str) -> AcceptOutcome:
        now = self._clock()
        outcome = await self.offer_manager.accept(
            offer_id, vendor_id, extra_changes=self._arrival_wait(now)
        )
        await self._publish(EventType.OFFER_ACCEPTED, outcome.incident.id, {
            "offer_id": offer_id,
            "vendor_id": vendor_id,
            "round": outcome.offer.round_number,
            "estimated_payout_cents": outcome.offer.estimated_payout_cents,
        })
        await self._after_assignment(outcome.incident, outcome.withdrawn, vendor_id)
        return outcome

    async def decline_offer(self, offer_id: str, vendor_id: str, reason: Optional[str] = None) -> Offer:
        offer = await self.offer_manager.decline(offer_id, vendor_id, reason)
        await self._publish(EventType.OFFER_DECLINED, offer.incident_id, {
            "offer_id": offer_id,
            "vendor_id": vendor_id,
            "round": offer.round_number,
            "reason": reason,
        })

        incident = await self._incidents.get(offer.incident_id)
        if (
            incident is not None
            and incident.status == IncidentStatus.CREATED
            and incident.wait_reason == WaitReason.OFFER_RESPONSE
            and incident.matching_attempts == offer.round_number
            and await self.offer_manager.pending_count(incident.id, offer.round_number) == 0
        ):
            # Every offer of the round is resolved: close it now instead of
            # waiting out the deadline.
            await self._schedule(Timer(
                kind=TimerKind.ROUND_TIMEOUT,
                incident_id=incident.id,
                due_at=self._clock(),
                payload={"attempt": offer.round_number},
                key=f"round-resolved:{incident.id}:{offer.round_number}:{_ts(incident.waiting_until)}",
            ))
        return offer

    async def assign_vendor(
        self, incident_id: str, vendor_id: str, actor: Actor, reason: Optional[str] = None
    ) -> Incident:
        """Manual assignment by a dispatcher; goes through the same claim as offer acceptance."""
        if actor.role not in (ActorRole.DISPATCHER, ActorRole.SYSTEM):
            raise AuthorizationError("Only dispatchers may assign vendors manually")

        incident = await self.get_incident(incident_id)
        if incident.assigned_vendor_id == vendor_id and incident.status in ASSIGNED_STATUSES:
            return incident
        if incident.status != IncidentStatus.CREATED or incident.assigned_vendor_id is not None:
            raise ConflictError(f"Incident is not assignable in status '{incident.status.value}'")

        now = self._clock()
        updated = await claim_incident(
            self._incidents,
            incident_id,
            vendor_id=vendor_id,
            actor_id=actor.id,
            reason=reason or "Manually assigned by dispatcher",
            now=now,
            extra_changes=self._arrival_wait(now),
        )
        if updated is None:
            raise ConflictError("Incident was assigned concurrently")

        withdrawn = await self.offer_manager.withdraw_pending(incident_id)
        audit_event(
            "incident.manual_assign",
            actor=actor.id,
            incident_id=incident_id,
            detail=f"vendor={vendor_id}",
        )
        await self._after_assignment(updated, withdrawn, actor.id)
        return updated

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    async def _apply_transition(
        self,
        incident: Incident,
        target: IncidentStatus,
        *,
        actor_id: str,
        reason: Optional[str],
    ) -> Optional[Incident]:
        now = self._clock()
        changes: dict[str, Any] = {"status": target, "updated_at": now}

        if target not in ASSIGNED_STATUSES:
            changes.update(assigned_vendor_id=None, waiting_until=None, wait_reason=None)
        elif target not in AWAITING_ARRIVAL_STATUSES:
            # Vendor is on site: the arrival watch is over.
            changes.update(waiting_until=None, wait_reason=None)

        updated = await self._incidents.compare_and_set(
            incident.id,
            expected={"status": incident.status, "assigned_vendor_id": incident.assigned_vendor_id},
            changes=changes,
            entry=make_entry(incident.status, target, actor_id=actor_id, timestamp=now, reason=reason),
        )
        if updated is None:
            return None

        DispatchMetrics.status_changed(target.value)
        LogContext(logger, incident_id=incident.id).info(
            f"Status {incident.status.value} -> {target.value} by {actor_id}"
        )
        await self._publish(EventType.INCIDENT_STATUS_CHANGED, incident.id, {
            "from": incident.status.value,
            "to": target.value,
            "actor": actor_id,
            "reason": reason,
        })
        return updated

    @staticmethod
    def _is_replay(incident: Incident, target: IncidentStatus, actor_id: str) -> bool:
        last = incident.last_entry
        return incident.status == target and last is not None and last.to_status == target and last.actor == actor_id

    async def update_status(
        self,
        incident_id: str,
        target: IncidentStatus,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> Incident:
        """
        Apply a requested status transition.

        Raises:
            NotFoundError, AuthorizationError, ValidationError, ConflictError
        """
        incident = await self.get_incident(incident_id)
        authorize(actor, incident, target)

        if self._is_replay(incident, target, actor.id):
            return incident
        if target == IncidentStatus.VENDOR_ASSIGNED:
            raise ValidationError("Vendors are assigned by accepting an offer or by manual assignment")
        validate_transition(incident.status, target)

        updated = await self._apply_transition(incident, target, actor_id=actor.id, reason=reason)
        if updated is None:
            current = await self.get_incident(incident_id)
            if self._is_replay(current, target, actor.id):
                return current
            raise ConflictError("Incident changed concurrently, retry the request")

        if target == IncidentStatus.CANCELLED:
            withdrawn = await self.offer_manager.withdraw_pending(incident_id)
            await self._publish_expired(withdrawn)
        return updated

    async def on_vendor_position(self, position: VendorPosition) -> list[Incident]:
        """
        Mark the vendor arrived on every incident it is heading to and is
        now within the arrival geofence of.  An incident still in
        ``vendor_assigned`` passes through ``vendor_en_route`` first.
        """
        here = Location(lat=position.lat, lon=position.lon)
        incidents = await self._incidents.list_assigned_to(position.vendor_id, AWAITING_ARRIVAL_STATUSES)

        arrived = []
        for incident in incidents:
            meters = haversine_miles(here, incident.location) * METERS_PER_MILE
            if meters > self._geofence_meters:
                continue

            reason = f"Vendor within {self._geofence_meters:.0f} m of incident"
            if incident.status == IncidentStatus.VENDOR_ASSIGNED:
                incident = await self._apply_transition(
                    incident, IncidentStatus.VENDOR_EN_ROUTE, actor_id=position.vendor_id, reason=reason
                )
                if incident is None:
                    continue
            updated = await self._apply_transition(
                incident, IncidentStatus.VENDOR_ARRIVED, actor_id=position.vendor_id, reason=reason
            )
            if updated is not None:
                arrived.append(updated)
        return arrived

    async def on_arrival_deadline(self, incident_id: str, vendor_id: str) -> Optional[Incident]:
        """
        Un-assign a vendor that did not arrive in time and restart matching.

        The new matching cycle starts again at attempt 1 and the default
        radius, and never re-offers to the vendor that timed out.  The
        un-assignment bumps ``assignment_cycle`` and records a due
        ``matching`` wait in the same write, so the old accepted offer does
        not block the next accept and a failed restart is resumable.
        """
        incident = await self._incidents.get(incident_id)
        if incident is None:
            return None
        if (
            incident.status == IncidentStatus.CREATED
            and incident.wait_reason == WaitReason.MATCHING
            and vendor_id in incident.excluded_vendor_ids
        ):
            # Un-assigned earlier but the new round never started
            return await self.resume(incident_id)
        if incident.status not in AWAITING_ARRIVAL_STATUSES or incident.assigned_vendor_id != vendor_id:
            return incident

        now = self._clock()
        deadline = incident.waiting_until
        if deadline is None or incident.wait_reason != WaitReason.VENDOR_ARRIVAL:
            deadline = (incident.assigned_at or now) + self._arrival_timeout
        if now < deadline:
            return incident

        timeout_minutes = int(self._arrival_timeout.total_seconds() // 60)
        elapsed_minutes = int((now - (incident.assigned_at or now)).total_seconds() // 60)
        reason = f"Vendor {vendor_id} failed to arrive within {timeout_minutes} minutes"

        excluded = list(incident.excluded_vendor_ids)
        if vendor_id not in excluded:
            excluded.append(vendor_id)

        updated = await self._incidents.compare_and_set(
            incident_id,
            expected={"status": incident.status, "assigned_vendor_id": vendor_id},
            changes={
                "status": IncidentStatus.CREATED,
                "assigned_vendor_id": None,
                "assigned_at": None,
                "waiting_until": now,
                "wait_reason": WaitReason.MATCHING,
                "escalated_at": None,
                "excluded_vendor_ids": excluded,
                "assignment_cycle": incident.assignment_cycle + 1,
                "updated_at": now,
            },
            entry=make_entry(
                incident.status, IncidentStatus.CREATED,
                actor_id=SYSTEM_ACTOR.id, timestamp=now, reason=reason,
            ),
        )
        if updated is None:
            return await self._incidents.get(incident_id)

        DispatchMetrics.vendor_timeout()
        LogContext(logger, incident_id=incident_id, vendor_id=vendor_id).warning(reason)
        await self._publish(EventType.INCIDENT_STATUS_CHANGED, incident_id, {
            "from": incident.status.value,
            "to": IncidentStatus.CREATED.value,
            "actor": SYSTEM_ACTOR.id,
            "reason": reason,
        })
        await self._publish(EventType.VENDOR_TIMEOUT, incident_id, {
            "vendor_id": vendor_id,
            "timeout_type": "arrival",
            "elapsed_minutes": elapsed_minutes,
        })
        return await self._start_round(updated, attempt=1)

    # ------------------------------------------------------------------
    # Timers + recovery
    # ------------------------------------------------------------------

    async def handle_timer(self, timer: Timer) -> Optional[Incident]:
        if timer.kind == TimerKind.ROUND_TIMEOUT:
            return await self.on_round_timeout(timer.incident_id, int(timer.payload["attempt"]))
        if timer.kind == TimerKind.ARRIVAL_DEADLINE:
            return await self.on_arrival_deadline(timer.incident_id, timer.payload["vendor_id"])
        raise ValueError(f"Unknown timer kind: {timer.kind}")

    async def resume(self, incident_id: str) -> Optional[Incident]:
        """
        Re-drive an incident from its persisted wait (after a crash or a
        lost timer).  Safe to call at any time.
        """
        incident = await self._incidents.get(incident_id)
        if incident is None:
            return None

        now = self._clock()
        if incident.status == IncidentStatus.CREATED and incident.assigned_vendor_id is None:
            if incident.wait_reason == WaitReason.OFFER_RESPONSE:
                if await self._is_round_due(incident, now):
                    return await self.on_round_timeout(incident_id, incident.matching_attempts)
                await self._schedule(Timer(
                    kind=TimerKind.ROUND_TIMEOUT,
                    incident_id=incident_id,
                    due_at=incident.waiting_until,
                    payload={"attempt": incident.matching_attempts},
                    key=f"round:{incident_id}:{incident.matching_attempts}:{_ts(incident.waiting_until)}",
                ))
            elif incident.wait_reason == WaitReason.MATCHING:
                return await self._start_round(incident, attempt=1)
            return incident

        if incident.status in AWAITING_ARRIVAL_STATUSES and incident.wait_reason == WaitReason.VENDOR_ARRIVAL:
            if now >= incident.waiting_until:
                return await self.on_arrival_deadline(incident_id, incident.assigned_vendor_id)
            await self._schedule(Timer(
                kind=TimerKind.ARRIVAL_DEADLINE,
                incident_id=incident_id,
                due_at=incident.waiting_until,
                payload={"vendor_id": incident.assigned_vendor_id},
                key=f"arrival:{incident_id}:{incident.assigned_vendor_id}:{_ts(incident.assigned_at)}",
            ))
        return incident

    async def resume_overdue(self, limit: int = 100) -> int:
        """Resume every incident whose persisted wait is past due.  Returns how many were re-driven."""
        overdue = await self._incidents.list_overdue(self._clock(), limit=limit)
        resumed = 0
        for incident in overdue:
            try:
                await self.resume(incident.id)
                resumed += 1
            except Exception as exc:
                logger.error(
                    f"Failed to resume overdue incident: {exc}",
                    exc_info=True,
                    extra={"incident_id": incident.id},
                )
        if resumed:
            logger.info(f"Resumed {resumed} overdue incident(s)")
        return resumed

    # ------------------------------------------------------------------
    # Collaborator calls
    # ------------------------------------------------------------------

    async def _schedule(self, timer: Timer) -> None:
        try:
            await self._scheduler.schedule(timer)
        except Exception as exc:
            # The overdue sweep re-drives the persisted wait.
            logger.error(
                f"Failed to schedule {timer.kind.value} timer: {exc}",
                exc_info=True,
                extra={"incident_id": timer.incident_id},
            )

    async def _publish(self, event_type: EventType, incident_id: str, data: dict[str, Any]) -> None:
        event = DispatchEvent(
            event_type=event_type,
            incident_id=incident_id,
            occurred_at=self._clock(),
            data=data,
        )
        try:
            await self._publisher.publish(event)
        except Exception as exc:
            logger.error(
                f"Failed to publish {event_type.value}: {exc}",
                exc_info=True,
                extra={"incident_id": incident_id},
            )

    async def _publish_expired(self, offers: list[Offer]) -> None:
        for offer in offers:
            if offer.status != OfferStatus.EXPIRED:
                continue
            await self._publish(EventType.OFFER_EXPIRED, offer.incident_id, {
                "offer_id": offer.id,
                "vendor_id": offer.vendor_id,
                "round": offer.round_number,
            })
