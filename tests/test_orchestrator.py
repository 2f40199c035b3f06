# tests/test_orchestrator.py
"""
End-to-end tests for IncidentOrchestrator over in-memory collaborators.

Covers intake, radius expansion and escalation, offer responses, manual
assignment, status transitions, geofenced arrival, arrival timeouts and
crash recovery.  Time only moves when a test advances the FakeClock.
"""
from __future__ import annotations

import asyncio
from unittest.mock import call

import pytest

from app.core.dispatch.domain import (
    Actor,
    ActorRole,
    EventType,
    IncidentStatus,
    OfferStatus,
    VendorAvailability,
    VendorPosition,
    WaitReason,
)
from app.core.dispatch.match_config import MatchConfig
from app.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError

from conftest import INCIDENT_LAT, INCIDENT_LON, Harness, intake_event, make_vendor

DISPATCHER = Actor("ops-1", ActorRole.DISPATCHER)
DRIVER = Actor("driver-1", ActorRole.DRIVER)

# ~57 miles north of the incident: outside 50 mi, inside 62.5 mi with 1 mi coverage
SECOND_RING_LAT = INCIDENT_LAT + 0.82


async def _accepted(h: Harness, vendor_id: str = "v-1"):
    await h.orchestrator.handle_incident_created(intake_event())
    offer = next(o for o in await h.pending_offers() if o.vendor_id == vendor_id)
    return await h.orchestrator.accept_offer(offer.id, vendor_id)


def _fail_next_offer_write(h: Harness) -> None:
    original = h.offers.create_many

    async def failing(offers):
        h.offers.create_many = original
        raise RuntimeError("offers table unavailable")

    h.offers.create_many = failing


async def _drive_to(h: Harness, status: IncidentStatus, vendor_id: str = "v-1"):
    vendor = Actor(vendor_id, ActorRole.VENDOR)
    path = [
        IncidentStatus.VENDOR_EN_ROUTE,
        IncidentStatus.VENDOR_ARRIVED,
        IncidentStatus.WORK_IN_PROGRESS,
        IncidentStatus.WORK_COMPLETED,
        IncidentStatus.PAYMENT_PENDING,
        IncidentStatus.CLOSED,
    ]
    incident = None
    for step in path:
        incident = await h.orchestrator.update_status("inc-1", step, vendor)
        if step == status:
            break
    return incident


# ============================================================================
# Intake and matching rounds
# ============================================================================

class TestIntake:
    @pytest.mark.asyncio
    async def test_only_capable_vendor_gets_offer_and_accepts(self):
        h = Harness([
            make_vendor("v-tire", capabilities=("tire_repair",)),
            make_vendor("v-engine", capabilities=("engine_repair",)),
        ])

        incident = await h.orchestrator.handle_incident_created(intake_event())
        assert incident.matching_attempts == 1
        assert incident.search_radius_miles == 50
        assert incident.wait_reason == WaitReason.OFFER_RESPONSE

        pending = await h.pending_offers()
        assert [o.vendor_id for o in pending] == ["v-tire"]

        outcome = await h.orchestrator.accept_offer(pending[0].id, "v-tire")

        assert outcome.incident.status == IncidentStatus.VENDOR_ASSIGNED
        assert outcome.incident.assigned_vendor_id == "v-tire"
        assert len(outcome.incident.timeline) == 1
        assert outcome.incident.timeline[0].actor == "v-tire"
        assert len(h.publisher.of_type(EventType.OFFER_ACCEPTED)) == 1
        changed = h.publisher.of_type(EventType.INCIDENT_STATUS_CHANGED)
        assert changed[-1].data["to"] == "vendor_assigned"

    @pytest.mark.asyncio
    async def test_capable_vendor_below_round_limit_still_offered(self):
        h = Harness(
            [
                make_vendor("e-1", capabilities=("engine_repair",)),
                make_vendor("e-2", capabilities=("engine_repair",)),
                make_vendor("v-tire", availability=VendorAvailability.BUSY, acceptance_rate=0.3, rating=2.0),
            ],
            config=MatchConfig(max_offers_per_incident=2),
        )

        incident = await h.orchestrator.handle_incident_created(intake_event())

        assert incident.round_offer_count == 1
        assert [o.vendor_id for o in await h.pending_offers()] == ["v-tire"]

    @pytest.mark.asyncio
    async def test_location_details_carried_through(self):
        h = Harness([make_vendor("v-1")])
        incident = await h.orchestrator.handle_incident_created(intake_event())
        assert incident.location.details == {"road": "highway"}

    @pytest.mark.asyncio
    async def test_intake_replay_is_noop(self):
        h = Harness([make_vendor("v-1")])
        first = await h.orchestrator.handle_incident_created(intake_event())
        second = await h.orchestrator.handle_incident_created(intake_event())

        assert second.matching_attempts == first.matching_attempts == 1
        assert len(h.roster.queries) == 1
        assert len(await h.offers.list_for_incident("inc-1")) == 1

    @pytest.mark.asyncio
    async def test_offer_created_events(self):
        h = Harness([make_vendor("v-1"), make_vendor("v-2")])
        await h.orchestrator.handle_incident_created(intake_event())

        created = h.publisher.of_type(EventType.OFFER_CREATED)
        assert sorted(e.data["vendor_id"] for e in created) == ["v-1", "v-2"]
        assert all(e.data["round"] == 1 for e in created)

    @pytest.mark.asyncio
    async def test_unknown_incident(self):
        h = Harness()
        with pytest.raises(NotFoundError):
            await h.orchestrator.get_incident("nope")
        with pytest.raises(NotFoundError):
            await h.orchestrator.list_offers("nope")


class TestRadiusExpansion:
    @pytest.mark.asyncio
    async def test_vendor_found_in_second_round(self):
        h = Harness([make_vendor("v-far", lat=SECOND_RING_LAT, radius_miles=1)])

        incident = await h.orchestrator.handle_incident_created(intake_event())
        assert incident.round_offer_count == 0

        h.clock.advance(120)
        await h.fire_due()

        incident = await h.orchestrator.get_incident("inc-1")
        assert incident.matching_attempts == 2
        assert incident.search_radius_miles == 62.5

        pending = await h.pending_offers()
        assert [o.vendor_id for o in pending] == ["v-far"]
        assert pending[0].round_number == 2

        outcome = await h.orchestrator.accept_offer(pending[0].id, "v-far")
        assert outcome.incident.status == IncidentStatus.VENDOR_ASSIGNED
        assert outcome.incident.matching_attempts == 2

    @pytest.mark.asyncio
    async def test_progression_then_single_escalation(self):
        h = Harness()
        await h.orchestrator.handle_incident_created(intake_event())

        for _ in range(5):
            h.clock.advance(120)
            await h.fire_due()

        assert [radius for _, radius, _ in h.roster.queries] == [50, 62.5, 78.125]

        incident = await h.orchestrator.get_incident("inc-1")
        assert incident.matching_attempts == 3
        assert incident.status == IncidentStatus.CREATED
        assert incident.wait_reason == WaitReason.MANUAL_ASSIGNMENT
        assert incident.escalated_at is not None

        escalations = h.publisher.of_type(EventType.INCIDENT_ESCALATED)
        assert len(escalations) == 1
        assert escalations[0].data["attempts"] == 3
        assert escalations[0].data["requires_manual_intervention"] is True
        assert escalations[0].data["search_radius_miles"] == 78.125

    @pytest.mark.asyncio
    async def test_redelivered_final_timeout_does_not_escalate_twice(self):
        h = Harness()
        await h.orchestrator.handle_incident_created(intake_event())
        for _ in range(3):
            h.clock.advance(120)
            await h.fire_due()

        await h.orchestrator.on_round_timeout("inc-1", 3)
        assert len(h.publisher.of_type(EventType.INCIDENT_ESCALATED)) == 1

    @pytest.mark.asyncio
    async def test_unanswered_offers_expire_on_round_close(self):
        h = Harness([make_vendor("v-1")])
        await h.orchestrator.handle_incident_created(intake_event())
        first = (await h.pending_offers())[0]

        h.clock.advance(120)
        await h.fire_due()

        assert (await h.orchestrator.get_offer(first.id)).status == OfferStatus.EXPIRED
        expired = h.publisher.of_type(EventType.OFFER_EXPIRED)
        assert [e.data["offer_id"] for e in expired] == [first.id]
        # Same vendor is still in range and is offered again in round 2
        assert [o.round_number for o in await h.pending_offers()] == [2]


class TestStaleTimers:
    @pytest.mark.asyncio
    async def test_duplicate_round_timeout_is_noop(self):
        h = Harness()
        await h.orchestrator.handle_incident_created(intake_event())
        h.clock.advance(120)

        await h.orchestrator.on_round_timeout("inc-1", 1)
        await h.orchestrator.on_round_timeout("inc-1", 1)

        incident = await h.orchestrator.get_incident("inc-1")
        assert incident.matching_attempts == 2
        assert len(h.roster.queries) == 2

    @pytest.mark.asyncio
    async def test_premature_round_timeout_is_noop(self):
        h = Harness([make_vendor("v-1")])
        await h.orchestrator.handle_incident_created(intake_event())
        h.clock.advance(60)

        incident = await h.orchestrator.on_round_timeout("inc-1", 1)

        assert incident.matching_attempts == 1
        assert len(await h.pending_offers()) == 1

    @pytest.mark.asyncio
    async def test_round_timeout_after_acceptance_is_noop(self):
        h = Harness([make_vendor("v-1")])
        await _accepted(h)
        h.clock.advance(120)
        await h.fire_due()

        incident = await h.orchestrator.get_incident("inc-1")
        assert incident.status == IncidentStatus.VENDOR_ASSIGNED
        assert incident.matching_attempts == 1

    @pytest.mark.asyncio
    async def test_timer_for_unknown_incident(self):
        h = Harness()
        assert await h.orchestrator.on_round_timeout("ghost", 1) is None
        assert await h.orchestrator.on_arrival_deadline("ghost", "v-1") is None


# ============================================================================
# Offer responses and manual assignment
# ============================================================================

class TestOfferResponses:
    @pytest.mark.asyncio
    async def test_concurrent_accepts_through_orchestrator(self):
        h = Harness([make_vendor("v-1"), make_vendor("v-2"), make_vendor("v-3")])
        await h.orchestrator.handle_incident_created(intake_event())
        pending = await h.pending_offers()

        results = await asyncio.gather(
            *(h.orchestrator.accept_offer(o.id, o.vendor_id) for o in pending),
            return_exceptions=True,
        )

        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert len(h.publisher.of_type(EventType.OFFER_ACCEPTED)) == 1
        incident = await h.orchestrator.get_incident("inc-1")
        assert len(incident.timeline) == 1

    @pytest.mark.asyncio
    async def test_all_declined_closes_round_early(self):
        h = Harness([make_vendor("v-1"), make_vendor("v-2")])
        await h.orchestrator.handle_incident_created(intake_event())

        for offer in await h.pending_offers():
            await h.orchestrator.decline_offer(offer.id, offer.vendor_id, "busy")
        h.clock.advance(1)
        await h.fire_due()

        incident = await h.orchestrator.get_incident("inc-1")
        assert incident.matching_attempts == 2
        assert len(h.publisher.of_type(EventType.OFFER_DECLINED)) == 2

    @pytest.mark.asyncio
    async def test_partial_decline_waits_for_deadline(self):
        h = Harness([make_vendor("v-1"), make_vendor("v-2")])
        await h.orchestrator.handle_incident_created(intake_event())

        offer = (await h.pending_offers())[0]
        await h.orchestrator.decline_offer(offer.id, offer.vendor_id)
        h.clock.advance(1)
        await h.fire_due()

        incident = await h.orchestrator.get_incident("inc-1")
        assert incident.matching_attempts == 1
        assert len(await h.pending_offers()) == 1


class TestManualAssignment:
    @pytest.mark.asyncio
    async def test_dispatcher_assigns_escalated_incident(self):
        h = Harness()
        await h.orchestrator.handle_incident_created(intake_event())
        for _ in range(3):
            h.clock.advance(120)
            await h.fire_due()

        incident = await h.orchestrator.assign_vendor("inc-1", "v-manual", DISPATCHER, "called in")

        assert incident.status == IncidentStatus.VENDOR_ASSIGNED
        assert incident.assigned_vendor_id == "v-manual"
        assert incident.wait_reason == WaitReason.VENDOR_ARRIVAL
        assert incident.timeline[-1].actor == "ops-1"
        assert incident.timeline[-1].reason == "called in"

    @pytest.mark.asyncio
    async def test_manual_assignment_withdraws_pending_offers(self):
        h = Harness([make_vendor("v-1")])
        await h.orchestrator.handle_incident_created(intake_event())

        await h.orchestrator.assign_vendor("inc-1", "v-manual", DISPATCHER)

        assert await h.pending_offers() == []
        assert len(h.publisher.of_type(EventType.OFFER_EXPIRED)) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("role", [ActorRole.DRIVER, ActorRole.VENDOR])
    async def test_non_dispatcher_rejected(self, role):
        h = Harness()
        await h.orchestrator.handle_incident_created(intake_event())
        with pytest.raises(AuthorizationError):
            await h.orchestrator.assign_vendor("inc-1", "v-1", Actor("someone", role))

    @pytest.mark.asyncio
    async def test_already_assigned_conflicts(self):
        h = Harness([make_vendor("v-1")])
        await _accepted(h)
        with pytest.raises(ConflictError):
            await h.orchestrator.assign_vendor("inc-1", "v-other", DISPATCHER)

    @pytest.mark.asyncio
    async def test_same_assignment_replayed(self):
        h = Harness()
        await h.orchestrator.handle_incident_created(intake_event())
        first = await h.orchestrator.assign_vendor("inc-1", "v-manual", DISPATCHER)
        again = await h.orchestrator.assign_vendor("inc-1", "v-manual", DISPATCHER)
        assert len(again.timeline) == len(first.timeline) == 1


# ============================================================================
# Status transitions
# ============================================================================

class TestStatusUpdates:
    @pytest.mark.asyncio
    async def test_full_lifecycle_timeline(self):
        h = Harness([make_vendor("v-1")])
        await _accepted(h)
        incident = await _drive_to(h, IncidentStatus.CLOSED)

        assert incident.status == IncidentStatus.CLOSED
        assert incident.assigned_vendor_id is None
        assert [e.to_status for e in incident.timeline] == [
            IncidentStatus.VENDOR_ASSIGNED,
            IncidentStatus.VENDOR_EN_ROUTE,
            IncidentStatus.VENDOR_ARRIVED,
            IncidentStatus.WORK_IN_PROGRESS,
            IncidentStatus.WORK_COMPLETED,
            IncidentStatus.PAYMENT_PENDING,
            IncidentStatus.CLOSED,
        ]

    @pytest.mark.asyncio
    async def test_driver_cancel_withdraws_offers(self):
        h = Harness([make_vendor("v-1"), make_vendor("v-2")])
        await h.orchestrator.handle_incident_created(intake_event())

        incident = await h.orchestrator.update_status("inc-1", IncidentStatus.CANCELLED, DRIVER, "found help")

        assert incident.status == IncidentStatus.CANCELLED
        assert incident.wait_reason is None
        assert await h.pending_offers() == []
        assert len(h.publisher.of_type(EventType.OFFER_EXPIRED)) == 2

    @pytest.mark.asyncio
    async def test_round_timeout_after_cancel_is_noop(self):
        h = Harness()
        await h.orchestrator.handle_incident_created(intake_event())
        await h.orchestrator.update_status("inc-1", IncidentStatus.CANCELLED, DRIVER)

        h.clock.advance(120)
        await h.fire_due()

        assert len(h.roster.queries) == 1

    @pytest.mark.asyncio
    async def test_other_driver_cannot_cancel(self):
        h = Harness()
        await h.orchestrator.handle_incident_created(intake_event())
        with pytest.raises(AuthorizationError):
            await h.orchestrator.update_status(
                "inc-1", IncidentStatus.CANCELLED, Actor("driver-2", ActorRole.DRIVER)
            )

    @pytest.mark.asyncio
    async def test_cancel_after_work_completed_rejected(self):
        h = Harness([make_vendor("v-1")])
        await _accepted(h)
        await _drive_to(h, IncidentStatus.WORK_COMPLETED)

        with pytest.raises(ValidationError):
            await h.orchestrator.update_status("inc-1", IncidentStatus.CANCELLED, DRIVER)

    @pytest.mark.asyncio
    async def test_backwards_transition_leaves_state_unchanged(self):
        h = Harness([make_vendor("v-1")])
        await _accepted(h)
        before = await _drive_to(h, IncidentStatus.WORK_IN_PROGRESS)

        with pytest.raises(ValidationError):
            await h.orchestrator.update_status("inc-1", IncidentStatus.VENDOR_ASSIGNED, DISPATCHER)

        after = await h.orchestrator.get_incident("inc-1")
        assert after.status == IncidentStatus.WORK_IN_PROGRESS
        assert len(after.timeline) == len(before.timeline)

    @pytest.mark.asyncio
    async def test_unassigned_vendor_rejected(self):
        h = Harness([make_vendor("v-1")])
        await _accepted(h)
        with pytest.raises(AuthorizationError):
            await h.orchestrator.update_status(
                "inc-1", IncidentStatus.VENDOR_EN_ROUTE, Actor("v-2", ActorRole.VENDOR)
            )

    @pytest.mark.asyncio
    async def test_same_request_replayed(self):
        h = Harness([make_vendor("v-1")])
        await _accepted(h)
        vendor = Actor("v-1", ActorRole.VENDOR)
        await h.orchestrator.update_status("inc-1", IncidentStatus.VENDOR_EN_ROUTE, vendor)
        again = await h.orchestrator.update_status("inc-1", IncidentStatus.VENDOR_EN_ROUTE, vendor)
        assert len(again.timeline) == 2


# ============================================================================
# Arrival: geofence and timeout
# ============================================================================

class TestArrival:
    @pytest.mark.asyncio
    async def test_position_outside_geofence_ignored(self):
        h = Harness([make_vendor("v-1")])
        await _accepted(h)

        # ~220 m away
        arrived = await h.orchestrator.on_vendor_position(
            VendorPosition("v-1", INCIDENT_LAT + 0.002, INCIDENT_LON)
        )

        assert arrived == []
        incident = await h.orchestrator.get_incident("inc-1")
        assert incident.status == IncidentStatus.VENDOR_ASSIGNED

    @pytest.mark.asyncio
    async def test_position_inside_geofence_marks_arrived(self):
        h = Harness([make_vendor("v-1")])
        await _accepted(h)

        # ~55 m away
        arrived = await h.orchestrator.on_vendor_position(
            VendorPosition("v-1", INCIDENT_LAT + 0.0005, INCIDENT_LON)
        )

        assert [i.id for i in arrived] == ["inc-1"]
        incident = arrived[0]
        assert incident.status == IncidentStatus.VENDOR_ARRIVED
        assert incident.waiting_until is None
        assert [e.to_status for e in incident.timeline] == [
            IncidentStatus.VENDOR_ASSIGNED,
            IncidentStatus.VENDOR_EN_ROUTE,
            IncidentStatus.VENDOR_ARRIVED,
        ]

    @pytest.mark.asyncio
    async def test_position_from_other_vendor_ignored(self):
        h = Harness([make_vendor("v-1")])
        await _accepted(h)
        arrived = await h.orchestrator.on_vendor_position(VendorPosition("v-2", INCIDENT_LAT, INCIDENT_LON))
        assert arrived == []

    @pytest.mark.asyncio
    async def test_arrival_timeout_restarts_matching(self):
        h = Harness([make_vendor("v-1"), make_vendor("v-2")])
        await _accepted(h, "v-1")

        h.clock.advance(minutes=30)
        await h.fire_due()

        incident = await h.orchestrator.get_incident("inc-1")
        assert incident.status == IncidentStatus.CREATED
        assert incident.assigned_vendor_id is None
        assert incident.matching_attempts == 1
        assert incident.search_radius_miles == 50
        assert incident.excluded_vendor_ids == ["v-1"]
        assert incident.timeline[-1].to_status == IncidentStatus.CREATED
        assert incident.timeline[-1].actor == "system"

        pending = await h.pending_offers()
        assert [o.vendor_id for o in pending] == ["v-2"]

        timeouts = h.publisher.of_type(EventType.VENDOR_TIMEOUT)
        assert len(timeouts) == 1
        assert timeouts[0].data["vendor_id"] == "v-1"
        assert timeouts[0].data["elapsed_minutes"] == 30

        assert incident.assignment_cycle == 1
        assert pending[0].assignment_cycle == 1
        outcome = await h.orchestrator.accept_offer(pending[0].id, "v-2")
        assert outcome.incident.status == IncidentStatus.VENDOR_ASSIGNED
        assert outcome.incident.assigned_vendor_id == "v-2"
        accepted = await h.offers.list_for_incident("inc-1", status=OfferStatus.ACCEPTED)
        assert sorted((o.vendor_id, o.assignment_cycle) for o in accepted) == [("v-1", 0), ("v-2", 1)]

    @pytest.mark.asyncio
    async def test_failed_restart_retried_by_redelivered_timer(self):
        h = Harness([make_vendor("v-1"), make_vendor("v-2")])
        await _accepted(h, "v-1")
        h.clock.advance(minutes=30)
        _fail_next_offer_write(h)

        with pytest.raises(RuntimeError):
            await h.orchestrator.on_arrival_deadline("inc-1", "v-1")

        incident = await h.orchestrator.get_incident("inc-1")
        assert incident.status == IncidentStatus.CREATED
        assert incident.wait_reason == WaitReason.MATCHING
        assert incident.waiting_until == h.clock.now

        incident = await h.orchestrator.on_arrival_deadline("inc-1", "v-1")

        assert incident.wait_reason == WaitReason.OFFER_RESPONSE
        assert [o.vendor_id for o in await h.pending_offers()] == ["v-2"]
        assert len(h.publisher.of_type(EventType.VENDOR_TIMEOUT)) == 1

    @pytest.mark.asyncio
    async def test_failed_restart_picked_up_by_overdue_sweep(self):
        h = Harness([make_vendor("v-1"), make_vendor("v-2")])
        await _accepted(h, "v-1")
        h.clock.advance(minutes=30)
        _fail_next_offer_write(h)
        with pytest.raises(RuntimeError):
            await h.orchestrator.on_arrival_deadline("inc-1", "v-1")

        assert await h.orchestrator.resume_overdue() == 1

        incident = await h.orchestrator.get_incident("inc-1")
        assert incident.matching_attempts == 1
        assert incident.wait_reason == WaitReason.OFFER_RESPONSE
        assert [o.vendor_id for o in await h.pending_offers()] == ["v-2"]

    @pytest.mark.asyncio
    async def test_arrival_timeout_not_fired_early(self):
        h = Harness([make_vendor("v-1")])
        await _accepted(h)

        h.clock.advance(minutes=29)
        await h.fire_due()
        incident = await h.orchestrator.on_arrival_deadline("inc-1", "v-1")

        assert incident.status == IncidentStatus.VENDOR_ASSIGNED

    @pytest.mark.asyncio
    async def test_arrival_timeout_after_arrival_is_noop(self):
        h = Harness([make_vendor("v-1")])
        await _accepted(h)
        await h.orchestrator.on_vendor_position(VendorPosition("v-1", INCIDENT_LAT, INCIDENT_LON))

        h.clock.advance(minutes=30)
        await h.fire_due()

        incident = await h.orchestrator.get_incident("inc-1")
        assert incident.status == IncidentStatus.VENDOR_ARRIVED
        assert h.publisher.of_type(EventType.VENDOR_TIMEOUT) == []


# ============================================================================
# Roster failures and recovery
# ============================================================================

class TestRosterRetry:
    @pytest.mark.asyncio
    async def test_transient_failure_retried_with_backoff(self):
        h = Harness([make_vendor("v-1")])
        h.roster.fail_next = 2

        incident = await h.orchestrator.handle_incident_created(intake_event())

        assert h.sleep.await_args_list == [call(0.5), call(1.0)]
        assert incident.round_offer_count == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_yield_empty_round(self):
        h = Harness([make_vendor("v-1")], upstream_max_retries=3)
        h.roster.fail_next = 10

        incident = await h.orchestrator.handle_incident_created(intake_event())

        assert h.sleep.await_args_list == [call(0.5), call(1.0), call(2.0)]
        assert len(h.roster.queries) == 4
        assert incident.matching_attempts == 1
        assert incident.round_offer_count == 0
        assert incident.wait_reason == WaitReason.OFFER_RESPONSE


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_overdue_round(self):
        h = Harness()
        await h.orchestrator.handle_incident_created(intake_event())
        h.clock.advance(120)

        resumed = await h.orchestrator.resume_overdue()

        assert resumed == 1
        assert (await h.orchestrator.get_incident("inc-1")).matching_attempts == 2

        # The original timer arriving late is now stale
        await h.fire_due()
        assert (await h.orchestrator.get_incident("inc-1")).matching_attempts == 2

    @pytest.mark.asyncio
    async def test_resume_before_deadline_keeps_waiting(self):
        h = Harness([make_vendor("v-1")])
        await h.orchestrator.handle_incident_created(intake_event())
        h.clock.advance(30)

        incident = await h.orchestrator.resume("inc-1")

        assert incident.matching_attempts == 1
        assert len(h.scheduler.pending) == 1

    @pytest.mark.asyncio
    async def test_resume_overdue_arrival(self):
        h = Harness([make_vendor("v-1")])
        await _accepted(h)
        h.clock.advance(minutes=31)

        assert await h.orchestrator.resume_overdue() == 1

        incident = await h.orchestrator.get_incident("inc-1")
        assert incident.status == IncidentStatus.CREATED
        assert incident.excluded_vendor_ids == ["v-1"]

    @pytest.mark.asyncio
    async def test_failed_intake_round_picked_up_by_overdue_sweep(self):
        h = Harness([make_vendor("v-1")])
        _fail_next_offer_write(h)
        with pytest.raises(RuntimeError):
            await h.orchestrator.handle_incident_created(intake_event())

        incident = await h.orchestrator.get_incident("inc-1")
        assert incident.matching_attempts == 0
        assert incident.wait_reason == WaitReason.MATCHING

        assert await h.orchestrator.resume_overdue() == 1

        incident = await h.orchestrator.get_incident("inc-1")
        assert incident.matching_attempts == 1
        assert incident.wait_reason == WaitReason.OFFER_RESPONSE
        assert [o.vendor_id for o in await h.pending_offers()] == ["v-1"]
        assert len(h.scheduler.pending) == 1

    @pytest.mark.asyncio
    async def test_failed_intake_round_restarted_by_replay(self):
        h = Harness([make_vendor("v-1")])
        _fail_next_offer_write(h)
        with pytest.raises(RuntimeError):
            await h.orchestrator.handle_incident_created(intake_event())

        incident = await h.orchestrator.handle_incident_created(intake_event())

        assert incident.matching_attempts == 1
        assert [o.vendor_id for o in await h.pending_offers()] == ["v-1"]
        assert len(h.publisher.of_type(EventType.OFFER_CREATED)) == 1

    @pytest.mark.asyncio
    async def test_nothing_overdue(self):
        h = Harness([make_vendor("v-1")])
        await h.orchestrator.handle_incident_created(intake_event())
        assert await h.orchestrator.resume_overdue() == 0

    @pytest.mark.asyncio
    async def test_resume_unknown_incident(self):
        h = Harness()
        assert await h.orchestrator.resume("ghost") is None
