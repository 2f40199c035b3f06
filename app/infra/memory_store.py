# app/infra/memory_store.py
"""
In-process implementations of the dispatch ports.

Used by the ``memory`` storage backend and by tests.  Compare-and-set
writes take a per-incident ``asyncio.Lock`` so they behave like the
conditional UPDATEs of the Postgres repositories; every read returns a
copy so callers can never mutate stored state.
"""
from __future__ import annotations

import asyncio
import copy
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional

from app.core.dispatch.domain import (
    DispatchEvent,
    EventType,
    Incident,
    IncidentStatus,
    IncidentType,
    Location,
    Offer,
    OfferStatus,
    TimelineEntry,
    Timer,
    Vendor,
    WaitReason,
    utc_now,
)
from app.core.dispatch.match_config import ConfigAuditRecord, ConfigVersion, MatchConfig
from app.core.dispatch.scoring import haversine_miles
from app.core.errors import UpstreamError
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


# ============================================================================
# INCIDENTS
# ============================================================================

_INCIDENT_FIELDS = frozenset({
    "status", "assigned_vendor_id", "assigned_at", "matching_attempts",
    "search_radius_miles", "round_config", "round_offer_count", "escalated_at",
    "excluded_vendor_ids", "assignment_cycle", "waiting_until", "wait_reason", "updated_at",
})

_RESUMABLE_WAITS = (WaitReason.MATCHING, WaitReason.OFFER_RESPONSE, WaitReason.VENDOR_ARRIVAL)


class InMemoryIncidentRepository:

    def __init__(self):
        self._incidents: dict[str, Incident] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def create(self, incident: Incident) -> bool:
        async with self._locks[incident.id]:
            if incident.id in self._incidents:
                return False
            self._incidents[incident.id] = copy.deepcopy(incident)
            return True

    async def get(self, incident_id: str) -> Optional[Incident]:
        incident = self._incidents.get(incident_id)
        return copy.deepcopy(incident) if incident else None

    async def compare_and_set(
        self,
        incident_id: str,
        *,
        expected: dict[str, Any],
        changes: dict[str, Any],
        entry: Optional[TimelineEntry] = None,
    ) -> Optional[Incident]:
        unknown = (set(expected) | set(changes)) - _INCIDENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown incident fields: {sorted(unknown)}")

        async with self._locks[incident_id]:
            incident = self._incidents.get(incident_id)
            if incident is None:
                return None
            if any(getattr(incident, name) != value for name, value in expected.items()):
                return None

            for name, value in changes.items():
                setattr(incident, name, copy.deepcopy(value))
            if entry is not None:
                incident.timeline.append(entry)
            return copy.deepcopy(incident)

    async def list_assigned_to(self, vendor_id: str, statuses: Iterable[IncidentStatus]) -> list[Incident]:
        wanted = set(statuses)
        return [
            copy.deepcopy(i) for i in self._incidents.values()
            if i.assigned_vendor_id == vendor_id and i.status in wanted
        ]

    async def list_overdue(self, now: datetime, limit: int = 100) -> list[Incident]:
        overdue = [
            i for i in self._incidents.values()
            if i.waiting_until is not None
            and i.waiting_until <= now
            and i.wait_reason in _RESUMABLE_WAITS
        ]
        overdue.sort(key=lambda i: i.waiting_until)
        return [copy.deepcopy(i) for i in overdue[:limit]]


# ============================================================================
# OFFERS
# ============================================================================

class InMemoryOfferRepository:

    def __init__(self):
        self._offers: dict[str, Offer] = {}
        self._lock = asyncio.Lock()

    def _has_accepted(self, offer: Offer) -> bool:
        # Same rule as the partial unique index on offers
        return any(
            o.id != offer.id
            and o.incident_id == offer.incident_id
            and o.assignment_cycle == offer.assignment_cycle
            and o.status == OfferStatus.ACCEPTED
            for o in self._offers.values()
        )

    async def create_many(self, offers: list[Offer]) -> None:
        async with self._lock:
            for offer in offers:
                self._offers[offer.id] = copy.deepcopy(offer)

    async def get(self, offer_id: str) -> Optional[Offer]:
        offer = self._offers.get(offer_id)
        return copy.deepcopy(offer) if offer else None

    async def list_for_incident(
        self,
        incident_id: str,
        *,
        round_number: Optional[int] = None,
        status: Optional[OfferStatus] = None,
    ) -> list[Offer]:
        offers = [
            o for o in self._offers.values()
            if o.incident_id == incident_id
            and (round_number is None or o.round_number == round_number)
            and (status is None or o.status == status)
        ]
        offers.sort(key=lambda o: (o.round_number, -o.match_score, o.vendor_id))
        return [copy.deepcopy(o) for o in offers]

    async def list_for_vendor(self, vendor_id: str, *, status: Optional[OfferStatus] = None) -> list[Offer]:
        offers = [
            o for o in self._offers.values()
            if o.vendor_id == vendor_id and (status is None or o.status == status)
        ]
        offers.sort(key=lambda o: (o.created_at, o.id), reverse=True)
        return [copy.deepcopy(o) for o in offers]

    async def transition(
        self,
        offer_id: str,
        *,
        from_status: OfferStatus,
        to_status: OfferStatus,
        responded_at: datetime,
        decline_reason: Optional[str] = None,
        not_expired_at: Optional[datetime] = None,
    ) -> Optional[Offer]:
        async with self._lock:
            offer = self._offers.get(offer_id)
            if offer is None or offer.status != from_status:
                return None
            if not_expired_at is not None and offer.expires_at <= not_expired_at:
                return None
            if to_status == OfferStatus.ACCEPTED and self._has_accepted(offer):
                return None
            offer.status = to_status
            offer.responded_at = responded_at
            if decline_reason is not None:
                offer.decline_reason = decline_reason
            return copy.deepcopy(offer)


# ============================================================================
# MATCH CONFIG
# ============================================================================

class InMemoryMatchConfigRepository:

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._versions: list[ConfigVersion] = []
        self._audit: list[ConfigAuditRecord] = []
        self._lock = asyncio.Lock()
        self._clock = clock

    async def get_current(self) -> Optional[ConfigVersion]:
        return self._versions[-1] if self._versions else None

    async def get_version(self, version: int) -> Optional[ConfigVersion]:
        for v in self._versions:
            if v.version == version:
                return v
        return None

    async def save_version(
        self,
        config: MatchConfig,
        *,
        actor: str,
        action: str,
        reason: Optional[str] = None,
        description: Optional[str] = None,
    ) -> ConfigVersion:
        async with self._lock:
            now = self._clock()
            previous = self._versions[-1] if self._versions else None
            saved = ConfigVersion(
                version=(previous.version + 1) if previous else 1,
                config=config,
                created_by=actor,
                created_at=now,
                description=description,
            )
            self._versions.append(saved)
            self._audit.append(ConfigAuditRecord(
                audit_id=str(uuid.uuid4()),
                action=action,
                version=saved.version,
                previous_value=previous.config.model_dump() if previous else None,
                new_value=config.model_dump(),
                actor=actor,
                reason=reason,
                timestamp=now,
            ))
            return saved

    async def list_versions(self, limit: int = 20) -> list[ConfigVersion]:
        return list(reversed(self._versions))[:limit]

    async def list_audit(self, limit: int = 50) -> list[ConfigAuditRecord]:
        return list(reversed(self._audit))[:limit]


# ============================================================================
# COLLABORATORS
# ============================================================================

class InMemoryVendorRoster:
    """
    Static roster: a vendor is returned when its coverage circle
    intersects the search circle.

    ``fail_next`` makes the next N queries raise UpstreamError.
    """

    def __init__(self, vendors: Iterable[Vendor] = ()):
        self._vendors: dict[str, Vendor] = {v.id: v for v in vendors}
        self.queries: list[tuple[Location, float, IncidentType]] = []
        self.fail_next = 0

    def add(self, vendor: Vendor) -> None:
        self._vendors[vendor.id] = vendor

    async def find_vendors(
        self, center: Location, radius_miles: float, incident_type: IncidentType
    ) -> list[Vendor]:
        self.queries.append((center, radius_miles, incident_type))
        if self.fail_next > 0:
            self.fail_next -= 1
            raise UpstreamError("Roster unavailable")
        return [
            copy.deepcopy(v) for v in self._vendors.values()
            if haversine_miles(v.coverage_center, center) <= radius_miles + v.coverage_radius_miles
        ]


class InMemoryEventPublisher:
    """Collects published events; optionally forwards them to a callback."""

    def __init__(self, forward: Optional[Callable[[DispatchEvent], Awaitable[None]]] = None):
        self.events: list[DispatchEvent] = []
        self._forward = forward

    async def publish(self, event: DispatchEvent) -> None:
        self.events.append(event)
        logger.info(
            f"Event: {event.event_type.value}",
            extra={"incident_id": event.incident_id},
        )
        if self._forward is not None:
            await self._forward(event)

    def of_type(self, event_type: EventType) -> list[DispatchEvent]:
        return [e for e in self.events if e.event_type == event_type]


class InMemoryTimerScheduler:
    """
    Keeps scheduled timers in memory, deduplicated by key.

    Tests fire timers explicitly with ``fire_due``; the ``memory`` backend
    runs ``run`` as a background task.
    """

    def __init__(self):
        self._timers: dict[str, Timer] = {}
        self._fired: set[str] = set()
        self.history: list[Timer] = []

    async def schedule(self, timer: Timer) -> None:
        key = timer.key or f"{timer.kind.value}:{timer.incident_id}:{timer.due_at.isoformat()}"
        if key in self._timers or key in self._fired:
            return
        self._timers[key] = timer
        self.history.append(timer)

    @property
    def pending(self) -> list[Timer]:
        return sorted(self._timers.values(), key=lambda t: t.due_at)

    def pop_due(self, now: datetime) -> list[Timer]:
        due = [(k, t) for k, t in self._timers.items() if t.due_at <= now]
        for key, _ in due:
            del self._timers[key]
            self._fired.add(key)
        return sorted((t for _, t in due), key=lambda t: t.due_at)

    async def fire_due(self, handler: Callable[[Timer], Awaitable[Any]], now: datetime) -> int:
        """Fire every timer due at ``now`` (including ones scheduled while firing)."""
        fired = 0
        while True:
            batch = self.pop_due(now)
            if not batch:
                return fired
            for timer in batch:
                await handler(timer)
                fired += 1

    async def run(
        self,
        handler: Callable[[Timer], Awaitable[Any]],
        clock: Callable[[], datetime] = utc_now,
        poll_interval: float = 1.0,
    ) -> None:
        while True:
            try:
                await self.fire_due(handler, clock())
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"In-memory timer loop error: {exc}", exc_info=True)
            await asyncio.sleep(poll_interval)
