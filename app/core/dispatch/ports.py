# app/core/dispatch/ports.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional, Protocol

from app.core.dispatch.domain import (
    DispatchEvent,
    Incident,
    IncidentStatus,
    IncidentType,
    Location,
    Offer,
    OfferStatus,
    TimelineEntry,
    Timer,
    Vendor,
)
from app.core.dispatch.match_config import ConfigAuditRecord, ConfigVersion, MatchConfig


# ============================================================================
# STORES
# ============================================================================

class IncidentRepository(Protocol):
    async def create(self, incident: Incident) -> bool:
        """False if an incident with this id already exists (replayed intake)."""
        ...

    async def get(self, incident_id: str) -> Optional[Incident]: ...

    async def compare_and_set(
        self,
        incident_id: str,
        *,
        expected: dict[str, Any],
        changes: dict[str, Any],
        entry: Optional[TimelineEntry] = None,
    ) -> Optional[Incident]:
        """
        Apply ``changes`` (and append ``entry``) only if every field in
        ``expected`` still holds.  Returns the updated incident, or None
        when the precondition failed.  Atomic.
        """
        ...

    async def list_assigned_to(
        self, vendor_id: str, statuses: Iterable[IncidentStatus]
    ) -> list[Incident]: ...

    async def list_overdue(self, now: datetime, limit: int = 100) -> list[Incident]:
        """Incidents whose matching, offer-response or arrival wait is due by ``now``."""
        ...


class OfferRepository(Protocol):
    async def create_many(self, offers: list[Offer]) -> None: ...

    async def get(self, offer_id: str) -> Optional[Offer]: ...

    async def list_for_incident(
        self,
        incident_id: str,
        *,
        round_number: Optional[int] = None,
        status: Optional[OfferStatus] = None,
    ) -> list[Offer]: ...

    async def list_for_vendor(
        self, vendor_id: str, *, status: Optional[OfferStatus] = None
    ) -> list[Offer]:
        """Offers addressed to the vendor, newest first."""
        ...

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
        """
        Move an offer ``from_status`` -> ``to_status`` atomically.

        With ``not_expired_at`` the write also requires ``expires_at`` to be
        later than that instant.  Returns None when the precondition failed.
        """
        ...


class MatchConfigRepository(Protocol):
    async def get_current(self) -> Optional[ConfigVersion]: ...

    async def get_version(self, version: int) -> Optional[ConfigVersion]: ...

    async def save_version(
        self,
        config: MatchConfig,
        *,
        actor: str,
        action: str,
        reason: Optional[str] = None,
        description: Optional[str] = None,
    ) -> ConfigVersion:
        """Persist ``config`` as the next version and write its audit record atomically."""
        ...

    async def list_versions(self, limit: int = 20) -> list[ConfigVersion]: ...

    async def list_audit(self, limit: int = 50) -> list[ConfigAuditRecord]: ...


# ============================================================================
# COLLABORATORS
# ============================================================================

class VendorRoster(Protocol):
    async def find_vendors(
        self, center: Location, radius_miles: float, incident_type: IncidentType
    ) -> list[Vendor]:
        """Vendors whose coverage circle intersects the search circle.  Raises UpstreamError."""
        ...


class EventPublisher(Protocol):
    async def publish(self, event: DispatchEvent) -> None: ...


class TimerScheduler(Protocol):
    async def schedule(self, timer: Timer) -> None: ...


class MatchConfigProvider(Protocol):
    async def get_config(self) -> MatchConfig: ...
