# app/transport/schemas.py
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from app.core.dispatch.domain import (
    Incident,
    IncidentCreated,
    IncidentStatus,
    IncidentType,
    Location,
    Offer,
    OfferStatus,
    VendorPosition,
)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class LocationIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    address: str | None = Field(default=None, max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)

    def to_domain(self) -> Location:
        return Location(lat=self.lat, lon=self.lon, address=self.address, details=self.details)


class IncidentCreatedIn(BaseModel):
    incident_id: str = Field(min_length=1, max_length=64)
    driver_id: str = Field(min_length=1, max_length=64)
    type: IncidentType
    location: LocationIn
    created_at: datetime | None = None

    def to_domain(self) -> IncidentCreated:
        return IncidentCreated(
            incident_id=self.incident_id,
            driver_id=self.driver_id,
            type=self.type,
            location=self.location.to_domain(),
            created_at=self.created_at,
        )


class OfferResponseIn(BaseModel):
    vendor_id: str = Field(min_length=1, max_length=64)


class DeclineOfferIn(OfferResponseIn):
    reason: str | None = Field(default=None, max_length=500)


class StatusUpdateIn(BaseModel):
    status: IncidentStatus
    reason: str | None = Field(default=None, max_length=500)


class AssignVendorIn(BaseModel):
    vendor_id: str = Field(min_length=1, max_length=64)
    reason: str | None = Field(default=None, max_length=500)


class VendorPositionIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    timestamp: datetime | None = None

    def to_domain(self, vendor_id: str) -> VendorPosition:
        return VendorPosition(vendor_id=vendor_id, lat=self.lat, lon=self.lon, timestamp=self.timestamp)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class TimelineEntryOut(BaseModel):
    from_status: IncidentStatus | None = Field(serialization_alias="from")
    to_status: IncidentStatus = Field(serialization_alias="to")
    timestamp: datetime
    actor: str
    reason: str | None = None


class IncidentOut(BaseModel):
    id: str
    driver_id: str
    type: IncidentType
    location: LocationIn
    status: IncidentStatus
    assigned_vendor_id: str | None
    assigned_at: datetime | None
    matching_attempts: int
    search_radius_miles: float | None
    escalated_at: datetime | None
    waiting_until: datetime | None
    wait_reason: str | None
    excluded_vendor_ids: list[str]
    timeline: list[TimelineEntryOut]
    created_at: datetime | None
    updated_at: datetime | None

    @classmethod
    def from_domain(cls, incident: Incident) -> "IncidentOut":
        loc = incident.location
        return cls(
            id=incident.id,
            driver_id=incident.driver_id,
            type=incident.type,
            location=LocationIn(lat=loc.lat, lon=loc.lon, address=loc.address, details=loc.details),
            status=incident.status,
            assigned_vendor_id=incident.assigned_vendor_id,
            assigned_at=incident.assigned_at,
            matching_attempts=incident.matching_attempts,
            search_radius_miles=incident.search_radius_miles,
            escalated_at=incident.escalated_at,
            waiting_until=incident.waiting_until,
            wait_reason=incident.wait_reason.value if incident.wait_reason else None,
            excluded_vendor_ids=list(incident.excluded_vendor_ids),
            timeline=[
                TimelineEntryOut(
                    from_status=e.from_status,
                    to_status=e.to_status,
                    timestamp=e.timestamp,
                    actor=e.actor,
                    reason=e.reason,
                )
                for e in incident.timeline
            ],
            created_at=incident.created_at,
            updated_at=incident.updated_at,
        )


class OfferOut(BaseModel):
    id: str
    incident_id: str
    vendor_id: str
    round_number: int
    match_score: float
    score_breakdown: dict[str, float]
    status: OfferStatus
    estimated_payout_cents: int
    created_at: datetime
    expires_at: datetime
    responded_at: datetime | None
    decline_reason: str | None

    @classmethod
    def from_domain(cls, offer: Offer) -> "OfferOut":
        return cls(
            id=offer.id,
            incident_id=offer.incident_id,
            vendor_id=offer.vendor_id,
            round_number=offer.round_number,
            match_score=offer.match_score,
            score_breakdown=offer.breakdown.as_dict(),
            status=offer.status,
            estimated_payout_cents=offer.estimated_payout_cents,
            created_at=offer.created_at,
            expires_at=offer.expires_at,
            responded_at=offer.responded_at,
            decline_reason=offer.decline_reason,
        )


class AcceptOfferOut(BaseModel):
    offer: OfferOut
    incident: IncidentOut


class PositionOut(BaseModel):
    vendor_id: str
    arrived_incident_ids: list[str]
