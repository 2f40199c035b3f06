# app/core/dispatch/domain.py
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS
# ============================================================================

class IncidentType(str, Enum):
    TIRE = "tire"
    ENGINE = "engine"
    TOW = "tow"


class IncidentStatus(str, Enum):
    CREATED = "created"
    VENDOR_ASSIGNED = "vendor_assigned"
    VENDOR_EN_ROUTE = "vendor_en_route"
    VENDOR_ARRIVED = "vendor_arrived"
    WORK_IN_PROGRESS = "work_in_progress"
    WORK_COMPLETED = "work_completed"
    PAYMENT_PENDING = "payment_pending"
    CLOSED = "closed"
    CANCELLED = "cancelled"


# An incident carries an assigned vendor exactly while it is in one of these.
ASSIGNED_STATUSES = frozenset({
    IncidentStatus.VENDOR_ASSIGNED,
    IncidentStatus.VENDOR_EN_ROUTE,
    IncidentStatus.VENDOR_ARRIVED,
    IncidentStatus.WORK_IN_PROGRESS,
    IncidentStatus.WORK_COMPLETED,
    IncidentStatus.PAYMENT_PENDING,
})

TERMINAL_STATUSES = frozenset({IncidentStatus.CLOSED, IncidentStatus.CANCELLED})

# Statuses in which the arrival watch is armed.
AWAITING_ARRIVAL_STATUSES = (IncidentStatus.VENDOR_ASSIGNED, IncidentStatus.VENDOR_EN_ROUTE)


class OfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class ActorRole(str, Enum):
    DRIVER = "driver"
    VENDOR = "vendor"
    DISPATCHER = "dispatcher"
    SYSTEM = "system"


class VendorAvailability(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class WaitReason(str, Enum):
    """What a persisted ``waiting_until`` deadline is waiting for."""
    MATCHING = "matching"
    OFFER_RESPONSE = "offer_response"
    VENDOR_ARRIVAL = "vendor_arrival"
    MANUAL_ASSIGNMENT = "manual_assignment"


class TimerKind(str, Enum):
    ROUND_TIMEOUT = "match_round_timeout"
    ARRIVAL_DEADLINE = "arrival_deadline"


class EventType(str, Enum):
    OFFER_CREATED = "OfferCreated"
    OFFER_ACCEPTED = "OfferAccepted"
    OFFER_DECLINED = "OfferDeclined"
    OFFER_EXPIRED = "OfferExpired"
    INCIDENT_STATUS_CHANGED = "IncidentStatusChanged"
    INCIDENT_ESCALATED = "IncidentEscalated"
    VENDOR_TIMEOUT = "VendorTimeout"


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class Location:
    lat: float
    lon: float
    address: Optional[str] = None
    # Opaque enrichment (weather, road type...), carried through untouched
    details: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class Actor:
    id: str
    role: ActorRole


SYSTEM_ACTOR = Actor(id="system", role=ActorRole.SYSTEM)


# ============================================================================
# VENDOR (read-only roster snapshot)
# ============================================================================

@dataclass
class VendorMetrics:
    acceptance_rate: float = 0.0
    completion_rate: float = 0.0
    avg_response_minutes: float = 0.0
    total_jobs: int = 0


@dataclass
class VendorRating:
    average: float = 0.0
    count: int = 0


@dataclass
class ServicePrice:
    base_price_cents: int
    per_mile_cents: int = 0


@dataclass
class Vendor:
    id: str
    business_name: str
    capabilities: frozenset[str]
    coverage_center: Location
    coverage_radius_miles: float
    availability: VendorAvailability = VendorAvailability.AVAILABLE
    availability_updated_at: Optional[datetime] = None
    metrics: VendorMetrics = field(default_factory=VendorMetrics)
    rating: VendorRating = field(default_factory=VendorRating)
    pricing: dict[str, ServicePrice] = field(default_factory=dict)


# ============================================================================
# INCIDENT
# ============================================================================

@dataclass(frozen=True)
class TimelineEntry:
    from_status: Optional[IncidentStatus]
    to_status: IncidentStatus
    timestamp: datetime
    actor: str
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.from_status.value if self.from_status else None,
            "to": self.to_status.value,
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TimelineEntry":
        return cls(
            from_status=IncidentStatus(data["from"]) if data.get("from") else None,
            to_status=IncidentStatus(data["to"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            actor=data["actor"],
            reason=data.get("reason"),
        )


@dataclass
class Incident:
    """
    A roadside-assistance request and its dispatch state.

    Mutated only through compare-and-set writes on the incident repository;
    ``timeline`` is append-only.  ``waiting_until``/``wait_reason`` persist
    what the orchestrator is waiting for so it can resume after a restart.
    """
    id: str
    driver_id: str
    type: IncidentType
    location: Location
    status: IncidentStatus = IncidentStatus.CREATED
    assigned_vendor_id: Optional[str] = None
    assigned_at: Optional[datetime] = None
    timeline: list[TimelineEntry] = field(default_factory=list)

    # Matching state
    matching_attempts: int = 0
    search_radius_miles: Optional[float] = None
    round_config: Optional[dict[str, Any]] = None
    round_offer_count: int = 0
    escalated_at: Optional[datetime] = None
    excluded_vendor_ids: list[str] = field(default_factory=list)
    # Bumped on every arrival timeout; scopes the one-accepted-offer rule
    assignment_cycle: int = 0

    # Durable wait
    waiting_until: Optional[datetime] = None
    wait_reason: Optional[WaitReason] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_escalated(self) -> bool:
        return self.wait_reason == WaitReason.MANUAL_ASSIGNMENT

    @property
    def last_entry(self) -> Optional[TimelineEntry]:
        return self.timeline[-1] if self.timeline else None


# ============================================================================
# OFFERS
# ============================================================================

@dataclass(frozen=True)
class ScoreBreakdown:
    distance: float
    capability: float
    availability: float
    acceptance_rate: float
    rating: float

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass
class Offer:
    id: str
    incident_id: str
    vendor_id: str
    round_number: int
    match_score: float
    breakdown: ScoreBreakdown
    status: OfferStatus
    estimated_payout_cents: int
    created_at: datetime
    expires_at: datetime
    responded_at: Optional[datetime] = None
    decline_reason: Optional[str] = None
    assignment_cycle: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status != OfferStatus.PENDING


# ============================================================================
# TIMERS / EVENTS
# ============================================================================

@dataclass(frozen=True)
class Timer:
    """
    "Check this incident again no earlier than ``due_at``".

    ``key`` deduplicates scheduling of the same logical timer; handlers
    still re-check persisted state, so redelivery is harmless.
    """
    kind: TimerKind
    incident_id: str
    due_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    key: str = ""


@dataclass(frozen=True)
class DispatchEvent:
    """Outbound fact consumed by notification and billing collaborators."""
    event_type: EventType
    incident_id: str
    occurred_at: datetime
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "incident_id": self.incident_id,
            "occurred_at": self.occurred_at.isoformat(),
            "data": self.data,
        }


@dataclass(frozen=True)
class IncidentCreated:
    """Inbound intake fact."""
    incident_id: str
    driver_id: str
    type: IncidentType
    location: Location
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class VendorPosition:
    vendor_id: str
    lat: float
    lon: float
    timestamp: Optional[datetime] = None
