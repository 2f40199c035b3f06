# app/core/dispatch/scoring.py
"""
Vendor scoring: a pure function of (vendor, incident, config).

No I/O and no shared state, so the match engine can score candidates
in any order and replays always produce the same ranking.
"""
from __future__ import annotations

import math

from app.core.dispatch.domain import (
    Incident,
    IncidentType,
    Location,
    ScoreBreakdown,
    Vendor,
    VendorAvailability,
)
from app.core.dispatch.match_config import MatchConfig

EARTH_RADIUS_MILES = 3958.8
METERS_PER_MILE = 1609.344

# Capabilities that can serve each incident type, primary service first.
CAPABILITY_MAP: dict[IncidentType, tuple[str, ...]] = {
    IncidentType.TIRE: ("tire_repair", "tire_replacement"),
    IncidentType.ENGINE: ("engine_repair",),
    IncidentType.TOW: ("towing",),
}


def haversine_miles(a: Location, b: Location) -> float:
    """Great-circle distance between two points in statute miles."""
    lat1, lon1 = math.radians(a.lat), math.radians(a.lon)
    lat2, lon2 = math.radians(b.lat), math.radians(b.lon)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_MILES * math.asin(min(1.0, math.sqrt(h)))


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def distance_score(distance_miles: float, coverage_radius_miles: float) -> float:
    """1.0 at the coverage center, falling linearly to 0 at the coverage edge."""
    if coverage_radius_miles <= 0:
        return 1.0 if distance_miles == 0 else 0.0
    return max(0.0, 1.0 - distance_miles / coverage_radius_miles)


def has_capability(vendor: Vendor, incident_type: IncidentType) -> bool:
    return any(cap in vendor.capabilities for cap in CAPABILITY_MAP[incident_type])


def score_vendor(vendor: Vendor, incident: Incident, config: MatchConfig) -> tuple[float, ScoreBreakdown]:
    """
    Score how well ``vendor`` fits ``incident``.

    Returns:
        (total in [0, 1], per-factor breakdown)
    """
    distance = haversine_miles(vendor.coverage_center, incident.location)

    breakdown = ScoreBreakdown(
        distance=distance_score(distance, vendor.coverage_radius_miles),
        capability=1.0 if has_capability(vendor, incident.type) else 0.0,
        availability=1.0 if vendor.availability == VendorAvailability.AVAILABLE else 0.0,
        acceptance_rate=_clamp(vendor.metrics.acceptance_rate),
        rating=_clamp(vendor.rating.average / 5.0),
    )

    w = config.weights
    total = (
        w.distance * breakdown.distance
        + w.capability * breakdown.capability
        + w.availability * breakdown.availability
        + w.acceptance_rate * breakdown.acceptance_rate
        + w.rating * breakdown.rating
    )
    return _clamp(total), breakdown


def estimate_payout_cents(vendor: Vendor, incident: Incident) -> int:
    """
    Base price plus mileage for the vendor's matching service.

    Uses the first capability (in ``CAPABILITY_MAP`` order) the vendor
    has a price for; 0 when it has none.
    """
    for service in CAPABILITY_MAP[incident.type]:
        price = vendor.pricing.get(service)
        if price is None:
            continue
        miles = haversine_miles(vendor.coverage_center, incident.location)
        return int(round(price.base_price_cents + miles * price.per_mile_cents))
    return 0
