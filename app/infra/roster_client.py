# app/infra/roster_client.py
"""
HTTP client for the vendor roster service.

The roster is owned by another system; it answers "which vendors cover
this circle" with eventually-consistent availability and metrics.  Any
transport failure or malformed answer surfaces as ``UpstreamError`` so the
orchestrator's retry policy can handle it.

Expected response::

    {"vendors": [{"id": "v-1", "business_name": "...", "capabilities": ["tire_repair"],
                  "coverage": {"lat": 40.7, "lon": -74.0, "radius_miles": 25},
                  "availability": {"status": "available", "updated_at": "..."},
                  "metrics": {"acceptance_rate": 0.9, ...},
                  "rating": {"average": 4.6, "count": 120},
                  "pricing": {"tire_repair": {"base_price_cents": 7500, "per_mile_cents": 250}}}]}
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

import aiohttp

from app.core.dispatch.domain import (
    IncidentType,
    Location,
    ServicePrice,
    Vendor,
    VendorAvailability,
    VendorMetrics,
    VendorRating,
)
from app.core.errors import UpstreamError
from app.infra.http_client import get_roster_session
from app.infra.logging_config import get_logger
from app.infra.metrics import observe_histogram

logger = get_logger(__name__)


def vendor_from_dict(data: dict[str, Any]) -> Vendor:
    """Build a Vendor from a roster record.  Raises KeyError/ValueError on malformed input."""
    coverage = data["coverage"]
    availability = data.get("availability") or {}
    metrics = data.get("metrics") or {}
    rating = data.get("rating") or {}
    updated_at = availability.get("updated_at")

    return Vendor(
        id=str(data["id"]),
        business_name=data.get("business_name", ""),
        capabilities=frozenset(data.get("capabilities") or ()),
        coverage_center=Location(lat=float(coverage["lat"]), lon=float(coverage["lon"])),
        coverage_radius_miles=float(coverage["radius_miles"]),
        availability=VendorAvailability(availability.get("status", "offline")),
        availability_updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        metrics=VendorMetrics(
            acceptance_rate=float(metrics.get("acceptance_rate", 0.0)),
            completion_rate=float(metrics.get("completion_rate", 0.0)),
            avg_response_minutes=float(metrics.get("avg_response_minutes", 0.0)),
            total_jobs=int(metrics.get("total_jobs", 0)),
        ),
        rating=VendorRating(
            average=float(rating.get("average", 0.0)),
            count=int(rating.get("count", 0)),
        ),
        pricing={
            service: ServicePrice(
                base_price_cents=int(price["base_price_cents"]),
                per_mile_cents=int(price.get("per_mile_cents", 0)),
            )
            for service, price in (data.get("pricing") or {}).items()
        },
    )


class HttpVendorRoster:

    def __init__(self, base_url: str):
        self._url = base_url

    async def find_vendors(
        self, center: Location, radius_miles: float, incident_type: IncidentType
    ) -> list[Vendor]:
        params = {
            "lat": f"{center.lat:.6f}",
            "lon": f"{center.lon:.6f}",
            "radius_miles": f"{radius_miles:.3f}",
            "incident_type": incident_type.value,
        }
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            session = get_roster_session()
            async with session.get(self._url, params=params) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise UpstreamError(f"Roster returned {resp.status}: {body[:200]}")
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise UpstreamError(f"Roster request failed: {exc.__class__.__name__}: {exc}") from exc
        finally:
            observe_histogram("roster_query_seconds", loop.time() - started)

        try:
            return [vendor_from_dict(v) for v in data.get("vendors", [])]
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise UpstreamError(f"Malformed roster response: {exc}") from exc
