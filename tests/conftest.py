# tests/conftest.py
"""Pytest configuration and fixtures"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from app.core.dispatch.domain import (
    Incident,
    IncidentCreated,
    IncidentType,
    Location,
    OfferStatus,
    ServicePrice,
    Vendor,
    VendorAvailability,
    VendorMetrics,
    VendorRating,
)
from app.core.dispatch.match_config import DEFAULT_MATCH_CONFIG
from app.core.dispatch.orchestrator import IncidentOrchestrator
from app.infra.config_cache import MatchConfigCache
from app.infra.memory_store import (
    InMemoryEventPublisher,
    InMemoryIncidentRepository,
    InMemoryMatchConfigRepository,
    InMemoryOfferRepository,
    InMemoryTimerScheduler,
    InMemoryVendorRoster,
)

# Lower Manhattan
INCIDENT_LAT = 40.7128
INCIDENT_LON = -74.0060


class FakeClock:
    """Deterministic clock; tests move time explicitly."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, *, minutes: float = 0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, minutes=minutes)
        return self.now


class StaticConfigProvider:
    def __init__(self, config=DEFAULT_MATCH_CONFIG):
        self.config = config

    async def get_config(self):
        return self.config


def make_vendor(
    vendor_id: str,
    *,
    capabilities: tuple[str, ...] = ("tire_repair",),
    lat: float = INCIDENT_LAT,
    lon: float = INCIDENT_LON,
    radius_miles: float = 25.0,
    availability: VendorAvailability = VendorAvailability.AVAILABLE,
    acceptance_rate: float = 0.9,
    rating: float = 4.5,
    base_price_cents: int = 7500,
    per_mile_cents: int = 200,
) -> Vendor:
    return Vendor(
        id=vendor_id,
        business_name=f"{vendor_id} Roadside",
        capabilities=frozenset(capabilities),
        coverage_center=Location(lat=lat, lon=lon),
        coverage_radius_miles=radius_miles,
        availability=availability,
        metrics=VendorMetrics(acceptance_rate=acceptance_rate, completion_rate=0.95, total_jobs=120),
        rating=VendorRating(average=rating, count=80),
        pricing={
            cap: ServicePrice(base_price_cents=base_price_cents, per_mile_cents=per_mile_cents)
            for cap in capabilities
        },
    )


def make_incident(
    incident_id: str = "inc-1",
    *,
    incident_type: IncidentType = IncidentType.TIRE,
    lat: float = INCIDENT_LAT,
    lon: float = INCIDENT_LON,
    driver_id: str = "driver-1",
) -> Incident:
    return Incident(
        id=incident_id,
        driver_id=driver_id,
        type=incident_type,
        location=Location(lat=lat, lon=lon),
    )


def intake_event(
    incident_id: str = "inc-1",
    *,
    incident_type: IncidentType = IncidentType.TIRE,
    driver_id: str = "driver-1",
    lat: float = INCIDENT_LAT,
    lon: float = INCIDENT_LON,
) -> IncidentCreated:
    return IncidentCreated(
        incident_id=incident_id,
        driver_id=driver_id,
        type=incident_type,
        location=Location(lat=lat, lon=lon, details={"road": "highway"}),
    )


class Harness:
    """Orchestrator wired to in-memory collaborators."""

    def __init__(self, vendors=(), *, config=DEFAULT_MATCH_CONFIG, upstream_max_retries: int = 3):
        self.clock = FakeClock()
        self.incidents = InMemoryIncidentRepository()
        self.offers = InMemoryOfferRepository()
        self.roster = InMemoryVendorRoster(vendors)
        self.publisher = InMemoryEventPublisher()
        self.scheduler = InMemoryTimerScheduler()
        self.config_provider = StaticConfigProvider(config)
        self.sleep = AsyncMock()
        self.orchestrator = IncidentOrchestrator(
            incidents=self.incidents,
            offers=self.offers,
            roster=self.roster,
            publisher=self.publisher,
            scheduler=self.scheduler,
            config_provider=self.config_provider,
            clock=self.clock,
            upstream_max_retries=upstream_max_retries,
            sleep=self.sleep,
        )

    async def fire_due(self) -> int:
        return await self.scheduler.fire_due(self.orchestrator.handle_timer, self.clock())

    async def pending_offers(self, incident_id: str = "inc-1"):
        return await self.offers.list_for_incident(incident_id, status=OfferStatus.PENDING)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def harness_factory():
    return Harness


@pytest.fixture
def config_repo():
    return InMemoryMatchConfigRepository()


@pytest.fixture
def config_cache(config_repo):
    return MatchConfigCache(config_repo, ttl_seconds=60.0)
