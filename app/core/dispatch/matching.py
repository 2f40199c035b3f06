# app/core/dispatch/matching.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from app.core.dispatch.domain import Incident, ScoreBreakdown, Vendor
from app.core.dispatch.match_config import MatchConfig
from app.core.dispatch.ports import VendorRoster
from app.core.dispatch.scoring import estimate_payout_cents, haversine_miles, score_vendor
from app.infra.logging_config import get_logger, mask_coordinates

logger = get_logger(__name__)


@dataclass(frozen=True)
class Candidate:
    vendor: Vendor
    score: float
    breakdown: ScoreBreakdown
    distance_miles: float
    estimated_payout_cents: int


class MatchEngine:
    """
    Find and rank vendors for one matching round.

    Capability-mismatched vendors are still ranked (the capability weight
    pushes them down); the offer manager decides whether they get offers.
    """

    def __init__(self, roster: VendorRoster):
        self._roster = roster

    async def find_candidates(
        self,
        incident: Incident,
        radius_miles: float,
        config: MatchConfig,
        exclude: Iterable[str] = (),
        capable_only: bool = False,
    ) -> list[Candidate]:
        """
        Query the roster around the incident and return the top candidates.

        Sorted by score descending, ties broken by vendor id ascending,
        truncated to ``config.max_offers_per_incident``.  With
        ``capable_only`` vendors lacking the incident's capability are
        dropped before truncation.

        Raises:
            UpstreamError: roster query failed
        """
        vendors = await self._roster.find_vendors(incident.location, radius_miles, incident.type)
        excluded = set(exclude)

        candidates = []
        for vendor in vendors:
            if vendor.id in excluded:
                continue
            score, breakdown = score_vendor(vendor, incident, config)
            candidates.append(Candidate(
                vendor=vendor,
                score=score,
                breakdown=breakdown,
                distance_miles=haversine_miles(vendor.coverage_center, incident.location),
                estimated_payout_cents=estimate_payout_cents(vendor, incident),
            ))

        if capable_only:
            candidates = [c for c in candidates if c.breakdown.capability > 0]
        candidates.sort(key=lambda c: (-c.score, c.vendor.id))
        ranked = candidates[:config.max_offers_per_incident]

        logger.info(
            f"Match round: {len(vendors)} vendors in {radius_miles:.1f} mi of "
            f"{mask_coordinates(incident.location.lat, incident.location.lon)}, "
            f"{len(excluded)} excluded, {len(ranked)} ranked",
            extra={"incident_id": incident.id},
        )
        return ranked
