# app/core/dispatch/offers.py
"""
Offer lifecycle: pending -> accepted | declined | expired.

First-accept-wins is enforced by two compare-and-set writes: the offer
(pending and not past its deadline) and then the incident's assignment
slot (status ``created`` with no vendor).  Losing the second write rolls
the offer back to ``declined`` so an accepted offer always corresponds to
the incident's assigned vendor.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from app.core.dispatch.domain import (
    Incident,
    IncidentStatus,
    Offer,
    OfferStatus,
    TimelineEntry,
    utc_now,
)
from app.core.dispatch.match_config import MatchConfig
from app.core.dispatch.matching import Candidate
from app.core.dispatch.ports import IncidentRepository, OfferRepository
from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.infra.logging_config import LogContext, get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

ASSIGNMENT_LOST_REASON = "assignment_lost"


@dataclass
class AcceptOutcome:
    offer: Offer
    incident: Incident
    withdrawn: list[Offer] = field(default_factory=list)


async def claim_incident(
    incidents: IncidentRepository,
    incident_id: str,
    *,
    vendor_id: str,
    actor_id: str,
    reason: str,
    now: datetime,
    extra_changes: Optional[dict[str, Any]] = None,
) -> Optional[Incident]:
    """
    Assign ``vendor_id`` if the incident is still unassigned in ``created``.

    Returns the updated incident, or None when another assignment won.
    """
    changes: dict[str, Any] = {
        "status": IncidentStatus.VENDOR_ASSIGNED,
        "assigned_vendor_id": vendor_id,
        "assigned_at": now,
        "waiting_until": None,
        "wait_reason": None,
        "updated_at": now,
    }
    if extra_changes:
        changes.update(extra_changes)

    return await incidents.compare_and_set(
        incident_id,
        expected={"status": IncidentStatus.CREATED, "assigned_vendor_id": None},
        changes=changes,
        entry=TimelineEntry(
            from_status=IncidentStatus.CREATED,
            to_status=IncidentStatus.VENDOR_ASSIGNED,
            timestamp=now,
            actor=actor_id,
            reason=reason,
        ),
    )


class OfferLifecycleManager:

    def __init__(
        self,
        offers: OfferRepository,
        incidents: IncidentRepository,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._offers = offers
        self._incidents = incidents
        self._clock = clock

    async def create_offers(
        self,
        incident_id: str,
        candidates: list[Candidate],
        config: MatchConfig,
        round_number: int,
        *,
        assignment_cycle: int = 0,
    ) -> list[Offer]:
        """
        Issue pending offers to ranked candidates.

        Candidates without the required capability never receive an offer,
        however high their other factors rank them.  The floor is applied
        before the round limit, so a capable vendor ranked below the limit
        still gets an offer when mismatched vendors outrank it.
        """
        now = self._clock()
        expires_at = now + timedelta(seconds=config.offer_timeout_seconds)
        capable = [c for c in candidates if c.breakdown.capability > 0]

        offers = [
            Offer(
                id=str(uuid.uuid4()),
                incident_id=incident_id,
                vendor_id=c.vendor.id,
                round_number=round_number,
                match_score=c.score,
                breakdown=c.breakdown,
                status=OfferStatus.PENDING,
                estimated_payout_cents=c.estimated_payout_cents,
                created_at=now,
                expires_at=expires_at,
                assignment_cycle=assignment_cycle,
            )
            for c in capable[:config.max_offers_per_incident]
        ]

        skipped = len(candidates) - len(capable)
        if skipped:
            logger.info(
                f"Skipped {skipped} candidate(s) without required capability",
                extra={"incident_id": incident_id},
            )

        if offers:
            await self._offers.create_many(offers)
            DispatchMetrics.offers_created(len(offers))
        return offers

    async def _get_for_vendor(self, offer_id: str, vendor_id: str) -> Offer:
        offer = await self._offers.get(offer_id)
        if offer is None:
            raise NotFoundError(f"Offer {offer_id} not found")
        if offer.vendor_id != vendor_id:
            raise ValidationError("Offer does not belong to this vendor")
        if offer.status != OfferStatus.PENDING:
            DispatchMetrics.offer_conflict("not_pending")
            raise ConflictError(f"Offer is already {offer.status.value}")
        return offer

    async def _expire_on_the_spot(self, offer: Offer, now: datetime) -> None:
        await self._offers.transition(
            offer.id,
            from_status=OfferStatus.PENDING,
            to_status=OfferStatus.EXPIRED,
            responded_at=now,
        )
        DispatchMetrics.offer_conflict("expired")
        raise ConflictError("Offer has expired")

    async def accept(
        self,
        offer_id: str,
        vendor_id: str,
        *,
        extra_changes: Optional[dict[str, Any]] = None,
    ) -> AcceptOutcome:
        """
        Accept an offer and claim its incident for the vendor.

        Args:
            extra_changes: additional incident fields written atomically with
                the assignment (e.g. the arrival deadline)

        Raises:
            NotFoundError: no such offer
            ValidationError: offer addressed to another vendor
            ConflictError: offer not pending, expired, or incident already assigned
        """
        offer = await self._get_for_vendor(offer_id, vendor_id)
        log = LogContext(logger, incident_id=offer.incident_id, offer_id=offer_id, vendor_id=vendor_id)

        now = self._clock()
        if now >= offer.expires_at:
            await self._expire_on_the_spot(offer, now)

        accepted = await self._offers.transition(
            offer_id,
            from_status=OfferStatus.PENDING,
            to_status=OfferStatus.ACCEPTED,
            responded_at=now,
            not_expired_at=now,
        )
        if accepted is None:
            current = await self._offers.get(offer_id)
            if current is not None and current.status == OfferStatus.PENDING and now < current.expires_at:
                # Blocked by a sibling offer that is already accepted
                DispatchMetrics.offer_conflict("assignment_lost")
                raise ConflictError("Incident is already assigned to another vendor")
            DispatchMetrics.offer_conflict("offer_race")
            raise ConflictError("Offer is no longer pending")

        incident = await claim_incident(
            self._incidents,
            offer.incident_id,
            vendor_id=vendor_id,
            actor_id=vendor_id,
            reason=f"Accepted offer {offer_id}",
            now=now,
            extra_changes=extra_changes,
        )
        if incident is None:
            await self._offers.transition(
                offer_id,
                from_status=OfferStatus.ACCEPTED,
                to_status=OfferStatus.DECLINED,
                responded_at=now,
                decline_reason=ASSIGNMENT_LOST_REASON,
            )
            DispatchMetrics.offer_conflict("assignment_lost")
            log.info("Offer accept lost the assignment race")
            raise ConflictError("Incident is already assigned to another vendor")

        DispatchMetrics.offer_resolved(OfferStatus.ACCEPTED.value)
        log.info("Offer accepted, vendor assigned")

        withdrawn: list[Offer] = []
        try:
            withdrawn = await self.withdraw_pending(offer.incident_id, except_offer_id=offer_id)
        except Exception as exc:
            # Siblings will still expire on their own deadline.
            log.warning(f"Failed to withdraw sibling offers: {exc}", exc_info=True)

        return AcceptOutcome(offer=accepted, incident=incident, withdrawn=withdrawn)

    async def decline(self, offer_id: str, vendor_id: str, reason: Optional[str] = None) -> Offer:
        """Decline a pending offer.  Sibling offers are unaffected."""
        offer = await self._get_for_vendor(offer_id, vendor_id)

        now = self._clock()
        if now >= offer.expires_at:
            await self._expire_on_the_spot(offer, now)

        declined = await self._offers.transition(
            offer_id,
            from_status=OfferStatus.PENDING,
            to_status=OfferStatus.DECLINED,
            responded_at=now,
            decline_reason=reason,
            not_expired_at=now,
        )
        if declined is None:
            DispatchMetrics.offer_conflict("offer_race")
            raise ConflictError("Offer is no longer pending")

        DispatchMetrics.offer_resolved(OfferStatus.DECLINED.value)
        logger.info(
            f"Offer declined: reason={reason or '-'}",
            extra={"incident_id": offer.incident_id, "offer_id": offer_id, "vendor_id": vendor_id},
        )
        return declined

    async def expire(self, offer_id: str) -> Optional[Offer]:
        """
        Expire a pending offer whose deadline has passed.

        Idempotent: terminal offers and offers still inside their window are
        returned unchanged.
        """
        offer = await self._offers.get(offer_id)
        if offer is None or offer.is_terminal:
            return offer

        now = self._clock()
        if now < offer.expires_at:
            return offer

        expired = await self._offers.transition(
            offer_id,
            from_status=OfferStatus.PENDING,
            to_status=OfferStatus.EXPIRED,
            responded_at=now,
        )
        if expired is None:
            return await self._offers.get(offer_id)

        DispatchMetrics.offer_resolved(OfferStatus.EXPIRED.value)
        return expired

    async def withdraw_pending(
        self, incident_id: str, except_offer_id: Optional[str] = None
    ) -> list[Offer]:
        """Force every pending offer of the incident to ``expired``, deadline or not."""
        pending = await self._offers.list_for_incident(incident_id, status=OfferStatus.PENDING)
        return await self.withdraw([o for o in pending if o.id != except_offer_id])

    async def withdraw(self, offers: list[Offer]) -> list[Offer]:
        now = self._clock()
        withdrawn = []
        for offer in offers:
            result = await self._offers.transition(
                offer.id,
                from_status=OfferStatus.PENDING,
                to_status=OfferStatus.EXPIRED,
                responded_at=now,
            )
            if result is not None:
                withdrawn.append(result)
                DispatchMetrics.offer_resolved(OfferStatus.EXPIRED.value)
        return withdrawn

    async def pending_count(self, incident_id: str, round_number: Optional[int] = None) -> int:
        pending = await self._offers.list_for_incident(
            incident_id, round_number=round_number, status=OfferStatus.PENDING
        )
        return len(pending)
