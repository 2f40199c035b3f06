# app/infra/pg_offer_repo_async.py
"""
Async PostgreSQL offer repository (asyncpg).

Offer status changes are conditional UPDATEs on the prior status (and,
for responses, on the offer still being inside its window).  A partial
unique index allows at most one accepted offer per incident and
assignment cycle; hitting it is reported as a lost race.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import asyncpg

from app.core.dispatch.domain import Offer, OfferStatus, ScoreBreakdown
from app.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


def _row_to_offer(row: asyncpg.Record) -> Offer:
    breakdown = row["score_breakdown"]
    if isinstance(breakdown, str):
        breakdown = json.loads(breakdown)
    return Offer(
        id=row["id"],
        incident_id=row["incident_id"],
        vendor_id=row["vendor_id"],
        round_number=row["round_number"],
        match_score=row["match_score"],
        breakdown=ScoreBreakdown(**breakdown),
        status=OfferStatus(row["status"]),
        estimated_payout_cents=row["estimated_payout_cents"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        responded_at=row["responded_at"],
        decline_reason=row["decline_reason"],
        assignment_cycle=row["assignment_cycle"],
    )


class AsyncPostgresOfferRepository:

    async def create_many(self, offers: list[Offer]) -> None:
        if not offers:
            return
        try:
            async with safe_db_conn(autocommit=False) as conn:
                await conn.executemany(
                    """
                    INSERT INTO offers (id, incident_id, vendor_id, round_number, match_score,
                                        score_breakdown, status, estimated_payout_cents,
                                        created_at, expires_at, assignment_cycle)
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9, $10, $11)
                    """,
                    [
                        (
                            o.id, o.incident_id, o.vendor_id, o.round_number, o.match_score,
                            json.dumps(o.breakdown.as_dict()), o.status.value,
                            o.estimated_payout_cents, o.created_at, o.expires_at, o.assignment_cycle,
                        )
                        for o in offers
                    ],
                )
        except Exception:
            logger.error(
                f"Failed to create {len(offers)} offers",
                exc_info=True,
                extra={"incident_id": offers[0].incident_id},
            )
            DispatchMetrics.database_error("offer_create")
            raise

    @retry_on_transient_error()
    async def get(self, offer_id: str) -> Optional[Offer]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM offers WHERE id = $1", offer_id)
            return _row_to_offer(row) if row else None

    @retry_on_transient_error()
    async def list_for_incident(
        self,
        incident_id: str,
        *,
        round_number: Optional[int] = None,
        status: Optional[OfferStatus] = None,
    ) -> list[Offer]:
        conditions = ["incident_id = $1"]
        params: list[Any] = [incident_id]

        if round_number is not None:
            params.append(round_number)
            conditions.append(f"round_number = ${len(params)}")
        if status is not None:
            params.append(status.value)
            conditions.append(f"status = ${len(params)}")

        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"SELECT * FROM offers WHERE {' AND '.join(conditions)} "
                f"ORDER BY round_number, match_score DESC, vendor_id",
                *params,
            )
            return [_row_to_offer(row) for row in rows]

    @retry_on_transient_error()
    async def list_for_vendor(self, vendor_id: str, *, status: Optional[OfferStatus] = None) -> list[Offer]:
        params: list[Any] = [vendor_id]
        sql = "SELECT * FROM offers WHERE vendor_id = $1"
        if status is not None:
            params.append(status.value)
            sql += " AND status = $2"

        async with safe_db_conn() as conn:
            rows = await conn.fetch(f"{sql} ORDER BY created_at DESC, id DESC", *params)
            return [_row_to_offer(row) for row in rows]

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
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    """
                    UPDATE offers
                    SET status = $3,
                        responded_at = $4,
                        decline_reason = COALESCE($5, decline_reason)
                    WHERE id = $1
                      AND status = $2
                      AND ($6::timestamptz IS NULL OR expires_at > $6::timestamptz)
                    RETURNING *
                    """,
                    offer_id,
                    from_status.value,
                    to_status.value,
                    responded_at,
                    decline_reason,
                    not_expired_at,
                )
        except asyncpg.UniqueViolationError:
            # Another offer of the same incident and cycle is already accepted.
            logger.info("Offer accept blocked by an accepted sibling", extra={"offer_id": offer_id})
            return None
        except Exception:
            logger.error("Failed to transition offer", exc_info=True, extra={"offer_id": offer_id})
            DispatchMetrics.database_error("offer_transition")
            raise

        return _row_to_offer(row) if row else None
