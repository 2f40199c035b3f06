# app/infra/pg_incident_repo_async.py
"""
Async PostgreSQL incident repository (asyncpg).

All state changes go through ``compare_and_set``: a single conditional
UPDATE whose WHERE clause carries the caller's expected prior state and
whose SET clause appends the timeline entry, so a lost race changes
nothing and is reported as ``None``.
"""
from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

import asyncpg

from app.core.dispatch.domain import (
    Incident,
    IncidentStatus,
    IncidentType,
    Location,
    TimelineEntry,
    WaitReason,
)
from app.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

# Incident fields that compare_and_set may read or write (column = field name).
_CAS_COLUMNS = frozenset({
    "status", "assigned_vendor_id", "assigned_at", "matching_attempts",
    "search_radius_miles", "round_config", "round_offer_count", "escalated_at",
    "excluded_vendor_ids", "assignment_cycle", "waiting_until", "wait_reason", "updated_at",
})

_CASTS = {
    "round_config": "::jsonb",
    "excluded_vendor_ids": "::text[]",
}


def _encode(name: str, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if name == "round_config":
        return json.dumps(value)
    if name == "excluded_vendor_ids":
        return list(value)
    return value


def _json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def _row_to_incident(row: asyncpg.Record) -> Incident:
    location = _json(row["location"])
    return Incident(
        id=row["id"],
        driver_id=row["driver_id"],
        type=IncidentType(row["incident_type"]),
        location=Location(
            lat=location["lat"],
            lon=location["lon"],
            address=location.get("address"),
            details=location.get("details") or {},
        ),
        status=IncidentStatus(row["status"]),
        assigned_vendor_id=row["assigned_vendor_id"],
        assigned_at=row["assigned_at"],
        timeline=[TimelineEntry.from_dict(e) for e in _json(row["timeline"]) or []],
        matching_attempts=row["matching_attempts"],
        search_radius_miles=row["search_radius_miles"],
        round_config=_json(row["round_config"]),
        round_offer_count=row["round_offer_count"],
        escalated_at=row["escalated_at"],
        excluded_vendor_ids=list(row["excluded_vendor_ids"] or []),
        assignment_cycle=row["assignment_cycle"],
        waiting_until=row["waiting_until"],
        wait_reason=WaitReason(row["wait_reason"]) if row["wait_reason"] else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def build_cas_update(
    incident_id: str,
    expected: dict[str, Any],
    changes: dict[str, Any],
    entry: Optional[TimelineEntry],
) -> tuple[str, list[Any]]:
    """Build the conditional UPDATE for compare_and_set.  Returns (sql, params)."""
    unknown = (set(expected) | set(changes)) - _CAS_COLUMNS
    if unknown:
        raise ValueError(f"Unknown incident fields: {sorted(unknown)}")

    params: list[Any] = [incident_id]
    assignments = []
    for name, value in changes.items():
        params.append(_encode(name, value))
        assignments.append(f"{name} = ${len(params)}{_CASTS.get(name, '')}")
    if entry is not None:
        params.append(json.dumps([entry.to_dict()]))
        assignments.append(f"timeline = timeline || ${len(params)}::jsonb")

    conditions = ["id = $1"]
    for name, value in expected.items():
        if value is None:
            conditions.append(f"{name} IS NULL")
        else:
            params.append(_encode(name, value))
            conditions.append(f"{name} = ${len(params)}{_CASTS.get(name, '')}")

    sql = (
        f"UPDATE incidents SET {', '.join(assignments)} "
        f"WHERE {' AND '.join(conditions)} RETURNING *"
    )
    return sql, params


class AsyncPostgresIncidentRepository:

    async def create(self, incident: Incident) -> bool:
        location = {
            "lat": incident.location.lat,
            "lon": incident.location.lon,
            "address": incident.location.address,
            "details": incident.location.details,
        }
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO incidents (id, driver_id, incident_type, location, status,
                                           waiting_until, wait_reason, created_at, updated_at)
                    VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8, $9)
                    ON CONFLICT (id) DO NOTHING
                    RETURNING id
                    """,
                    incident.id,
                    incident.driver_id,
                    incident.type.value,
                    json.dumps(location),
                    incident.status.value,
                    incident.waiting_until,
                    incident.wait_reason.value if incident.wait_reason else None,
                    incident.created_at,
                    incident.updated_at,
                )
                return row is not None
        except Exception:
            logger.error("Failed to create incident", exc_info=True, extra={"incident_id": incident.id})
            DispatchMetrics.database_error("incident_create")
            raise

    @retry_on_transient_error()
    async def get(self, incident_id: str) -> Optional[Incident]:
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow("SELECT * FROM incidents WHERE id = $1", incident_id)
                return _row_to_incident(row) if row else None
        except Exception:
            logger.error("Failed to get incident", exc_info=True, extra={"incident_id": incident_id})
            DispatchMetrics.database_error("incident_get")
            raise

    async def compare_and_set(
        self,
        incident_id: str,
        *,
        expected: dict[str, Any],
        changes: dict[str, Any],
        entry: Optional[TimelineEntry] = None,
    ) -> Optional[Incident]:
        sql, params = build_cas_update(incident_id, expected, changes, entry)
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(sql, *params)
        except asyncpg.CheckViolationError:
            logger.error(
                "Incident update violates assignment/status invariant",
                exc_info=True,
                extra={"incident_id": incident_id},
            )
            raise
        except Exception:
            logger.error("Failed to update incident", exc_info=True, extra={"incident_id": incident_id})
            DispatchMetrics.database_error("incident_cas")
            raise

        if row is None:
            logger.debug(
                f"Incident CAS precondition failed: expected={sorted(expected)}",
                extra={"incident_id": incident_id},
            )
            return None
        return _row_to_incident(row)

    @retry_on_transient_error()
    async def list_assigned_to(self, vendor_id: str, statuses: Iterable[IncidentStatus]) -> list[Incident]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM incidents WHERE assigned_vendor_id = $1 AND status = ANY($2::text[])",
                vendor_id,
                [s.value for s in statuses],
            )
            return [_row_to_incident(row) for row in rows]

    @retry_on_transient_error()
    async def list_overdue(self, now: datetime, limit: int = 100) -> list[Incident]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM incidents
                WHERE waiting_until <= $1
                  AND wait_reason IN ('matching', 'offer_response', 'vendor_arrival')
                ORDER BY waiting_until
                LIMIT $2
                """,
                now,
                limit,
            )
            return [_row_to_incident(row) for row in rows]
