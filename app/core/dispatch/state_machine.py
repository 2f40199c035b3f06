# app/core/dispatch/state_machine.py
"""
Incident status transitions and who may request them.

``TRANSITIONS`` lists the transitions an actor can request.  The
arrival-timeout rollback to ``created`` is performed by the orchestrator
as a system-internal transition and is deliberately absent here.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from app.core.dispatch.domain import (
    Actor,
    ActorRole,
    Incident,
    IncidentStatus as S,
    TimelineEntry,
)
from app.core.errors import AuthorizationError, ValidationError

TRANSITIONS: dict[S, frozenset[S]] = {
    S.CREATED: frozenset({S.VENDOR_ASSIGNED, S.CANCELLED}),
    S.VENDOR_ASSIGNED: frozenset({S.VENDOR_EN_ROUTE, S.CANCELLED}),
    S.VENDOR_EN_ROUTE: frozenset({S.VENDOR_ARRIVED, S.CANCELLED}),
    S.VENDOR_ARRIVED: frozenset({S.WORK_IN_PROGRESS, S.CANCELLED}),
    S.WORK_IN_PROGRESS: frozenset({S.WORK_COMPLETED, S.CANCELLED}),
    S.WORK_COMPLETED: frozenset({S.PAYMENT_PENDING}),
    S.PAYMENT_PENDING: frozenset({S.CLOSED}),
    S.CLOSED: frozenset(),
    S.CANCELLED: frozenset(),
}

NON_CANCELLABLE = frozenset({S.WORK_COMPLETED, S.PAYMENT_PENDING, S.CLOSED, S.CANCELLED})


def can_transition(current: S, target: S) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def validate_transition(current: S, target: S) -> None:
    """Raise ValidationError unless ``current -> target`` is in the table."""
    if target == S.CANCELLED and current in NON_CANCELLABLE:
        raise ValidationError(f"Cannot cancel an incident in status '{current.value}'")
    if not can_transition(current, target):
        raise ValidationError(
            f"Invalid status transition: {current.value} -> {target.value}"
        )


def authorize(actor: Actor, incident: Incident, target: S) -> None:
    """
    Check that ``actor`` may request ``target`` on ``incident``.

    drivers may only cancel their own incident; vendors may only act on
    incidents currently assigned to them; dispatchers and the system may
    act on any incident.
    """
    if actor.role in (ActorRole.DISPATCHER, ActorRole.SYSTEM):
        return

    if actor.role == ActorRole.DRIVER:
        if target != S.CANCELLED:
            raise AuthorizationError("Drivers may only cancel incidents")
        if incident.driver_id != actor.id:
            raise AuthorizationError("Drivers may only cancel their own incidents")
        return

    if actor.role == ActorRole.VENDOR:
        if incident.assigned_vendor_id != actor.id:
            raise AuthorizationError("Vendor is not assigned to this incident")
        return

    raise AuthorizationError(f"Role '{actor.role}' may not update incidents")


def make_entry(
    current: Optional[S],
    target: S,
    *,
    actor_id: str,
    timestamp: datetime,
    reason: Optional[str] = None,
) -> TimelineEntry:
    return TimelineEntry(
        from_status=current,
        to_status=target,
        timestamp=timestamp,
        actor=actor_id,
        reason=reason,
    )
