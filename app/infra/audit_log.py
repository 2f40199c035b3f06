# app/infra/audit_log.py
"""
Audit logging for match-configuration changes and manual dispatch actions.

Events go to a dedicated logger named "audit" so they can be routed to a
separate sink. Config changes are additionally persisted as audit records
by the config repository; this log is the operational trail.
"""
from __future__ import annotations

import logging
from typing import Any

_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    actor: str | None = None,
    incident_id: str | None = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Action name (e.g., "match_config.update", "incident.manual_assign")
        actor: Who performed the action
        incident_id: Incident affected (if applicable)
        detail: Human-readable detail
        extra: Additional structured context
    """
    record = {
        "audit_action": action,
        "actor": actor or "",
        "detail": detail,
    }
    if incident_id:
        record["incident_id"] = incident_id
    if extra:
        record.update(extra)

    _audit_logger.info(
        f"AUDIT: {action} actor={actor or '-'} incident={incident_id or '-'} {detail}",
        extra=record,
    )
