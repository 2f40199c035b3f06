# app/admin/service.py
"""
Match-config admin service: the single orchestration point for reading
and changing the live matching configuration.

Responsibilities:
    1. Validate the new config (weights sum to 1, radius and offer bounds)
    2. Persist it as a new version together with its audit record
    3. Invalidate the config cache so the next matching round sees it
    4. Emit an audit log event

The transport layer (http_app.py admin routes) is a thin adapter:
    parse request -> call service -> map DispatchError -> return JSON.
"""
from __future__ import annotations

from app.admin.models import (
    AuditRecordResponse,
    MatchConfigHistoryResponse,
    MatchConfigResponse,
    RollbackMatchConfigRequest,
    UpdateMatchConfigRequest,
)
from app.core.dispatch.match_config import (
    DEFAULT_MATCH_CONFIG,
    ConfigVersion,
    parse_match_config,
)
from app.core.dispatch.ports import MatchConfigRepository
from app.core.errors import NotFoundError, ValidationError
from app.infra.audit_log import audit_event
from app.infra.config_cache import MatchConfigCache
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


def _to_response(version: ConfigVersion) -> MatchConfigResponse:
    return MatchConfigResponse(
        version=version.version,
        config=version.config.model_dump(),
        created_by=version.created_by,
        created_at=version.created_at,
        description=version.description,
    )


class MatchConfigAdminService:
    """Stateless apart from its collaborators; safe to share."""

    def __init__(self, repo: MatchConfigRepository, cache: MatchConfigCache) -> None:
        self._repo = repo
        self._cache = cache

    async def get_current(self) -> MatchConfigResponse:
        current = await self._repo.get_current()
        if current is None:
            return MatchConfigResponse(version=None, config=DEFAULT_MATCH_CONFIG.model_dump())
        return _to_response(current)

    async def update(self, req: UpdateMatchConfigRequest, *, actor: str) -> MatchConfigResponse:
        """
        Validate and publish a new config version.

        Raises:
            ValidationError: config violates a bound or the weight-sum rule
        """
        config = parse_match_config(req.config)

        current = await self._repo.get_current()
        action = "update" if current else "create"
        saved = await self._repo.save_version(
            config,
            actor=actor,
            action=action,
            reason=req.reason,
            description=req.description,
        )
        self._cache.invalidate()

        audit_event(
            f"match_config.{action}",
            actor=actor,
            detail=f"version={saved.version} reason={req.reason or '-'}",
        )
        return _to_response(saved)

    async def rollback(self, req: RollbackMatchConfigRequest, *, actor: str) -> MatchConfigResponse:
        """Publish the value of an earlier version as a new version."""
        target = await self._repo.get_version(req.version)
        if target is None:
            raise NotFoundError(f"Match config version {req.version} not found")

        current = await self._repo.get_current()
        if current is not None and current.version == target.version:
            raise ValidationError(f"Version {req.version} is already live")

        saved = await self._repo.save_version(
            target.config,
            actor=actor,
            action="rollback",
            reason=req.reason,
            description=f"Rollback to version {target.version}",
        )
        self._cache.invalidate()

        audit_event(
            "match_config.rollback",
            actor=actor,
            detail=f"to={target.version} new_version={saved.version} reason={req.reason or '-'}",
        )
        return _to_response(saved)

    async def history(self, limit: int = 20) -> MatchConfigHistoryResponse:
        versions = await self._repo.list_versions(limit)
        audit = await self._repo.list_audit(limit)
        return MatchConfigHistoryResponse(
            versions=[_to_response(v) for v in versions],
            audit=[AuditRecordResponse(**a.model_dump()) for a in audit],
        )
