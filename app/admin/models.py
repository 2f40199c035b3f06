# app/admin/models.py
"""
Pydantic request/response models for the match-config admin API.

These live *outside* the transport layer so the service can
validate payloads without depending on FastAPI.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class UpdateMatchConfigRequest(BaseModel):
    """Replace the live match config (validated before it is versioned)."""

    config: dict[str, Any] = Field(..., description="Full MatchConfig document")
    reason: str | None = Field(default=None, max_length=500, description="Why the change was made")
    description: str | None = Field(default=None, max_length=256, description="Label for the new version")

    @field_validator("config")
    @classmethod
    def config_must_be_nonempty(cls, v: dict) -> dict:
        if not v:
            raise ValueError("config must not be empty")
        return v


class RollbackMatchConfigRequest(BaseModel):
    """Re-publish an earlier version as a new version."""

    version: int = Field(..., ge=1)
    reason: str | None = Field(default=None, max_length=500)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class MatchConfigResponse(BaseModel):
    version: int | None = Field(description="None while the built-in defaults are live")
    config: dict[str, Any]
    created_by: str | None = None
    created_at: datetime | None = None
    description: str | None = None


class AuditRecordResponse(BaseModel):
    audit_id: str
    action: Literal["create", "update", "rollback"]
    version: int
    previous_value: dict[str, Any] | None
    new_value: dict[str, Any]
    actor: str
    reason: str | None
    timestamp: datetime


class MatchConfigHistoryResponse(BaseModel):
    versions: list[MatchConfigResponse] = Field(default_factory=list)
    audit: list[AuditRecordResponse] = Field(default_factory=list)
