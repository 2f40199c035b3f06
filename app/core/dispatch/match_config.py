# app/core/dispatch/match_config.py
"""
Matching configuration (weights, radius policy, offer policy).

Validated with pydantic so an invalid config is rejected before it is
persisted.  A matching round snapshots the config it started with
(``Incident.round_config``) and keeps using it even if an admin changes
the live config mid-round.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from app.core.errors import ValidationError

WEIGHT_SUM_TOLERANCE = 1e-3


class MatchWeights(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    distance: float = Field(0.30, ge=0.0, le=1.0)
    capability: float = Field(0.25, ge=0.0, le=1.0)
    availability: float = Field(0.20, ge=0.0, le=1.0)
    acceptance_rate: float = Field(0.15, ge=0.0, le=1.0)
    rating: float = Field(0.10, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _weights_sum_to_one(self) -> "MatchWeights":
        total = self.distance + self.capability + self.availability + self.acceptance_rate + self.rating
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ValueError(f"weights must sum to 1.0 (got {total:.4f})")
        return self


class MatchConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    weights: MatchWeights = Field(default_factory=MatchWeights)
    default_radius_miles: float = Field(50.0, gt=0)
    max_radius_miles: float = Field(200.0, gt=0)
    radius_expansion_factor: float = Field(0.25, gt=0.0, lt=1.0)
    max_expansion_attempts: int = Field(3, ge=1, le=10)
    offer_timeout_seconds: int = Field(120, ge=30, le=600)
    max_offers_per_incident: int = Field(3, ge=1, le=10)

    @model_validator(mode="after")
    def _max_radius_exceeds_default(self) -> "MatchConfig":
        if self.max_radius_miles <= self.default_radius_miles:
            raise ValueError("max_radius_miles must be greater than default_radius_miles")
        return self

    def next_radius(self, current: float) -> float:
        """Radius for the following round, capped at ``max_radius_miles``."""
        return min(current * (1 + self.radius_expansion_factor), self.max_radius_miles)


DEFAULT_MATCH_CONFIG = MatchConfig()


def parse_match_config(data: dict[str, Any]) -> MatchConfig:
    """Build a MatchConfig from untrusted input, raising the domain ValidationError."""
    try:
        return MatchConfig.model_validate(data)
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ValidationError(f"Invalid match config: {problems}") from exc


class ConfigVersion(BaseModel):
    version: int
    config: MatchConfig
    created_by: str
    created_at: datetime
    description: str | None = None


class ConfigAuditRecord(BaseModel):
    audit_id: str
    action: Literal["create", "update", "rollback"]
    version: int
    previous_value: dict[str, Any] | None = None
    new_value: dict[str, Any]
    actor: str
    reason: str | None = None
    timestamp: datetime
