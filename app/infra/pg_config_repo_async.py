# app/infra/pg_config_repo_async.py
"""
Async PostgreSQL repository for versioned MatchConfig.

Each save is one transaction under an advisory lock: read the current
version, insert ``version + 1`` and its audit record.  Versions are never
updated or deleted; a rollback is a new version carrying an old value.
"""
from __future__ import annotations

import json
from typing import Optional

import asyncpg

from app.core.dispatch.match_config import ConfigAuditRecord, ConfigVersion, MatchConfig
from app.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

_CONFIG_LOCK_KEY = "match_config"


def _json(value):
    return json.loads(value) if isinstance(value, str) else value


def _row_to_version(row: asyncpg.Record) -> ConfigVersion:
    return ConfigVersion(
        version=row["version"],
        config=MatchConfig.model_validate(_json(row["config"])),
        created_by=row["created_by"],
        created_at=row["created_at"],
        description=row["description"],
    )


def _row_to_audit(row: asyncpg.Record) -> ConfigAuditRecord:
    return ConfigAuditRecord(
        audit_id=str(row["audit_id"]),
        action=row["action"],
        version=row["version"],
        previous_value=_json(row["previous_value"]),
        new_value=_json(row["new_value"]),
        actor=row["actor"],
        reason=row["reason"],
        timestamp=row["created_at"],
    )


class AsyncPostgresMatchConfigRepository:

    @retry_on_transient_error()
    async def get_current(self) -> Optional[ConfigVersion]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM match_config_versions ORDER BY version DESC LIMIT 1"
            )
            return _row_to_version(row) if row else None

    @retry_on_transient_error()
    async def get_version(self, version: int) -> Optional[ConfigVersion]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM match_config_versions WHERE version = $1", version
            )
            return _row_to_version(row) if row else None

    async def save_version(
        self,
        config: MatchConfig,
        *,
        actor: str,
        action: str,
        reason: Optional[str] = None,
        description: Optional[str] = None,
    ) -> ConfigVersion:
        new_value = json.dumps(config.model_dump())
        try:
            async with safe_db_conn(autocommit=False) as conn:
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", _CONFIG_LOCK_KEY)
                previous = await conn.fetchrow(
                    "SELECT version, config FROM match_config_versions ORDER BY version DESC LIMIT 1"
                )
                next_version = (previous["version"] + 1) if previous else 1

                row = await conn.fetchrow(
                    """
                    INSERT INTO match_config_versions (version, config, created_by, description)
                    VALUES ($1, $2::jsonb, $3, $4)
                    RETURNING *
                    """,
                    next_version,
                    new_value,
                    actor,
                    description,
                )
                await conn.execute(
                    """
                    INSERT INTO match_config_audit (action, version, previous_value, new_value, actor, reason)
                    VALUES ($1, $2, $3::jsonb, $4::jsonb, $5, $6)
                    """,
                    action,
                    next_version,
                    json.dumps(_json(previous["config"])) if previous else None,
                    new_value,
                    actor,
                    reason,
                )
                return _row_to_version(row)
        except Exception:
            logger.error(f"Failed to save match config ({action}) by {actor}", exc_info=True)
            DispatchMetrics.database_error("match_config_save")
            raise

    @retry_on_transient_error()
    async def list_versions(self, limit: int = 20) -> list[ConfigVersion]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM match_config_versions ORDER BY version DESC LIMIT $1", limit
            )
            return [_row_to_version(row) for row in rows]

    @retry_on_transient_error()
    async def list_audit(self, limit: int = 50) -> list[ConfigAuditRecord]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM match_config_audit ORDER BY created_at DESC LIMIT $1", limit
            )
            return [_row_to_audit(row) for row in rows]
