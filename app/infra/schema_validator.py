# app/infra/schema_validator.py
"""
Startup schema check.

The application never migrates its own database: migrations run
separately (``python -m app.infra.migrate``) and the application refuses
to start unless the latest applied migration is
``settings.expected_schema_version``.
"""
from __future__ import annotations

from app.config import settings
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger
from app.infra.migrations_async import fetch_applied

logger = get_logger(__name__)

_RUN_MIGRATIONS_HINT = "Run migrations first: python -m app.infra.migrate"


async def validate_schema_version() -> dict:
    """
    Check the latest applied migration against the expected version.

    Raises:
        RuntimeError: schema missing, empty or at a different version
    """
    async with db_conn() as conn:
        applied = await fetch_applied(conn)

    if not applied:
        error = f"No migrations have been applied. {_RUN_MIGRATIONS_HINT}"
        logger.critical(error)
        raise RuntimeError(error)

    latest = applied[-1]
    current_version = latest["version"]
    if current_version != settings.expected_schema_version:
        error = (
            f"Schema version mismatch! Expected: {settings.expected_schema_version}, "
            f"Found: {current_version}. {_RUN_MIGRATIONS_HINT}"
        )
        logger.critical(error, extra={
            "expected": settings.expected_schema_version,
            "current": current_version,
        })
        raise RuntimeError(error)

    logger.info(f"Schema version validated: {current_version}")
    return {
        "ok": True,
        "current_version": current_version,
        "expected_version": settings.expected_schema_version,
        "applied_at": latest["applied_at"].isoformat(),
    }


async def get_schema_info() -> dict:
    """Schema state for the detailed health endpoint."""
    async with db_conn() as conn:
        applied = await fetch_applied(conn)

    latest = applied[-1]["version"] if applied else None
    return {
        "initialized": bool(applied),
        "migrations_applied": len(applied),
        "latest_version": latest,
        "expected_version": settings.expected_schema_version,
        "is_compatible": latest == settings.expected_schema_version,
    }
