# app/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    run_mode: Literal["all", "web", "worker"] = "all"
    log_level: str = "INFO"

    # Storage backend
    # "postgres" - asyncpg repositories + DB job queue (production)
    # "memory"   - in-process repositories, timers fired by asyncio (dev/demo)
    storage_backend: Literal["postgres", "memory"] = "postgres"

    # Database
    expected_schema_version: str = "001_dispatch_schema.sql"  # Update on deploy when new migrations are added
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 30000
    pg_idle_in_tx_timeout_ms: int = 30000

    # Job Worker (durable timers + outbound event delivery)
    job_worker_enabled: bool = True
    job_worker_poll_interval: float = 1.0     # Seconds between polls when idle
    job_worker_batch_size: int = 10           # Jobs claimed per poll cycle
    job_worker_base_retry_delay: float = 5.0  # Base delay for exponential backoff (seconds)
    job_worker_stale_timeout: int = 300       # Reset jobs stuck 'running' for this long (seconds)
    job_cleanup_completed_ttl_days: int = 7
    job_cleanup_failed_ttl_days: int = 30
    overdue_sweep_interval_seconds: int = 60  # How often waits past their deadline are re-driven

    # Dispatch
    arrival_timeout_minutes: int = 30
    arrival_geofence_meters: float = 100.0
    config_cache_ttl_seconds: float = 60.0

    # Vendor roster service
    roster_url: str | None = None             # e.g. https://roster.internal/vendors/search
    roster_timeout_seconds: float = 5.0
    upstream_max_retries: int = 3
    upstream_base_delay_seconds: float = 0.5

    # Outbound events
    event_webhook_url: str | None = None      # Receives OfferCreated, IncidentEscalated, ...
    event_webhook_timeout_seconds: float = 10.0
    event_max_attempts: int = 5

    # Monitoring
    enable_metrics: bool = True
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def uses_postgres(self) -> bool:
        return self.storage_backend == "postgres"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"host={self.pghost} port={self.pgport} "
            f"dbname={self.pgdatabase} user={self.pguser} "
            f"password={self.pgpassword} "
            f"connect_timeout={self.pg_connect_timeout} "
            f"options='-c statement_timeout={self.pg_statement_timeout_ms} "
            f"-c idle_in_transaction_session_timeout={self.pg_idle_in_tx_timeout_ms}'"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("roster_url", self.roster_url),
            ("event_webhook_url", self.event_webhook_url),
        ]
        if self.storage_backend != "postgres":
            required_fields.append(("storage_backend=postgres", None))

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.storage_backend == "memory":
        warnings.append("storage_backend=memory: incidents, offers and timers are lost on restart.")

    if not s.roster_url:
        warnings.append("roster_url is not set (vendor search falls back to the in-memory roster).")

    if not s.event_webhook_url:
        warnings.append("event_webhook_url is not set (outbound dispatch events are only logged).")

    if s.uses_postgres and not s.job_worker_enabled and s.run_mode != "web":
        warnings.append("job_worker_enabled=False: round timeouts and arrival deadlines will not fire.")

    if s.upstream_max_retries < 1:
        warnings.append("upstream_max_retries < 1: roster failures are never retried.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")


settings = Settings()
validate_or_warn(settings)
