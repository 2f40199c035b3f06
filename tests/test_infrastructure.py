# tests/test_infrastructure.py
"""Tests for infrastructure components"""
import pytest
from unittest.mock import AsyncMock, patch

import asyncpg
from asyncpg.exceptions import PostgresError
from pydantic import ValidationError

from app.config import Settings, warn_on_risky_config
from app.infra.db_resilience_async import is_transient_error, retry_on_transient_error
from app.infra.logging_config import mask_coordinates
from app.infra.metrics import DispatchMetrics, Histogram, MetricsCollector, get_metrics_collector


class TestDatabaseResilience:
    def test_is_transient_error_connection_error(self):
        exc = PostgresError("connection timeout")
        assert is_transient_error(exc) is True

    def test_is_transient_error_server_closed(self):
        exc = PostgresError("server closed the connection unexpectedly")
        assert is_transient_error(exc) is True

    def test_is_transient_error_non_transient(self):
        exc = ValueError("some other error")
        assert is_transient_error(exc) is False

    def test_unique_violation_is_not_transient(self):
        exc = asyncpg.UniqueViolationError("duplicate key value")
        assert is_transient_error(exc) is False

    @pytest.mark.asyncio
    async def test_retry_decorator_succeeds_on_first_try(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3)
        async def successful_operation():
            nonlocal call_count
            call_count += 1
            return "success"

        result = await successful_operation()
        assert result == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retry_decorator_succeeds_after_transient_error(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3, initial_delay=0.01)
        async def operation_with_transient_error():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise PostgresError("connection timeout")
            return "success"

        result = await operation_with_transient_error()
        assert result == "success"
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_retry_decorator_raises_non_transient_immediately(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3)
        async def operation_with_non_transient_error():
            nonlocal call_count
            call_count += 1
            raise ValueError("not a transient error")

        with pytest.raises(ValueError):
            await operation_with_non_transient_error()

        assert call_count == 1  # Should not retry

    @pytest.mark.asyncio
    async def test_retry_decorator_gives_up(self):
        call_count = 0

        @retry_on_transient_error(max_retries=2, initial_delay=0.01)
        async def always_down():
            nonlocal call_count
            call_count += 1
            raise ConnectionError("connection refused")

        with patch("app.infra.db_resilience_async.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(ConnectionError):
                await always_down()

        assert call_count == 3


class TestMetrics:
    def test_metrics_counter_increment(self):
        collector = MetricsCollector()
        collector.inc_counter("test_counter", 1)
        collector.inc_counter("test_counter", 2)

        metrics = collector.get_metrics()
        assert metrics["counters"]["test_counter"] == 3

    def test_metrics_histogram_observe(self):
        collector = MetricsCollector()
        collector.observe_histogram("test_histogram", 0.1)
        collector.observe_histogram("test_histogram", 0.2)
        collector.observe_histogram("test_histogram", 0.5)

        metrics = collector.get_metrics()
        stats = metrics["histograms"]["test_histogram"]
        assert stats["count"] == 3
        assert stats["min"] == 0.1
        assert stats["max"] == 0.5

    def test_metrics_with_labels(self):
        collector = MetricsCollector()
        collector.inc_counter("offers_resolved_total", 1, {"status": "accepted"})
        collector.inc_counter("offers_resolved_total", 2, {"status": "expired"})

        metrics = collector.get_metrics()
        assert "offers_resolved_total{status=accepted}" in metrics["counters"]
        assert "offers_resolved_total{status=expired}" in metrics["counters"]

    def test_histogram_window_is_bounded(self):
        histogram = Histogram()
        for value in range(3000):
            histogram.observe(float(value))

        stats = histogram.get_stats()
        assert stats["count"] == 3000
        assert stats["window"] == 2048
        assert stats["min"] == 952.0

    def test_dispatch_metrics_use_global_collector(self):
        collector = get_metrics_collector()
        collector.reset()

        DispatchMetrics.offers_created(3)
        DispatchMetrics.escalated()
        with DispatchMetrics.track_matching_time(attempt=2):
            pass

        metrics = collector.get_metrics()
        assert metrics["counters"]["offers_created_total"] == 3
        assert metrics["counters"]["incidents_escalated_total"] == 1
        assert metrics["histograms"]["matching_round_seconds{attempt=2}"]["count"] == 1
        collector.reset()


class TestLogMasking:
    def test_coordinates_rounded(self):
        assert mask_coordinates(40.7128, -74.006) == "40.7**, -74.0**"


class TestRunModeConfig:
    """Tests for RUN_MODE configuration."""

    def test_default_run_mode_is_all(self):
        s = Settings(_env_file=None)
        assert s.run_mode == "all"

    def test_run_mode_web(self):
        s = Settings(run_mode="web", _env_file=None)
        assert s.run_mode == "web"

    def test_run_mode_worker(self):
        s = Settings(run_mode="worker", _env_file=None)
        assert s.run_mode == "worker"

    def test_run_mode_invalid_rejected(self):
        with pytest.raises(ValidationError):
            Settings(run_mode="poller", _env_file=None)

    def test_job_worker_enabled_by_default(self):
        """Timers only fire through the worker, so it runs unless switched off."""
        s = Settings(_env_file=None)
        assert s.job_worker_enabled is True

    def test_storage_backend(self):
        assert Settings(_env_file=None).uses_postgres is True
        assert Settings(storage_backend="memory", _env_file=None).uses_postgres is False
        with pytest.raises(ValidationError):
            Settings(storage_backend="redis", _env_file=None)

    def test_dispatch_defaults(self):
        s = Settings(_env_file=None)
        assert s.arrival_timeout_minutes == 30
        assert s.arrival_geofence_meters == 100.0


class TestConfigValidation:
    def test_dev_has_no_required_settings(self):
        s = Settings(app_env="dev", _env_file=None)
        assert s.validate_required_for_production() == []

    def test_prod_requires_upstreams(self):
        s = Settings(app_env="prod", roster_url=None, event_webhook_url=None, _env_file=None)
        missing = s.validate_required_for_production()
        assert "roster_url" in missing
        assert "event_webhook_url" in missing

    def test_prod_requires_postgres(self):
        s = Settings(
            app_env="prod",
            storage_backend="memory",
            roster_url="https://roster.test/search",
            event_webhook_url="https://events.test/hook",
            _env_file=None,
        )
        assert s.validate_required_for_production() == ["storage_backend=postgres"]

    def test_warns_about_memory_backend_and_missing_upstreams(self):
        s = Settings(storage_backend="memory", roster_url=None, event_webhook_url=None, _env_file=None)
        warnings = warn_on_risky_config(s)
        assert any("storage_backend=memory" in w for w in warnings)
        assert any("roster_url" in w for w in warnings)
        assert any("event_webhook_url" in w for w in warnings)

    def test_warns_when_worker_disabled_outside_web_mode(self):
        worker = Settings(run_mode="worker", job_worker_enabled=False, _env_file=None)
        web = Settings(run_mode="web", job_worker_enabled=False, _env_file=None)

        assert any("job_worker_enabled=False" in w for w in warn_on_risky_config(worker))
        assert not any("job_worker_enabled=False" in w for w in warn_on_risky_config(web))
