# app/infra/metrics.py
"""
Process-local counters and histograms, exposed at ``/metrics``.

Histograms keep a sliding window of recent samples so a long-running
dispatcher does not grow without bound; counters are cumulative.
"""
from __future__ import annotations
import time
from collections import defaultdict, deque
from threading import Lock
from typing import Dict
from dataclasses import dataclass, field
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

HISTOGRAM_WINDOW = 2048


@dataclass
class Counter:
    """Simple counter metric"""
    value: int = 0

    def inc(self, amount: int = 1) -> None:
        self.value += amount


@dataclass
class Histogram:
    """Recent distribution of values (matching time, roster latency, request time)"""
    values: deque = field(default_factory=lambda: deque(maxlen=HISTOGRAM_WINDOW))
    total_count: int = 0

    def observe(self, value: float) -> None:
        self.values.append(value)
        self.total_count += 1

    def get_stats(self) -> dict:
        if not self.values:
            return {"count": 0, "window": 0, "min": 0, "max": 0, "avg": 0, "p50": 0, "p95": 0, "p99": 0}

        sorted_values = sorted(self.values)
        window = len(sorted_values)

        def percentile(p: float) -> float:
            return sorted_values[min(int(window * p), window - 1)]

        return {
            "count": self.total_count,
            "window": window,
            "min": sorted_values[0],
            "max": sorted_values[-1],
            "avg": sum(sorted_values) / window,
            "p50": percentile(0.50),
            "p95": percentile(0.95),
            "p99": percentile(0.99),
        }


class MetricsCollector:
    """
    Lightweight metrics collection.
    Counters and histograms are process-local and exposed at /metrics.
    """

    def __init__(self):
        self._counters: Dict[str, Counter] = defaultdict(Counter)
        self._histograms: Dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        """Increment a counter metric"""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key].inc(amount)

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        """Add a value to histogram"""
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms[key].observe(value)

    def get_metrics(self) -> dict:
        """Get all current metrics"""
        with self._lock:
            counters = {k: v.value for k, v in self._counters.items()}
            histograms = {k: v.get_stats() for k, v in self._histograms.items()}

        return {
            "counters": counters,
            "histograms": histograms,
        }

    def reset(self) -> None:
        """Reset all metrics"""
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        """Create a metric key from name and labels"""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


# Global metrics collector
_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector"""
    return _metrics


# Convenience functions
def inc_counter(name: str, amount: int = 1, **labels) -> None:
    """Increment a counter metric"""
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    """Record a histogram value"""
    _metrics.observe_histogram(name, value, labels or None)


# Context manager for timing operations
class Timer:
    """Context manager to time operations"""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self.start_time: float | None = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            duration = time.perf_counter() - self.start_time
            observe_histogram(self.metric_name, duration, **self.labels)


# Dispatch metrics
class DispatchMetrics:
    """Dispatch-level metrics tracking"""

    @staticmethod
    def incident_received(incident_type: str) -> None:
        inc_counter("incidents_received_total", incident_type=incident_type)

    @staticmethod
    def round_started(attempt: int) -> None:
        inc_counter("matching_rounds_total", attempt=attempt)

    @staticmethod
    def offers_created(count: int) -> None:
        inc_counter("offers_created_total", amount=count)

    @staticmethod
    def offer_resolved(status: str) -> None:
        inc_counter("offers_resolved_total", status=status)

    @staticmethod
    def offer_conflict(reason: str) -> None:
        inc_counter("offer_conflicts_total", reason=reason)

    @staticmethod
    def escalated() -> None:
        inc_counter("incidents_escalated_total")

    @staticmethod
    def vendor_timeout() -> None:
        inc_counter("vendor_arrival_timeouts_total")

    @staticmethod
    def status_changed(to_status: str) -> None:
        inc_counter("incident_transitions_total", to_status=to_status)

    @staticmethod
    def upstream_failure(service: str) -> None:
        inc_counter("upstream_failures_total", service=service)

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)

    @staticmethod
    def track_matching_time(attempt: int) -> Timer:
        return Timer("matching_round_seconds", attempt=attempt)
