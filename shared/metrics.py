"""
Shared metrics configuration for the CRM admission layer.
"""

import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector owns its registry so several collectors (one per service
    instance, or per test) never clash on metric names.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""
        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )
        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )
        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        if self.service_name == "admission":
            self._setup_admission_metrics()

    def _setup_admission_metrics(self):
        """Set up admission-gate metrics."""
        self._metrics["admission_decisions_total"] = Counter(
            "admission_decisions_total",
            "Admission decisions by outcome",
            ["gate", "decision", "reason"],
            registry=self.registry
        )
        self._metrics["admission_cache_hits_total"] = Counter(
            "admission_cache_hits_total",
            "Calls served from cache",
            ["gate", "source"],
            registry=self.registry
        )
        self._metrics["admission_store_errors_total"] = Counter(
            "admission_store_errors_total",
            "Dedupe store failures absorbed by fail-open handling",
            ["gate", "operation"],
            registry=self.registry
        )
        self._metrics["admission_evictions_total"] = Counter(
            "admission_evictions_total",
            "Local cache entries evicted for size",
            ["gate"],
            registry=self.registry
        )
        self._metrics["admission_cache_entries"] = Gauge(
            "admission_cache_entries",
            "Local cache entries held by a gate",
            ["gate"],
            registry=self.registry
        )
        self._metrics["admission_operation_duration_seconds"] = Histogram(
            "admission_operation_duration_seconds",
            "Guarded operation duration in seconds",
            ["endpoint"],
            registry=self.registry,
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

    def _labels(self, metric_name: str, **labels):
        """Return the labelled child, or None when this service has no such metric."""
        metric = self._metrics.get(metric_name)
        return metric.labels(**labels) if metric is not None else None

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()
        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_decision(self, gate: str, decision: str, reason: str = ""):
        """Count one admission decision (``proceed``, ``reject`` or ``serve_cached``)."""
        child = self._labels("admission_decisions_total", gate=gate, decision=decision, reason=reason)
        if child is not None:
            child.inc()

    def record_cache_hit(self, gate: str, source: str):
        child = self._labels("admission_cache_hits_total", gate=gate, source=source)
        if child is not None:
            child.inc()

    def record_store_error(self, gate: str, operation: str):
        child = self._labels("admission_store_errors_total", gate=gate, operation=operation)
        if child is not None:
            child.inc()

    def record_cache_size(self, gate: str, entries: int, evicted: int = 0):
        """Publish a gate's cache size and count entries evicted to reach it."""
        size = self._labels("admission_cache_entries", gate=gate)
        if size is not None:
            size.set(entries)
        evictions = self._labels("admission_evictions_total", gate=gate)
        if evictions is not None and evicted:
            evictions.inc(evicted)

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            child = self._labels(operation_name, **labels)
            if child is not None:
                child.observe(time.perf_counter() - start_time)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
