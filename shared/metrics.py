"""
Shared metrics configuration for the Facility Access Layer.
"""

from prometheus_client import Counter, Histogram, Info, CollectorRegistry
from typing import Dict, Any, Optional


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # One registry per collector so that several service instances
        # (tests, workers) never clash on metric names.
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

        # HTTP metrics
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

        if self.service_name == "access":
            self._setup_access_metrics()

    def _setup_access_metrics(self):
        """Set up access-control specific metrics."""
        self._metrics["access_decisions_total"] = Counter(
            "access_decisions_total",
            "Total access decisions",
            ["decision", "code"],
            registry=self.registry
        )

        self._metrics["access_evaluation_duration_seconds"] = Histogram(
            "access_evaluation_duration_seconds",
            "Access evaluation duration in seconds",
            registry=self.registry
        )

        self._metrics["audit_records_total"] = Counter(
            "audit_records_total",
            "Total audit log entries written",
            ["result"],
            registry=self.registry
        )

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
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_access_decision(self, granted: bool, code: str, duration: float):
        """Record an access decision and how long it took."""
        if "access_decisions_total" not in self._metrics:
            return
        decision = "granted" if granted else "denied"
        self._metrics["access_decisions_total"].labels(decision=decision, code=code).inc()
        self._metrics["access_evaluation_duration_seconds"].observe(duration)

    def record_audit_entry(self, result: str):
        """Record an audit log write."""
        if "audit_records_total" in self._metrics:
            self._metrics["audit_records_total"].labels(result=result).inc()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
