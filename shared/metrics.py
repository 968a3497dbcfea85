"""
Shared metrics configuration for the Module Entitlements service.
"""

import time
from contextlib import contextmanager
from typing import Dict, Any, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, generate_latest, start_http_server


class MetricsCollector:
    """Prometheus metrics for one service instance.

    Each collector owns its registry unless one is passed in, so several
    service objects can live in one process (tests, workers) without
    clashing on metric names.
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

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health checks",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_entitlements_metrics()

    def _setup_entitlements_metrics(self):
        """Set up entitlements-specific metrics."""
        self._metrics["entitlement_checks_total"] = Counter(
            "entitlement_checks_total",
            "Total entitlement checks",
            ["decision"],
            registry=self.registry
        )

        self._metrics["store_operations_total"] = Counter(
            "entitlement_store_operations_total",
            "Total store operations",
            ["operation", "status"],
            registry=self.registry
        )

        self._metrics["store_operation_duration_seconds"] = Histogram(
            "entitlement_store_operation_duration_seconds",
            "Store operation duration in seconds",
            ["operation"],
            registry=self.registry
        )

        self._metrics["cache_requests_total"] = Counter(
            "entitlement_cache_requests_total",
            "Cache lookups by result",
            ["cache_type", "result"],
            registry=self.registry
        )

        self._metrics["cache_invalidation_failures_total"] = Counter(
            "entitlement_cache_invalidation_failures_total",
            "Cache invalidations that did not reach the backend",
            registry=self.registry
        )

        self._metrics["audit_records_total"] = Counter(
            "entitlement_audit_records_total",
            "Audit records written",
            ["action"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def start_metrics_server(self, port: int = 9090):
        """Start the Prometheus metrics server."""
        start_http_server(port, registry=self.registry)

    def export(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self.registry)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_access_check(self, allowed: bool):
        self._metrics["entitlement_checks_total"].labels(decision="allow" if allowed else "deny").inc()

    def record_cache_request(self, cache_type: str, result: str):
        self._metrics["cache_requests_total"].labels(cache_type=cache_type, result=result).inc()

    def record_invalidation_failure(self):
        self._metrics["cache_invalidation_failures_total"].inc()

    def record_audit(self, action: str):
        self._metrics["audit_records_total"].labels(action=action).inc()

    @contextmanager
    def time_store_operation(self, operation: str):
        """Time a store operation and count it by outcome."""
        start_time = time.time()
        status = "ok"
        try:
            yield
        except Exception:
            status = "error"
            raise
        finally:
            self._metrics["store_operation_duration_seconds"].labels(operation=operation).observe(
                time.time() - start_time
            )
            self._metrics["store_operations_total"].labels(operation=operation, status=status).inc()

    def sample_value(self, metric_name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Read a sample back from the registry (0.0 when absent)."""
        value = self.registry.get_sample_value(metric_name, labels or {})
        return value or 0.0


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
