"""
Shared metrics configuration for the rate limiter service.
"""

from prometheus_client import CollectorRegistry, Counter, Histogram, REGISTRY
from typing import Any, Dict, Optional


class RateLimiterMetrics:
    """Prometheus metrics for rate limit decisions."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else REGISTRY
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up rate limiter metrics."""
        self._metrics["decisions_total"] = Counter(
            "rate_limiter_decisions_total",
            "Total rate limit decisions",
            ["route_id", "outcome"],
            registry=self.registry
        )

        self._metrics["store_failures_total"] = Counter(
            "rate_limiter_store_failures_total",
            "Total quota store failures converted to permissive decisions",
            ["route_id", "error_type"],
            registry=self.registry
        )

        self._metrics["evaluation_duration_seconds"] = Histogram(
            "rate_limiter_evaluation_duration_seconds",
            "Duration of bucket evaluations in seconds",
            ["route_id"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_decision(self, route_id: str, outcome: str):
        """Record a decision outcome: allowed, denied or fail_open."""
        self._metrics["decisions_total"].labels(route_id=route_id, outcome=outcome).inc()

    def record_store_failure(self, route_id: str, error_type: str):
        """Record a store failure."""
        self._metrics["store_failures_total"].labels(route_id=route_id, error_type=error_type).inc()

    def observe_evaluation(self, route_id: str, duration: float):
        """Observe the duration of one evaluation."""
        self._metrics["evaluation_duration_seconds"].labels(route_id=route_id).observe(duration)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> RateLimiterMetrics:
    """Get a metrics collector for a service."""
    return RateLimiterMetrics(service_name, registry)
