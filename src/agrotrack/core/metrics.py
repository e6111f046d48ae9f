"""
Prometheus metrics collection.

One collector per application instance, registered on its own registry so
several apps (or test clients) can coexist in one process.
"""

import time
from typing import Optional

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, generate_latest

logger = structlog.get_logger(__name__)

_REDIS_STATES = ("disconnected", "connecting", "connected")


class MetricsCollector:
    """
    Centralized metrics for the request-handling layer.

    Keep metrics simple,
    use in-memory counters, let Prometheus handle storage.
    """

    def __init__(self, version: str = "1.0.0", registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()

        # Service info
        self.service_info = Info(
            "agrotrack_service",
            "AgroTrack service information",
            registry=self.registry,
        )
        self.service_info.info({
            "version": version,
            "service": "agrotrack",
        })

        # Request metrics
        self.requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry,
        )

        self.request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry,
        )

        # Cache metrics
        self.cache_lookups_total = Counter(
            "cache_lookups_total",
            "Cache lookups by tier and outcome",
            ["tier", "outcome"],
            registry=self.registry,
        )

        self.redis_connection_state = Gauge(
            "redis_connection_state",
            "1 for the current Redis connection state, 0 otherwise",
            ["state"],
            registry=self.registry,
        )

        # Protection metrics
        self.rate_limit_rejections_total = Counter(
            "rate_limit_rejections_total",
            "Requests rejected by the rate limiter",
            ["identifier"],
            registry=self.registry,
        )

        self.csrf_failures_total = Counter(
            "csrf_failures_total",
            "Requests rejected by CSRF validation",
            ["reason"],
            registry=self.registry,
        )

        # Data lifecycle metrics
        self.soft_delete_operations_total = Counter(
            "soft_delete_operations_total",
            "Soft delete lifecycle operations",
            ["model", "action"],
            registry=self.registry,
        )

        self.uptime_seconds = Gauge(
            "uptime_seconds",
            "Service uptime in seconds",
            registry=self.registry,
        )

        self._start_time = time.time()

    def record_request(
        self,
        method: str,
        endpoint: str,
        status_code: int,
        duration_seconds: float
    ) -> None:
        """Record HTTP request metrics."""
        self.requests_total.labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self.request_duration.labels(
            method=method,
            endpoint=endpoint
        ).observe(duration_seconds)

    def record_cache(self, tier: str, outcome: str) -> None:
        self.cache_lookups_total.labels(tier=tier, outcome=outcome).inc()

    def record_rate_limit_rejection(self, identifier: str) -> None:
        self.rate_limit_rejections_total.labels(identifier=identifier).inc()

    def record_csrf_failure(self, reason: str) -> None:
        self.csrf_failures_total.labels(reason=reason).inc()

    def record_soft_delete(self, model: str, action: str) -> None:
        self.soft_delete_operations_total.labels(model=model, action=action).inc()

    def update_redis_state(self, state: str) -> None:
        for candidate in _REDIS_STATES:
            self.redis_connection_state.labels(state=candidate).set(1 if candidate == state else 0)

    def uptime(self) -> float:
        return time.time() - self._start_time

    def render(self) -> bytes:
        """Prometheus text exposition of this collector's registry."""
        self.uptime_seconds.set(self.uptime())
        return generate_latest(self.registry)
