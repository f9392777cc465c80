"""
Prometheus metrics collection.

Each collector owns its own registry so several app instances (tests,
multiple mounts) never collide on metric names.
"""

import time
from typing import Optional

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info

from .. import __version__

logger = structlog.get_logger(__name__)


class MetricsCollector:
    """
    Centralized metrics collection for the security pipeline.

    Keep metrics simple,
    use in-memory counters, let Prometheus handle storage.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        # Service info
        self.service_info = Info(
            "reqshield_service",
            "reqshield service information",
            registry=self.registry,
        )
        self.service_info.info({
            "version": __version__,
            "service": "reqshield",
        })

        # Request metrics
        self.requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests seen by the security pipeline",
            ["method", "status_code"],
            registry=self.registry,
        )

        self.request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry,
        )

        # Pipeline metrics
        self.rejections_total = Counter(
            "security_rejections_total",
            "Requests short-circuited by a pipeline stage",
            ["stage", "status_code"],
            registry=self.registry,
        )

        self.rate_limit_blocks_total = Counter(
            "rate_limit_blocks_total",
            "Clients transitioned to blocked",
            ["policy"],
            registry=self.registry,
        )

        self.rate_limit_entries = Gauge(
            "rate_limit_entries",
            "Rate limit entries currently tracked",
            registry=self.registry,
        )

        self.security_events_total = Counter(
            "security_events_total",
            "Security audit events emitted",
            ["type", "severity"],
            registry=self.registry,
        )

        self.csrf_tokens_issued_total = Counter(
            "csrf_tokens_issued_total",
            "CSRF tokens issued on safe requests",
            registry=self.registry,
        )

        self.uptime_seconds = Gauge(
            "uptime_seconds",
            "Service uptime in seconds",
            registry=self.registry,
        )

        # Track start time for uptime calculation
        self._start_time = time.time()

    def record_request(self, method: str, status_code: int, duration_seconds: float) -> None:
        """Record HTTP request metrics."""
        self.requests_total.labels(method=method, status_code=str(status_code)).inc()
        self.request_duration.labels(method=method).observe(max(0.0, duration_seconds))

    def record_rejection(self, stage: str, status_code: int) -> None:
        self.rejections_total.labels(stage=stage, status_code=str(status_code)).inc()

    def record_rate_limit_block(self, policy: str) -> None:
        self.rate_limit_blocks_total.labels(policy=policy).inc()

    def record_security_event(self, event_type: str, severity: str) -> None:
        self.security_events_total.labels(type=event_type, severity=severity).inc()

    def record_csrf_token_issued(self) -> None:
        self.csrf_tokens_issued_total.inc()

    def update_rate_limit_entries(self, count: int) -> None:
        self.rate_limit_entries.set(count)

    def update_system_metrics(self) -> None:
        """Update system-level metrics."""
        self.uptime_seconds.set(time.time() - self._start_time)
