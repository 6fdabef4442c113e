"""
Prometheus metrics for the identity access core.
"""

import threading
import time
from contextlib import contextmanager
from typing import Dict, Any, Optional

from prometheus_client import Counter, Histogram, Info, CollectorRegistry, REGISTRY


class MetricsCollector:
    """Centralized metrics collector for the identity core.

    Pass a private ``CollectorRegistry`` in tests; the default registry is
    process-wide and metrics can only be registered against it once.
    """

    def __init__(self, service_name: str = "identity", registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else REGISTRY
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up identity metrics."""

        self._metrics["service_info"] = Info(
            "identity_service",
            "Identity core information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        self._metrics["logins_started_total"] = Counter(
            "identity_logins_started_total",
            "Authorization requests issued",
            ["provider"],
            registry=self.registry
        )

        self._metrics["callbacks_total"] = Counter(
            "identity_callbacks_total",
            "Authorization callbacks handled",
            ["provider", "outcome"],
            registry=self.registry
        )

        self._metrics["token_validation_failures_total"] = Counter(
            "identity_token_validation_failures_total",
            "Signed token rejections",
            ["kind"],
            registry=self.registry
        )

        self._metrics["rate_limit_rejections_total"] = Counter(
            "identity_rate_limit_rejections_total",
            "Requests rejected by the rate limiter",
            ["scope"],
            registry=self.registry
        )

        self._metrics["csrf_rejections_total"] = Counter(
            "identity_csrf_rejections_total",
            "Requests rejected by the CSRF guard",
            registry=self.registry
        )

        self._metrics["provider_health_checks_total"] = Counter(
            "identity_provider_health_checks_total",
            "Provider health checks",
            ["provider", "status"],
            registry=self.registry
        )

        self._metrics["provider_call_duration_seconds"] = Histogram(
            "identity_provider_call_duration_seconds",
            "Outbound provider call duration in seconds",
            ["provider", "operation"],
            registry=self.registry
        )

    def record_login_started(self, provider: str):
        self._metrics["logins_started_total"].labels(provider=provider).inc()

    def record_callback(self, provider: str, outcome: str):
        self._metrics["callbacks_total"].labels(provider=provider, outcome=outcome).inc()

    def record_validation_failure(self, kind: str):
        self._metrics["token_validation_failures_total"].labels(kind=kind).inc()

    def record_rate_limited(self, scope: str):
        self._metrics["rate_limit_rejections_total"].labels(scope=scope).inc()

    def record_csrf_rejection(self):
        self._metrics["csrf_rejections_total"].inc()

    def record_health_check(self, provider: str, status: str):
        self._metrics["provider_health_checks_total"].labels(provider=provider, status=status).inc()

    @contextmanager
    def time_provider_call(self, provider: str, operation: str):
        """Time an outbound provider call."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self._metrics["provider_call_duration_seconds"].labels(
                provider=provider, operation=operation
            ).observe(time.perf_counter() - start)


_default_collector: Optional[MetricsCollector] = None
_default_lock = threading.Lock()


def get_metrics_collector() -> MetricsCollector:
    """Return the process-wide collector bound to the default registry."""
    global _default_collector
    with _default_lock:
        if _default_collector is None:
            _default_collector = MetricsCollector()
        return _default_collector
