# FILE: qx7/exporter.py
# Prometheus exporter for the visitor identity service.
#
# - Metrics cover identity resolution outcomes (per endpoint and persistence
#   method), conditional-request hits, handler failures and analytics
#   delivery failures.
# - Label sets are small and closed: endpoints and persistence methods come
#   from fixed vocabularies, visitor ids never become labels.
# - Each exporter owns the registry it registers into, so several apps can
#   live in one process (tests build one per case). The app exposes that
#   registry on /metrics.

from __future__ import annotations

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info

logger = logging.getLogger(__name__)

_LATENCY_BUCKETS = (0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0)


def _safe_label(value: object) -> str:
    if value is None:
        return ""
    s = str(value)
    return s[:61] + "..." if len(s) > 64 else s


class Qx7PrometheusExporter:
    """
    Owns every metric the HTTP service emits.

        exporter = Qx7PrometheusExporter(version="1.0.0", config_hash="abc")
        exporter.record_resolution("onboarding-step1", "localStorage", True)

    With `enabled=False` the recorders are no-ops and nothing is registered.
    """

    def __init__(
        self,
        version: str,
        config_hash: str,
        *,
        registry: Optional[CollectorRegistry] = None,
        enabled: bool = True,
    ) -> None:
        self.version = str(version)
        self.config_hash_value = str(config_hash)
        self.enabled = bool(enabled)
        self.registry = registry if registry is not None else CollectorRegistry()

        self.build_info: Optional[Info] = None
        self.requests_total: Optional[Counter] = None
        self.request_latency: Optional[Histogram] = None
        self.resolutions_total: Optional[Counter] = None
        self.not_modified_total: Optional[Counter] = None
        self.errors_total: Optional[Counter] = None
        self.analytics_failures_total: Optional[Counter] = None

        if self.enabled:
            self._register()

    def _register(self) -> None:
        r = self.registry
        self.build_info = Info("qx7_build", "Visitor identity build metadata", registry=r)
        self.build_info.info({"version": self.version, "config_hash": self.config_hash_value})

        self.requests_total = Counter(
            "qx7_requests_total", "HTTP requests", ["route", "status"], registry=r
        )
        self.request_latency = Histogram(
            "qx7_request_latency_seconds",
            "HTTP request latency",
            ["route"],
            buckets=_LATENCY_BUCKETS,
            registry=r,
        )
        self.resolutions_total = Counter(
            "qx7_resolutions_total",
            "Identity resolutions by endpoint, persistence method and returning flag",
            ["endpoint", "method", "returning"],
            registry=r,
        )
        self.not_modified_total = Counter(
            "qx7_not_modified_total",
            "Conditional requests answered with 304",
            ["endpoint"],
            registry=r,
        )
        self.errors_total = Counter(
            "qx7_errors_total",
            "Handler failures answered with a fallback identity",
            ["endpoint"],
            registry=r,
        )
        self.analytics_failures_total = Counter(
            "qx7_analytics_failures_total",
            "Outbound analytics events that could not be delivered",
            ["reason"],
            registry=r,
        )

    # -----------------------------------------------------------------------
    # Recorders
    # -----------------------------------------------------------------------

    def record_resolution(self, endpoint: str, method: str, returning: bool) -> None:
        if self.resolutions_total is None:
            return
        self.resolutions_total.labels(
            endpoint=_safe_label(endpoint),
            method=_safe_label(method),
            returning="true" if returning else "false",
        ).inc()

    def record_not_modified(self, endpoint: str) -> None:
        if self.not_modified_total is None:
            return
        self.not_modified_total.labels(endpoint=_safe_label(endpoint)).inc()

    def record_error(self, endpoint: str) -> None:
        if self.errors_total is None:
            return
        self.errors_total.labels(endpoint=_safe_label(endpoint)).inc()

    def record_analytics_failure(self, reason: str) -> None:
        if self.analytics_failures_total is None:
            return
        self.analytics_failures_total.labels(reason=_safe_label(reason)).inc()


__all__ = ["Qx7PrometheusExporter"]
