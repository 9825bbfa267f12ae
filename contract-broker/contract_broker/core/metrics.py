"""
Prometheus metrics for the contract broker.

Tracks publishing, verification recording, tag movement, deployment-safety
verdicts and webhook delivery.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Generator, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info


class BrokerMetrics:
    """
    Domain metrics collector for the contract broker.

    Each instance owns its registry so that tests and multiple app instances
    in one process do not collide on metric names.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.contracts_published = Counter(
            "broker_contracts_published_total",
            "Contract publish calls",
            labelnames=["result"],
            registry=self.registry
        )

        self.verifications_recorded = Counter(
            "broker_verifications_recorded_total",
            "Verification results recorded",
            labelnames=["outcome", "stale"],
            registry=self.registry
        )

        self.tag_operations = Counter(
            "broker_tag_operations_total",
            "Tag index writes",
            labelnames=["operation"],
            registry=self.registry
        )

        self.deployment_verdicts = Counter(
            "broker_can_i_deploy_total",
            "Deployment-safety verdicts returned",
            labelnames=["verdict"],
            registry=self.registry
        )

        self.evaluation_duration = Histogram(
            "broker_can_i_deploy_duration_seconds",
            "Time spent evaluating deployment safety",
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
            registry=self.registry
        )

        self.verdict_cache = Counter(
            "broker_verdict_cache_total",
            "Verdict cache lookups",
            labelnames=["result"],
            registry=self.registry
        )

        self.webhook_deliveries = Counter(
            "broker_webhook_deliveries_total",
            "Webhook delivery attempts",
            labelnames=["event", "status"],
            registry=self.registry
        )

        self.structured_errors = Counter(
            "broker_structured_errors_total",
            "Structured errors by category and code",
            labelnames=["category", "error_code", "severity"],
            registry=self.registry
        )

        self.service_info = Info(
            "broker_service_info",
            "Contract broker service information",
            registry=self.registry
        )

    def record_publish(self, created: bool):
        self.contracts_published.labels(result="new_revision" if created else "existing").inc()

    def record_verification(self, success: bool, stale: bool = False):
        self.verifications_recorded.labels(
            outcome="success" if success else "failure",
            stale=str(stale).lower()
        ).inc()

    def record_tag(self, operation: str):
        self.tag_operations.labels(operation=operation).inc()

    def record_verdict(self, verdict: str):
        self.deployment_verdicts.labels(verdict=verdict).inc()

    def record_cache_lookup(self, hit: bool):
        self.verdict_cache.labels(result="hit" if hit else "miss").inc()

    def record_webhook(self, event: str, delivered: bool):
        self.webhook_deliveries.labels(event=event, status="delivered" if delivered else "failed").inc()

    def record_structured_error(self, category: str, error_code: str, severity: str):
        """Record structured error occurrence."""
        self.structured_errors.labels(
            category=category,
            error_code=error_code,
            severity=severity
        ).inc()

    @contextmanager
    def time_evaluation(self) -> Generator[float, None, None]:
        """Context manager to time deployment-safety evaluation."""
        start_time = time.time()
        try:
            yield start_time
        finally:
            self.evaluation_duration.observe(time.time() - start_time)

    def set_service_info(self, **info_labels: str):
        """Set service information labels."""
        self.service_info.info(info_labels)
