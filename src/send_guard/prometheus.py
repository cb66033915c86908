# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the dispatch queue and account health.

All metrics use the ``sg_`` prefix (send-guard).

Metrics exposed:
    - ``sg_sent_total``: Counter of delivered messages per account.
    - ``sg_failed_total``: Counter of terminal failures per account.
    - ``sg_retries_total``: Counter of failed attempts scheduled for retry.
    - ``sg_deferred_total``: Counter of admission deferrals per account and reason
      (``rate_limit``, ``health``, ``pacing``, ``not_ready``).
    - ``sg_pending_messages`` / ``sg_processing_messages``: queue depth gauges.
    - ``sg_health_score``: Gauge of the current health score per account.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

DEFERRAL_REASONS = ("rate_limit", "health", "pacing", "not_ready")


class GuardMetrics:
    """Prometheus collector for dispatch and health events.

    Every per-account metric is labeled by ``account_id``.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "sg_sent_total",
            "Total delivered messages",
            ["account_id"],
            registry=self.registry,
        )
        self.failed = Counter(
            "sg_failed_total",
            "Total messages failed after exhausting attempts",
            ["account_id"],
            registry=self.registry,
        )
        self.retries = Counter(
            "sg_retries_total",
            "Total failed attempts scheduled for retry",
            ["account_id"],
            registry=self.registry,
        )
        self.deferred = Counter(
            "sg_deferred_total",
            "Total dispatches deferred by admission control",
            ["account_id", "reason"],
            registry=self.registry,
        )
        self.pending = Gauge(
            "sg_pending_messages",
            "Current pending messages",
            registry=self.registry,
        )
        self.processing = Gauge(
            "sg_processing_messages",
            "Messages currently handed to an account client",
            registry=self.registry,
        )
        self.health_score = Gauge(
            "sg_health_score",
            "Current health score",
            ["account_id"],
            registry=self.registry,
        )

    def inc_sent(self, account_id: str) -> None:
        self.sent.labels(account_id=account_id or "default").inc()

    def inc_failed(self, account_id: str) -> None:
        self.failed.labels(account_id=account_id or "default").inc()

    def inc_retry(self, account_id: str) -> None:
        self.retries.labels(account_id=account_id or "default").inc()

    def inc_deferred(self, account_id: str, reason: str) -> None:
        """Count one admission deferral.

        Args:
            account_id: The account whose dispatch was held back.
            reason: One of :data:`DEFERRAL_REASONS`.
        """
        self.deferred.labels(account_id=account_id or "default", reason=reason).inc()

    def set_queue_depth(self, pending: int, processing: int) -> None:
        self.pending.set(pending)
        self.processing.set(processing)

    def set_health_score(self, account_id: str, score: int) -> None:
        self.health_score.labels(account_id=account_id or "default").set(score)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
