# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the inbound relay.

All metrics use the ``irl_`` prefix (inbound relay).

Metrics exposed:
    - ``irl_received_total``: Counter of received emails, by parse outcome.
    - ``irl_deliveries_total``: Counter of routed deliveries per endpoint and outcome.
    - ``irl_delivery_seconds``: Histogram of webhook delivery latency per endpoint.
    - ``irl_scheduled_total``: Counter of scheduled-send transitions by outcome.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest


class RelayMetrics:
    """Prometheus metrics collector for the relay.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        received: Counter of received emails.
        deliveries: Counter of routed deliveries.
        delivery_seconds: Histogram of delivery latency.
        scheduled: Counter of scheduled-send outcomes.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A new registry is
                created when omitted, so several instances can coexist in tests.
        """
        self.registry = registry or CollectorRegistry()
        self.received = Counter(
            "irl_received_total",
            "Total received emails",
            ["parse_success"],
            registry=self.registry,
        )
        self.deliveries = Counter(
            "irl_deliveries_total",
            "Total routed deliveries",
            ["endpoint_id", "outcome"],
            registry=self.registry,
        )
        self.delivery_seconds = Histogram(
            "irl_delivery_seconds",
            "Webhook delivery latency",
            ["endpoint_id"],
            registry=self.registry,
        )
        self.scheduled = Counter(
            "irl_scheduled_total",
            "Scheduled send transitions",
            ["outcome"],
            registry=self.registry,
        )

    def inc_received(self, parse_success: bool = True) -> None:
        self.received.labels(parse_success="true" if parse_success else "false").inc()

    def observe_delivery(self, endpoint_id: str, outcome: str, elapsed_ms: int | None = None) -> None:
        """Count a delivery and, when timed, record its latency.

        Args:
            endpoint_id: The endpoint identifier.
            outcome: ``success`` or ``failed``.
            elapsed_ms: Duration of the last attempt in milliseconds.
        """
        self.deliveries.labels(endpoint_id=endpoint_id or "unknown", outcome=outcome).inc()
        if elapsed_ms is not None:
            self.delivery_seconds.labels(endpoint_id=endpoint_id or "unknown").observe(elapsed_ms / 1000.0)

    def inc_scheduled(self, outcome: str) -> None:
        """Count a scheduled-send transition (``created``, ``sent``, ``failed``, ``cancelled``)."""
        self.scheduled.labels(outcome=outcome).inc()

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
