"""Prometheus metrics for the coordination primitives.

Provides metrics collection and exposure:
- Store metrics (round-trip latency, errors by kind)
- Lock metrics (acquire / release / extend outcomes)
- Rate limit metrics (decisions per algorithm)
- Queue metrics (entries enqueued, delivered, acked, claimed, dead-lettered)

Usage:
    from concord.observability.metrics import get_metrics

    metrics = get_metrics()
    metrics.lock_operations_total.labels(operation="acquire", outcome="acquired").inc()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import REGISTRY, Counter, Histogram, generate_latest

from concord.config import settings

logger = logging.getLogger(__name__)


@dataclass
class MetricsRegistry:
    """Registry for Prometheus metrics."""

    # Store metrics
    store_operation_duration_seconds: Any = None
    store_errors_total: Any = None

    # Primitive metrics
    lock_operations_total: Any = None
    rate_limit_decisions_total: Any = None
    queue_entries_total: Any = None

    # Internal state
    _initialized: bool = field(default=False, repr=False)
    _registry: Any = field(default=None, repr=False)

    def initialize(self) -> None:
        """Initialize Prometheus metrics."""
        if self._initialized:
            return

        if not settings.enable_metrics:
            logger.info("Metrics are disabled")
            self._initialized = True
            return

        self._registry = REGISTRY

        self.store_operation_duration_seconds = Histogram(
            "concord_store_operation_duration_seconds",
            "Store round-trip latency in seconds",
            ["operation"],
            buckets=(0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.5, 1.0, 5.0),
        )

        self.store_errors_total = Counter(
            "concord_store_errors_total",
            "Store failures by kind",
            ["kind"],
        )

        self.lock_operations_total = Counter(
            "concord_lock_operations_total",
            "Lock operations by outcome",
            ["operation", "outcome"],
        )

        self.rate_limit_decisions_total = Counter(
            "concord_rate_limit_decisions_total",
            "Rate limit decisions",
            ["algorithm", "outcome"],
        )

        self.queue_entries_total = Counter(
            "concord_queue_entries_total",
            "Queue entries by operation",
            ["operation"],
        )

        self._initialized = True
        logger.info("Prometheus metrics initialized")

    def generate_latest(self) -> bytes:
        """Generate Prometheus metrics in exposition format."""
        if not settings.enable_metrics or self._registry is None:
            return b"# Metrics disabled\n"
        return generate_latest(self._registry)


# Global metrics registry
metrics_registry = MetricsRegistry()


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry.

    Initializes metrics on first access.
    """
    if not metrics_registry._initialized:
        metrics_registry.initialize()
    return metrics_registry


def record_store_operation(operation: str, duration: float) -> None:
    """Record store round-trip duration.

    Args:
        operation: Script name or command name
        duration: Round-trip duration in seconds
    """
    metrics = get_metrics()
    if metrics.store_operation_duration_seconds:
        metrics.store_operation_duration_seconds.labels(operation=operation).observe(duration)


def record_store_error(kind: str) -> None:
    """Record a store failure (timeout, unavailable, script, other)."""
    metrics = get_metrics()
    if metrics.store_errors_total:
        metrics.store_errors_total.labels(kind=kind).inc()


def record_lock_operation(operation: str, outcome: str) -> None:
    """Record a lock acquire / release / extend outcome."""
    metrics = get_metrics()
    if metrics.lock_operations_total:
        metrics.lock_operations_total.labels(operation=operation, outcome=outcome).inc()


def record_rate_limit_decision(algorithm: str, allowed: bool) -> None:
    """Record a rate limit decision."""
    metrics = get_metrics()
    if metrics.rate_limit_decisions_total:
        metrics.rate_limit_decisions_total.labels(
            algorithm=algorithm,
            outcome="allowed" if allowed else "denied",
        ).inc()


def record_queue_entries(operation: str, count: int = 1) -> None:
    """Record queue entries passing through an operation.

    Args:
        operation: enqueue, consume, ack, claim, dead_letter, replay
        count: Number of entries
    """
    if count <= 0:
        return
    metrics = get_metrics()
    if metrics.queue_entries_total:
        metrics.queue_entries_total.labels(operation=operation).inc(count)
