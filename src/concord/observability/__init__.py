"""Observability for the coordination primitives.

Provides tracing, metrics, and structured logging:
- OpenTelemetry tracing with OTLP export
- Prometheus metrics
- JSON structured logging with correlation IDs
"""

from concord.observability.logging import (
    LogContext,
    configure_logging,
    consumer_id_var,
    correlation_id_var,
    get_logger,
)
from concord.observability.metrics import (
    get_metrics,
    metrics_registry,
)
from concord.observability.tracing import (
    get_tracer,
    setup_tracing,
    shutdown_tracing,
)

__all__ = [
    # Logging
    "configure_logging",
    "get_logger",
    "LogContext",
    "correlation_id_var",
    "consumer_id_var",
    # Tracing
    "setup_tracing",
    "shutdown_tracing",
    "get_tracer",
    # Metrics
    "metrics_registry",
    "get_metrics",
]
