"""Infrastructure layer - cross-cutting concerns."""

from txn_coordinator.infrastructure.config import Config, get_config
from txn_coordinator.infrastructure.logging import get_logger, setup_logging, transaction_context
from txn_coordinator.infrastructure.metrics import MetricsRegistry, get_metrics, setup_metrics
from txn_coordinator.infrastructure.tracing import get_tracer, setup_tracing, trace_span

__all__ = [
    "Config",
    "get_config",
    "setup_logging",
    "get_logger",
    "transaction_context",
    "setup_metrics",
    "get_metrics",
    "MetricsRegistry",
    "setup_tracing",
    "get_tracer",
    "trace_span",
]
