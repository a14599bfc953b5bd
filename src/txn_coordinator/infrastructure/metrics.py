"""Prometheus metrics for the transaction coordinator."""

from __future__ import annotations

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
)


class MetricsRegistry:
    """Registry of all coordinator metrics."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """Initialize metrics registry."""
        self._registry = registry or REGISTRY

        # Transactions
        self.transactions_total = Counter(
            "txn_transactions_total",
            "Total number of finished transactions",
            ["mode", "outcome"],  # outcome: committed, aborted, failed
            registry=self._registry,
        )

        self.transactions_active = Gauge(
            "txn_transactions_active",
            "Number of in-flight transactions",
            registry=self._registry,
        )

        self.transaction_duration_seconds = Histogram(
            "txn_transaction_duration_seconds",
            "Transaction duration from begin to commit or rollback",
            ["mode"],
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self._registry,
        )

        self.operations_total = Counter(
            "txn_operations_total",
            "Total operations executed inside transactions",
            ["status"],  # executed, failed
            registry=self._registry,
        )

        # Locking
        self.lock_conflicts_total = Counter(
            "txn_lock_conflicts_total",
            "Optimistic lock acquisitions rejected by a version conflict",
            ["table"],
            registry=self._registry,
        )

        self.locks_held = Gauge(
            "txn_locks_held",
            "Number of optimistic locks currently held",
            registry=self._registry,
        )

        self.deadlocks_total = Counter(
            "txn_deadlocks_total",
            "Total number of deadlocks detected",
            registry=self._registry,
        )

        # Compensation and rollback
        self.compensations_total = Counter(
            "txn_compensations_total",
            "Compensating actions run",
            ["status"],  # succeeded, failed
            registry=self._registry,
        )

        self.rollbacks_total = Counter(
            "txn_rollbacks_total",
            "Rollbacks by strategy",
            ["strategy", "status"],
            registry=self._registry,
        )

        # Sagas
        self.saga_steps_total = Counter(
            "txn_saga_steps_total",
            "Saga steps by outcome",
            ["saga", "status"],  # completed, failed, compensated
            registry=self._registry,
        )

        self.sagas_total = Counter(
            "txn_sagas_total",
            "Saga executions by final status",
            ["saga", "status"],
            registry=self._registry,
        )

        # Two-phase commit
        self.twopc_decisions_total = Counter(
            "txn_twopc_decisions_total",
            "Two-phase commit decisions",
            ["decision"],  # commit, abort
            registry=self._registry,
        )

        self.twopc_prepare_seconds = Histogram(
            "txn_twopc_prepare_seconds",
            "Time spent in the prepare phase",
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
            registry=self._registry,
        )

        self.in_doubt_participants = Gauge(
            "txn_in_doubt_participants",
            "Participants that have not acknowledged a logged decision",
            registry=self._registry,
        )

        # Circuit breakers
        self.circuit_state = Gauge(
            "txn_circuit_state",
            "Circuit breaker state (0=closed, 1=half_open, 2=open)",
            ["name"],
            registry=self._registry,
        )

        self.circuit_rejections_total = Counter(
            "txn_circuit_rejections_total",
            "Calls rejected by an open circuit",
            ["name"],
            registry=self._registry,
        )

        # Retries
        self.retries_total = Counter(
            "txn_retries_total",
            "Retried calls",
            ["component"],
            registry=self._registry,
        )

        # Coordinator log
        self.log_records_total = Counter(
            "txn_log_records_total",
            "Coordinator log records appended",
            ["record_type"],
            registry=self._registry,
        )

        # Recovery
        self.recovery_duration_seconds = Gauge(
            "txn_recovery_duration_seconds",
            "Duration of last recovery in seconds",
            registry=self._registry,
        )

        self.recovery_transactions_total = Counter(
            "txn_recovery_transactions_total",
            "Transactions resolved during recovery",
            ["outcome"],  # committed, aborted, compensated, unresolved
            registry=self._registry,
        )

        # Monitor alerts
        self.alerts_active = Gauge(
            "txn_alerts_active",
            "Unresolved monitor alerts",
            registry=self._registry,
        )

        self.info = Info(
            "txn_coordinator",
            "Transaction coordinator information",
            registry=self._registry,
        )


# Global metrics registry
_metrics: MetricsRegistry | None = None


def setup_metrics(port: int = 8001, registry: CollectorRegistry | None = None) -> MetricsRegistry:
    """
    Set up the metrics registry and the Prometheus scrape endpoint.

    Args:
        port: Port for the metrics HTTP server
        registry: Optional custom registry

    Returns:
        The metrics registry
    """
    global _metrics
    _metrics = MetricsRegistry(registry)

    from txn_coordinator import __version__
    _metrics.info.info({
        "version": __version__,
    })

    start_http_server(port, registry=registry or REGISTRY)

    return _metrics


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsRegistry()
    return _metrics
