"""Unit tests for TransactionMonitor."""

from __future__ import annotations

import pytest

from txn_coordinator.domain.services import (
    AlertThresholds,
    AlertType,
    TransactionEvent,
    TransactionEventType,
    TransactionMonitor,
)
from txn_coordinator.domain.services.transaction_monitor import AlertSeverity, percentile
from txn_coordinator.domain.value_objects import TransactionId


@pytest.fixture
def monitor(clock) -> TransactionMonitor:
    thresholds = AlertThresholds(
        max_duration_ms=1000,
        max_error_rate=0.2,
        max_concurrent_transactions=3,
        max_deadlocks_per_window=1,
        min_samples=4,
    )
    return TransactionMonitor(thresholds=thresholds, window_ms=60000, clock=clock)


def emit(monitor: TransactionMonitor, clock, type: TransactionEventType, txn: str | None = None, **kwargs) -> None:
    monitor.record_event(
        TransactionEvent(
            type=type,
            transaction_id=TransactionId(txn) if txn else None,
            timestamp=clock.now,
            **kwargs,
        )
    )


def finish(monitor: TransactionMonitor, clock, txn: str, committed: bool = True, duration_ms: float = 10.0) -> None:
    emit(monitor, clock, TransactionEventType.TRANSACTION_STARTED, txn)
    emit(
        monitor,
        clock,
        TransactionEventType.TRANSACTION_COMMITTED if committed else TransactionEventType.TRANSACTION_ABORTED,
        txn,
        duration_ms=duration_ms,
    )


@pytest.mark.unit
class TestWindowMetrics:
    """Snapshots computed from the event history."""

    def test_counts_and_rates(self, monitor: TransactionMonitor, clock) -> None:
        for i in range(3):
            finish(monitor, clock, f"ok{i}", duration_ms=10.0 * (i + 1))
        finish(monitor, clock, "bad", committed=False, duration_ms=40.0)
        emit(monitor, clock, TransactionEventType.ROLLBACK_STARTED, "bad")
        emit(monitor, clock, TransactionEventType.TRANSACTION_STARTED, "open")

        snapshot = monitor.get_current_metrics()

        assert snapshot.started == 5
        assert snapshot.committed == 3
        assert snapshot.aborted == 1
        assert snapshot.active_transactions == 1
        assert snapshot.error_rate == pytest.approx(0.25)
        assert snapshot.rollback_rate == pytest.approx(0.2)
        assert snapshot.average_duration_ms == pytest.approx(25.0)
        assert snapshot.p50_duration_ms == 20.0
        assert snapshot.p99_duration_ms == 40.0
        assert snapshot.transactions_per_second == pytest.approx(4 / 60.0)

    def test_old_events_leave_the_window(self, monitor: TransactionMonitor, clock) -> None:
        finish(monitor, clock, "old")
        clock.advance(120.0)
        finish(monitor, clock, "new")

        snapshot = monitor.get_current_metrics()

        assert snapshot.committed == 1
        assert monitor.get_current_metrics(window_ms=300000).committed == 2

    def test_empty_window(self, monitor: TransactionMonitor) -> None:
        snapshot = monitor.get_current_metrics()

        assert snapshot.error_rate == 0.0
        assert snapshot.p95_duration_ms == 0.0
        assert snapshot.to_dict()["window_ms"] == 60000

    def test_events_by_transaction(self, monitor: TransactionMonitor, clock) -> None:
        finish(monitor, clock, "a")
        finish(monitor, clock, "b")

        assert len(monitor.get_events(TransactionId("a"))) == 2
        assert len(monitor.get_events(limit=3)) == 3

    def test_prune(self, monitor: TransactionMonitor, clock) -> None:
        finish(monitor, clock, "old")
        clock.advance(100.0)
        finish(monitor, clock, "new")

        assert monitor.prune(max_age_ms=50000) == 2
        assert len(monitor.get_events()) == 2

    def test_history_is_bounded(self, clock) -> None:
        monitor = TransactionMonitor(max_events=5, clock=clock)
        for i in range(10):
            finish(monitor, clock, f"t{i}")

        assert len(monitor.get_events()) == 5


@pytest.mark.unit
class TestAlerts:
    """Alert raising and resolution."""

    def test_slow_transaction(self, monitor: TransactionMonitor, clock) -> None:
        finish(monitor, clock, "slow", duration_ms=5000.0)

        alerts = monitor.get_alerts()

        assert len(alerts) == 1
        assert alerts[0].type == AlertType.SLOW_TRANSACTION
        assert alerts[0].transaction_id == "slow"
        assert alerts[0].value == 5000.0

    def test_error_rate_needs_minimum_samples(self, monitor: TransactionMonitor, clock) -> None:
        finish(monitor, clock, "a", committed=False)
        finish(monitor, clock, "b", committed=False)

        assert monitor.evaluate_alerts() == []

    def test_error_rate_raised_then_resolved(self, monitor: TransactionMonitor, clock) -> None:
        finish(monitor, clock, "a")
        finish(monitor, clock, "b")
        finish(monitor, clock, "c", committed=False)
        finish(monitor, clock, "d", committed=False)

        raised = monitor.evaluate_alerts()

        assert [a.type for a in raised] == [AlertType.HIGH_ERROR_RATE]
        assert raised[0].value == pytest.approx(0.5)
        # Not raised twice while still firing
        assert monitor.evaluate_alerts() == []

        clock.advance(120.0)
        monitor.evaluate_alerts()

        assert monitor.active_alert_count() == 0
        assert monitor.get_alerts(include_resolved=True)[0].resolved_at == clock.now

    def test_high_concurrency(self, monitor: TransactionMonitor, clock) -> None:
        for i in range(4):
            emit(monitor, clock, TransactionEventType.TRANSACTION_STARTED, f"t{i}")

        raised = monitor.evaluate_alerts()

        assert [a.type for a in raised] == [AlertType.HIGH_CONCURRENCY]

    def test_deadlock_storm_is_critical(self, monitor: TransactionMonitor, clock) -> None:
        emit(monitor, clock, TransactionEventType.DEADLOCK_DETECTED, "a")
        emit(monitor, clock, TransactionEventType.DEADLOCK_DETECTED, "b")

        raised = monitor.evaluate_alerts()

        assert raised[0].type == AlertType.DEADLOCK_STORM
        assert raised[0].severity == AlertSeverity.CRITICAL

    def test_circuit_open_alert_once_per_circuit(self, monitor: TransactionMonitor, clock) -> None:
        emit(monitor, clock, TransactionEventType.CIRCUIT_OPENED, metadata={"circuit": "ledger"})
        emit(monitor, clock, TransactionEventType.CIRCUIT_OPENED, metadata={"circuit": "ledger"})
        emit(monitor, clock, TransactionEventType.CIRCUIT_OPENED, metadata={"circuit": "minutes"})

        assert monitor.active_alert_count() == 2

        monitor.resolve_circuit_alert("ledger")

        assert [a.transaction_id for a in monitor.get_alerts()] == ["minutes"]

    def test_resolve_alert(self, monitor: TransactionMonitor, clock) -> None:
        finish(monitor, clock, "slow", duration_ms=2000.0)
        alert = monitor.get_alerts()[0]

        assert monitor.resolve_alert(alert.id) is True
        assert monitor.resolve_alert(alert.id) is False
        assert alert.to_dict()["resolved_at"] == clock.now

    def test_alert_gauge(self, clock, metrics_registry) -> None:
        monitor = TransactionMonitor(
            thresholds=AlertThresholds(max_duration_ms=1), metrics=metrics_registry, clock=clock
        )
        finish(monitor, clock, "slow", duration_ms=50.0)

        value = metrics_registry._registry.get_sample_value("txn_alerts_active")
        assert value == 1.0


@pytest.mark.unit
class TestPercentile:
    def test_nearest_rank(self) -> None:
        values = [float(v) for v in range(1, 101)]

        assert percentile(values, 50) == 50.0
        assert percentile(values, 95) == 95.0
        assert percentile(values, 100) == 100.0

    def test_single_value(self) -> None:
        assert percentile([7.0], 99) == 7.0
