"""Transaction monitor.

Consumes lifecycle events from the coordinators and keeps a bounded,
time-ordered event history. Windowed metrics (throughput, latency
percentiles, error and rollback rates) are computed from that history on
demand; alerts fire when a window crosses an AlertThresholds limit and
stay until resolved.

    Alert               | fires when
    --------------------|-------------------------------------------------
    SLOW_TRANSACTION    | a transaction finished slower than max_duration_ms
    HIGH_ERROR_RATE     | aborted / finished in the window > max_error_rate
    HIGH_CONCURRENCY    | active transactions > max_concurrent_transactions
    DEADLOCK_STORM      | deadlocks in the window > max_deadlocks_per_window
    CIRCUIT_OPEN        | a circuit breaker opened

Rate, concurrency and deadlock alerts resolve themselves once a later
evaluation finds the condition cleared.
"""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from txn_coordinator.domain.value_objects import TransactionId, generate_id
from txn_coordinator.domain.value_objects.identifiers import ALERT_PREFIX
from txn_coordinator.infrastructure.logging import get_logger
from txn_coordinator.infrastructure.metrics import MetricsRegistry

logger = get_logger(__name__)


class TransactionEventType(Enum):
    """Events the monitor understands."""

    TRANSACTION_STARTED = "transaction_started"
    TRANSACTION_COMMITTED = "transaction_committed"
    TRANSACTION_ABORTED = "transaction_aborted"
    TRANSACTION_TIMEOUT = "transaction_timeout"
    OPERATION_FAILED = "operation_failed"
    DEADLOCK_DETECTED = "deadlock_detected"
    COMPENSATION_EXECUTED = "compensation_executed"
    ROLLBACK_STARTED = "rollback_started"
    CIRCUIT_OPENED = "circuit_opened"


class AlertType(Enum):
    SLOW_TRANSACTION = "slow_transaction"
    HIGH_ERROR_RATE = "high_error_rate"
    HIGH_CONCURRENCY = "high_concurrency"
    DEADLOCK_STORM = "deadlock_storm"
    CIRCUIT_OPEN = "circuit_open"


class AlertSeverity(Enum):
    WARNING = "warning"
    CRITICAL = "critical"


_FINISHED = (
    TransactionEventType.TRANSACTION_COMMITTED,
    TransactionEventType.TRANSACTION_ABORTED,
    TransactionEventType.TRANSACTION_TIMEOUT,
)

# Alerts that resolve once their condition clears
_CONDITION_ALERTS = (
    AlertType.HIGH_ERROR_RATE,
    AlertType.HIGH_CONCURRENCY,
    AlertType.DEADLOCK_STORM,
)


@dataclass
class TransactionEvent:
    """One monitored event."""

    type: TransactionEventType
    transaction_id: TransactionId | None = None
    timestamp: float = field(default_factory=time.time)
    duration_ms: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AlertThresholds:
    """Limits that trigger alerts."""

    max_duration_ms: float = 10000.0
    max_error_rate: float = 0.1
    max_concurrent_transactions: int = 80
    max_deadlocks_per_window: int = 5
    # Error rate is only judged once the window holds this many finishes
    min_samples: int = 10


@dataclass
class Alert:
    """A raised alert; ``resolved_at`` is set once resolved."""

    type: AlertType
    severity: AlertSeverity
    message: str
    transaction_id: TransactionId | None = None
    value: float = 0.0
    threshold: float = 0.0
    id: str = field(default_factory=lambda: generate_id(ALERT_PREFIX))
    created_at: float = field(default_factory=time.time)
    resolved_at: float | None = None

    @property
    def active(self) -> bool:
        return self.resolved_at is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "transaction_id": self.transaction_id,
            "value": self.value,
            "threshold": self.threshold,
            "created_at": self.created_at,
            "resolved_at": self.resolved_at,
        }


@dataclass
class MonitorSnapshot:
    """Metrics over one window."""

    window_ms: int
    active_transactions: int
    transactions_per_second: float
    average_duration_ms: float
    p50_duration_ms: float
    p95_duration_ms: float
    p99_duration_ms: float
    error_rate: float
    rollback_rate: float
    deadlock_count: int
    started: int
    committed: int
    aborted: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "window_ms": self.window_ms,
            "active_transactions": self.active_transactions,
            "transactions_per_second": self.transactions_per_second,
            "average_duration_ms": self.average_duration_ms,
            "p50_duration_ms": self.p50_duration_ms,
            "p95_duration_ms": self.p95_duration_ms,
            "p99_duration_ms": self.p99_duration_ms,
            "error_rate": self.error_rate,
            "rollback_rate": self.rollback_rate,
            "deadlock_count": self.deadlock_count,
            "started": self.started,
            "committed": self.committed,
            "aborted": self.aborted,
        }


class TransactionMonitor:
    """Windowed transaction metrics and alerting."""

    def __init__(
        self,
        thresholds: AlertThresholds | None = None,
        window_ms: int = 60000,
        max_events: int = 10000,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._thresholds = thresholds or AlertThresholds()
        self._window_ms = window_ms
        self._metrics = metrics
        self._clock = clock

        self._lock = threading.Lock()
        self._events: deque[TransactionEvent] = deque(maxlen=max_events)
        self._active: set[TransactionId] = set()
        self._alerts: list[Alert] = []

    @property
    def thresholds(self) -> AlertThresholds:
        return self._thresholds

    def record_event(self, event: TransactionEvent) -> None:
        """Add an event; may raise SLOW_TRANSACTION or CIRCUIT_OPEN alerts."""
        new_alerts = []
        with self._lock:
            self._events.append(event)
            if event.type == TransactionEventType.TRANSACTION_STARTED and event.transaction_id:
                self._active.add(event.transaction_id)
            elif event.type in _FINISHED and event.transaction_id:
                self._active.discard(event.transaction_id)

            if (
                event.type in _FINISHED
                and event.duration_ms is not None
                and event.duration_ms > self._thresholds.max_duration_ms
            ):
                new_alerts.append(
                    Alert(
                        type=AlertType.SLOW_TRANSACTION,
                        severity=AlertSeverity.WARNING,
                        message=(
                            f"Transaction {event.transaction_id} took {event.duration_ms:.0f}ms "
                            f"(limit {self._thresholds.max_duration_ms:.0f}ms)"
                        ),
                        transaction_id=event.transaction_id,
                        value=event.duration_ms,
                        threshold=self._thresholds.max_duration_ms,
                        created_at=self._clock(),
                    )
                )
            if event.type == TransactionEventType.CIRCUIT_OPENED:
                circuit = event.metadata.get("circuit", "")
                if not self._has_active_locked(AlertType.CIRCUIT_OPEN, circuit):
                    new_alerts.append(
                        Alert(
                            type=AlertType.CIRCUIT_OPEN,
                            severity=AlertSeverity.CRITICAL,
                            message=f"Circuit breaker {circuit} opened",
                            transaction_id=circuit or None,
                            created_at=self._clock(),
                        )
                    )
            self._alerts.extend(new_alerts)

        for alert in new_alerts:
            logger.warning("alert_raised", alert_type=alert.type.value, message=alert.message)
        if new_alerts:
            self._update_alert_gauge()

    def get_current_metrics(self, window_ms: int | None = None) -> MonitorSnapshot:
        window_ms = window_ms or self._window_ms
        cutoff = self._clock() - window_ms / 1000.0
        with self._lock:
            events = [e for e in self._events if e.timestamp >= cutoff]
            active = len(self._active)

        started = sum(1 for e in events if e.type == TransactionEventType.TRANSACTION_STARTED)
        committed = sum(1 for e in events if e.type == TransactionEventType.TRANSACTION_COMMITTED)
        aborted = sum(
            1
            for e in events
            if e.type in (TransactionEventType.TRANSACTION_ABORTED, TransactionEventType.TRANSACTION_TIMEOUT)
        )
        rollbacks = sum(1 for e in events if e.type == TransactionEventType.ROLLBACK_STARTED)
        deadlocks = sum(1 for e in events if e.type == TransactionEventType.DEADLOCK_DETECTED)
        durations = sorted(
            e.duration_ms for e in events if e.type in _FINISHED and e.duration_ms is not None
        )
        finished = committed + aborted

        return MonitorSnapshot(
            window_ms=window_ms,
            active_transactions=active,
            transactions_per_second=finished / (window_ms / 1000.0),
            average_duration_ms=sum(durations) / len(durations) if durations else 0.0,
            p50_duration_ms=percentile(durations, 50),
            p95_duration_ms=percentile(durations, 95),
            p99_duration_ms=percentile(durations, 99),
            error_rate=aborted / finished if finished else 0.0,
            rollback_rate=rollbacks / started if started else 0.0,
            deadlock_count=deadlocks,
            started=started,
            committed=committed,
            aborted=aborted,
        )

    def evaluate_alerts(self) -> list[Alert]:
        """Check window thresholds; raise new alerts and resolve cleared ones.

        Returns:
            Alerts raised by this evaluation.
        """
        snapshot = self.get_current_metrics()
        limits = self._thresholds
        finished = snapshot.committed + snapshot.aborted

        firing: dict[AlertType, tuple[bool, float, float, str]] = {
            AlertType.HIGH_ERROR_RATE: (
                finished >= limits.min_samples and snapshot.error_rate > limits.max_error_rate,
                snapshot.error_rate,
                limits.max_error_rate,
                f"Error rate {snapshot.error_rate:.1%} above {limits.max_error_rate:.1%}",
            ),
            AlertType.HIGH_CONCURRENCY: (
                snapshot.active_transactions > limits.max_concurrent_transactions,
                snapshot.active_transactions,
                limits.max_concurrent_transactions,
                f"{snapshot.active_transactions} active transactions "
                f"(limit {limits.max_concurrent_transactions})",
            ),
            AlertType.DEADLOCK_STORM: (
                snapshot.deadlock_count > limits.max_deadlocks_per_window,
                snapshot.deadlock_count,
                limits.max_deadlocks_per_window,
                f"{snapshot.deadlock_count} deadlocks in {snapshot.window_ms}ms",
            ),
        }

        raised = []
        resolved = []
        now = self._clock()
        with self._lock:
            for alert_type, (active, value, threshold, message) in firing.items():
                existing = self._active_alert_locked(alert_type)
                if active and existing is None:
                    alert = Alert(
                        type=alert_type,
                        severity=AlertSeverity.CRITICAL
                        if alert_type == AlertType.DEADLOCK_STORM
                        else AlertSeverity.WARNING,
                        message=message,
                        value=float(value),
                        threshold=float(threshold),
                        created_at=now,
                    )
                    self._alerts.append(alert)
                    raised.append(alert)
                elif not active and existing is not None:
                    existing.resolved_at = now
                    resolved.append(existing)

        for alert in raised:
            logger.warning("alert_raised", alert_type=alert.type.value, message=alert.message)
        for alert in resolved:
            logger.info("alert_resolved", alert_type=alert.type.value, alert_id=alert.id)
        self._update_alert_gauge()
        return raised

    def get_alerts(self, include_resolved: bool = False) -> list[Alert]:
        with self._lock:
            return [a for a in self._alerts if include_resolved or a.active]

    def active_alert_count(self) -> int:
        with self._lock:
            return sum(1 for a in self._alerts if a.active)

    def resolve_alert(self, alert_id: str) -> bool:
        with self._lock:
            for alert in self._alerts:
                if alert.id == alert_id and alert.active:
                    alert.resolved_at = self._clock()
                    break
            else:
                return False
        self._update_alert_gauge()
        return True

    def resolve_circuit_alert(self, circuit: str) -> None:
        """Resolve the CIRCUIT_OPEN alert of a circuit that closed again."""
        with self._lock:
            for alert in self._alerts:
                if alert.type == AlertType.CIRCUIT_OPEN and alert.active and alert.transaction_id == circuit:
                    alert.resolved_at = self._clock()
        self._update_alert_gauge()

    def get_events(
        self,
        transaction_id: TransactionId | None = None,
        limit: int | None = None,
    ) -> list[TransactionEvent]:
        with self._lock:
            events = [
                e for e in self._events if transaction_id is None or e.transaction_id == transaction_id
            ]
        return events[-limit:] if limit else events

    def prune(self, max_age_ms: int) -> int:
        """Drop events and resolved alerts older than ``max_age_ms``."""
        cutoff = self._clock() - max_age_ms / 1000.0
        with self._lock:
            before = len(self._events)
            while self._events and self._events[0].timestamp < cutoff:
                self._events.popleft()
            self._alerts = [
                a for a in self._alerts if a.active or (a.resolved_at or a.created_at) >= cutoff
            ]
            return before - len(self._events)

    def _active_alert_locked(self, alert_type: AlertType) -> Alert | None:
        for alert in self._alerts:
            if alert.type == alert_type and alert.active:
                return alert
        return None

    def _has_active_locked(self, alert_type: AlertType, subject: str) -> bool:
        return any(
            a.type == alert_type and a.active and (a.transaction_id or "") == subject
            for a in self._alerts
        )

    def _update_alert_gauge(self) -> None:
        if self._metrics is not None:
            self._metrics.alerts_active.set(self.active_alert_count())


def percentile(sorted_values: list[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending list; 0.0 when empty."""
    if not sorted_values:
        return 0.0
    rank = max(1, math.ceil(pct / 100.0 * len(sorted_values)))
    return sorted_values[min(rank, len(sorted_values)) - 1]
