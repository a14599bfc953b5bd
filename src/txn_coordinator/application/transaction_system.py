"""Transaction System - Unified entry point for transaction coordination.

This module provides the TransactionSystem class that wires together
every coordinator component: the coordinator log, optimistic locks,
deadlock detection, circuit breakers, sagas, two-phase commit,
cross-domain coordination, rollback, recovery and monitoring.

Usage:
    from txn_coordinator.application import TransactionSystem

    system = TransactionSystem(config)
    system.register_participant(ledger)
    system.register_saga(approve_minutes_saga)
    system.start()                      # runs recovery

    results = system.execute_transaction([...])
    execution = system.execute_saga("approve_minutes", {"meeting_id": "m1"})

    system.stop()

Components are built in the constructor so participants, saga
definitions and domain handlers can be registered before ``start`` runs
recovery; recovery needs them to finish interrupted work.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from txn_coordinator.adapters.outbound.file_coordinator_log import FileCoordinatorLog
from txn_coordinator.adapters.outbound.memory_coordinator_log import InMemoryCoordinatorLog
from txn_coordinator.adapters.outbound.memory_event_store import InMemoryEventStore
from txn_coordinator.domain.entities import (
    DomainOperation,
    SagaDefinition,
    SagaExecution,
    TransactionalOperation,
    TransactionOptions,
    CrossDomainResult,
)
from txn_coordinator.domain.errors import InvalidTransactionStateError, TransactionNotFoundError
from txn_coordinator.domain.services.circuit_breaker import CircuitBreakerRegistry
from txn_coordinator.domain.services.cross_domain_coordinator import CrossDomainTransactionCoordinator
from txn_coordinator.domain.services.deadlock_detector import DeadlockDetector
from txn_coordinator.domain.services.lock_registry import OptimisticLockRegistry
from txn_coordinator.domain.services.recovery_service import RecoveryService, RecoveryStats
from txn_coordinator.domain.services.rollback_manager import RollbackManager
from txn_coordinator.domain.services.saga_orchestrator import SagaOrchestrator
from txn_coordinator.domain.services.transaction_coordinator import TransactionCoordinator
from txn_coordinator.domain.services.transaction_monitor import (
    AlertThresholds,
    TransactionEvent,
    TransactionEventType,
    TransactionMonitor,
)
from txn_coordinator.domain.services.two_phase_commit import (
    DEFAULT_PHASE2_RETRY,
    TwoPhaseCommitCoordinator,
)
from txn_coordinator.domain.value_objects import (
    CircuitState,
    DeadlockResolution,
    HealthStatus,
    IsolationLevel,
    RetryPolicy,
    SagaStatus,
    TransactionId,
    TransactionMode,
)
from txn_coordinator.infrastructure.config import Config, get_config
from txn_coordinator.infrastructure.logging import get_logger
from txn_coordinator.infrastructure.metrics import MetricsRegistry, get_metrics
from txn_coordinator.ports.outbound.coordinator_log import CoordinatorLog, SyncMode
from txn_coordinator.ports.outbound.domain_handler import DomainHandler
from txn_coordinator.ports.outbound.event_store import DomainEventStore
from txn_coordinator.ports.outbound.participant import Participant

logger = get_logger(__name__)

DEGRADED_ALERT_COUNT = 5
CRITICAL_ALERT_COUNT = 10

# Coordinator events forwarded to the monitor
_MONITORED_EVENTS = {
    "transaction:started": TransactionEventType.TRANSACTION_STARTED,
    "transaction:committed": TransactionEventType.TRANSACTION_COMMITTED,
    "transaction:rolled_back": TransactionEventType.TRANSACTION_ABORTED,
    "rollback:started": TransactionEventType.ROLLBACK_STARTED,
    "operation:failed": TransactionEventType.OPERATION_FAILED,
    "compensation:executed": TransactionEventType.COMPENSATION_EXECUTED,
    "deadlock:detected": TransactionEventType.DEADLOCK_DETECTED,
}


@dataclass
class SystemHealth:
    """Result of ``get_system_health``."""

    status: HealthStatus
    started: bool
    active_transactions: int
    max_concurrent_transactions: int
    active_alerts: int
    open_circuits: list[str] = field(default_factory=list)
    in_doubt_transactions: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "started": self.started,
            "active_transactions": self.active_transactions,
            "max_concurrent_transactions": self.max_concurrent_transactions,
            "active_alerts": self.active_alerts,
            "open_circuits": list(self.open_circuits),
            "in_doubt_transactions": self.in_doubt_transactions,
        }


@dataclass
class MaintenanceReport:
    """What one maintenance sweep did."""

    expired_transactions: list[TransactionId] = field(default_factory=list)
    expired_locks: int = 0
    deadlocks_resolved: int = 0
    in_doubt_remaining: int = 0
    alerts_raised: int = 0
    purged: int = 0
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "expired_transactions": list(self.expired_transactions),
            "expired_locks": self.expired_locks,
            "deadlocks_resolved": self.deadlocks_resolved,
            "in_doubt_remaining": self.in_doubt_remaining,
            "alerts_raised": self.alerts_raised,
            "purged": self.purged,
            "duration_ms": self.duration_ms,
        }


class TransactionSystem:
    """Facade over every transaction coordination component.

    Features:
        - Crash recovery on start
        - Single-domain, distributed, saga and cross-domain transactions
        - Background maintenance: timeouts, lock expiry, deadlocks,
          in-doubt participants and alerts
        - Health and statistics for the REST API

    Thread Safety:
        All public methods may be called from multiple threads.
    """

    def __init__(
        self,
        config: Config | None = None,
        log: CoordinatorLog | None = None,
        metrics: MetricsRegistry | None = None,
        event_store: DomainEventStore | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Build the components.

        Args:
            config: Configuration; defaults to ``get_config()``.
            log: Coordinator log; built from ``config.log`` when None.
            metrics: Metrics registry; defaults to the global one.
            event_store: Domain event store for cross-domain transactions;
                an in-memory one when None.
            clock: Time source in epoch seconds.
            sleep: Sleep function used between retries.
        """
        self._config = config if config is not None else get_config()
        self._metrics = metrics if metrics is not None else get_metrics()
        self._clock = clock
        cfg = self._config

        self._log = log if log is not None else self._open_log(cfg)
        self._event_store = event_store if event_store is not None else InMemoryEventStore()

        retry = RetryPolicy(
            max_attempts=cfg.retry.max_attempts,
            base_delay_ms=cfg.retry.base_delay_ms,
            max_delay_ms=cfg.retry.max_delay_ms,
            multiplier=cfg.retry.multiplier,
            jitter_ms=cfg.retry.jitter_ms,
        )

        self._monitor = TransactionMonitor(
            thresholds=AlertThresholds(
                max_duration_ms=cfg.monitoring.max_duration_ms,
                max_error_rate=cfg.monitoring.max_error_rate,
                max_concurrent_transactions=cfg.monitoring.max_concurrent_transactions,
                max_deadlocks_per_window=cfg.monitoring.max_deadlocks_per_window,
            ),
            window_ms=cfg.monitoring.window_ms,
            max_events=cfg.monitoring.max_events,
            metrics=self._metrics,
            clock=clock,
        )
        self._breakers = CircuitBreakerRegistry(
            failure_threshold=cfg.circuit_breaker.failure_threshold,
            recovery_timeout_ms=cfg.circuit_breaker.recovery_timeout_ms,
            half_open_max_calls=cfg.circuit_breaker.half_open_max_calls,
            enabled=cfg.circuit_breaker.enabled,
            clock=clock,
            metrics=self._metrics,
            on_state_change=self._on_circuit_change,
        )
        self._locks = OptimisticLockRegistry(cfg.coordinator.lock_timeout_ms, clock=clock)
        self._sagas = SagaOrchestrator(log=self._log, metrics=self._metrics, sleep=sleep)
        self._twopc = TwoPhaseCommitCoordinator(
            self._log,
            breakers=self._breakers,
            phase2_retry=RetryPolicy(
                max_attempts=max(cfg.retry.max_attempts, 1),
                base_delay_ms=cfg.retry.base_delay_ms,
                max_delay_ms=cfg.retry.max_delay_ms,
                multiplier=cfg.retry.multiplier,
                retryable_errors=DEFAULT_PHASE2_RETRY.retryable_errors,
            ),
            metrics=self._metrics,
            sleep=sleep,
        )
        deadlocks = None
        if cfg.coordinator.deadlock_detection:
            deadlocks = DeadlockDetector(
                self._locks,
                resolution=DeadlockResolution(cfg.coordinator.deadlock_resolution),
                start_time_of=self._start_time_of,
            )
        self._coordinator = TransactionCoordinator(
            log=self._log,
            lock_registry=self._locks,
            saga_orchestrator=self._sagas,
            two_phase_commit=self._twopc,
            deadlock_detector=deadlocks,
            max_concurrent_transactions=cfg.coordinator.max_concurrent_transactions,
            default_timeout_ms=cfg.coordinator.default_timeout_ms,
            default_isolation_level=IsolationLevel(cfg.coordinator.default_isolation_level),
            lock_timeout_ms=cfg.coordinator.lock_timeout_ms,
            metrics=self._metrics,
            clock=clock,
        )
        self._cross_domain = CrossDomainTransactionCoordinator(
            event_store=self._event_store,
            log=self._log,
            max_concurrent_transactions=cfg.coordinator.max_concurrent_transactions,
            default_retry=retry,
            metrics=self._metrics,
            sleep=sleep,
        )
        self._rollback = RollbackManager(
            max_retries=max(cfg.retry.max_attempts - 1, 0),
            retry_delay_ms=cfg.retry.base_delay_ms,
            metrics=self._metrics,
            sleep=sleep,
        )
        self._recovery = RecoveryService(
            self._log,
            two_phase_commit=self._twopc,
            saga_orchestrator=self._sagas,
            metrics=self._metrics,
        )
        self._coordinator.on("*", self._on_coordinator_event)

        self._lock = threading.Lock()
        self._started = False
        self._stopped = False
        self._recovery_stats: RecoveryStats | None = None
        self._maintenance_thread: threading.Thread | None = None
        self._maintenance_stop = threading.Event()

    @staticmethod
    def _open_log(config: Config) -> CoordinatorLog:
        if config.log.in_memory:
            return InMemoryCoordinatorLog()
        return FileCoordinatorLog(config.log.log_dir, sync_mode=SyncMode(config.log.sync_mode))

    # =========================================================================
    # Factory presets
    # =========================================================================

    @classmethod
    def production(cls, **kwargs: Any) -> TransactionSystem:
        return cls(Config.production(), **kwargs)

    @classmethod
    def development(cls, **kwargs: Any) -> TransactionSystem:
        return cls(Config.development(), **kwargs)

    @classmethod
    def testing(cls, **kwargs: Any) -> TransactionSystem:
        return cls(Config.testing(), **kwargs)

    # =========================================================================
    # Components
    # =========================================================================

    @property
    def config(self) -> Config:
        return self._config

    @property
    def coordinator(self) -> TransactionCoordinator:
        return self._coordinator

    @property
    def saga_orchestrator(self) -> SagaOrchestrator:
        return self._sagas

    @property
    def two_phase_commit(self) -> TwoPhaseCommitCoordinator:
        return self._twopc

    @property
    def cross_domain(self) -> CrossDomainTransactionCoordinator:
        return self._cross_domain

    @property
    def rollback_manager(self) -> RollbackManager:
        return self._rollback

    @property
    def monitor(self) -> TransactionMonitor:
        return self._monitor

    @property
    def circuit_breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    @property
    def log(self) -> CoordinatorLog:
        return self._log

    @property
    def event_store(self) -> DomainEventStore:
        return self._event_store

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def recovery_stats(self) -> RecoveryStats | None:
        return self._recovery_stats

    def register_participant(self, participant: Participant) -> None:
        self._twopc.register_participant(participant)

    def register_saga(self, definition: SagaDefinition) -> None:
        self._sagas.register_saga(definition)

    def register_domain_handler(self, domain: str, handler: DomainHandler) -> None:
        self._cross_domain.register_handler(domain, handler)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, background_maintenance: bool = False) -> RecoveryStats:
        """Run recovery and start accepting transactions.

        Args:
            background_maintenance: Also start the maintenance thread.

        Returns:
            Statistics from recovery.

        Raises:
            RuntimeError: If already started.
            RecoveryError: If recovery fails.
        """
        with self._lock:
            if self._started:
                raise RuntimeError("Transaction system already started")
            if self._stopped:
                raise RuntimeError("Transaction system was stopped; create a new one")

        stats = self._recovery.recover()
        with self._lock:
            self._recovery_stats = stats
            self._started = True

        if background_maintenance:
            self._start_maintenance_thread()
        logger.info(
            "transaction_system_started",
            recovered_committed=stats.transactions_committed,
            recovered_aborted=stats.transactions_aborted,
            sagas_compensated=stats.sagas_compensated,
            unresolved=stats.unresolved,
        )
        return stats

    def stop(self) -> None:
        """Stop accepting work, drain, and close the log.

        Waits up to ``shutdown_grace_ms`` for active transactions; any
        still active afterwards are rolled back.

        Raises:
            RuntimeError: If not started.
        """
        with self._lock:
            if not self._started:
                raise RuntimeError("Transaction system not started")
            self._started = False
            self._stopped = True

        self._coordinator.stop_accepting()
        deadline = time.time() + self._config.coordinator.shutdown_grace_ms / 1000.0
        while self._coordinator.get_active_transactions_count() and time.time() < deadline:
            time.sleep(0.01)

        remaining = self._coordinator.get_active_transactions()
        if remaining:
            logger.warning(
                "shutdown_rolling_back_transactions",
                transaction_ids=[ctx.id for ctx in remaining],
            )
        for ctx in remaining:
            try:
                self._coordinator.rollback(ctx.id, reason="System shutdown")
            except InvalidTransactionStateError:
                # Finished while we were deciding
                continue

        self._stop_maintenance_thread()
        self._cross_domain.close()
        self._sagas.close()
        self._twopc.close()
        self._log.close()
        logger.info("transaction_system_stopped")

    def __enter__(self) -> TransactionSystem:
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._started:
            self.stop()

    def _require_started(self) -> None:
        if not self._started:
            raise RuntimeError("Transaction system not started")

    # =========================================================================
    # Transactions
    # =========================================================================

    def execute_transaction(
        self,
        operations: list[TransactionalOperation],
        options: TransactionOptions | None = None,
    ) -> list[Any]:
        """Begin, execute and commit; roll back on failure."""
        self._require_started()
        return self._coordinator.with_transaction(operations, options or self._options())

    def execute_distributed(
        self,
        operations: list[TransactionalOperation],
        options: TransactionOptions | None = None,
    ) -> list[Any]:
        """Run operations with two-phase commit across participants.

        Raises:
            ParticipantError: If a participant voted NO; everything was
                aborted.
        """
        self._require_started()
        base = options or self._options()
        distributed = TransactionOptions(
            mode=TransactionMode.DISTRIBUTED,
            isolation_level=base.isolation_level,
            timeout_ms=base.timeout_ms,
            user_id=base.user_id,
            organization_id=base.organization_id,
            metadata=dict(base.metadata),
        )
        return self._coordinator.with_transaction(operations, distributed)

    def execute_saga(
        self,
        saga_id: str,
        input: Any = None,
        *,
        user_id: str | None = None,
        organization_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SagaExecution:
        """Run a registered saga; failures are reported on the execution."""
        self._require_started()
        start = self._clock()
        execution = self._sagas.start_saga(
            saga_id,
            input,
            user_id=user_id,
            organization_id=organization_id,
            metadata=metadata,
        )
        self._record_outcome(
            execution.id,
            start,
            committed=execution.status == SagaStatus.COMMITTED,
            duration_ms=(self._clock() - start) * 1000.0,
            saga_id=saga_id,
        )
        return execution

    def execute_cross_domain(
        self,
        operations: list[DomainOperation],
        **kwargs: Any,
    ) -> CrossDomainResult:
        """Run operations across registered domain handlers."""
        self._require_started()
        start = self._clock()
        result = self._cross_domain.execute(operations, **kwargs)
        self._record_outcome(
            result.transaction_id,
            start,
            committed=result.succeeded,
            duration_ms=result.duration_ms,
        )
        return result

    def _record_outcome(
        self,
        txn_id: TransactionId,
        start: float,
        committed: bool,
        duration_ms: float,
        **metadata: Any,
    ) -> None:
        # Sagas and cross-domain work bypass the coordinator event bus
        self._monitor.record_event(
            TransactionEvent(TransactionEventType.TRANSACTION_STARTED, txn_id, timestamp=start)
        )
        self._monitor.record_event(
            TransactionEvent(
                TransactionEventType.TRANSACTION_COMMITTED
                if committed
                else TransactionEventType.TRANSACTION_ABORTED,
                txn_id,
                timestamp=self._clock(),
                duration_ms=duration_ms,
                metadata=metadata,
            )
        )

    def rollback_transaction(self, txn_id: TransactionId, reason: str = "Rolled back by request") -> None:
        self._require_started()
        self._coordinator.rollback(txn_id, reason=reason)

    def _options(self) -> TransactionOptions:
        return TransactionOptions(
            timeout_ms=self._config.coordinator.default_timeout_ms,
            isolation_level=IsolationLevel(self._config.coordinator.default_isolation_level),
        )

    # =========================================================================
    # Health, stats and maintenance
    # =========================================================================

    def get_system_health(self) -> SystemHealth:
        """HEALTHY, DEGRADED or CRITICAL.

        CRITICAL: more than 10 active alerts or any open circuit.
        DEGRADED: more than 5 active alerts or more active transactions
        than the monitoring concurrency limit.
        """
        alerts = self._monitor.active_alert_count()
        active = self._coordinator.get_active_transactions_count()
        open_circuits = self._breakers.open_circuits()
        limit = self._config.monitoring.max_concurrent_transactions

        if alerts > CRITICAL_ALERT_COUNT or open_circuits:
            status = HealthStatus.CRITICAL
        elif alerts > DEGRADED_ALERT_COUNT or active > limit:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return SystemHealth(
            status=status,
            started=self._started,
            active_transactions=active,
            max_concurrent_transactions=self._config.coordinator.max_concurrent_transactions,
            active_alerts=alerts,
            open_circuits=open_circuits,
            in_doubt_transactions=len(self._twopc.get_in_doubt()),
        )

    def get_stats(self) -> dict[str, Any]:
        return {
            "started": self._started,
            "coordinator": self._coordinator.get_stats(),
            "sagas": {
                "registered": len(self._sagas.list_sagas()),
                "active": len(self._sagas.get_active_executions()),
            },
            "two_phase_commit": {
                "participants": self._twopc.participant_names,
                "in_doubt": len(self._twopc.get_in_doubt()),
            },
            "cross_domain": {
                "domains": self._cross_domain.domains,
                "active": self._cross_domain.get_active_count(),
            },
            "circuit_breakers": {
                name: m.to_dict() for name, m in self._breakers.get_all_metrics().items()
            },
            "log": {
                "current_lsn": int(self._log.get_current_lsn()),
                "flushed_lsn": int(self._log.get_flushed_lsn()),
            },
            "monitor": self._monitor.get_current_metrics().to_dict(),
            "recovery": self._recovery_stats.to_dict() if self._recovery_stats else None,
        }

    def run_maintenance(self) -> MaintenanceReport:
        """One sweep: timeouts, expired locks, deadlocks, in-doubt, alerts and retention."""
        start = time.time()
        report = MaintenanceReport()
        report.expired_transactions = self._coordinator.expire_timed_out()
        report.expired_locks = self._coordinator.cleanup_expired_locks()
        report.deadlocks_resolved = len(self._coordinator.resolve_deadlocks())
        if self._twopc.get_in_doubt():
            report.in_doubt_remaining = len(self._twopc.retry_in_doubt())
        report.alerts_raised = len(self._monitor.evaluate_alerts())
        retention_ms = self._config.coordinator.retention_ms
        report.purged = (
            self._coordinator.purge_finished(retention_ms)
            + self._sagas.cleanup(retention_ms)
            + self._cross_domain.cleanup(retention_ms)
        )
        report.duration_ms = (time.time() - start) * 1000.0
        if report.expired_transactions or report.deadlocks_resolved or report.alerts_raised or report.purged:
            logger.info("maintenance_completed", **report.to_dict())
        return report

    def _start_maintenance_thread(self) -> None:
        interval = self._config.coordinator.maintenance_interval_ms / 1000.0
        self._maintenance_stop.clear()

        def loop() -> None:
            while not self._maintenance_stop.wait(interval):
                try:
                    self.run_maintenance()
                except Exception:
                    logger.exception("maintenance_failed")

        self._maintenance_thread = threading.Thread(
            target=loop, name="txn-maintenance", daemon=True
        )
        self._maintenance_thread.start()

    def _stop_maintenance_thread(self) -> None:
        self._maintenance_stop.set()
        thread, self._maintenance_thread = self._maintenance_thread, None
        if thread is not None:
            thread.join(timeout=5.0)

    # =========================================================================
    # Event wiring
    # =========================================================================

    def _start_time_of(self, txn_id: TransactionId) -> float | None:
        try:
            return self._coordinator.get_transaction(txn_id).start_time
        except TransactionNotFoundError:
            return None

    def _on_coordinator_event(self, event: str, payload: dict[str, Any]) -> None:
        event_type = _MONITORED_EVENTS.get(event)
        if event_type is None:
            return
        if event_type == TransactionEventType.TRANSACTION_ABORTED and payload.get("reason") == "Transaction timeout":
            event_type = TransactionEventType.TRANSACTION_TIMEOUT
        self._monitor.record_event(
            TransactionEvent(
                type=event_type,
                transaction_id=payload.get("transaction_id") or payload.get("victim"),
                timestamp=self._clock(),
                duration_ms=payload.get("duration_ms"),
                metadata={k: v for k, v in payload.items() if k not in ("transaction_id", "duration_ms")},
            )
        )

    def _on_circuit_change(self, name: str, old: CircuitState, new: CircuitState) -> None:
        if new == CircuitState.OPEN:
            self._monitor.record_event(
                TransactionEvent(
                    type=TransactionEventType.CIRCUIT_OPENED,
                    timestamp=self._clock(),
                    metadata={"circuit": name, "previous": old.value},
                )
            )
        elif new == CircuitState.CLOSED:
            self._monitor.resolve_circuit_alert(name)
