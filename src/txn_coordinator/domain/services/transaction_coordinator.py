"""Transaction coordinator.

Owns the lifecycle of coordinator transactions and dispatches their
work by mode:

    Mode           | execute()                          | commit()
    ---------------|------------------------------------|---------------------------
    SINGLE_DOMAIN  | run operations in order, register  | log COMMIT, release locks
                   | compensations; on failure roll back|
    CROSS_DOMAIN   | run operations as a saga           | log COMMIT, release locks
    COMPENSATING   | (same as CROSS_DOMAIN)             |
    DISTRIBUTED    | run local operations, then 2PC     | log COMMIT decision, run
                   | phase 1 on participants            | 2PC phase 2

Rollback runs registered compensations (highest priority first, then
newest first), aborts prepared participants, releases optimistic locks
and logs the outcome. A failing compensation is logged and counted but
does not stop the remaining ones.

Lifecycle events are published to subscribers registered with ``on``:
``transaction:started``, ``transaction:committed``,
``transaction:rolled_back``, ``transaction:timeout``,
``operation:failed``, ``lock:acquired``, ``lock:released``,
``lock:conflict``, ``compensation:executed``, ``compensation:failed``
and ``deadlock:detected``.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from typing import Any, Callable

from txn_coordinator.domain.entities import (
    BeginRecord,
    CompensationAction,
    CompensationLogRecord,
    DecisionRecord,
    EndRecord,
    OperationRecord,
    OptimisticLock,
    SagaDefinition,
    SagaStep,
    TransactionalOperation,
    TransactionContext,
    TransactionKind,
    TransactionMetrics,
    TransactionOperation,
    TransactionOptions,
    lock_key,
)
from txn_coordinator.domain.errors import (
    CoordinatorError,
    InvalidTransactionStateError,
    OperationFailedError,
    OptimisticLockConflictError,
    ParticipantError,
    QuotaExceededError,
    TransactionNotFoundError,
    TransactionTimeoutError,
)
from txn_coordinator.domain.services.deadlock_detector import DeadlockDetector, DeadlockInfo
from txn_coordinator.domain.services.lock_registry import OptimisticLockRegistry
from txn_coordinator.domain.services.saga_orchestrator import SagaOrchestrator
from txn_coordinator.domain.services.two_phase_commit import (
    PrepareOutcome,
    TwoPhaseCommitCoordinator,
)
from txn_coordinator.domain.value_objects import (
    Decision,
    IsolationLevel,
    OperationStatus,
    RetryPolicy,
    SagaStatus,
    TransactionId,
    TransactionMode,
    TransactionStatus,
    Vote,
    new_transaction_id,
)
from txn_coordinator.infrastructure.logging import get_logger, transaction_context
from txn_coordinator.infrastructure.metrics import MetricsRegistry
from txn_coordinator.infrastructure.tracing import trace_span
from txn_coordinator.ports.outbound.coordinator_log import CoordinatorLog

EventHandler = Callable[[str, dict[str, Any]], None]

logger = get_logger(__name__)


class TransactionCoordinator:
    """Coordinates single-domain, saga-based and distributed transactions.

    Usage:
        coordinator = TransactionCoordinator(log=log, lock_registry=locks)
        ctx = coordinator.begin(TransactionOptions(mode=TransactionMode.SINGLE_DOMAIN))
        results = coordinator.execute(ctx.id, [
            TransactionalOperation(execute=create_meeting, compensate=delete_meeting),
            TransactionalOperation(execute=notify_members, compensate=retract_notice),
        ])
        coordinator.commit(ctx.id)

    Thread Safety:
        Different transactions may be driven from different threads. A
        single transaction must be driven by one thread at a time; the
        maintenance sweep may roll it back concurrently.
    """

    def __init__(
        self,
        log: CoordinatorLog | None = None,
        lock_registry: OptimisticLockRegistry | None = None,
        saga_orchestrator: SagaOrchestrator | None = None,
        two_phase_commit: TwoPhaseCommitCoordinator | None = None,
        deadlock_detector: DeadlockDetector | None = None,
        max_concurrent_transactions: int = 100,
        default_timeout_ms: int = 30000,
        default_isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED,
        lock_timeout_ms: int = 5000,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the coordinator.

        Args:
            log: Coordinator log; None keeps no durable record.
            lock_registry: Optimistic lock registry (created if None).
            saga_orchestrator: Runs CROSS_DOMAIN and COMPENSATING work
                (created if None).
            two_phase_commit: Runs DISTRIBUTED work; required only when
                operations name participants.
            deadlock_detector: Used by ``resolve_deadlocks``; None
                disables deadlock detection.
            max_concurrent_transactions: Limit on non-terminal transactions.
            default_timeout_ms: Timeout for transactions begun without one.
            default_isolation_level: Isolation for transactions begun without one.
            lock_timeout_ms: Lifetime of optimistic locks.
            metrics: Metrics registry; None disables metrics.
            clock: Time source in epoch seconds.
        """
        self._log = log
        self._locks = (
            lock_registry if lock_registry is not None else OptimisticLockRegistry(lock_timeout_ms, clock=clock)
        )
        self._sagas = saga_orchestrator or SagaOrchestrator(log=log, metrics=metrics)
        self._twopc = two_phase_commit
        self._deadlocks = deadlock_detector
        self._max_concurrent = max_concurrent_transactions
        self._default_timeout_ms = default_timeout_ms
        self._default_isolation = default_isolation_level
        self._lock_timeout_ms = lock_timeout_ms
        self._metrics = metrics
        self._clock = clock

        self._lock = threading.RLock()
        self._transactions: dict[TransactionId, TransactionContext] = {}
        self._prepared: dict[TransactionId, PrepareOutcome] = {}
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._accepting = True

        # Statistics
        self._total_started = 0
        self._total_committed = 0
        self._total_aborted = 0

    @property
    def lock_registry(self) -> OptimisticLockRegistry:
        return self._locks

    @property
    def saga_orchestrator(self) -> SagaOrchestrator:
        return self._sagas

    @property
    def two_phase_commit(self) -> TwoPhaseCommitCoordinator | None:
        return self._twopc

    # =========================================================================
    # Events
    # =========================================================================

    def on(self, event: str, handler: EventHandler) -> None:
        """Subscribe ``handler(event, payload)`` to an event name, or ``*`` for all."""
        with self._lock:
            self._handlers[event].append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        with self._lock:
            if handler in self._handlers.get(event, []):
                self._handlers[event].remove(handler)

    def _emit(self, event: str, **payload: Any) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event, [])) + list(self._handlers.get("*", []))
        for handler in handlers:
            try:
                handler(event, payload)
            except Exception:
                logger.exception("event_handler_failed", event=event)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def begin(self, options: TransactionOptions | None = None) -> TransactionContext:
        """Start a transaction.

        Raises:
            QuotaExceededError: If the concurrent transaction limit is reached.
            InvalidTransactionStateError: If the coordinator is shutting down.
        """
        options = options or TransactionOptions(
            timeout_ms=self._default_timeout_ms,
            isolation_level=self._default_isolation,
        )

        with self._lock:
            if not self._accepting:
                raise InvalidTransactionStateError("Coordinator is not accepting new transactions")
            active = self._active_count_locked()
            if active >= self._max_concurrent:
                raise QuotaExceededError(
                    f"Maximum concurrent transactions ({self._max_concurrent}) exceeded",
                    details={"active": active, "limit": self._max_concurrent},
                )

            context = TransactionContext(
                id=new_transaction_id(),
                mode=options.mode,
                isolation_level=options.isolation_level,
                start_time=self._clock(),
                timeout_ms=options.timeout_ms,
                clock=self._clock,
                user_id=options.user_id,
                organization_id=options.organization_id,
                metadata=dict(options.metadata),
            )
            self._transactions[context.id] = context
            self._total_started += 1

        self._write_log(
            BeginRecord(
                txn_id=context.id,
                kind=TransactionKind.TRANSACTION,
                mode=context.mode.value,
                metadata={
                    "isolation_level": context.isolation_level.value,
                    "timeout_ms": context.timeout_ms,
                    "user_id": context.user_id,
                    "organization_id": context.organization_id,
                },
            )
        )
        self._update_active_gauge()
        logger.info(
            "transaction_started",
            transaction_id=context.id,
            mode=context.mode.value,
            isolation_level=context.isolation_level.value,
        )
        self._emit("transaction:started", transaction_id=context.id, mode=context.mode.value)
        return context

    def execute(
        self,
        txn_id: TransactionId,
        operations: list[TransactionalOperation],
    ) -> list[Any]:
        """Run operations inside a transaction according to its mode.

        Returns:
            One result per operation, in submission order.

        Raises:
            TransactionNotFoundError: If the transaction is unknown.
            InvalidTransactionStateError: If it can no longer execute.
            TransactionTimeoutError: If it has timed out (it is rolled back).
            OperationFailedError: If an operation failed (it is rolled back).
            OptimisticLockConflictError: If a required lock conflicted
                (it is rolled back).
            ParticipantError: If a participant voted NO (it is rolled back).
        """
        context = self.get_transaction(txn_id)
        with self._lock:
            if not context.status.can_execute():
                raise InvalidTransactionStateError(
                    f"Transaction {txn_id} cannot execute in state {context.status.value}"
                )
            if context.is_expired(self._clock()):
                expired = True
            else:
                expired = False
                context.status = TransactionStatus.RUNNING

        if expired:
            self.rollback(txn_id, reason="Transaction timeout")
            raise TransactionTimeoutError(
                f"Transaction {txn_id} exceeded timeout of {context.timeout_ms}ms"
            )

        with transaction_context(txn_id, mode=context.mode.value):
            with trace_span(
                "transaction.execute",
                {"txn.id": txn_id, "txn.mode": context.mode.value, "txn.operations": len(operations)},
            ):
                if context.mode == TransactionMode.SINGLE_DOMAIN:
                    return self._execute_single_domain(context, operations)
                if context.mode in (TransactionMode.CROSS_DOMAIN, TransactionMode.COMPENSATING):
                    return self._execute_as_saga(context, operations)
                return self._execute_distributed(context, operations)

    def commit(self, txn_id: TransactionId) -> TransactionMetrics:
        """Commit a transaction.

        Returns:
            The transaction's final metrics.

        Raises:
            TransactionNotFoundError: If the transaction is unknown.
            InvalidTransactionStateError: If it is not RUNNING or PREPARED.
        """
        context = self.get_transaction(txn_id)
        with self._lock:
            if not context.status.can_commit():
                raise InvalidTransactionStateError(
                    f"Transaction {txn_id} cannot commit in state {context.status.value}"
                )
            context.status = TransactionStatus.COMMITTING
            outcome = self._prepared.pop(txn_id, None)

        with transaction_context(txn_id), trace_span("transaction.commit", {"txn.id": txn_id}):
            if outcome is not None and self._twopc is not None:
                result = self._twopc.complete(txn_id, Decision.COMMIT, outcome)
                if result.in_doubt:
                    context.metadata["in_doubt"] = list(result.in_doubt)
            else:
                self._write_log(DecisionRecord(txn_id=txn_id, decision=Decision.COMMIT), flush=True)
                self._write_log(EndRecord(txn_id=txn_id, outcome=TransactionStatus.COMMITTED.value))

            released = self._release_locks(context)
            with self._lock:
                context.status = TransactionStatus.COMMITTED
                context.end_time = self._clock()
                self._total_committed += 1

        metrics = TransactionMetrics.from_context(context)
        self._record_finish(context, "committed")
        logger.info(
            "transaction_committed",
            transaction_id=txn_id,
            operations=metrics.operation_count,
            locks_released=released,
            duration_ms=round(metrics.duration_ms, 3),
        )
        self._emit(
            "transaction:committed",
            transaction_id=txn_id,
            mode=context.mode.value,
            duration_ms=metrics.duration_ms,
        )
        return metrics

    def rollback(self, txn_id: TransactionId, reason: str = "") -> None:
        """Roll back a transaction.

        Runs compensations, aborts prepared participants, releases locks
        and marks the transaction ABORTED.

        Raises:
            TransactionNotFoundError: If the transaction is unknown.
            InvalidTransactionStateError: If it is already finished or
                already rolling back.
        """
        context = self.get_transaction(txn_id)
        with self._lock:
            if not context.status.can_abort() or context.status in (
                TransactionStatus.ABORTING,
                TransactionStatus.COMPENSATING,
                TransactionStatus.COMMITTING,
            ):
                raise InvalidTransactionStateError(
                    f"Transaction {txn_id} cannot roll back in state {context.status.value}"
                )
            context.status = TransactionStatus.ABORTING
            context.error = reason or context.error
            outcome = self._prepared.pop(txn_id, None)

        with transaction_context(txn_id), trace_span("transaction.rollback", {"txn.id": txn_id}):
            self._emit("rollback:started", transaction_id=txn_id, reason=reason)
            logger.info("transaction_rolling_back", transaction_id=txn_id, reason=reason)

            if outcome is not None and self._twopc is not None:
                self._twopc.complete(txn_id, Decision.ABORT, outcome)

            failures = self._run_compensations(context)
            released = self._release_locks(context)

            if outcome is None:
                self._write_log(DecisionRecord(txn_id=txn_id, decision=Decision.ABORT), flush=True)
                self._write_log(EndRecord(txn_id=txn_id, outcome=TransactionStatus.ABORTED.value))

            with self._lock:
                context.status = TransactionStatus.ABORTED
                context.end_time = self._clock()
                context.compensation_failures += failures
                self._total_aborted += 1

        self._record_finish(context, "aborted")
        logger.info(
            "transaction_rolled_back",
            transaction_id=txn_id,
            reason=reason,
            compensations=len(context.compensations),
            compensation_failures=failures,
            locks_released=released,
        )
        self._emit(
            "transaction:rolled_back",
            transaction_id=txn_id,
            mode=context.mode.value,
            reason=reason,
            duration_ms=context.duration_ms(),
            compensation_failures=failures,
        )

    # =========================================================================
    # Mode-specific execution
    # =========================================================================

    def _execute_single_domain(
        self,
        context: TransactionContext,
        operations: list[TransactionalOperation],
    ) -> list[Any]:
        results = []
        for index, op in enumerate(operations):
            results.append(self._run_operation(context, op, index))
        return results

    def _run_operation(
        self,
        context: TransactionContext,
        op: TransactionalOperation,
        index: int,
    ) -> Any:
        """Acquire locks, execute, record, and register the compensation.

        On failure the transaction is rolled back and the error re-raised.
        """
        description = op.description or f"operation {index}"
        try:
            for requirement in op.locks:
                self.acquire_optimistic_lock(
                    context.id,
                    requirement.table,
                    requirement.entity_id,
                    requirement.expected_version,
                )
            if op.execute is None:
                raise OperationFailedError(f"Operation '{description}' has nothing to execute")
            result = op.execute(context)
        except Exception as e:
            self._fail_and_rollback(context, op, description, e)
            if isinstance(e, CoordinatorError):
                raise
            raise OperationFailedError.wrap(e, f"Operation '{description}' failed") from e

        record = TransactionOperation(
            type=op.operation_type,
            table=op.table,
            description=description,
            entity_id=op.entity_id,
            result=result,
            status=OperationStatus.EXECUTED,
        )
        with self._lock:
            context.operations.append(record)
            if op.compensate is not None:
                context.compensations.append(
                    CompensationAction(
                        operation_id=record.id,
                        action=_bind_compensation(op.compensate, context, result),
                        description=f"Compensate {description}",
                        priority=op.compensation_priority,
                        sequence=context.next_compensation_sequence(),
                        critical=op.critical,
                    )
                )

        self._write_log(
            OperationRecord(
                txn_id=context.id,
                operation_id=record.id,
                description=description,
                table=op.table,
                entity_id=op.entity_id,
            )
        )
        if self._metrics is not None:
            self._metrics.operations_total.labels(status="executed").inc()
        return result

    def _fail_and_rollback(
        self,
        context: TransactionContext,
        op: TransactionalOperation,
        description: str,
        error: BaseException,
    ) -> None:
        with self._lock:
            context.operations.append(
                TransactionOperation(
                    type=op.operation_type,
                    table=op.table,
                    description=description,
                    entity_id=op.entity_id,
                    status=OperationStatus.FAILED,
                    error=str(error),
                )
            )
        if self._metrics is not None:
            self._metrics.operations_total.labels(status="failed").inc()
        logger.warning(
            "operation_failed",
            transaction_id=context.id,
            operation=description,
            error=str(error),
        )
        self._emit(
            "operation:failed",
            transaction_id=context.id,
            operation=description,
            error=str(error),
        )
        self.rollback(context.id, reason=f"Operation '{description}' failed: {error}")

    def _execute_as_saga(
        self,
        context: TransactionContext,
        operations: list[TransactionalOperation],
    ) -> list[Any]:
        step_ids = _unique_step_ids(operations)
        by_description = {
            op.description: step_id for op, step_id in zip(operations, step_ids) if op.description
        }

        try:
            for op in operations:
                for requirement in op.locks:
                    self.acquire_optimistic_lock(
                        context.id,
                        requirement.table,
                        requirement.entity_id,
                        requirement.expected_version,
                    )
        except OptimisticLockConflictError as e:
            self.rollback(context.id, reason=str(e))
            raise

        steps = [
            SagaStep(
                id=step_id,
                name=op.description or step_id,
                action=_saga_action(op, context),
                compensation=_saga_compensation(op, context),
                retry_policy=RetryPolicy.none(),
                dependencies=[by_description.get(dep, dep) for dep in op.dependencies],
                description=op.domain or "",
            )
            for op, step_id in zip(operations, step_ids)
        ]
        definition = SagaDefinition(id=f"{context.id}:saga", name=f"{context.mode.value} {context.id}", steps=steps)

        self._sagas.register_saga(definition)
        try:
            execution = self._sagas.start_saga(
                definition.id,
                user_id=context.user_id,
                organization_id=context.organization_id,
                metadata={"transaction_id": context.id},
            )
        finally:
            self._sagas.unregister_saga(definition.id)

        context.metadata["saga_execution_id"] = execution.id

        if execution.status != SagaStatus.COMMITTED:
            with self._lock:
                for step_id in execution.compensated_steps:
                    context.operations.append(
                        TransactionOperation(
                            type=operations[step_ids.index(step_id)].operation_type,
                            table=operations[step_ids.index(step_id)].table,
                            description=step_id,
                            status=OperationStatus.COMPENSATED,
                        )
                    )
            self.rollback(context.id, reason=f"Saga failed: {execution.error}")
            raise OperationFailedError(
                f"Saga for transaction {context.id} failed at step "
                f"{execution.failed_step}: {execution.error}",
                details={"execution_id": execution.id, "failed_step": execution.failed_step},
            )

        results = []
        with self._lock:
            records: dict[str, TransactionOperation] = {}
            for op, step_id in zip(operations, step_ids):
                output = execution.steps[step_id].output
                record = TransactionOperation(
                    type=op.operation_type,
                    table=op.table,
                    description=step_id,
                    entity_id=op.entity_id,
                    result=output,
                    status=OperationStatus.EXECUTED,
                )
                context.operations.append(record)
                records[step_id] = record
                results.append(output)
            # sequences continue across execute() calls, in saga completion order
            for step_id in execution.completed_steps:
                op = operations[step_ids.index(step_id)]
                if op.compensate is None:
                    continue
                context.compensations.append(
                    CompensationAction(
                        operation_id=records[step_id].id,
                        action=_bind_compensation(op.compensate, context, execution.steps[step_id].output),
                        description=f"Compensate {step_id}",
                        priority=op.compensation_priority,
                        sequence=context.next_compensation_sequence(),
                        critical=op.critical,
                    )
                )
        return results

    def _execute_distributed(
        self,
        context: TransactionContext,
        operations: list[TransactionalOperation],
    ) -> list[Any]:
        results: list[Any] = [None] * len(operations)
        work: dict[str, list[Any]] = {}
        participant_ops: list[tuple[int, str]] = []

        for index, op in enumerate(operations):
            if op.execute is not None:
                results[index] = self._run_operation(context, op, index)
            if op.participant is not None:
                work.setdefault(op.participant, []).append(op.payload)
                participant_ops.append((index, op.participant))
            elif op.execute is None:
                self._fail_and_rollback(
                    context, op, op.description or f"operation {index}",
                    OperationFailedError("Operation has neither execute nor participant"),
                )
                raise OperationFailedError(
                    f"Operation {index} of transaction {context.id} has neither execute nor participant"
                )

        if not work:
            return results

        if self._twopc is None:
            error = ParticipantError("No two-phase commit coordinator configured", recoverable=False)
            self.rollback(context.id, reason=str(error))
            raise error

        with self._lock:
            context.status = TransactionStatus.PREPARING
        try:
            outcome = self._twopc.prepare(context.id, work)
        except Exception as e:
            with self._lock:
                context.status = TransactionStatus.RUNNING
            self.rollback(context.id, reason=f"Prepare failed: {e}")
            raise

        with self._lock:
            self._prepared[context.id] = outcome

        if outcome.decision != Decision.COMMIT:
            rejected = outcome.rejected_by
            reason = f"Participant(s) {', '.join(rejected)} voted NO"
            self.rollback(context.id, reason=reason)
            raise ParticipantError(
                reason,
                recoverable=False,
                details={"votes": {n: v.value for n, v in outcome.votes.items()}, "errors": outcome.errors},
            )

        with self._lock:
            context.status = TransactionStatus.PREPARED
        for index, name in participant_ops:
            if operations[index].execute is None:
                results[index] = outcome.votes.get(name, Vote.NO)
        return results

    # =========================================================================
    # Locks
    # =========================================================================

    def acquire_optimistic_lock(
        self,
        txn_id: TransactionId,
        table: str,
        entity_id: str,
        expected_version: int,
        timeout_ms: int | None = None,
    ) -> OptimisticLock:
        """Declare the version of an entity this transaction read.

        Raises:
            TransactionNotFoundError: If the transaction is unknown.
            OptimisticLockConflictError: If another live lock declares a
                different version.
        """
        context = self.get_transaction(txn_id)
        started = time.time()
        try:
            lock = self._locks.acquire(
                txn_id,
                table,
                entity_id,
                expected_version,
                timeout_ms if timeout_ms is not None else self._lock_timeout_ms,
            )
        except OptimisticLockConflictError as e:
            if self._metrics is not None:
                self._metrics.lock_conflicts_total.labels(table=table).inc()
            # details already carry table, entity_id, held_version and holder
            self._emit("lock:conflict", transaction_id=txn_id, **e.details)
            raise
        finally:
            with self._lock:
                context.lock_wait_ms += (time.time() - started) * 1000.0

        with self._lock:
            context.locks[lock.key] = lock
        self._update_locks_gauge()
        self._emit(
            "lock:acquired",
            transaction_id=txn_id,
            table=table,
            entity_id=entity_id,
            expected_version=expected_version,
        )
        return lock

    def release_optimistic_lock(self, txn_id: TransactionId, table: str, entity_id: str) -> bool:
        context = self.get_transaction(txn_id)
        released = self._locks.release(txn_id, table, entity_id)
        if released:
            with self._lock:
                context.locks.pop(lock_key(table, entity_id), None)
            self._update_locks_gauge()
            self._emit("lock:released", transaction_id=txn_id, table=table, entity_id=entity_id)
        return released

    def _release_locks(self, context: TransactionContext) -> int:
        with self._lock:
            keys = list(context.locks)
            context.locks.clear()
        released = self._locks.release_all(context.id)
        self._update_locks_gauge()
        for key in keys:
            self._emit("lock:released", transaction_id=context.id, key=key)
        return released

    # =========================================================================
    # Compensation
    # =========================================================================

    def _run_compensations(self, context: TransactionContext) -> int:
        """Run every compensation; return the number that failed."""
        failures = 0
        for compensation in context.ordered_compensations():
            try:
                compensation.action()
            except Exception as e:
                failures += 1
                logger.error(
                    "compensation_failed",
                    transaction_id=context.id,
                    compensation_id=compensation.id,
                    description=compensation.description,
                    critical=compensation.critical,
                    error=str(e),
                    exc_info=True,
                )
                self._write_log(
                    CompensationLogRecord(
                        txn_id=context.id,
                        operation_id=compensation.operation_id,
                        description=compensation.description,
                        succeeded=False,
                        error=str(e),
                    )
                )
                if self._metrics is not None:
                    self._metrics.compensations_total.labels(status="failed").inc()
                self._emit(
                    "compensation:failed",
                    transaction_id=context.id,
                    compensation_id=compensation.id,
                    error=str(e),
                )
                continue

            self._mark_compensated(context, compensation.operation_id)
            self._write_log(
                CompensationLogRecord(
                    txn_id=context.id,
                    operation_id=compensation.operation_id,
                    description=compensation.description,
                )
            )
            if self._metrics is not None:
                self._metrics.compensations_total.labels(status="succeeded").inc()
            self._emit(
                "compensation:executed",
                transaction_id=context.id,
                compensation_id=compensation.id,
                description=compensation.description,
            )
        return failures

    def _mark_compensated(self, context: TransactionContext, operation_id: str) -> None:
        with self._lock:
            for op in context.operations:
                if op.id == operation_id:
                    op.status = OperationStatus.COMPENSATED

    # =========================================================================
    # Maintenance
    # =========================================================================

    def expire_timed_out(self, now: float | None = None) -> list[TransactionId]:
        """Roll back PENDING and RUNNING transactions past their timeout.

        Returns:
            Ids of the transactions rolled back.
        """
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                ctx.id
                for ctx in self._transactions.values()
                if ctx.status.is_expirable() and ctx.is_expired(now)
            ]

        rolled_back = []
        for txn_id in expired:
            try:
                self.rollback(txn_id, reason="Transaction timeout")
            except InvalidTransactionStateError:
                # Finished or rolled back concurrently
                continue
            rolled_back.append(txn_id)
            self._emit("transaction:timeout", transaction_id=txn_id)
        if rolled_back:
            logger.warning("transactions_timed_out", transaction_ids=rolled_back)
        return rolled_back

    def cleanup_expired_locks(self, now: float | None = None) -> int:
        """Drop expired optimistic locks."""
        removed = self._locks.cleanup_expired(now)
        if removed:
            now = self._clock() if now is None else now
            with self._lock:
                for context in self._transactions.values():
                    for key in [k for k, lock in context.locks.items() if lock.is_expired(now)]:
                        del context.locks[key]
            self._update_locks_gauge()
            logger.debug("expired_locks_removed", count=removed)
        return removed

    def resolve_deadlocks(self) -> list[DeadlockInfo]:
        """Detect wait-for cycles and roll back one victim per cycle."""
        if self._deadlocks is None:
            return []

        resolved = []
        for info in self._deadlocks.detect():
            context = self._transactions.get(info.victim)
            if self._metrics is not None:
                self._metrics.deadlocks_total.inc()
            self._emit(
                "deadlock:detected",
                transaction_ids=list(info.transaction_ids),
                victim=info.victim,
                resources=list(info.resources),
            )
            if context is None or context.status.is_terminal():
                self._locks.clear_waits(info.victim)
                continue
            with self._lock:
                context.deadlock_count += 1
            try:
                self.rollback(info.victim, reason="Deadlock resolution")
            except InvalidTransactionStateError:
                self._locks.clear_waits(info.victim)
                continue
            resolved.append(info)
        return resolved

    def purge_finished(self, max_age_ms: int) -> int:
        """Forget finished transactions older than ``max_age_ms``."""
        cutoff = self._clock() - max_age_ms / 1000.0
        with self._lock:
            stale = [
                txn_id
                for txn_id, ctx in self._transactions.items()
                if ctx.status.is_terminal() and (ctx.end_time or ctx.start_time) < cutoff
            ]
            for txn_id in stale:
                del self._transactions[txn_id]
        return len(stale)

    def stop_accepting(self) -> None:
        """Refuse new transactions; in-flight ones continue."""
        with self._lock:
            self._accepting = False

    # =========================================================================
    # Queries
    # =========================================================================

    def get_transaction(self, txn_id: TransactionId) -> TransactionContext:
        with self._lock:
            context = self._transactions.get(txn_id)
        if context is None:
            raise TransactionNotFoundError(txn_id)
        return context

    def get_transaction_status(self, txn_id: TransactionId) -> TransactionStatus:
        return self.get_transaction(txn_id).status

    def get_transaction_metrics(self, txn_id: TransactionId) -> TransactionMetrics:
        return TransactionMetrics.from_context(self.get_transaction(txn_id))

    def get_active_transactions(self) -> list[TransactionContext]:
        with self._lock:
            return [ctx for ctx in self._transactions.values() if ctx.status.is_active()]

    def get_active_transactions_count(self) -> int:
        with self._lock:
            return self._active_count_locked()

    def list_transactions(self, status: TransactionStatus | None = None) -> list[TransactionContext]:
        with self._lock:
            return [
                ctx
                for ctx in self._transactions.values()
                if status is None or ctx.status == status
            ]

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "active": self._active_count_locked(),
                "started": self._total_started,
                "committed": self._total_committed,
                "aborted": self._total_aborted,
                "tracked": len(self._transactions),
                "locks_held": self._locks.lock_count,
                "max_concurrent": self._max_concurrent,
            }

    # =========================================================================
    # Convenience wrappers
    # =========================================================================

    def with_transaction(
        self,
        operations: list[TransactionalOperation],
        options: TransactionOptions | None = None,
    ) -> list[Any]:
        """Begin, execute and commit; roll back if anything fails."""
        context = self.begin(options)
        try:
            results = self.execute(context.id, operations)
            self.commit(context.id)
            return results
        except Exception as e:
            self._rollback_quietly(context.id, str(e))
            raise

    def with_saga(
        self,
        steps: list[SagaStep],
        input: Any = None,
        name: str = "saga",
        options: TransactionOptions | None = None,
    ) -> Any:
        """Run ad hoc saga steps inside a COMPENSATING transaction.

        Returns:
            The saga's final result.

        Raises:
            OperationFailedError: If the saga failed; its steps have been
                compensated and the transaction rolled back.
        """
        options = options or TransactionOptions(
            mode=TransactionMode.COMPENSATING,
            timeout_ms=self._default_timeout_ms,
            isolation_level=self._default_isolation,
        )
        context = self.begin(options)
        definition = SagaDefinition(id=f"{context.id}:{name}", name=name, steps=steps)
        try:
            self._sagas.register_saga(definition)
            try:
                execution = self._sagas.start_saga(
                    definition.id,
                    input,
                    user_id=context.user_id,
                    organization_id=context.organization_id,
                    metadata={"transaction_id": context.id},
                )
            finally:
                self._sagas.unregister_saga(definition.id)

            context.metadata["saga_execution_id"] = execution.id
            if execution.status != SagaStatus.COMMITTED:
                raise OperationFailedError(
                    f"Saga {name} failed at step {execution.failed_step}: {execution.error}",
                    details={"execution_id": execution.id, "failed_step": execution.failed_step},
                )
            with self._lock:
                context.status = TransactionStatus.RUNNING
            self.commit(context.id)
            return execution.result
        except Exception as e:
            self._rollback_quietly(context.id, str(e))
            raise

    def _rollback_quietly(self, txn_id: TransactionId, reason: str) -> None:
        """Roll back unless the transaction already finished or is rolling back."""
        with self._lock:
            context = self._transactions.get(txn_id)
            if context is None or context.status.is_terminal() or context.status in (
                TransactionStatus.ABORTING,
                TransactionStatus.COMMITTING,
            ):
                return
        self.rollback(txn_id, reason=reason)

    # =========================================================================
    # Internals
    # =========================================================================

    def _active_count_locked(self) -> int:
        return sum(1 for ctx in self._transactions.values() if ctx.status.is_active())

    def _write_log(self, record: Any, flush: bool = False) -> None:
        if self._log is None:
            return
        lsn = self._log.append(record)
        if flush:
            self._log.flush(lsn)

    def _record_finish(self, context: TransactionContext, outcome: str) -> None:
        self._update_active_gauge()
        if self._metrics is None:
            return
        self._metrics.transactions_total.labels(mode=context.mode.value, outcome=outcome).inc()
        self._metrics.transaction_duration_seconds.labels(mode=context.mode.value).observe(
            context.duration_ms() / 1000.0
        )

    def _update_active_gauge(self) -> None:
        if self._metrics is not None:
            self._metrics.transactions_active.set(self.get_active_transactions_count())

    def _update_locks_gauge(self) -> None:
        if self._metrics is not None:
            self._metrics.locks_held.set(self._locks.lock_count)


def _bind_compensation(
    compensate: Callable[[TransactionContext, Any], None],
    context: TransactionContext,
    result: Any,
) -> Callable[[], None]:
    def action() -> None:
        compensate(context, result)

    return action


def _saga_action(op: TransactionalOperation, context: TransactionContext) -> Callable[..., Any]:
    def action(_input: Any, _saga_context: Any) -> Any:
        if op.execute is None:
            raise OperationFailedError(f"Operation '{op.description}' has nothing to execute")
        return op.execute(context)

    return action


def _saga_compensation(
    op: TransactionalOperation, context: TransactionContext
) -> Callable[..., None] | None:
    if op.compensate is None:
        return None
    compensate = op.compensate

    def compensation(output: Any, _input: Any, _saga_context: Any) -> None:
        compensate(context, output)

    return compensation


def _unique_step_ids(operations: list[TransactionalOperation]) -> list[str]:
    """Step ids from descriptions, falling back to ``step_<n>`` for blanks and repeats."""
    seen: set[str] = set()
    ids = []
    for index, op in enumerate(operations):
        step_id = op.description
        if not step_id or step_id in seen:
            step_id = f"step_{index}"
        seen.add(step_id)
        ids.append(step_id)
    return ids
