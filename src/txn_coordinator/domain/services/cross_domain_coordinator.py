"""Cross-domain transaction coordinator.

Runs a set of DomainOperations spread over several business domains.
Operations name their dependencies as ``domain:operation``; the plan is
layered into phases (Kahn's algorithm) so each phase only depends on
earlier ones:

    phase 0   meetings:create   documents:reserve      (parallel)
    phase 1   notifications:send                       (after both)

A phase spanning more than one domain runs its operations concurrently.
When a phase fails and ``rollback_on_failure`` is set, every operation
executed so far is compensated in reverse execution order. Operations
answered from the idempotency cache were executed by an earlier
transaction and are never compensated. A compensated operation drops its
idempotency key so a retry executes it again.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable

from txn_coordinator.domain.entities import (
    BeginRecord,
    CompensationEntry,
    CrossDomainResult,
    CrossDomainTransaction,
    DomainEvent,
    DomainOperation,
    EndRecord,
    ExecutionPhase,
    ExecutionPlan,
    OperationOutcome,
    OperationRecord,
    TransactionKind,
)
from txn_coordinator.domain.errors import (
    InvalidTransactionStateError,
    OperationFailedError,
    QuotaExceededError,
    SagaDefinitionError,
    StepTimeoutError,
    TransactionNotFoundError,
)
from txn_coordinator.domain.services.retry import call_with_retry
from txn_coordinator.domain.value_objects import (
    CrossDomainState,
    RetryPolicy,
    TransactionId,
    generate_id,
    new_transaction_id,
)
from txn_coordinator.domain.value_objects.identifiers import CORRELATION_PREFIX, CROSS_DOMAIN_PREFIX
from txn_coordinator.infrastructure.logging import get_logger, transaction_context
from txn_coordinator.infrastructure.metrics import MetricsRegistry
from txn_coordinator.infrastructure.tracing import trace_span
from txn_coordinator.ports.outbound.coordinator_log import CoordinatorLog
from txn_coordinator.ports.outbound.domain_handler import DomainHandler
from txn_coordinator.ports.outbound.event_store import DomainEventStore

logger = get_logger(__name__)

# Event types published to the DomainEventStore
TRANSACTION_STARTED = "TRANSACTION_STARTED"
TRANSACTION_COMPLETED = "TRANSACTION_COMPLETED"
TRANSACTION_FAILED = "TRANSACTION_FAILED"
OPERATION_STARTED = "OPERATION_STARTED"
OPERATION_COMPLETED = "OPERATION_COMPLETED"
OPERATION_FAILED = "OPERATION_FAILED"
OPERATION_COMPENSATED = "OPERATION_COMPENSATED"

DEFAULT_IDEMPOTENCY_CACHE_SIZE = 10000


class CrossDomainTransactionCoordinator:
    """Coordinates operations that span several domain handlers.

    Usage:
        coordinator = CrossDomainTransactionCoordinator(event_store=store)
        coordinator.register_handler("meetings", meetings_handler)
        coordinator.register_handler("documents", documents_handler)
        result = coordinator.execute([
            DomainOperation("meetings", "create", {"title": "Q3 board"}),
            DomainOperation("documents", "attach", {...},
                            dependencies=["meetings:create"]),
        ])
    """

    def __init__(
        self,
        event_store: DomainEventStore | None = None,
        log: CoordinatorLog | None = None,
        max_concurrent_transactions: int = 50,
        default_retry: RetryPolicy | None = None,
        default_timeout_ms: int | None = None,
        max_parallel: int = 8,
        idempotency_cache_size: int = DEFAULT_IDEMPOTENCY_CACHE_SIZE,
        metrics: MetricsRegistry | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the coordinator.

        Args:
            event_store: Receives domain events; None disables event sourcing.
            log: Coordinator log for BEGIN/OPERATION/END records.
            max_concurrent_transactions: Limit on running transactions.
            default_retry: Policy for operations without their own.
            default_timeout_ms: Timeout for operations without their own.
            max_parallel: Worker threads for parallel phases.
            idempotency_cache_size: Completed idempotency keys remembered.
            metrics: Metrics registry; None disables metrics.
            sleep: Sleep function used between retries.
        """
        self._event_store = event_store
        self._log = log
        self._max_concurrent = max_concurrent_transactions
        self._default_retry = default_retry or RetryPolicy.none()
        self._default_timeout_ms = default_timeout_ms
        self._max_parallel = max_parallel
        self._cache_size = idempotency_cache_size
        self._metrics = metrics
        self._sleep = sleep

        self._lock = threading.RLock()
        self._handlers: dict[str, DomainHandler] = {}
        self._transactions: dict[TransactionId, CrossDomainTransaction] = {}
        self._cancel_requested: set[TransactionId] = set()
        self._idempotency: OrderedDict[str, Any] = OrderedDict()
        self._executor: ThreadPoolExecutor | None = None
        # Separate pool so phase workers waiting on a timed call never starve it
        self._timeout_executor: ThreadPoolExecutor | None = None

    # =========================================================================
    # Handlers
    # =========================================================================

    def register_handler(self, domain: str, handler: DomainHandler) -> None:
        with self._lock:
            self._handlers[domain] = handler
        logger.info("domain_handler_registered", domain=domain)

    def unregister_handler(self, domain: str) -> bool:
        with self._lock:
            return self._handlers.pop(domain, None) is not None

    @property
    def domains(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)

    # =========================================================================
    # Planning
    # =========================================================================

    def create_phases(self, operations: list[DomainOperation]) -> list[ExecutionPhase]:
        """Layer operations so each phase depends only on earlier phases.

        Raises:
            SagaDefinitionError: On duplicate ids, unknown dependencies or
                dependency cycles.
        """
        by_id: dict[str, DomainOperation] = {}
        for op in operations:
            if op.id in by_id:
                raise SagaDefinitionError(f"Duplicate operation {op.id}")
            by_id[op.id] = op
        for op in operations:
            for dep in op.dependencies:
                if dep not in by_id:
                    raise SagaDefinitionError(f"Operation {op.id} depends on unknown operation {dep}")

        placed: set[str] = set()
        phases: list[ExecutionPhase] = []
        remaining = list(operations)
        while remaining:
            ready = [op for op in remaining if all(dep in placed for dep in op.dependencies)]
            if not ready:
                cycle = ", ".join(op.id for op in remaining)
                raise SagaDefinitionError(f"Circular dependency detected among operations: {cycle}")
            phases.append(ExecutionPhase(index=len(phases), operations=ready))
            placed.update(op.id for op in ready)
            remaining = [op for op in remaining if op.id not in placed]
        return phases

    # =========================================================================
    # Execution
    # =========================================================================

    def execute(
        self,
        operations: list[DomainOperation],
        *,
        correlation_id: str | None = None,
        continue_on_partial_failure: bool = False,
        rollback_on_failure: bool = True,
        metadata: dict[str, Any] | None = None,
    ) -> CrossDomainResult:
        """Plan and run a cross-domain transaction.

        Returns:
            The result. Operation failures are reported in the result
            (state FAILED), not raised.

        Raises:
            SagaDefinitionError: If the operations cannot be planned.
            QuotaExceededError: If too many transactions are running.
        """
        plan = ExecutionPlan(
            phases=self.create_phases(operations),
            continue_on_partial_failure=continue_on_partial_failure,
            rollback_on_failure=rollback_on_failure,
        )

        with self._lock:
            active = sum(1 for t in self._transactions.values() if not t.state.is_terminal())
            if active >= self._max_concurrent:
                raise QuotaExceededError(
                    f"Maximum concurrent cross-domain transactions ({self._max_concurrent}) exceeded",
                    details={"active": active, "limit": self._max_concurrent},
                )
            txn = CrossDomainTransaction(
                id=new_transaction_id(CROSS_DOMAIN_PREFIX),
                plan=plan,
                correlation_id=correlation_id or generate_id(CORRELATION_PREFIX),
                state=CrossDomainState.ORCHESTRATING,
                metadata=dict(metadata or {}),
            )
            self._transactions[txn.id] = txn

        self._write_log(
            BeginRecord(
                txn_id=txn.id,
                kind=TransactionKind.CROSS_DOMAIN,
                metadata={"operations": [op.id for op in operations], "correlation_id": txn.correlation_id},
            ),
            flush=True,
        )
        self._publish(txn, TRANSACTION_STARTED, "", "", {"operations": [op.id for op in operations]})

        with transaction_context(txn.id, correlation_id=txn.correlation_id):
            logger.info(
                "cross_domain_started",
                transaction_id=txn.id,
                operations=plan.operation_count,
                phases=len(plan.phases),
            )
            with trace_span(
                "cross_domain.execute",
                {"txn.id": txn.id, "txn.phases": len(plan.phases)},
            ):
                self._run(txn)

        return self._result(txn)

    def _run(self, txn: CrossDomainTransaction) -> None:
        txn.state = CrossDomainState.EXECUTING
        failed: set[str] = set()

        for phase in txn.plan.phases:
            if txn.id in self._cancel_requested:
                self._abort(txn, CrossDomainState.CANCELLED, "Transaction cancelled")
                return

            txn.current_phase = phase.index
            runnable = []
            for op in phase.operations:
                blocked = [dep for dep in op.dependencies if dep in failed]
                if blocked:
                    failed.add(op.id)
                    txn.outcomes[op.id] = OperationOutcome(
                        operation_id=op.id,
                        domain=op.domain,
                        succeeded=False,
                        error=f"Dependency {blocked[0]} failed",
                    )
                else:
                    runnable.append(op)

            outcomes = self._run_phase(txn, phase, runnable)
            phase_failed = [o for o in outcomes if not o.succeeded]
            failed.update(o.operation_id for o in phase_failed)

            if phase_failed and not txn.plan.continue_on_partial_failure:
                error = f"Operation {phase_failed[0].operation_id} failed: {phase_failed[0].error}"
                if txn.plan.rollback_on_failure:
                    self._abort(txn, CrossDomainState.FAILED, error)
                else:
                    self._finish(txn, CrossDomainState.FAILED, error)
                return

        if failed:
            logger.warning("cross_domain_partial_failure", transaction_id=txn.id, failed=sorted(failed))
        self._finish(txn, CrossDomainState.COMPLETED)

    def _run_phase(
        self,
        txn: CrossDomainTransaction,
        phase: ExecutionPhase,
        operations: list[DomainOperation],
    ) -> list[OperationOutcome]:
        if phase.parallel and len(operations) > 1:
            executor = self._get_executor()
            futures = [executor.submit(self._run_operation, txn, op) for op in operations]
            outcomes = [future.result() for future in futures]
        else:
            outcomes = [self._run_operation(txn, op) for op in operations]

        with self._lock:
            for outcome in outcomes:
                txn.outcomes[outcome.operation_id] = outcome
                if outcome.succeeded and not outcome.cached:
                    txn.executed.append(outcome.operation_id)
        return outcomes

    def _run_operation(self, txn: CrossDomainTransaction, op: DomainOperation) -> OperationOutcome:
        start = time.time()

        if op.idempotency_key is not None:
            with self._lock:
                cached = op.idempotency_key in self._idempotency
                output = self._idempotency.get(op.idempotency_key)
            if cached:
                logger.debug("idempotent_operation_skipped", operation=op.id, key=op.idempotency_key)
                return OperationOutcome(
                    operation_id=op.id,
                    domain=op.domain,
                    succeeded=True,
                    output=output,
                    cached=True,
                )

        with self._lock:
            handler = self._handlers.get(op.domain)
        if handler is None:
            error = f"No handler registered for domain {op.domain}"
            self._publish(txn, OPERATION_FAILED, op.domain, op.operation, {"error": error})
            return OperationOutcome(operation_id=op.id, domain=op.domain, succeeded=False, error=error)

        self._publish(txn, OPERATION_STARTED, op.domain, op.operation, op.input)
        timeout_ms = op.timeout_ms if op.timeout_ms is not None else self._default_timeout_ms

        def attempt() -> Any:
            if timeout_ms is None:
                return handler.execute(op, op.input)
            return self._with_timeout(op, timeout_ms, handler)

        try:
            output, attempts = call_with_retry(
                attempt,
                op.retry_policy or self._default_retry,
                sleep=self._sleep,
                on_retry=lambda e, n, delay: self._count_retry(),
            )
        except Exception as e:
            error = str(OperationFailedError.wrap(e, f"Operation {op.id} failed"))
            logger.warning("domain_operation_failed", transaction_id=txn.id, operation=op.id, error=error)
            self._publish(txn, OPERATION_FAILED, op.domain, op.operation, {"error": error})
            if self._metrics is not None:
                self._metrics.operations_total.labels(status="failed").inc()
            return OperationOutcome(
                operation_id=op.id,
                domain=op.domain,
                succeeded=False,
                error=error,
                duration_ms=(time.time() - start) * 1000.0,
            )

        if op.idempotency_key is not None:
            with self._lock:
                self._idempotency[op.idempotency_key] = output
                while len(self._idempotency) > self._cache_size:
                    self._idempotency.popitem(last=False)

        self._write_log(
            OperationRecord(txn_id=txn.id, operation_id=op.id, description=op.operation, table=op.domain)
        )
        self._publish(txn, OPERATION_COMPLETED, op.domain, op.operation, output)
        if self._metrics is not None:
            self._metrics.operations_total.labels(status="executed").inc()
        return OperationOutcome(
            operation_id=op.id,
            domain=op.domain,
            succeeded=True,
            output=output,
            attempts=attempts,
            duration_ms=(time.time() - start) * 1000.0,
        )

    def _with_timeout(self, op: DomainOperation, timeout_ms: int, handler: DomainHandler) -> Any:
        future = self._get_timeout_executor().submit(handler.execute, op, op.input)
        try:
            return future.result(timeout=timeout_ms / 1000.0)
        except FutureTimeoutError:
            future.cancel()
            raise StepTimeoutError(
                f"Operation {op.id} timed out after {timeout_ms}ms",
                details={"operation": op.id},
            )

    def _abort(self, txn: CrossDomainTransaction, state: CrossDomainState, error: str) -> None:
        txn.state = CrossDomainState.COMPENSATING
        self._compensate(txn)
        self._finish(txn, state, error)

    def _compensate(self, txn: CrossDomainTransaction) -> None:
        operations = {op.id: op for phase in txn.plan.phases for op in phase.operations}
        for op_id in reversed(list(txn.executed)):
            op = operations[op_id]
            with self._lock:
                handler = self._handlers.get(op.domain)
            output = txn.outcomes[op_id].output
            try:
                if handler is None:
                    raise OperationFailedError(f"No handler registered for domain {op.domain}")
                handler.compensate(op, output)
            except Exception as e:
                logger.error(
                    "domain_compensation_failed",
                    transaction_id=txn.id,
                    operation=op_id,
                    error=str(e),
                    exc_info=True,
                )
                txn.compensations.append(
                    CompensationEntry(operation_id=op_id, domain=op.domain, succeeded=False, error=str(e))
                )
                if self._metrics is not None:
                    self._metrics.compensations_total.labels(status="failed").inc()
                continue

            if op.idempotency_key is not None:
                with self._lock:
                    self._idempotency.pop(op.idempotency_key, None)
            txn.compensations.append(CompensationEntry(operation_id=op_id, domain=op.domain, succeeded=True))
            self._publish(txn, OPERATION_COMPENSATED, op.domain, op.operation, output)
            if self._metrics is not None:
                self._metrics.compensations_total.labels(status="succeeded").inc()

    def _finish(
        self,
        txn: CrossDomainTransaction,
        state: CrossDomainState,
        error: str | None = None,
    ) -> None:
        with self._lock:
            txn.state = state
            txn.error = error
            txn.completed_at = time.time()
            self._cancel_requested.discard(txn.id)

        self._write_log(EndRecord(txn_id=txn.id, outcome=state.value))
        event_type = TRANSACTION_COMPLETED if state == CrossDomainState.COMPLETED else TRANSACTION_FAILED
        self._publish(txn, event_type, "", "", {"state": state.value, "error": error})
        if self._metrics is not None:
            outcome = "committed" if state == CrossDomainState.COMPLETED else "aborted"
            self._metrics.transactions_total.labels(mode="cross_domain", outcome=outcome).inc()
            self._metrics.transaction_duration_seconds.labels(mode="cross_domain").observe(
                txn.duration_ms / 1000.0
            )
        logger.info(
            "cross_domain_finished",
            transaction_id=txn.id,
            state=state.value,
            executed=len(txn.executed),
            compensated=sum(1 for c in txn.compensations if c.succeeded),
            error=error,
        )

    def _result(self, txn: CrossDomainTransaction) -> CrossDomainResult:
        return CrossDomainResult(
            transaction_id=txn.id,
            state=txn.state,
            results={op_id: o.output for op_id, o in txn.outcomes.items() if o.succeeded},
            failed_operations=[op_id for op_id, o in txn.outcomes.items() if not o.succeeded],
            compensations=list(txn.compensations),
            duration_ms=txn.duration_ms,
            error=txn.error,
        )

    # =========================================================================
    # Control and queries
    # =========================================================================

    def cancel_transaction(self, txn_id: TransactionId) -> None:
        """Request cancellation; takes effect before the next phase.

        Raises:
            TransactionNotFoundError: If the transaction is unknown.
            InvalidTransactionStateError: If it already finished.
        """
        txn = self.get_transaction(txn_id)
        with self._lock:
            if txn.state.is_terminal():
                raise InvalidTransactionStateError(
                    f"Cross-domain transaction {txn_id} already {txn.state.value}"
                )
            self._cancel_requested.add(txn_id)
        logger.info("cross_domain_cancel_requested", transaction_id=txn_id)

    def get_transaction(self, txn_id: TransactionId) -> CrossDomainTransaction:
        with self._lock:
            txn = self._transactions.get(txn_id)
        if txn is None:
            raise TransactionNotFoundError(txn_id)
        return txn

    def get_transaction_status(self, txn_id: TransactionId) -> CrossDomainState:
        return self.get_transaction(txn_id).state

    def get_transaction_metrics(self, txn_id: TransactionId) -> dict[str, Any]:
        txn = self.get_transaction(txn_id)
        outcomes = list(txn.outcomes.values())
        return {
            "transaction_id": txn.id,
            "state": txn.state.value,
            "phases": len(txn.plan.phases),
            "operations": txn.plan.operation_count,
            "succeeded": sum(1 for o in outcomes if o.succeeded),
            "failed": sum(1 for o in outcomes if not o.succeeded),
            "cached": sum(1 for o in outcomes if o.cached),
            "retries": sum(max(o.attempts - 1, 0) for o in outcomes),
            "compensations": len(txn.compensations),
            "duration_ms": txn.duration_ms,
        }

    def get_active_count(self) -> int:
        with self._lock:
            return sum(1 for t in self._transactions.values() if not t.state.is_terminal())

    def cleanup(self, max_age_ms: int) -> int:
        """Forget finished transactions older than ``max_age_ms``."""
        cutoff = time.time() - max_age_ms / 1000.0
        with self._lock:
            stale = [
                txn_id
                for txn_id, t in self._transactions.items()
                if t.state.is_terminal() and (t.completed_at or t.started_at) < cutoff
            ]
            for txn_id in stale:
                del self._transactions[txn_id]
        return len(stale)

    def close(self) -> None:
        with self._lock:
            executors = [self._executor, self._timeout_executor]
            self._executor = self._timeout_executor = None
        for executor in executors:
            if executor is not None:
                executor.shutdown(wait=False, cancel_futures=True)

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_parallel, thread_name_prefix="cross-domain"
                )
            return self._executor

    def _get_timeout_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._timeout_executor is None:
                self._timeout_executor = ThreadPoolExecutor(
                    max_workers=self._max_parallel, thread_name_prefix="cross-domain-timeout"
                )
            return self._timeout_executor

    def _publish(
        self,
        txn: CrossDomainTransaction,
        event_type: str,
        domain: str,
        operation: str,
        payload: Any,
    ) -> None:
        if self._event_store is None:
            return
        self._event_store.append(
            DomainEvent(
                transaction_id=txn.id,
                event_type=event_type,
                domain=domain,
                operation=operation,
                payload=payload,
                correlation_id=txn.correlation_id,
            )
        )

    def _write_log(self, record: Any, flush: bool = False) -> None:
        if self._log is None:
            return
        lsn = self._log.append(record)
        if flush:
            self._log.flush(lsn)

    def _count_retry(self) -> None:
        if self._metrics is not None:
            self._metrics.retries_total.labels(component="cross_domain").inc()
