"""Saga orchestrator.

Runs registered sagas step by step. Steps execute in dependency order;
each may validate its input first, is retried under its own RetryPolicy
and may be bounded by a timeout. When a step fails for good, every
completed step is compensated in reverse completion order and the
execution ends FAILED. ``cancel_saga`` compensates and ends ABORTED.

Every completed and compensated step is flushed to the coordinator log
together with its output, so RecoveryService can compensate a saga that
was interrupted by a coordinator crash.

Compensation is best effort: a failing compensation is logged and
counted, and the remaining compensations still run.

References:
    - Garcia-Molina & Salem, "Sagas" (1987)
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable

from txn_coordinator.domain.entities import (
    BeginRecord,
    EndRecord,
    SagaContext,
    SagaDefinition,
    SagaExecution,
    SagaLogEntry,
    SagaMetrics,
    SagaStep,
    SagaStepRecord,
    StepRecord,
    TransactionKind,
)
from txn_coordinator.domain.errors import (
    CoordinatorError,
    InvalidTransactionStateError,
    OperationFailedError,
    SagaDefinitionError,
    StepTimeoutError,
    TransactionNotFoundError,
)
from txn_coordinator.domain.services.retry import call_with_retry
from txn_coordinator.domain.value_objects import (
    SagaStatus,
    StepStatus,
    TransactionId,
    new_transaction_id,
)
from txn_coordinator.domain.value_objects.identifiers import SAGA_PREFIX
from txn_coordinator.infrastructure.logging import get_logger, transaction_context
from txn_coordinator.infrastructure.metrics import MetricsRegistry
from txn_coordinator.infrastructure.tracing import trace_span
from txn_coordinator.ports.outbound.coordinator_log import CoordinatorLog

logger = get_logger(__name__)


class SagaCancelledError(CoordinatorError):
    """Raised inside a running saga when it has been cancelled."""

    code = "CANCELLED"


class SagaOrchestrator:
    """Registers saga definitions and runs executions of them.

    Usage:
        orchestrator = SagaOrchestrator(log=coordinator_log)
        orchestrator.register_saga(definition)
        execution = orchestrator.start_saga("order-saga", {"order_id": 42})
        if execution.status == SagaStatus.COMMITTED:
            print(execution.result)

    Thread Safety:
        Executions may run concurrently on different threads. Step
        callables run outside the orchestrator's lock.
    """

    def __init__(
        self,
        log: CoordinatorLog | None = None,
        metrics: MetricsRegistry | None = None,
        sleep: Callable[[float], None] = time.sleep,
        max_step_workers: int = 8,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            log: Coordinator log for step records; None disables logging.
            metrics: Metrics registry; None disables metrics.
            sleep: Sleep function used between retries.
            max_step_workers: Threads available for steps with a timeout.
        """
        self._log = log
        self._metrics = metrics
        self._sleep = sleep
        self._max_step_workers = max_step_workers

        self._lock = threading.RLock()
        self._definitions: dict[str, SagaDefinition] = {}
        self._executions: dict[TransactionId, SagaExecution] = {}
        self._logs: dict[TransactionId, list[SagaLogEntry]] = {}
        self._cancel_requested: set[TransactionId] = set()
        self._executor: ThreadPoolExecutor | None = None

    # =========================================================================
    # Definitions
    # =========================================================================

    def register_saga(self, definition: SagaDefinition) -> None:
        """Validate and register a saga definition.

        Raises:
            SagaDefinitionError: If the definition is malformed.
        """
        validate_definition(definition)
        with self._lock:
            self._definitions[definition.id] = definition
        logger.info("saga_registered", saga_id=definition.id, steps=len(definition.steps))

    def unregister_saga(self, saga_id: str) -> bool:
        with self._lock:
            return self._definitions.pop(saga_id, None) is not None

    def get_definition(self, saga_id: str) -> SagaDefinition | None:
        with self._lock:
            return self._definitions.get(saga_id)

    def list_sagas(self) -> list[str]:
        with self._lock:
            return sorted(self._definitions)

    # =========================================================================
    # Execution
    # =========================================================================

    def start_saga(
        self,
        saga_id: str,
        input: Any = None,
        *,
        user_id: str | None = None,
        organization_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        execution_id: TransactionId | None = None,
    ) -> SagaExecution:
        """Run a registered saga to completion.

        Args:
            saga_id: Id of a registered definition.
            input: Saga input passed to every step.
            user_id: Optional caller identity, stored on the context.
            organization_id: Optional tenant, stored on the context.
            metadata: Free-form metadata stored on the context.
            execution_id: Use this id instead of generating one.

        Returns:
            The finished execution: COMMITTED, FAILED or ABORTED.

        Raises:
            SagaDefinitionError: If the saga is not registered.
        """
        with self._lock:
            definition = self._definitions.get(saga_id)
            if definition is None:
                raise SagaDefinitionError(f"Saga {saga_id} not registered")

            exec_id = execution_id or new_transaction_id(SAGA_PREFIX)
            context = SagaContext(
                execution_id=exec_id,
                saga_id=saga_id,
                input=input,
                user_id=user_id,
                organization_id=organization_id,
                metadata=dict(metadata or {}),
            )
            execution = SagaExecution(
                id=exec_id,
                saga_id=saga_id,
                context=context,
                steps={step.id: StepRecord(step_id=step.id) for step in definition.steps},
            )
            self._executions[exec_id] = execution
            self._logs[exec_id] = []

        with transaction_context(exec_id, saga_id=saga_id):
            self._write_log(
                BeginRecord(
                    txn_id=exec_id,
                    kind=TransactionKind.SAGA,
                    name=saga_id,
                    input=input,
                    metadata=dict(metadata or {}),
                ),
                flush=True,
            )
            with trace_span("saga.execute", {"saga.id": saga_id, "saga.execution_id": exec_id}):
                self._run(definition, execution)

        return execution

    def _run(self, definition: SagaDefinition, execution: SagaExecution) -> None:
        execution.status = SagaStatus.RUNNING
        self._add_log(execution.id, f"Saga {definition.name} started")
        deadline = (
            execution.started_at + definition.timeout_ms / 1000.0
            if definition.timeout_ms
            else None
        )

        try:
            for step in sort_steps(definition):
                if execution.id in self._cancel_requested:
                    raise SagaCancelledError("Saga cancelled")
                if deadline is not None and time.time() > deadline:
                    raise StepTimeoutError(
                        f"Saga {definition.id} exceeded timeout of {definition.timeout_ms}ms"
                    )
                self._run_step(definition, execution, step)
        except SagaCancelledError as e:
            self._compensate(definition, execution)
            self._finish(definition, execution, SagaStatus.ABORTED, error=str(e))
            return
        except Exception as e:
            execution.error = str(e)
            logger.warning(
                "saga_failed",
                failed_step=execution.failed_step,
                error=str(e),
            )
            self._compensate(definition, execution)
            self._finish(definition, execution, SagaStatus.FAILED, error=str(e))
            return

        execution.result = execution.final_result()
        self._finish(definition, execution, SagaStatus.COMMITTED)

    def _run_step(self, definition: SagaDefinition, execution: SagaExecution, step: SagaStep) -> None:
        record = execution.steps[step.id]
        context = execution.context
        record.status = StepStatus.RUNNING
        record.started_at = time.time()
        self._add_log(execution.id, f"Step {step.name} started", step_id=step.id)

        if step.validate is not None:
            try:
                valid = step.validate(context.input, context)
            except Exception as e:
                self._fail_step(definition, execution, record, f"Step validation error: {e}")
                raise OperationFailedError.wrap(e, f"Step {step.id} validation error")
            if not valid:
                self._fail_step(definition, execution, record, "Step validation failed")
                raise OperationFailedError(
                    f"Step {step.id} validation failed",
                    details={"step_id": step.id},
                )

        def attempt() -> Any:
            record.attempts += 1
            return self._invoke_action(step, context)

        def on_retry(error: BaseException, failed_attempt: int, delay_ms: float) -> None:
            self._add_log(
                execution.id,
                f"Step {step.name} attempt {failed_attempt} failed: {error}; retrying in {delay_ms:.0f}ms",
                level="warning",
                step_id=step.id,
            )

        try:
            output, _ = call_with_retry(
                attempt, step.retry_policy, sleep=self._sleep, on_retry=on_retry
            )
        except Exception as e:
            self._fail_step(definition, execution, record, str(e))
            raise

        record.status = StepStatus.COMPLETED
        record.output = output
        record.completed_at = time.time()
        with self._lock:
            execution.completed_steps.append(step.id)
            context.results[step.id] = output

        self._write_log(
            SagaStepRecord(
                txn_id=execution.id,
                step_id=step.id,
                status=StepStatus.COMPLETED,
                output=output,
            ),
            flush=True,
        )
        self._count_step(definition.id, "completed")
        self._add_log(execution.id, f"Step {step.name} completed", step_id=step.id)

    def _invoke_action(self, step: SagaStep, context: SagaContext) -> Any:
        try:
            if step.timeout_ms is None:
                return step.action(context.input, context)
            future = self._get_executor().submit(step.action, context.input, context)
            try:
                return future.result(timeout=step.timeout_ms / 1000.0)
            except FutureTimeoutError:
                future.cancel()
                raise StepTimeoutError(
                    f"Step {step.id} timed out after {step.timeout_ms}ms",
                    details={"step_id": step.id},
                )
        except Exception as e:
            raise OperationFailedError.wrap(e, f"Step {step.id} failed")

    def _fail_step(
        self,
        definition: SagaDefinition,
        execution: SagaExecution,
        record: StepRecord,
        error: str,
    ) -> None:
        record.status = StepStatus.FAILED
        record.error = error
        record.completed_at = time.time()
        execution.failed_step = record.step_id
        self._write_log(
            SagaStepRecord(
                txn_id=execution.id,
                step_id=record.step_id,
                status=StepStatus.FAILED,
                error=error,
            )
        )
        self._count_step(definition.id, "failed")
        self._add_log(
            execution.id, f"Step {record.step_id} failed: {error}", level="error", step_id=record.step_id
        )

    def _compensate(self, definition: SagaDefinition, execution: SagaExecution) -> list[str]:
        """Compensate completed, not yet compensated steps in reverse order."""
        execution.status = SagaStatus.COMPENSATING
        with self._lock:
            pending = [
                step_id
                for step_id in reversed(execution.completed_steps)
                if step_id not in execution.compensated_steps
            ]

        compensated = []
        for step_id in pending:
            step = definition.step(step_id)
            record = execution.steps[step_id]
            if step.compensation is None:
                self._add_log(execution.id, f"Step {step.name} has no compensation", step_id=step_id)
                continue
            try:
                step.compensation(record.output, execution.context.input, execution.context)
            except Exception as e:
                logger.error(
                    "saga_compensation_failed",
                    step_id=step_id,
                    error=str(e),
                    exc_info=True,
                )
                self._count_step(definition.id, "compensation_failed")
                self._add_log(
                    execution.id,
                    f"Compensation for step {step.name} failed: {e}",
                    level="error",
                    step_id=step_id,
                )
                continue

            record.status = StepStatus.COMPENSATED
            record.compensated_at = time.time()
            with self._lock:
                execution.compensated_steps.append(step_id)
            compensated.append(step_id)
            self._write_log(
                SagaStepRecord(txn_id=execution.id, step_id=step_id, status=StepStatus.COMPENSATED),
                flush=True,
            )
            self._count_step(definition.id, "compensated")
            self._add_log(execution.id, f"Step {step.name} compensated", step_id=step_id)

        return compensated

    def _finish(
        self,
        definition: SagaDefinition,
        execution: SagaExecution,
        status: SagaStatus,
        error: str | None = None,
    ) -> None:
        execution.status = status
        execution.completed_at = time.time()
        if error is not None:
            execution.error = error
        with self._lock:
            self._cancel_requested.discard(execution.id)

        self._write_log(EndRecord(txn_id=execution.id, outcome=status.value), flush=True)
        if self._metrics is not None:
            self._metrics.sagas_total.labels(saga=definition.id, status=status.value).inc()
        self._add_log(execution.id, f"Saga {definition.name} finished: {status.value}")
        logger.info(
            "saga_finished",
            status=status.value,
            completed_steps=len(execution.completed_steps),
            compensated_steps=len(execution.compensated_steps),
            duration_ms=round(execution.duration_ms, 3),
        )

    def cancel_saga(self, execution_id: TransactionId, reason: str = "Cancelled") -> SagaExecution:
        """Cancel an execution and compensate what it completed.

        A running execution stops before its next step; otherwise its
        completed steps are compensated immediately.

        Raises:
            TransactionNotFoundError: If the execution is unknown.
            InvalidTransactionStateError: If it is COMMITTED or ABORTED.
        """
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                raise TransactionNotFoundError(execution_id)
            if execution.status in (SagaStatus.COMMITTED, SagaStatus.ABORTED):
                raise InvalidTransactionStateError(
                    f"Cannot cancel saga {execution_id} in state {execution.status.value}"
                )
            if execution.status in (SagaStatus.RUNNING, SagaStatus.COMPENSATING):
                self._cancel_requested.add(execution_id)
                self._add_log(execution_id, f"Cancellation requested: {reason}", level="warning")
                return execution
            definition = self._definitions[execution.saga_id]

        with transaction_context(execution_id, saga_id=execution.saga_id):
            self._compensate(definition, execution)
            self._finish(definition, execution, SagaStatus.ABORTED, error=reason)
        return execution

    def compensate_from_log(
        self,
        execution_id: TransactionId,
        saga_id: str,
        input: Any,
        completed: list[tuple[str, Any]],
    ) -> list[str]:
        """Compensate a saga execution rebuilt from the coordinator log.

        Used by recovery for executions that were running when the
        coordinator stopped.

        Args:
            execution_id: Id of the interrupted execution.
            saga_id: Definition id from the BEGIN record.
            input: Saga input from the BEGIN record.
            completed: (step_id, output) of completed, uncompensated
                steps in completion order.

        Returns:
            Ids of the steps compensated.

        Raises:
            SagaDefinitionError: If the definition is not registered.
        """
        with self._lock:
            definition = self._definitions.get(saga_id)
            if definition is None:
                raise SagaDefinitionError(f"Saga {saga_id} not registered")

            context = SagaContext(execution_id=execution_id, saga_id=saga_id, input=input)
            execution = SagaExecution(
                id=execution_id,
                saga_id=saga_id,
                context=context,
                steps={step.id: StepRecord(step_id=step.id) for step in definition.steps},
                status=SagaStatus.RUNNING,
            )
            for step_id, output in completed:
                if step_id not in execution.steps:
                    continue
                execution.steps[step_id].status = StepStatus.COMPLETED
                execution.steps[step_id].output = output
                execution.completed_steps.append(step_id)
                context.results[step_id] = output
            self._executions[execution_id] = execution
            self._logs.setdefault(execution_id, [])

        with transaction_context(execution_id, saga_id=saga_id):
            compensated = self._compensate(definition, execution)
            self._finish(definition, execution, SagaStatus.FAILED, error="Recovered after coordinator failure")
        return compensated

    # =========================================================================
    # Queries
    # =========================================================================

    def get_execution(self, execution_id: TransactionId) -> SagaExecution:
        with self._lock:
            execution = self._executions.get(execution_id)
        if execution is None:
            raise TransactionNotFoundError(execution_id)
        return execution

    def get_active_executions(self) -> list[SagaExecution]:
        with self._lock:
            return [e for e in self._executions.values() if not e.status.is_terminal()]

    def get_metrics(self, execution_id: TransactionId) -> SagaMetrics:
        execution = self.get_execution(execution_id)
        records = execution.steps.values()
        return SagaMetrics(
            execution_id=execution.id,
            saga_id=execution.saga_id,
            status=execution.status,
            step_count=len(execution.steps),
            completed_steps=len(execution.completed_steps),
            failed_steps=sum(1 for r in records if r.status == StepStatus.FAILED),
            compensated_steps=len(execution.compensated_steps),
            duration_ms=execution.duration_ms,
        )

    def get_logs(self, execution_id: TransactionId) -> list[SagaLogEntry]:
        with self._lock:
            return list(self._logs.get(execution_id, []))

    def cleanup(self, max_age_ms: int) -> int:
        """Forget finished executions older than ``max_age_ms``.

        Returns:
            Number of executions removed.
        """
        cutoff = time.time() - max_age_ms / 1000.0
        with self._lock:
            stale = [
                exec_id
                for exec_id, e in self._executions.items()
                if e.status.is_terminal() and (e.completed_at or e.started_at) < cutoff
            ]
            for exec_id in stale:
                del self._executions[exec_id]
                self._logs.pop(exec_id, None)
        return len(stale)

    def close(self) -> None:
        """Shut down the step worker pool."""
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_step_workers, thread_name_prefix="saga-step"
                )
            return self._executor

    def _write_log(self, record: Any, flush: bool = False) -> None:
        if self._log is None:
            return
        lsn = self._log.append(record)
        if flush:
            self._log.flush(lsn)

    def _count_step(self, saga_id: str, status: str) -> None:
        if self._metrics is not None:
            self._metrics.saga_steps_total.labels(saga=saga_id, status=status).inc()

    def _add_log(
        self,
        execution_id: TransactionId,
        message: str,
        level: str = "info",
        step_id: str | None = None,
    ) -> None:
        with self._lock:
            self._logs.setdefault(execution_id, []).append(
                SagaLogEntry(execution_id=execution_id, message=message, level=level, step_id=step_id)
            )


def validate_definition(definition: SagaDefinition) -> None:
    """Check a saga definition.

    Raises:
        SagaDefinitionError: If the id or name is missing, there are no
            steps, step ids repeat, a dependency is unknown, or the
            dependencies form a cycle.
    """
    if not definition.id:
        raise SagaDefinitionError("Saga id is required")
    if not definition.name:
        raise SagaDefinitionError("Saga name is required")
    if not definition.steps:
        raise SagaDefinitionError(f"Saga {definition.id} must have at least one step")

    step_ids = [step.id for step in definition.steps]
    duplicates = {s for s in step_ids if step_ids.count(s) > 1}
    if duplicates:
        raise SagaDefinitionError(f"Duplicate step ids: {sorted(duplicates)}")

    known = set(step_ids)
    for step in definition.steps:
        for dep in step.dependencies:
            if dep not in known:
                raise SagaDefinitionError(f"Step {step.id} depends on unknown step {dep}")

    sort_steps(definition)


def sort_steps(definition: SagaDefinition) -> list[SagaStep]:
    """Order steps so every step follows its dependencies.

    Independent steps keep their declaration order.

    Raises:
        SagaDefinitionError: If the dependencies contain a cycle.
    """
    by_id = {step.id: step for step in definition.steps}
    ordered: list[SagaStep] = []
    visited: set[str] = set()
    visiting: set[str] = set()

    def visit(step_id: str) -> None:
        if step_id in visited:
            return
        if step_id in visiting:
            raise SagaDefinitionError(f"Circular dependency detected involving step {step_id}")
        visiting.add(step_id)
        for dep in by_id[step_id].dependencies:
            if dep in by_id:
                visit(dep)
        visiting.discard(step_id)
        visited.add(step_id)
        ordered.append(by_id[step_id])

    for step in definition.steps:
        visit(step.id)
    return ordered
