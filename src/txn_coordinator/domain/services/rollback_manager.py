"""Rollback manager.

Executes undo operations for a failed transaction using one of five
strategies:

    IMMEDIATE     highest priority first, sequentially; a failing
                  critical operation stops the rollback
    DEFERRED      dependency-ordered batches; each batch runs concurrently
    CHECKPOINT    only operations after the latest checkpoint; IMMEDIATE
                  when the transaction has no checkpoint
    COMPENSATION  reverse order, best effort, no retries
    HYBRID        groups operations by a per-operation strategy chosen
                  from the operation and the failure scenario

Every undo except COMPENSATION is retried up to ``max_retries`` times,
waiting ``retry_delay_ms * 2^(n-1)`` before retry n.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from txn_coordinator.domain.entities import (
    Checkpoint,
    RollbackContext,
    RollbackOperation,
    RollbackOperationResult,
    RollbackResult,
    RollbackStatus,
)
from txn_coordinator.domain.errors import (
    CoordinatorError,
    InvalidTransactionStateError,
    OperationFailedError,
    TransactionNotFoundError,
)
from txn_coordinator.domain.value_objects import (
    FailureScenario,
    RollbackOperationType,
    RollbackStrategy,
    TransactionId,
)
from txn_coordinator.infrastructure.logging import get_logger, transaction_context
from txn_coordinator.infrastructure.metrics import MetricsRegistry
from txn_coordinator.infrastructure.tracing import trace_span

logger = get_logger(__name__)

RollbackListener = Callable[[str, dict], None]


def strategy_for_scenario(scenario: FailureScenario) -> RollbackStrategy:
    """Default strategy for a failure scenario."""
    if scenario in (FailureScenario.DEADLOCK, FailureScenario.CONCURRENCY_CONFLICT):
        return RollbackStrategy.IMMEDIATE
    if scenario in (FailureScenario.NETWORK_FAILURE, FailureScenario.EXTERNAL_SERVICE_FAILURE):
        return RollbackStrategy.COMPENSATION
    if scenario in (FailureScenario.TIMEOUT, FailureScenario.RESOURCE_EXHAUSTED):
        return RollbackStrategy.CHECKPOINT
    return RollbackStrategy.HYBRID


class RollbackManager:
    """Runs rollbacks and keeps checkpoints and rollback history.

    Thread Safety:
        Rollbacks of different transactions may run concurrently. Only one
        rollback per transaction may be in flight.
    """

    def __init__(
        self,
        max_retries: int = 3,
        retry_delay_ms: int = 100,
        max_parallel: int = 8,
        metrics: MetricsRegistry | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._max_retries = max_retries
        self._retry_delay_ms = retry_delay_ms
        self._max_parallel = max_parallel
        self._metrics = metrics
        self._sleep = sleep

        self._lock = threading.Lock()
        self._checkpoints: dict[TransactionId, list[Checkpoint]] = {}
        self._history: dict[TransactionId, list[RollbackResult]] = {}
        self._in_flight: dict[TransactionId, RollbackStatus] = {}
        self._listeners: list[RollbackListener] = []

    def add_listener(self, listener: RollbackListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    # =========================================================================
    # Rollback
    # =========================================================================

    def rollback(self, context: RollbackContext) -> RollbackResult:
        """Undo ``context.operations`` with ``context.strategy``.

        Returns:
            Per-operation results. ``succeeded`` is False when any
            operation failed.

        Raises:
            InvalidTransactionStateError: If a rollback of the same
                transaction is already running.
            OperationFailedError: If a critical operation could not be
                undone under the IMMEDIATE strategy.
        """
        txn_id = context.transaction_id
        with self._lock:
            if txn_id in self._in_flight and self._in_flight[txn_id].in_progress:
                raise InvalidTransactionStateError(f"Rollback of {txn_id} already in progress")
            status = RollbackStatus(
                transaction_id=txn_id,
                strategy=context.strategy,
                total=len(context.operations),
                completed=0,
                failed=0,
                in_progress=True,
            )
            self._in_flight[txn_id] = status

        start = time.time()
        result = RollbackResult(transaction_id=txn_id, strategy=context.strategy, succeeded=False)
        self._emit("rollback:started", transaction_id=txn_id, strategy=context.strategy.value)

        with transaction_context(txn_id, strategy=context.strategy.value):
            logger.info(
                "rollback_started",
                transaction_id=txn_id,
                strategy=context.strategy.value,
                scenario=context.scenario.value,
                operations=len(context.operations),
                reason=context.reason,
            )
            try:
                with trace_span(
                    "rollback.execute",
                    {"txn.id": txn_id, "rollback.strategy": context.strategy.value},
                ):
                    self._dispatch(context, context.strategy, context.operations, result, status)
            except CoordinatorError as e:
                result.error = str(e)
                raise
            finally:
                result.succeeded = result.error is None and not result.failed
                result.duration_ms = (time.time() - start) * 1000.0
                with self._lock:
                    status.in_progress = False
                    self._history.setdefault(txn_id, []).append(result)
                if self._metrics is not None:
                    self._metrics.rollbacks_total.labels(
                        strategy=context.strategy.value,
                        status="succeeded" if result.succeeded else "failed",
                    ).inc()
                logger.info(
                    "rollback_finished",
                    transaction_id=txn_id,
                    succeeded=result.succeeded,
                    rolled_back=len(result.rolled_back),
                    failed=len(result.failed),
                    duration_ms=round(result.duration_ms, 3),
                )
                self._emit(
                    "rollback:completed",
                    transaction_id=txn_id,
                    succeeded=result.succeeded,
                    failed=result.failed,
                )
        return result

    def _dispatch(
        self,
        context: RollbackContext,
        strategy: RollbackStrategy,
        operations: list[RollbackOperation],
        result: RollbackResult,
        status: RollbackStatus,
    ) -> None:
        if strategy == RollbackStrategy.IMMEDIATE:
            self._run_immediate(operations, result, status)
        elif strategy == RollbackStrategy.DEFERRED:
            self._run_deferred(operations, result, status)
        elif strategy == RollbackStrategy.CHECKPOINT:
            self._run_checkpoint(context, operations, result, status)
        elif strategy == RollbackStrategy.COMPENSATION:
            self._run_compensation(context, operations, result, status)
        else:
            self._run_hybrid(context, operations, result, status)

    def _run_immediate(
        self,
        operations: list[RollbackOperation],
        result: RollbackResult,
        status: RollbackStatus,
    ) -> None:
        ordered = sorted(operations, key=lambda op: (-op.priority, -op.index))
        for position, op in enumerate(ordered):
            outcome = self._run_with_retry(op, RollbackStrategy.IMMEDIATE)
            self._record(result, status, outcome)
            if not outcome.succeeded and op.critical:
                result.skipped.extend(remaining.id for remaining in ordered[position + 1 :])
                raise OperationFailedError(
                    f"Critical rollback operation {op.id} failed: {outcome.error}",
                    details={"operation_id": op.id, "transaction_id": result.transaction_id},
                )

    def _run_deferred(
        self,
        operations: list[RollbackOperation],
        result: RollbackResult,
        status: RollbackStatus,
    ) -> None:
        batches = group_by_dependency(operations)
        with ThreadPoolExecutor(
            max_workers=max(1, min(self._max_parallel, len(operations) or 1)),
            thread_name_prefix="rollback",
        ) as executor:
            for batch in batches:
                futures = [
                    executor.submit(self._run_with_retry, op, RollbackStrategy.DEFERRED)
                    for op in batch
                ]
                for future in futures:
                    self._record(result, status, future.result())

    def _run_checkpoint(
        self,
        context: RollbackContext,
        operations: list[RollbackOperation],
        result: RollbackResult,
        status: RollbackStatus,
    ) -> None:
        checkpoint = self.get_latest_checkpoint(context.transaction_id)
        if checkpoint is None:
            self._run_immediate(operations, result, status)
            return

        after = [op for op in operations if op.index >= checkpoint.operation_index]
        result.skipped.extend(op.id for op in operations if op.index < checkpoint.operation_index)
        with self._lock:
            status.total -= len(operations) - len(after)
        self._emit(
            "rollback:checkpoint_restore",
            transaction_id=context.transaction_id,
            checkpoint_id=checkpoint.id,
        )
        logger.info(
            "rollback_to_checkpoint",
            transaction_id=context.transaction_id,
            checkpoint_id=checkpoint.id,
            operation_index=checkpoint.operation_index,
            operations=len(after),
        )
        for op in sorted(after, key=lambda op: -op.index):
            self._record(result, status, self._run_with_retry(op, RollbackStrategy.CHECKPOINT))

    def _run_compensation(
        self,
        context: RollbackContext,
        operations: list[RollbackOperation],
        result: RollbackResult,
        status: RollbackStatus,
    ) -> None:
        for op in sorted(operations, key=lambda op: -op.index):
            outcome = self._run_once(op, RollbackStrategy.COMPENSATION)
            self._record(result, status, outcome)
            if not outcome.succeeded:
                self._emit(
                    "rollback:compensation_failed",
                    transaction_id=context.transaction_id,
                    operation_id=op.id,
                    error=outcome.error,
                )

    def _run_hybrid(
        self,
        context: RollbackContext,
        operations: list[RollbackOperation],
        result: RollbackResult,
        status: RollbackStatus,
    ) -> None:
        groups: dict[RollbackStrategy, list[RollbackOperation]] = {}
        for op in operations:
            groups.setdefault(operation_strategy(op, context.scenario), []).append(op)

        for strategy, group in groups.items():
            try:
                self._dispatch(context, strategy, group, result, status)
            except OperationFailedError as e:
                # Other groups still run; the failure stays in the results
                logger.warning(
                    "rollback_group_failed",
                    transaction_id=context.transaction_id,
                    strategy=strategy.value,
                    error=str(e),
                )
                self._emit(
                    "rollback:group_failed",
                    transaction_id=context.transaction_id,
                    strategy=strategy.value,
                    error=str(e),
                )

    # =========================================================================
    # Single operations
    # =========================================================================

    def _run_with_retry(self, op: RollbackOperation, strategy: RollbackStrategy) -> RollbackOperationResult:
        start = time.time()
        error: str | None = None
        for attempt in range(1, self._max_retries + 2):
            try:
                op.undo()
            except Exception as e:
                error = str(e) or e.__class__.__name__
                logger.warning(
                    "rollback_operation_failed",
                    operation_id=op.id,
                    attempt=attempt,
                    error=error,
                )
                if attempt <= self._max_retries:
                    if self._metrics is not None:
                        self._metrics.retries_total.labels(component="rollback").inc()
                    self._sleep(self._retry_delay_ms * (2 ** (attempt - 1)) / 1000.0)
                continue
            return RollbackOperationResult(
                operation_id=op.id,
                succeeded=True,
                attempts=attempt,
                strategy=strategy,
                duration_ms=(time.time() - start) * 1000.0,
            )
        return RollbackOperationResult(
            operation_id=op.id,
            succeeded=False,
            attempts=self._max_retries + 1,
            strategy=strategy,
            error=error,
            duration_ms=(time.time() - start) * 1000.0,
        )

    def _run_once(self, op: RollbackOperation, strategy: RollbackStrategy) -> RollbackOperationResult:
        start = time.time()
        try:
            op.undo()
        except Exception as e:
            logger.warning("compensation_failed", operation_id=op.id, error=str(e))
            return RollbackOperationResult(
                operation_id=op.id,
                succeeded=False,
                attempts=1,
                strategy=strategy,
                error=str(e) or e.__class__.__name__,
                duration_ms=(time.time() - start) * 1000.0,
            )
        return RollbackOperationResult(
            operation_id=op.id,
            succeeded=True,
            attempts=1,
            strategy=strategy,
            duration_ms=(time.time() - start) * 1000.0,
        )

    def _record(
        self,
        result: RollbackResult,
        status: RollbackStatus,
        outcome: RollbackOperationResult,
    ) -> None:
        with self._lock:
            result.results.append(outcome)
            if outcome.succeeded:
                status.completed += 1
            else:
                status.failed += 1

    # =========================================================================
    # Checkpoints
    # =========================================================================

    def create_checkpoint(
        self,
        txn_id: TransactionId,
        operation_index: int,
        state: dict | None = None,
        name: str = "",
    ) -> Checkpoint:
        """Record a point that CHECKPOINT rollback returns to.

        Operations with ``index >= operation_index`` are undone when
        rolling back to this checkpoint.
        """
        checkpoint = Checkpoint(
            transaction_id=txn_id,
            operation_index=operation_index,
            state=dict(state or {}),
            name=name,
        )
        with self._lock:
            self._checkpoints.setdefault(txn_id, []).append(checkpoint)
        logger.debug(
            "checkpoint_created",
            transaction_id=txn_id,
            checkpoint_id=checkpoint.id,
            operation_index=operation_index,
        )
        return checkpoint

    def get_checkpoints(self, txn_id: TransactionId) -> list[Checkpoint]:
        with self._lock:
            return list(self._checkpoints.get(txn_id, []))

    def get_latest_checkpoint(self, txn_id: TransactionId) -> Checkpoint | None:
        with self._lock:
            checkpoints = self._checkpoints.get(txn_id)
            return checkpoints[-1] if checkpoints else None

    def restore_from_checkpoint(self, txn_id: TransactionId, checkpoint_id: str) -> Checkpoint:
        """Return a checkpoint and discard every later one.

        Raises:
            TransactionNotFoundError: If the checkpoint does not exist.
        """
        with self._lock:
            checkpoints = self._checkpoints.get(txn_id, [])
            for position, checkpoint in enumerate(checkpoints):
                if checkpoint.id == checkpoint_id:
                    del checkpoints[position + 1 :]
                    break
            else:
                raise TransactionNotFoundError(checkpoint_id)
        self._emit(
            "rollback:checkpoint_restore",
            transaction_id=txn_id,
            checkpoint_id=checkpoint_id,
        )
        return checkpoint

    def clear(self, txn_id: TransactionId) -> None:
        """Forget checkpoints, status and history of a transaction."""
        with self._lock:
            self._checkpoints.pop(txn_id, None)
            self._in_flight.pop(txn_id, None)
            self._history.pop(txn_id, None)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_rollback_history(self, txn_id: TransactionId) -> list[RollbackResult]:
        with self._lock:
            return list(self._history.get(txn_id, []))

    def get_rollback_status(self, txn_id: TransactionId) -> RollbackStatus:
        with self._lock:
            status = self._in_flight.get(txn_id)
        if status is None:
            raise TransactionNotFoundError(txn_id)
        return status

    def _emit(self, event: str, **payload) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, payload)
            except Exception:
                logger.exception("rollback_listener_failed", event=event)


def operation_strategy(op: RollbackOperation, scenario: FailureScenario) -> RollbackStrategy:
    """Strategy HYBRID rollback uses for one operation."""
    if op.type == RollbackOperationType.COMPENSATE:
        return RollbackStrategy.COMPENSATION
    if op.critical or op.dependencies:
        return RollbackStrategy.IMMEDIATE
    if scenario in (FailureScenario.TIMEOUT, FailureScenario.NETWORK_FAILURE):
        return RollbackStrategy.COMPENSATION
    if scenario in (FailureScenario.CONSTRAINT_VIOLATION, FailureScenario.BUSINESS_RULE_VIOLATION):
        return RollbackStrategy.CHECKPOINT
    return RollbackStrategy.IMMEDIATE


def group_by_dependency(operations: list[RollbackOperation]) -> list[list[RollbackOperation]]:
    """Batches where every operation's dependencies are in earlier batches.

    Operations caught in a dependency cycle are placed together in a
    final batch.
    """
    known = {op.id for op in operations}
    done: set[str] = set()
    remaining = list(operations)
    batches: list[list[RollbackOperation]] = []

    while remaining:
        ready = [
            op
            for op in remaining
            if all(dep in done or dep not in known for dep in op.dependencies)
        ]
        if not ready:
            ready = remaining
        batches.append(ready)
        done.update(op.id for op in ready)
        remaining = [op for op in remaining if op.id not in done]
    return batches
