"""Unit tests for RollbackManager."""

from __future__ import annotations

import threading

import pytest

from txn_coordinator.domain.entities import RollbackContext, RollbackOperation
from txn_coordinator.domain.errors import (
    InvalidTransactionStateError,
    OperationFailedError,
    TransactionNotFoundError,
)
from txn_coordinator.domain.services import RollbackManager
from txn_coordinator.domain.services.rollback_manager import (
    group_by_dependency,
    operation_strategy,
    strategy_for_scenario,
)
from txn_coordinator.domain.value_objects import (
    FailureScenario,
    RollbackOperationType,
    RollbackStrategy,
    TransactionId,
)

TXN = TransactionId("txn_1_aaaaaaaaa")


class UndoLog:
    """Thread-safe record of undo calls."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def op(self, op_id: str, index: int, *, fail_times: int = 0, **kwargs) -> RollbackOperation:
        failures = {"left": fail_times}

        def undo() -> None:
            with self._lock:
                self.calls.append(op_id)
            if failures["left"] > 0:
                failures["left"] -= 1
                raise RuntimeError(f"{op_id} undo failed")

        return RollbackOperation(id=op_id, undo=undo, index=index, **kwargs)


@pytest.fixture
def undo_log() -> UndoLog:
    return UndoLog()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def manager(sleeps: list[float]) -> RollbackManager:
    return RollbackManager(max_retries=2, retry_delay_ms=100, sleep=sleeps.append)


def context(operations, strategy: RollbackStrategy, **kwargs) -> RollbackContext:
    return RollbackContext(transaction_id=TXN, operations=operations, strategy=strategy, **kwargs)


@pytest.mark.unit
class TestImmediate:
    """Priority order, retries and critical failures."""

    def test_priority_then_reverse_index(self, manager: RollbackManager, undo_log: UndoLog) -> None:
        ops = [
            undo_log.op("a", 0),
            undo_log.op("b", 1),
            undo_log.op("audit", 2, priority=5),
            undo_log.op("c", 3),
        ]

        result = manager.rollback(context(ops, RollbackStrategy.IMMEDIATE))

        assert undo_log.calls == ["audit", "c", "b", "a"]
        assert result.succeeded
        assert result.rolled_back == ["audit", "c", "b", "a"]

    def test_retries_with_backoff(
        self, manager: RollbackManager, undo_log: UndoLog, sleeps: list[float]
    ) -> None:
        result = manager.rollback(context([undo_log.op("a", 0, fail_times=2)], RollbackStrategy.IMMEDIATE))

        assert result.succeeded
        assert result.results[0].attempts == 3
        assert sleeps == [0.1, 0.2]

    def test_non_critical_failure_continues(self, manager: RollbackManager, undo_log: UndoLog) -> None:
        ops = [undo_log.op("a", 0), undo_log.op("b", 1, fail_times=10)]

        result = manager.rollback(context(ops, RollbackStrategy.IMMEDIATE))

        assert not result.succeeded
        assert result.failed == ["b"]
        assert result.rolled_back == ["a"]
        assert result.results[0].attempts == 3
        assert "b undo failed" in result.results[0].error

    def test_critical_failure_stops(self, manager: RollbackManager, undo_log: UndoLog) -> None:
        ops = [undo_log.op("a", 0), undo_log.op("b", 1, fail_times=10, critical=True)]

        with pytest.raises(OperationFailedError, match="Critical rollback operation b"):
            manager.rollback(context(ops, RollbackStrategy.IMMEDIATE))

        history = manager.get_rollback_history(TXN)
        assert len(history) == 1
        assert history[0].skipped == ["a"]
        assert not history[0].succeeded
        assert "a" not in undo_log.calls

    def test_concurrent_rollback_rejected(self, undo_log: UndoLog) -> None:
        manager = RollbackManager(max_retries=0)
        nested_errors = []

        def reenter() -> None:
            try:
                manager.rollback(context([], RollbackStrategy.IMMEDIATE))
            except InvalidTransactionStateError as e:
                nested_errors.append(e)

        manager.rollback(context([RollbackOperation(id="x", undo=reenter)], RollbackStrategy.IMMEDIATE))

        assert len(nested_errors) == 1
        assert not manager.get_rollback_status(TXN).in_progress


@pytest.mark.unit
class TestOtherStrategies:
    """DEFERRED, CHECKPOINT, COMPENSATION and HYBRID."""

    def test_deferred_respects_dependencies(self, manager: RollbackManager, undo_log: UndoLog) -> None:
        ops = [
            undo_log.op("child", 1, dependencies=["parent"]),
            undo_log.op("parent", 0),
            undo_log.op("other", 2),
        ]

        result = manager.rollback(context(ops, RollbackStrategy.DEFERRED))

        assert result.succeeded
        assert undo_log.calls.index("parent") < undo_log.calls.index("child")
        assert sorted(result.rolled_back) == ["child", "other", "parent"]

    def test_checkpoint_undoes_only_later_operations(
        self, manager: RollbackManager, undo_log: UndoLog
    ) -> None:
        ops = [undo_log.op(f"op{i}", i) for i in range(4)]
        manager.create_checkpoint(TXN, operation_index=2, name="after votes")

        result = manager.rollback(context(ops, RollbackStrategy.CHECKPOINT))

        assert undo_log.calls == ["op3", "op2"]
        assert result.skipped == ["op0", "op1"]
        assert manager.get_rollback_status(TXN).total == 2

    def test_checkpoint_without_checkpoint_is_immediate(
        self, manager: RollbackManager, undo_log: UndoLog
    ) -> None:
        ops = [undo_log.op("a", 0), undo_log.op("b", 1)]

        manager.rollback(context(ops, RollbackStrategy.CHECKPOINT))

        assert undo_log.calls == ["b", "a"]

    def test_compensation_is_best_effort_without_retry(
        self, manager: RollbackManager, undo_log: UndoLog, sleeps: list[float]
    ) -> None:
        events = []
        manager.add_listener(lambda name, payload: events.append(name))
        ops = [undo_log.op("a", 0), undo_log.op("b", 1, fail_times=1), undo_log.op("c", 2)]

        result = manager.rollback(context(ops, RollbackStrategy.COMPENSATION))

        assert undo_log.calls == ["c", "b", "a"]
        assert result.failed == ["b"]
        assert sleeps == []
        assert "rollback:compensation_failed" in events
        assert events[0] == "rollback:started"
        assert events[-1] == "rollback:completed"

    def test_hybrid_group_failure_does_not_stop_other_groups(
        self, manager: RollbackManager, undo_log: UndoLog
    ) -> None:
        ops = [
            undo_log.op("ledger", 0, critical=True, fail_times=10),
            undo_log.op("notice", 1, type=RollbackOperationType.COMPENSATE),
        ]

        result = manager.rollback(context(ops, RollbackStrategy.HYBRID))

        assert "notice" in result.rolled_back
        assert "ledger" in result.failed
        assert not result.succeeded


@pytest.mark.unit
class TestStrategySelection:
    """Scenario and per-operation strategy choices."""

    @pytest.mark.parametrize(
        ("scenario", "strategy"),
        [
            (FailureScenario.DEADLOCK, RollbackStrategy.IMMEDIATE),
            (FailureScenario.NETWORK_FAILURE, RollbackStrategy.COMPENSATION),
            (FailureScenario.TIMEOUT, RollbackStrategy.CHECKPOINT),
            (FailureScenario.SYSTEM_FAILURE, RollbackStrategy.HYBRID),
        ],
    )
    def test_strategy_for_scenario(self, scenario: FailureScenario, strategy: RollbackStrategy) -> None:
        assert strategy_for_scenario(scenario) == strategy

    def test_operation_strategy(self) -> None:
        plain = RollbackOperation(id="a", undo=lambda: None)
        compensate = RollbackOperation(id="b", undo=lambda: None, type=RollbackOperationType.COMPENSATE)
        critical = RollbackOperation(id="c", undo=lambda: None, critical=True)

        assert operation_strategy(compensate, FailureScenario.DEADLOCK) == RollbackStrategy.COMPENSATION
        assert operation_strategy(critical, FailureScenario.TIMEOUT) == RollbackStrategy.IMMEDIATE
        assert operation_strategy(plain, FailureScenario.TIMEOUT) == RollbackStrategy.COMPENSATION
        assert (
            operation_strategy(plain, FailureScenario.CONSTRAINT_VIOLATION) == RollbackStrategy.CHECKPOINT
        )

    def test_group_by_dependency_breaks_cycles(self) -> None:
        a = RollbackOperation(id="a", undo=lambda: None, dependencies=["b"])
        b = RollbackOperation(id="b", undo=lambda: None, dependencies=["a"])
        c = RollbackOperation(id="c", undo=lambda: None)

        batches = group_by_dependency([a, b, c])

        assert [[op.id for op in batch] for batch in batches] == [["c"], ["a", "b"]]


@pytest.mark.unit
class TestCheckpoints:
    """Checkpoint bookkeeping."""

    def test_restore_discards_later_checkpoints(self, manager: RollbackManager) -> None:
        first = manager.create_checkpoint(TXN, 1, state={"step": "draft"})
        manager.create_checkpoint(TXN, 3)

        restored = manager.restore_from_checkpoint(TXN, first.id)

        assert restored is first
        assert manager.get_checkpoints(TXN) == [first]
        assert manager.get_latest_checkpoint(TXN) is first

    def test_restore_unknown(self, manager: RollbackManager) -> None:
        with pytest.raises(TransactionNotFoundError):
            manager.restore_from_checkpoint(TXN, "chk_missing")

    def test_clear(self, manager: RollbackManager, undo_log: UndoLog) -> None:
        manager.create_checkpoint(TXN, 0)
        manager.rollback(context([undo_log.op("a", 0)], RollbackStrategy.IMMEDIATE))

        manager.clear(TXN)

        assert manager.get_checkpoints(TXN) == []
        assert manager.get_rollback_history(TXN) == []
        with pytest.raises(TransactionNotFoundError):
            manager.get_rollback_status(TXN)
