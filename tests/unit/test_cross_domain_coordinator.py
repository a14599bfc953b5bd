"""Unit tests for CrossDomainTransactionCoordinator."""

from __future__ import annotations

import threading
import time
from typing import Any

import pytest

from txn_coordinator.adapters.outbound import InMemoryCoordinatorLog, InMemoryEventStore
from txn_coordinator.domain.entities import DomainOperation, LogRecordType
from txn_coordinator.domain.errors import (
    InvalidTransactionStateError,
    ParticipantError,
    QuotaExceededError,
    SagaDefinitionError,
    TransactionNotFoundError,
)
from txn_coordinator.domain.services import CrossDomainTransactionCoordinator
from txn_coordinator.domain.value_objects import CrossDomainState, RetryPolicy, TransactionId


class FakeHandler:
    """Domain handler that records calls and fails on request."""

    def __init__(self, domain: str, fail: set[str] | None = None, fail_times: int = 0) -> None:
        self.domain = domain
        self.fail = fail or set()
        self.fail_times = fail_times
        self.executed: list[str] = []
        self.compensated: list[tuple[str, Any]] = []
        self._lock = threading.Lock()

    def execute(self, operation: DomainOperation, input: Any) -> Any:
        with self._lock:
            self.executed.append(operation.operation)
            if self.fail_times > 0:
                self.fail_times -= 1
                raise ParticipantError(f"{self.domain} busy")
        if operation.operation in self.fail:
            raise RuntimeError(f"{operation.operation} rejected")
        return {"domain": self.domain, "operation": operation.operation, "input": input}

    def compensate(self, operation: DomainOperation, output: Any) -> None:
        with self._lock:
            self.compensated.append((operation.operation, output))


@pytest.fixture
def store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def coordinator(store: InMemoryEventStore, memory_log: InMemoryCoordinatorLog) -> CrossDomainTransactionCoordinator:
    coordinator = CrossDomainTransactionCoordinator(event_store=store, log=memory_log, sleep=lambda _s: None)
    yield coordinator
    coordinator.close()


@pytest.fixture
def meetings(coordinator: CrossDomainTransactionCoordinator) -> FakeHandler:
    handler = FakeHandler("meetings")
    coordinator.register_handler("meetings", handler)
    return handler


@pytest.fixture
def documents(coordinator: CrossDomainTransactionCoordinator) -> FakeHandler:
    handler = FakeHandler("documents")
    coordinator.register_handler("documents", handler)
    return handler


def board_meeting_plan() -> list[DomainOperation]:
    return [
        DomainOperation("meetings", "create", {"title": "Q3 board"}),
        DomainOperation("documents", "reserve", {"folder": "q3"}),
        DomainOperation("documents", "attach", dependencies=["meetings:create", "documents:reserve"]),
    ]


@pytest.mark.unit
class TestPlanning:
    """Phase layering."""

    def test_phases(self, coordinator: CrossDomainTransactionCoordinator) -> None:
        phases = coordinator.create_phases(board_meeting_plan())

        assert [[op.id for op in phase.operations] for phase in phases] == [
            ["meetings:create", "documents:reserve"],
            ["documents:attach"],
        ]
        assert phases[0].parallel
        assert not phases[1].parallel

    def test_cycle_rejected(self, coordinator: CrossDomainTransactionCoordinator) -> None:
        ops = [
            DomainOperation("a", "x", dependencies=["b:y"]),
            DomainOperation("b", "y", dependencies=["a:x"]),
        ]

        with pytest.raises(SagaDefinitionError, match="Circular dependency"):
            coordinator.create_phases(ops)

    def test_unknown_dependency_rejected(self, coordinator: CrossDomainTransactionCoordinator) -> None:
        with pytest.raises(SagaDefinitionError, match="unknown operation"):
            coordinator.create_phases([DomainOperation("a", "x", dependencies=["ghost:op"])])

    def test_duplicate_rejected(self, coordinator: CrossDomainTransactionCoordinator) -> None:
        with pytest.raises(SagaDefinitionError, match="Duplicate"):
            coordinator.create_phases([DomainOperation("a", "x"), DomainOperation("a", "x")])


@pytest.mark.unit
class TestExecution:
    """Running plans."""

    def test_success(
        self,
        coordinator: CrossDomainTransactionCoordinator,
        meetings: FakeHandler,
        documents: FakeHandler,
        store: InMemoryEventStore,
        memory_log: InMemoryCoordinatorLog,
    ) -> None:
        result = coordinator.execute(board_meeting_plan(), correlation_id="corr-1")

        assert result.succeeded
        assert set(result.results) == {"meetings:create", "documents:reserve", "documents:attach"}
        assert result.results["meetings:create"]["input"] == {"title": "Q3 board"}
        assert documents.executed[-1] == "attach"
        assert meetings.compensated == [] and documents.compensated == []

        event_types = [e.event_type for e in store.get_events_by_correlation("corr-1")]
        assert event_types[0] == "TRANSACTION_STARTED"
        assert event_types[-1] == "TRANSACTION_COMPLETED"
        assert event_types.count("OPERATION_COMPLETED") == 3

        types = [r.record_type for r in memory_log.records()]
        assert types[0] == LogRecordType.BEGIN
        assert types.count(LogRecordType.OPERATION) == 3
        assert types[-1] == LogRecordType.END

    def test_failure_compensates_in_reverse(
        self, coordinator: CrossDomainTransactionCoordinator, store: InMemoryEventStore
    ) -> None:
        meetings = FakeHandler("meetings")
        documents = FakeHandler("documents", fail={"attach"})
        coordinator.register_handler("meetings", meetings)
        coordinator.register_handler("documents", documents)
        ops = [
            DomainOperation("meetings", "create"),
            DomainOperation("documents", "reserve", dependencies=["meetings:create"]),
            DomainOperation("documents", "attach", dependencies=["documents:reserve"]),
        ]

        result = coordinator.execute(ops)

        assert result.state == CrossDomainState.FAILED
        assert result.failed_operations == ["documents:attach"]
        assert "attach rejected" in result.error
        assert [c.operation_id for c in result.compensations] == ["documents:reserve", "meetings:create"]
        assert all(c.succeeded for c in result.compensations)
        assert meetings.compensated[0][1]["operation"] == "create"
        assert "OPERATION_COMPENSATED" in [e.event_type for e in store.get_events(result.transaction_id)]

    def test_failure_without_rollback(self, coordinator: CrossDomainTransactionCoordinator) -> None:
        meetings = FakeHandler("meetings")
        documents = FakeHandler("documents", fail={"reserve"})
        coordinator.register_handler("meetings", meetings)
        coordinator.register_handler("documents", documents)

        result = coordinator.execute(
            [DomainOperation("meetings", "create"), DomainOperation("documents", "reserve")],
            rollback_on_failure=False,
        )

        assert result.state == CrossDomainState.FAILED
        assert result.compensations == []
        assert meetings.compensated == []

    def test_continue_on_partial_failure_skips_dependents(
        self, coordinator: CrossDomainTransactionCoordinator
    ) -> None:
        coordinator.register_handler("meetings", FakeHandler("meetings", fail={"create"}))
        documents = FakeHandler("documents")
        coordinator.register_handler("documents", documents)

        result = coordinator.execute(board_meeting_plan(), continue_on_partial_failure=True)

        assert result.state == CrossDomainState.COMPLETED
        assert sorted(result.failed_operations) == ["documents:attach", "meetings:create"]
        assert "attach" not in documents.executed
        assert "documents:reserve" in result.results

    def test_missing_handler_fails_operation(
        self, coordinator: CrossDomainTransactionCoordinator, meetings: FakeHandler
    ) -> None:
        result = coordinator.execute([DomainOperation("voting", "open")])

        assert result.state == CrossDomainState.FAILED
        assert "No handler registered for domain voting" in result.error

    def test_retry_policy(self, coordinator: CrossDomainTransactionCoordinator) -> None:
        flaky = FakeHandler("meetings", fail_times=2)
        coordinator.register_handler("meetings", flaky)
        op = DomainOperation("meetings", "create", retry_policy=RetryPolicy(max_attempts=3, base_delay_ms=0))

        result = coordinator.execute([op])

        assert result.succeeded
        assert len(flaky.executed) == 3
        assert coordinator.get_transaction_metrics(result.transaction_id)["retries"] == 2

    def test_operation_timeout(self, coordinator: CrossDomainTransactionCoordinator) -> None:
        class SlowHandler(FakeHandler):
            def execute(self, operation: DomainOperation, input: Any) -> Any:
                time.sleep(0.3)
                return super().execute(operation, input)

        coordinator.register_handler("meetings", SlowHandler("meetings"))

        result = coordinator.execute([DomainOperation("meetings", "create", timeout_ms=20)])

        assert result.state == CrossDomainState.FAILED
        assert "timed out" in result.error

    def test_idempotent_operation_runs_once_and_is_not_compensated(
        self, coordinator: CrossDomainTransactionCoordinator
    ) -> None:
        meetings = FakeHandler("meetings")
        documents = FakeHandler("documents", fail={"attach"})
        coordinator.register_handler("meetings", meetings)
        coordinator.register_handler("documents", documents)

        first = coordinator.execute([DomainOperation("meetings", "create", idempotency_key="meeting-42")])
        second = coordinator.execute(
            [
                DomainOperation("meetings", "create", idempotency_key="meeting-42"),
                DomainOperation("documents", "attach", dependencies=["meetings:create"]),
            ]
        )

        assert first.succeeded
        assert meetings.executed == ["create"]
        assert second.state == CrossDomainState.FAILED
        assert meetings.compensated == []
        assert coordinator.get_transaction_metrics(second.transaction_id)["cached"] == 1

    def test_compensated_operation_runs_again_on_retry(
        self, coordinator: CrossDomainTransactionCoordinator
    ) -> None:
        billing = FakeHandler("billing")
        notifications = FakeHandler("notifications", fail={"send"})
        coordinator.register_handler("billing", billing)
        coordinator.register_handler("notifications", notifications)

        def plan() -> list[DomainOperation]:
            return [
                DomainOperation("billing", "charge", {"amount": 120}, idempotency_key="charge-1"),
                DomainOperation("notifications", "send", dependencies=["billing:charge"],
                                retry_policy=RetryPolicy.none()),
            ]

        first = coordinator.execute(plan())
        notifications.fail.clear()
        second = coordinator.execute(plan())

        assert first.state == CrossDomainState.FAILED
        assert [c for c, _ in billing.compensated] == ["charge"]
        assert second.succeeded
        assert billing.executed == ["charge", "charge"]
        assert coordinator.get_transaction_metrics(second.transaction_id)["cached"] == 0

    def test_quota(self, store: InMemoryEventStore) -> None:
        coordinator = CrossDomainTransactionCoordinator(event_store=store, max_concurrent_transactions=1)
        errors = []

        class NestingHandler(FakeHandler):
            def execute(self, operation: DomainOperation, input: Any) -> Any:
                try:
                    coordinator.execute([DomainOperation("meetings", "nested")])
                except QuotaExceededError as e:
                    errors.append(e)
                return super().execute(operation, input)

        coordinator.register_handler("meetings", NestingHandler("meetings"))

        assert coordinator.execute([DomainOperation("meetings", "create")]).succeeded
        assert len(errors) == 1
        coordinator.close()


@pytest.mark.unit
class TestControl:
    """Cancellation and bookkeeping."""

    def test_cancel_before_next_phase(
        self, coordinator: CrossDomainTransactionCoordinator, store: InMemoryEventStore
    ) -> None:
        class CancellingHandler(FakeHandler):
            def execute(self, operation: DomainOperation, input: Any) -> Any:
                txn_id = store.all_events()[0].transaction_id
                coordinator.cancel_transaction(txn_id)
                return super().execute(operation, input)

        meetings = CancellingHandler("meetings")
        documents = FakeHandler("documents")
        coordinator.register_handler("meetings", meetings)
        coordinator.register_handler("documents", documents)

        result = coordinator.execute(
            [
                DomainOperation("meetings", "create"),
                DomainOperation("documents", "attach", dependencies=["meetings:create"]),
            ]
        )

        assert result.state == CrossDomainState.CANCELLED
        assert documents.executed == []
        assert [op for op, _ in meetings.compensated] == ["create"]

    def test_cancel_finished_rejected(
        self, coordinator: CrossDomainTransactionCoordinator, meetings: FakeHandler
    ) -> None:
        result = coordinator.execute([DomainOperation("meetings", "create")])

        with pytest.raises(InvalidTransactionStateError):
            coordinator.cancel_transaction(result.transaction_id)

    def test_unknown_transaction(self, coordinator: CrossDomainTransactionCoordinator) -> None:
        with pytest.raises(TransactionNotFoundError):
            coordinator.get_transaction(TransactionId("xd_0_missing00"))

    def test_cleanup(self, coordinator: CrossDomainTransactionCoordinator, meetings: FakeHandler) -> None:
        result = coordinator.execute([DomainOperation("meetings", "create")])

        assert coordinator.get_active_count() == 0
        assert coordinator.cleanup(max_age_ms=0) == 1
        with pytest.raises(TransactionNotFoundError):
            coordinator.get_transaction_status(result.transaction_id)

    def test_handler_registry(self, coordinator: CrossDomainTransactionCoordinator) -> None:
        coordinator.register_handler("meetings", FakeHandler("meetings"))
        coordinator.register_handler("documents", FakeHandler("documents"))

        assert coordinator.domains == ["documents", "meetings"]
        assert coordinator.unregister_handler("meetings") is True
        assert coordinator.unregister_handler("meetings") is False
