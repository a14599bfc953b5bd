"""Unit tests for RecoveryService.

Each test drives the coordinator up to a point, simulates a crash with
``InMemoryCoordinatorLog.crash`` (unflushed records are lost) and then
recovers with fresh coordinator objects. Participants keep their state
across the crash, as remote resource managers would.
"""

from __future__ import annotations

from typing import Any

import pytest

from txn_coordinator.adapters.outbound import InMemoryCoordinatorLog, InMemoryParticipant
from txn_coordinator.domain.entities import (
    BeginRecord,
    DecisionRecord,
    EndRecord,
    LogRecordType,
    SagaDefinition,
    SagaStep,
    SagaStepRecord,
    TransactionKind,
)
from txn_coordinator.domain.services import RecoveryService, SagaOrchestrator, TwoPhaseCommitCoordinator
from txn_coordinator.domain.value_objects import Decision, RetryPolicy, StepStatus, TransactionId
from txn_coordinator.ports.outbound import ParticipantTxnStatus

TXN = TransactionId("txn_1_aaaaaaaaa")
NO_RETRY = RetryPolicy.none()


def restart(log: InMemoryCoordinatorLog) -> None:
    log.crash()
    log.reopen()


def new_twopc(log: InMemoryCoordinatorLog, *participants: InMemoryParticipant) -> TwoPhaseCommitCoordinator:
    twopc = TwoPhaseCommitCoordinator(log, phase2_retry=NO_RETRY, sleep=lambda _s: None)
    for participant in participants:
        twopc.register_participant(participant)
    return twopc


def unfinished(log: InMemoryCoordinatorLog) -> set[TransactionId]:
    open_txns: set[TransactionId] = set()
    for record in log.records():
        if record.record_type == LogRecordType.BEGIN or record.record_type == LogRecordType.PREPARE:
            open_txns.add(record.txn_id)
        elif record.record_type == LogRecordType.END:
            open_txns.discard(record.txn_id)
    return open_txns


@pytest.mark.unit
class TestTwoPhaseCommitRecovery:
    """Redo of logged decisions and presumed abort."""

    def test_empty_log(self, memory_log: InMemoryCoordinatorLog) -> None:
        stats = RecoveryService(memory_log).recover()

        assert stats.records_analyzed == 0
        assert stats.to_dict()["unresolved"] == 0

    def test_logged_commit_is_redelivered(self, memory_log: InMemoryCoordinatorLog) -> None:
        ledger = InMemoryParticipant("ledger")
        minutes = InMemoryParticipant("minutes")
        twopc = new_twopc(memory_log, ledger, minutes)
        twopc.prepare(TXN, {"ledger": {"key": "fee", "value": 50}, "minutes": {"key": "m1", "value": "ok"}})
        twopc.log_decision(TXN, Decision.COMMIT, ["ledger", "minutes"])
        # Crash before phase 2 reached anyone
        restart(memory_log)

        stats = RecoveryService(memory_log, two_phase_commit=new_twopc(memory_log, ledger, minutes)).recover()

        assert stats.transactions_committed == 1
        assert stats.in_doubt == 0
        assert ledger.get("fee") == 50
        assert minutes.status(TXN) == ParticipantTxnStatus.COMMITTED
        assert unfinished(memory_log) == set()

    def test_acknowledged_participants_are_skipped(self, memory_log: InMemoryCoordinatorLog) -> None:
        ledger = InMemoryParticipant("ledger")
        minutes = InMemoryParticipant("minutes", fail_commit_times=1)
        twopc = new_twopc(memory_log, ledger, minutes)
        result = twopc.execute(TXN, {"ledger": None, "minutes": None})
        assert result.in_doubt == ["minutes"]
        memory_log.flush(memory_log.get_current_lsn() - 1)
        restart(memory_log)

        RecoveryService(memory_log, two_phase_commit=new_twopc(memory_log, ledger, minutes)).recover()

        assert ledger.calls_for("commit") == [TXN]
        assert minutes.calls_for("commit") == [TXN, TXN]
        assert unfinished(memory_log) == set()

    def test_prepared_without_decision_is_aborted(self, memory_log: InMemoryCoordinatorLog) -> None:
        ledger = InMemoryParticipant("ledger")
        twopc = new_twopc(memory_log, ledger)
        twopc.prepare(TXN, {"ledger": {"key": "fee", "value": 50}})
        restart(memory_log)

        stats = RecoveryService(memory_log, two_phase_commit=new_twopc(memory_log, ledger)).recover()

        assert stats.transactions_aborted == 1
        assert ledger.status(TXN) == ParticipantTxnStatus.ABORTED
        assert ledger.get("fee") is None
        decisions = [r for r in memory_log.records() if isinstance(r, DecisionRecord)]
        assert [d.decision for d in decisions] == [Decision.ABORT]
        assert memory_log.get_flushed_lsn() == memory_log.get_current_lsn() - 1

    def test_unreachable_participant_stays_in_doubt(self, memory_log: InMemoryCoordinatorLog) -> None:
        ledger = InMemoryParticipant("ledger")
        new_twopc(memory_log, ledger).prepare(TXN, {"ledger": None})
        restart(memory_log)
        ledger.fail_abort_times = 10
        twopc = new_twopc(memory_log, ledger)

        stats = RecoveryService(memory_log, two_phase_commit=twopc).recover()

        assert stats.in_doubt == 1
        assert twopc.get_in_doubt() == {TXN: (Decision.ABORT, ["ledger"])}
        assert TXN in unfinished(memory_log)

    def test_prepared_without_two_phase_commit_is_unresolved(self, memory_log: InMemoryCoordinatorLog) -> None:
        new_twopc(memory_log, InMemoryParticipant("ledger")).prepare(TXN, {"ledger": None})
        restart(memory_log)

        stats = RecoveryService(memory_log).recover()

        assert stats.unresolved == 1
        assert stats.transactions_aborted == 0

    def test_begun_transaction_without_participants_ends_aborted(
        self, memory_log: InMemoryCoordinatorLog
    ) -> None:
        memory_log.flush(memory_log.append(BeginRecord(txn_id=TXN, mode="single_domain")))
        restart(memory_log)

        stats = RecoveryService(memory_log).recover()

        assert stats.transactions_aborted == 1
        end = memory_log.records()[-1]
        assert isinstance(end, EndRecord)
        assert end.outcome == "abort"

    def test_unflushed_begin_is_forgotten(self, memory_log: InMemoryCoordinatorLog) -> None:
        memory_log.append(BeginRecord(txn_id=TXN))
        restart(memory_log)

        stats = RecoveryService(memory_log).recover()

        assert stats.records_analyzed == 0

    def test_second_recovery_finds_nothing(self, memory_log: InMemoryCoordinatorLog) -> None:
        ledger = InMemoryParticipant("ledger")
        new_twopc(memory_log, ledger).prepare(TXN, {"ledger": None})
        restart(memory_log)
        RecoveryService(memory_log, two_phase_commit=new_twopc(memory_log, ledger)).recover()
        restart(memory_log)

        stats = RecoveryService(memory_log, two_phase_commit=new_twopc(memory_log, ledger)).recover()

        assert stats.transactions_aborted == 0
        assert stats.transactions_committed == 0
        assert ledger.calls_for("abort") == [TXN]

    def test_recovery_metrics(self, memory_log: InMemoryCoordinatorLog, metrics_registry) -> None:
        memory_log.flush(memory_log.append(BeginRecord(txn_id=TXN)))

        RecoveryService(memory_log, metrics=metrics_registry).recover()

        value = metrics_registry._registry.get_sample_value(
            "txn_recovery_transactions_total", {"outcome": "aborted"}
        )
        assert value == 1.0


@pytest.mark.unit
class TestSagaRecovery:
    """Interrupted sagas are compensated from logged step outputs."""

    @pytest.fixture
    def undone(self) -> list[tuple[str, Any]]:
        return []

    def definition(self, undone: list[tuple[str, Any]]) -> SagaDefinition:
        def compensation(name: str):
            def undo(output: Any, input: Any, context: Any) -> None:
                undone.append((name, output))

            return undo

        return SagaDefinition(
            id="onboard-director",
            name="Onboard director",
            steps=[
                SagaStep(id="account", name="Create account", action=lambda i, c: {"account": "a1"},
                         compensation=compensation("account"), retry_policy=NO_RETRY),
                SagaStep(id="seat", name="Assign seat", action=lambda i, c: {"seat": 7},
                         compensation=compensation("seat"), retry_policy=NO_RETRY,
                         dependencies=["account"]),
                SagaStep(id="notify", name="Notify board", action=lambda i, c: None,
                         compensation=compensation("notify"), retry_policy=NO_RETRY,
                         dependencies=["seat"]),
            ],
        )

    def write_interrupted_saga(self, log: InMemoryCoordinatorLog) -> None:
        execution = TransactionId("saga_1_bbbbbbbbb")
        log.append(
            BeginRecord(
                txn_id=execution,
                kind=TransactionKind.SAGA,
                name="onboard-director",
                input={"director": "d1"},
            )
        )
        log.append(SagaStepRecord(txn_id=execution, step_id="account", output={"account": "a1"}))
        log.append(SagaStepRecord(txn_id=execution, step_id="seat", output={"seat": 7}))
        log.flush(log.get_current_lsn() - 1)

    def test_completed_steps_compensated_in_reverse(
        self, memory_log: InMemoryCoordinatorLog, undone: list[tuple[str, Any]]
    ) -> None:
        self.write_interrupted_saga(memory_log)
        restart(memory_log)
        sagas = SagaOrchestrator(log=memory_log)
        sagas.register_saga(self.definition(undone))

        stats = RecoveryService(memory_log, saga_orchestrator=sagas).recover()

        assert stats.sagas_compensated == 1
        assert undone == [("seat", {"seat": 7}), ("account", {"account": "a1"})]
        assert unfinished(memory_log) == set()

    def test_already_compensated_step_skipped(
        self, memory_log: InMemoryCoordinatorLog, undone: list[tuple[str, Any]]
    ) -> None:
        self.write_interrupted_saga(memory_log)
        memory_log.append(
            SagaStepRecord(
                txn_id=TransactionId("saga_1_bbbbbbbbb"), step_id="seat", status=StepStatus.COMPENSATED
            )
        )
        memory_log.flush(memory_log.get_current_lsn() - 1)
        restart(memory_log)
        sagas = SagaOrchestrator(log=memory_log)
        sagas.register_saga(self.definition(undone))

        RecoveryService(memory_log, saga_orchestrator=sagas).recover()

        assert undone == [("account", {"account": "a1"})]

    def test_saga_crashing_mid_run_is_compensated(
        self, memory_log: InMemoryCoordinatorLog, undone: list[tuple[str, Any]]
    ) -> None:
        class ProcessDied(BaseException):
            pass

        def die(input: Any, context: Any) -> None:
            memory_log.crash()
            raise ProcessDied()

        def undo(output: Any, input: Any, context: Any) -> None:
            undone.append(("account", output))

        definition = SagaDefinition(
            id="onboard-director",
            name="Onboard director",
            steps=[
                SagaStep(id="account", name="Create account", action=lambda i, c: "account-a1",
                         compensation=undo, retry_policy=NO_RETRY),
                SagaStep(id="seat", name="Assign seat", action=die, retry_policy=NO_RETRY,
                         dependencies=["account"]),
            ],
        )
        sagas = SagaOrchestrator(log=memory_log)
        sagas.register_saga(definition)
        with pytest.raises(ProcessDied):
            sagas.start_saga("onboard-director", {"director": "d1"})
        memory_log.reopen()

        restarted = SagaOrchestrator(log=memory_log)
        restarted.register_saga(definition)
        stats = RecoveryService(memory_log, saga_orchestrator=restarted).recover()

        assert stats.sagas_compensated == 1
        assert undone == [("account", "account-a1")]
        assert unfinished(memory_log) == set()

    def test_unregistered_saga_is_unresolved(self, memory_log: InMemoryCoordinatorLog) -> None:
        self.write_interrupted_saga(memory_log)
        restart(memory_log)

        stats = RecoveryService(memory_log, saga_orchestrator=SagaOrchestrator(log=memory_log)).recover()

        assert stats.unresolved == 1
        assert unfinished(memory_log) == {TransactionId("saga_1_bbbbbbbbb")}

    def test_cross_domain_marked_unresolved_once(self, memory_log: InMemoryCoordinatorLog) -> None:
        xd = TransactionId("xd_1_ccccccccc")
        memory_log.flush(memory_log.append(BeginRecord(txn_id=xd, kind=TransactionKind.CROSS_DOMAIN)))
        restart(memory_log)

        first = RecoveryService(memory_log).recover()
        second = RecoveryService(memory_log).recover()

        assert first.unresolved == 1
        assert second.unresolved == 0
