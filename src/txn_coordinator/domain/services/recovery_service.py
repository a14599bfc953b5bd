"""Coordinator crash recovery.

Restores a consistent outcome for every transaction the coordinator log
shows as unfinished. Runs at startup, before new transactions are
accepted, in the three phases of ARIES applied to coordinator records
instead of data pages:

    1. Analysis  scan the log and rebuild the transaction table: kind,
                 decision, prepared participants, acknowledgements and
                 saga step states
    2. Redo      a logged DECISION without END is re-sent to every
                 participant that has not acknowledged it
    3. Undo      no DECISION means abort (presumed abort): prepared
                 participants get ``abort``; sagas have their completed
                 steps compensated when the definition is registered

Every resolved transaction ends with an END record, so a second recovery
run finds nothing to do.

References:
    - Mohan, C. et al. "ARIES: A Transaction Recovery Method" (1992)
    - Mohan, Lindsay, Obermarck, "Transaction Management in the R*
      Distributed Database Management System" (1986), presumed abort
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from txn_coordinator.domain.entities import (
    AckRecord,
    BeginRecord,
    DecisionRecord,
    EndRecord,
    LogRecord,
    PrepareRecord,
    SagaStepRecord,
    TransactionKind,
)
from txn_coordinator.domain.errors import RecoveryError
from txn_coordinator.domain.services.saga_orchestrator import SagaOrchestrator
from txn_coordinator.domain.services.two_phase_commit import TwoPhaseCommitCoordinator
from txn_coordinator.domain.value_objects import (
    LSN,
    Decision,
    StepStatus,
    TransactionId,
)
from txn_coordinator.infrastructure.logging import get_logger
from txn_coordinator.infrastructure.metrics import MetricsRegistry
from txn_coordinator.infrastructure.tracing import trace_span
from txn_coordinator.ports.outbound.coordinator_log import CoordinatorLog

logger = get_logger(__name__)


@dataclass
class RecoveryStats:
    """Statistics from coordinator recovery."""

    records_analyzed: int = 0
    transactions_committed: int = 0  # COMMIT decisions redelivered
    transactions_aborted: int = 0  # Aborted, presumed or logged
    sagas_compensated: int = 0
    unresolved: int = 0  # Needs an operator or a later recovery
    in_doubt: int = 0  # Participants that still did not answer
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "records_analyzed": self.records_analyzed,
            "transactions_committed": self.transactions_committed,
            "transactions_aborted": self.transactions_aborted,
            "sagas_compensated": self.sagas_compensated,
            "unresolved": self.unresolved,
            "in_doubt": self.in_doubt,
            "duration_ms": self.duration_ms,
        }


@dataclass
class TransactionState:
    """A transaction as reconstructed from the log.

    Attributes:
        txn_id: The transaction identifier.
        kind: What wrote the BEGIN record.
        name: Saga definition id for sagas.
        input: Saga input for sagas.
        prepared: Participants named in PREPARE.
        decision: Logged decision, if any.
        decided: Participants named in DECISION.
        acked: Participants that acknowledged the decision.
        saga_steps: step_id -> (last status, output), in first-seen order.
        ended: True once an END record was seen.
    """

    txn_id: TransactionId
    kind: TransactionKind = TransactionKind.TRANSACTION
    name: str = ""
    input: Any = None
    last_lsn: LSN = LSN(0)
    prepared: list[str] = field(default_factory=list)
    decision: Decision | None = None
    decided: list[str] = field(default_factory=list)
    acked: set[str] = field(default_factory=set)
    saga_steps: dict[str, tuple[StepStatus, Any]] = field(default_factory=dict)
    ended: bool = False


class RecoveryService:
    """Resolves unfinished transactions found in the coordinator log.

    Usage:
        recovery = RecoveryService(log, two_phase_commit=twopc, saga_orchestrator=sagas)
        stats = recovery.recover()

    Thread Safety:
        Recovery should run single-threaded before any new transaction.
    """

    def __init__(
        self,
        log: CoordinatorLog,
        two_phase_commit: TwoPhaseCommitCoordinator | None = None,
        saga_orchestrator: SagaOrchestrator | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        """Initialize the recovery service.

        Args:
            log: The coordinator log to scan and append to.
            two_phase_commit: Delivers decisions to participants. Without
                it, transactions with participants stay unresolved.
            saga_orchestrator: Holds saga definitions for compensation.
            metrics: Metrics registry; None disables metrics.
        """
        self._log = log
        self._twopc = two_phase_commit
        self._sagas = saga_orchestrator
        self._metrics = metrics

    def recover(self) -> RecoveryStats:
        """Run analysis, redo and undo.

        Returns:
            Statistics about the recovery.

        Raises:
            RecoveryError: If recovery fails.
        """
        start_time = time.time()
        stats = RecoveryStats()

        try:
            with trace_span("recovery.recover"):
                # Phase 1: Analysis
                table = self._analysis_phase(stats)
                unfinished = [state for state in table.values() if not state.ended]

                # Phase 2: Redo
                for state in unfinished:
                    if state.decision is not None:
                        self._redo_decision(state, stats)

                # Phase 3: Undo
                for state in unfinished:
                    if state.decision is None:
                        self._undo(state, stats)

                last_lsn = self._log.get_current_lsn() - 1
                if last_lsn > 0:
                    self._log.flush(LSN(last_lsn))
        except RecoveryError:
            raise
        except Exception as e:
            raise RecoveryError(f"Recovery failed: {e}") from e

        stats.duration_ms = (time.time() - start_time) * 1000.0
        if self._metrics is not None:
            self._metrics.recovery_duration_seconds.set(stats.duration_ms / 1000.0)
            for outcome, count in (
                ("committed", stats.transactions_committed),
                ("aborted", stats.transactions_aborted),
                ("compensated", stats.sagas_compensated),
                ("unresolved", stats.unresolved),
            ):
                if count:
                    self._metrics.recovery_transactions_total.labels(outcome=outcome).inc(count)
        logger.info("recovery_completed", **stats.to_dict())
        return stats

    # =========================================================================
    # Phase 1: Analysis
    # =========================================================================

    def _analysis_phase(self, stats: RecoveryStats) -> dict[TransactionId, TransactionState]:
        table: dict[TransactionId, TransactionState] = {}
        for record in self._log.read_from(LSN(1)):
            stats.records_analyzed += 1
            self._analyze_record(record, table)

        logger.debug(
            "recovery_analysis_done",
            records=stats.records_analyzed,
            transactions=len(table),
            unfinished=sum(1 for s in table.values() if not s.ended),
        )
        return table

    def _analyze_record(self, record: LogRecord, table: dict[TransactionId, TransactionState]) -> None:
        state = table.get(record.txn_id)
        if state is None:
            state = table[record.txn_id] = TransactionState(txn_id=record.txn_id)
        state.last_lsn = record.lsn

        if isinstance(record, BeginRecord):
            state.kind = record.kind
            state.name = record.name
            state.input = record.input
        elif isinstance(record, PrepareRecord):
            state.prepared = list(record.participants)
        elif isinstance(record, DecisionRecord):
            state.decision = record.decision
            state.decided = list(record.participants)
        elif isinstance(record, AckRecord):
            state.acked.add(record.participant)
        elif isinstance(record, SagaStepRecord):
            if record.status == StepStatus.COMPLETED:
                state.saga_steps[record.step_id] = (record.status, record.output)
            elif record.step_id in state.saga_steps:
                _, output = state.saga_steps[record.step_id]
                state.saga_steps[record.step_id] = (record.status, output)
        elif isinstance(record, EndRecord):
            state.ended = True

    # =========================================================================
    # Phase 2: Redo decisions
    # =========================================================================

    def _redo_decision(self, state: TransactionState, stats: RecoveryStats) -> None:
        decision = state.decision
        assert decision is not None
        pending = [name for name in state.decided if name not in state.acked]

        if pending and self._twopc is None:
            logger.error(
                "recovery_cannot_deliver_decision",
                transaction_id=state.txn_id,
                decision=decision.value,
                participants=pending,
            )
            stats.unresolved += 1
            return

        if self._twopc is not None:
            in_doubt = self._twopc.redeliver(state.txn_id, decision, pending)
        else:
            self._log.append(EndRecord(txn_id=state.txn_id, outcome=decision.value))
            in_doubt = []

        stats.in_doubt += len(in_doubt)
        if decision == Decision.COMMIT:
            stats.transactions_committed += 1
        else:
            stats.transactions_aborted += 1
        logger.info(
            "recovery_decision_redelivered",
            transaction_id=state.txn_id,
            decision=decision.value,
            participants=pending,
            in_doubt=in_doubt,
        )

    # =========================================================================
    # Phase 3: Undo
    # =========================================================================

    def _undo(self, state: TransactionState, stats: RecoveryStats) -> None:
        if state.kind == TransactionKind.SAGA:
            self._undo_saga(state, stats)
            return

        if state.kind == TransactionKind.CROSS_DOMAIN:
            # Handler outputs are not logged, so there is nothing to compensate with
            logger.error("recovery_cross_domain_unresolved", transaction_id=state.txn_id)
            self._log.append(EndRecord(txn_id=state.txn_id, outcome="unresolved"))
            stats.unresolved += 1
            return

        if state.prepared:
            if self._twopc is None:
                logger.error(
                    "recovery_cannot_abort_participants",
                    transaction_id=state.txn_id,
                    participants=state.prepared,
                )
                stats.unresolved += 1
                return
            # Presumed abort: log the decision before telling anyone
            self._twopc.log_decision(state.txn_id, Decision.ABORT, state.prepared)
            in_doubt = self._twopc.redeliver(state.txn_id, Decision.ABORT, state.prepared)
            stats.in_doubt += len(in_doubt)
        else:
            self._log.append(EndRecord(txn_id=state.txn_id, outcome=Decision.ABORT.value))

        stats.transactions_aborted += 1
        logger.info(
            "recovery_transaction_aborted",
            transaction_id=state.txn_id,
            participants=state.prepared,
        )

    def _undo_saga(self, state: TransactionState, stats: RecoveryStats) -> None:
        completed = [
            (step_id, output)
            for step_id, (status, output) in state.saga_steps.items()
            if status == StepStatus.COMPLETED
        ]
        definition = self._sagas.get_definition(state.name) if self._sagas is not None else None
        if definition is None:
            logger.error(
                "recovery_saga_unresolved",
                execution_id=state.txn_id,
                saga_id=state.name,
                completed_steps=[step_id for step_id, _ in completed],
            )
            stats.unresolved += 1
            return

        assert self._sagas is not None
        compensated = self._sagas.compensate_from_log(state.txn_id, state.name, state.input, completed)
        stats.sagas_compensated += 1
        logger.info(
            "recovery_saga_compensated",
            execution_id=state.txn_id,
            saga_id=state.name,
            compensated=compensated,
        )
