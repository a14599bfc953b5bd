"""Two-phase commit coordinator.

Protocol (presumed abort):

    Phase 1  log PREPARE(participants)
             for each participant: vote = prepare(txn, payload); log VOTE
             (first NO, error, timeout or open circuit stops the round)
    Commit   log DECISION(commit | abort, asked participants); FLUSH
    point
    Phase 2  for each asked participant: commit/abort (retried); log ACK
             when every participant acknowledged: log END

The DECISION record is flushed before any phase-2 message is sent. If
the coordinator stops after that point, recovery re-sends the decision
to every participant without an ACK. If it stops before, there is no
decision and recovery aborts (presumed abort): a participant can only
have voted YES, never committed.

Participants that still fail after the phase-2 retries are left in
doubt. ``retry_in_doubt`` and RecoveryService finish them later.

References:
    - Gray & Reuter, "Transaction Processing" (1993), Section 10.4
    - Mohan, Lindsay, Obermarck, "Transaction Management in the R*
      Distributed Database Management System" (1986)
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable

from txn_coordinator.domain.entities import (
    AckRecord,
    BeginRecord,
    DecisionRecord,
    EndRecord,
    PrepareRecord,
    TransactionKind,
    VoteRecord,
)
from txn_coordinator.domain.errors import ParticipantError, StepTimeoutError
from txn_coordinator.domain.services.circuit_breaker import CircuitBreakerRegistry
from txn_coordinator.domain.services.retry import call_with_retry
from txn_coordinator.domain.value_objects import Decision, RetryPolicy, TransactionId, Vote
from txn_coordinator.infrastructure.logging import get_logger
from txn_coordinator.infrastructure.metrics import MetricsRegistry
from txn_coordinator.infrastructure.tracing import trace_span
from txn_coordinator.ports.outbound.coordinator_log import CoordinatorLog
from txn_coordinator.ports.outbound.participant import Participant

logger = get_logger(__name__)

DEFAULT_PHASE2_RETRY = RetryPolicy(
    max_attempts=3,
    base_delay_ms=100,
    max_delay_ms=1000,
    retryable_errors=frozenset({"PARTICIPANT_ERROR", "SERVICE_UNAVAILABLE", "TIMEOUT", "NETWORK_ERROR"}),
)


@dataclass
class PrepareOutcome:
    """Votes collected in phase 1."""

    transaction_id: TransactionId
    participants: list[str]
    votes: dict[str, Vote] = field(default_factory=dict)
    asked: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def decision(self) -> Decision:
        """COMMIT only if every participant was asked and voted YES."""
        if len(self.votes) == len(self.participants) and all(
            vote == Vote.YES for vote in self.votes.values()
        ):
            return Decision.COMMIT
        return Decision.ABORT

    @property
    def rejected_by(self) -> list[str]:
        return [name for name, vote in self.votes.items() if vote == Vote.NO]


@dataclass
class TwoPhaseCommitResult:
    """Outcome of one two-phase commit round."""

    transaction_id: TransactionId
    decision: Decision
    votes: dict[str, Vote] = field(default_factory=dict)
    acknowledged: list[str] = field(default_factory=list)
    in_doubt: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    duration_ms: float = 0.0

    @property
    def committed(self) -> bool:
        return self.decision == Decision.COMMIT

    @property
    def complete(self) -> bool:
        """True when every participant acknowledged the decision."""
        return not self.in_doubt


class TwoPhaseCommitCoordinator:
    """Runs two-phase commit rounds over registered participants.

    Thread Safety:
        Rounds for different transactions may run concurrently.
        Participant calls run outside the coordinator's lock.
    """

    def __init__(
        self,
        log: CoordinatorLog,
        breakers: CircuitBreakerRegistry | None = None,
        phase2_retry: RetryPolicy = DEFAULT_PHASE2_RETRY,
        prepare_timeout_ms: int | None = None,
        metrics: MetricsRegistry | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the coordinator.

        Args:
            log: Coordinator log; DECISION records are flushed to it.
            breakers: Circuit breakers per participant; None calls directly.
            phase2_retry: Retry policy for commit and abort messages.
            prepare_timeout_ms: Bound on each prepare call; a timeout is a NO.
            metrics: Metrics registry; None disables metrics.
            sleep: Sleep function used between phase-2 retries.
        """
        self._log = log
        self._breakers = breakers
        self._phase2_retry = phase2_retry
        self._prepare_timeout_ms = prepare_timeout_ms
        self._metrics = metrics
        self._sleep = sleep

        self._lock = threading.Lock()
        self._participants: dict[str, Participant] = {}
        # txn_id -> (decision, participants not yet acknowledged)
        self._in_doubt: dict[TransactionId, tuple[Decision, set[str]]] = {}
        self._executor: ThreadPoolExecutor | None = None

    # =========================================================================
    # Participants
    # =========================================================================

    def register_participant(self, participant: Participant) -> None:
        with self._lock:
            self._participants[participant.name] = participant

    def unregister_participant(self, name: str) -> bool:
        with self._lock:
            return self._participants.pop(name, None) is not None

    def get_participant(self, name: str) -> Participant:
        with self._lock:
            participant = self._participants.get(name)
        if participant is None:
            raise ParticipantError(f"Participant {name} not registered", recoverable=False)
        return participant

    @property
    def participant_names(self) -> list[str]:
        with self._lock:
            return sorted(self._participants)

    # =========================================================================
    # Protocol
    # =========================================================================

    def execute(
        self,
        txn_id: TransactionId,
        work: dict[str, Any],
        log_begin: bool = True,
    ) -> TwoPhaseCommitResult:
        """Run one two-phase commit round.

        Args:
            txn_id: Transaction id; participants see it in every call.
            work: Participant name to prepare payload, in prepare order.
            log_begin: Write a BEGIN record first. Callers that already
                logged BEGIN for the transaction pass False.

        Returns:
            The round's outcome. A NO vote is reported, not raised.

        Raises:
            ParticipantError: If a named participant is not registered.
        """
        start = time.time()

        if log_begin:
            self._log.append(
                BeginRecord(
                    txn_id=txn_id,
                    kind=TransactionKind.TWO_PHASE_COMMIT,
                    metadata={"participants": list(work)},
                )
            )

        with trace_span("twopc.execute", {"txn.id": txn_id, "twopc.participants": len(work)}):
            outcome = self.prepare(txn_id, work)
            result = self.complete(txn_id, outcome.decision, outcome)

        result.duration_ms = (time.time() - start) * 1000.0
        return result

    def prepare(self, txn_id: TransactionId, work: dict[str, Any]) -> PrepareOutcome:
        """Phase 1: log PREPARE and collect votes.

        Stops at the first NO vote; later participants are never asked.

        Raises:
            ParticipantError: If a named participant is not registered.
        """
        names = list(work)
        participants = {name: self.get_participant(name) for name in names}

        lsn = self._log.append(PrepareRecord(txn_id=txn_id, participants=names))
        self._log.flush(lsn)

        outcome = PrepareOutcome(transaction_id=txn_id, participants=names)
        prepare_start = time.time()

        with trace_span("twopc.prepare", {"txn.id": txn_id}):
            for name in names:
                outcome.asked.append(name)
                reason = None
                try:
                    vote = self._call(
                        name,
                        participants[name].prepare,
                        txn_id,
                        work[name],
                        timeout_ms=self._prepare_timeout_ms,
                    )
                    if not isinstance(vote, Vote):
                        vote = Vote.YES if vote else Vote.NO
                except Exception as e:
                    vote = Vote.NO
                    reason = str(e)
                    outcome.errors[name] = reason
                    logger.warning(
                        "twopc_prepare_failed",
                        transaction_id=txn_id,
                        participant=name,
                        error=reason,
                    )

                outcome.votes[name] = vote
                self._log.append(
                    VoteRecord(txn_id=txn_id, participant=name, vote=vote, reason=reason)
                )
                if vote == Vote.NO:
                    break

        if self._metrics is not None:
            self._metrics.twopc_prepare_seconds.observe(time.time() - prepare_start)
        return outcome

    def complete(
        self,
        txn_id: TransactionId,
        decision: Decision,
        outcome: PrepareOutcome,
    ) -> TwoPhaseCommitResult:
        """Log the decision, then run phase 2 on every asked participant.

        A COMMIT decision is only legal when every participant voted YES.

        Raises:
            ValueError: If COMMIT is requested without unanimous YES votes.
        """
        if decision == Decision.COMMIT and outcome.decision != Decision.COMMIT:
            raise ValueError(f"Cannot commit {txn_id}: not every participant voted YES")

        start = time.time()
        self.log_decision(txn_id, decision, outcome.asked)
        acknowledged, in_doubt, phase2_errors = self._phase_two(txn_id, decision, outcome.asked)

        result = TwoPhaseCommitResult(
            transaction_id=txn_id,
            decision=decision,
            votes=dict(outcome.votes),
            acknowledged=acknowledged,
            in_doubt=in_doubt,
            errors={**outcome.errors, **phase2_errors},
            duration_ms=(time.time() - start) * 1000.0,
        )

        if self._metrics is not None:
            self._metrics.twopc_decisions_total.labels(decision=decision.value).inc()
        logger.info(
            "twopc_finished",
            transaction_id=txn_id,
            decision=decision.value,
            votes={name: vote.value for name, vote in outcome.votes.items()},
            in_doubt=in_doubt,
        )
        return result

    def log_decision(self, txn_id: TransactionId, decision: Decision, participants: list[str]) -> None:
        """Write and flush the DECISION record (the commit point)."""
        lsn = self._log.append(
            DecisionRecord(txn_id=txn_id, decision=decision, participants=list(participants))
        )
        self._log.flush(lsn)

    def _phase_two(
        self,
        txn_id: TransactionId,
        decision: Decision,
        participants: list[str],
    ) -> tuple[list[str], list[str], dict[str, str]]:
        acknowledged, in_doubt, errors = self.send_decision(txn_id, decision, participants)
        if in_doubt:
            with self._lock:
                self._in_doubt[txn_id] = (decision, set(in_doubt))
            self._update_in_doubt_gauge()
            logger.error(
                "twopc_participants_in_doubt",
                transaction_id=txn_id,
                decision=decision.value,
                participants=in_doubt,
            )
        return acknowledged, in_doubt, errors

    def send_decision(
        self,
        txn_id: TransactionId,
        decision: Decision,
        participants: list[str],
    ) -> tuple[list[str], list[str], dict[str, str]]:
        """Deliver a logged decision to ``participants``.

        Writes an ACK per acknowledging participant and END once all
        have acknowledged.

        Returns:
            (acknowledged, in_doubt, errors by participant)
        """
        acknowledged: list[str] = []
        in_doubt: list[str] = []
        errors: dict[str, str] = {}

        with trace_span("twopc.phase2", {"txn.id": txn_id, "twopc.decision": decision.value}):
            for name in participants:
                try:
                    participant = self.get_participant(name)
                    method = participant.commit if decision == Decision.COMMIT else participant.abort
                    call_with_retry(
                        lambda: self._call(name, method, txn_id),
                        self._phase2_retry,
                        sleep=self._sleep,
                        on_retry=lambda e, attempt, delay: self._count_retry(),
                    )
                except Exception as e:
                    in_doubt.append(name)
                    errors[name] = str(e)
                    logger.warning(
                        "twopc_phase2_failed",
                        transaction_id=txn_id,
                        participant=name,
                        decision=decision.value,
                        error=str(e),
                    )
                    continue
                self._log.append(AckRecord(txn_id=txn_id, participant=name))
                acknowledged.append(name)

        if not in_doubt:
            self._log.append(EndRecord(txn_id=txn_id, outcome=decision.value))
        return acknowledged, in_doubt, errors

    def redeliver(
        self,
        txn_id: TransactionId,
        decision: Decision,
        participants: list[str],
    ) -> list[str]:
        """Re-send a logged decision, e.g. after a restart.

        Participants that still fail join the in-doubt table.

        Returns:
            Participants still in doubt.
        """
        _, in_doubt, _ = self._phase_two(txn_id, decision, participants)
        return in_doubt

    def retry_in_doubt(self) -> dict[TransactionId, list[str]]:
        """Re-send decisions to in-doubt participants.

        Returns:
            Participants still in doubt, by transaction.
        """
        with self._lock:
            pending = {txn: (d, set(names)) for txn, (d, names) in self._in_doubt.items()}

        remaining: dict[TransactionId, list[str]] = {}
        for txn_id, (decision, names) in pending.items():
            _, still, _ = self.send_decision(txn_id, decision, sorted(names))
            with self._lock:
                if still:
                    self._in_doubt[txn_id] = (decision, set(still))
                    remaining[txn_id] = still
                else:
                    self._in_doubt.pop(txn_id, None)
        self._update_in_doubt_gauge()
        return remaining

    def get_in_doubt(self) -> dict[TransactionId, tuple[Decision, list[str]]]:
        with self._lock:
            return {txn: (d, sorted(names)) for txn, (d, names) in self._in_doubt.items()}

    def close(self) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

    # =========================================================================
    # Internals
    # =========================================================================

    def _call(
        self, name: str, fn: Callable[..., Any], *args: Any, timeout_ms: int | None = None
    ) -> Any:
        if timeout_ms is not None:
            return self._through_breaker(name, self._with_timeout, name, timeout_ms, fn, *args)
        return self._through_breaker(name, fn, *args)

    def _through_breaker(self, name: str, fn: Callable[..., Any], *args: Any) -> Any:
        if self._breakers is None:
            return fn(*args)
        return self._breakers.call(name, fn, *args)

    def _with_timeout(
        self, name: str, timeout_ms: int, fn: Callable[..., Any], *args: Any
    ) -> Any:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="twopc")
            executor = self._executor
        future = executor.submit(fn, *args)
        try:
            return future.result(timeout=timeout_ms / 1000.0)
        except FutureTimeoutError:
            future.cancel()
            raise StepTimeoutError(
                f"Participant {name} did not answer prepare within {timeout_ms}ms",
                details={"participant": name},
            )

    def _count_retry(self) -> None:
        if self._metrics is not None:
            self._metrics.retries_total.labels(component="twopc").inc()

    def _update_in_doubt_gauge(self) -> None:
        if self._metrics is not None:
            with self._lock:
                count = sum(len(names) for _, names in self._in_doubt.values())
            self._metrics.in_doubt_participants.set(count)
