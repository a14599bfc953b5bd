"""Transaction-related types and enumerations.

These types define the lifecycle states, execution modes and policies
used by the coordinator, the saga orchestrator and the rollback manager.
"""

from __future__ import annotations

from enum import Enum


class TransactionMode(Enum):
    """How a transaction's operations are coordinated."""

    SINGLE_DOMAIN = "single_domain"
    """Operations run in order against one backend; compensate on failure."""

    CROSS_DOMAIN = "cross_domain"
    """Operations span domains and run as a saga."""

    DISTRIBUTED = "distributed"
    """Participants vote in a two-phase commit."""

    COMPENSATING = "compensating"
    """Pure saga: every operation carries an explicit compensation."""


class IsolationLevel(Enum):
    """Isolation level requested by the caller.

    The coordinator records the level and passes it to participants; it
    does not enforce it itself. Optimistic locks are the coordinator's
    own concurrency control.
    """

    READ_UNCOMMITTED = "READ_UNCOMMITTED"
    READ_COMMITTED = "READ_COMMITTED"
    REPEATABLE_READ = "REPEATABLE_READ"
    SERIALIZABLE = "SERIALIZABLE"


class TransactionStatus(Enum):
    """Coordinator transaction lifecycle.

    State machine:

        PENDING ──execute()──> RUNNING ──commit()──> COMMITTING ──> COMMITTED
                                  │
                          (2PC) PREPARING ──> PREPARED ──commit()──┘
                                  │
                   rollback() ──> ABORTING ──> ABORTED
                                  │
                   saga failure ─> COMPENSATING ──> COMPENSATED / FAILED

    COMMITTING and ABORTING are visible during recovery: a transaction
    caught in COMMITTING with a logged decision must be finished, not
    undone.
    """

    PENDING = "pending"
    RUNNING = "running"
    PREPARING = "preparing"
    PREPARED = "prepared"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ABORTING = "aborting"
    ABORTED = "aborted"
    FAILED = "failed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"

    def is_terminal(self) -> bool:
        """Check if no further transitions are possible."""
        return self in (
            TransactionStatus.COMMITTED,
            TransactionStatus.ABORTED,
            TransactionStatus.FAILED,
            TransactionStatus.COMPENSATED,
        )

    def is_active(self) -> bool:
        """Check if the transaction still counts against the concurrency limit."""
        return not self.is_terminal()

    def can_execute(self) -> bool:
        """Check if operations may still be submitted."""
        return self in (TransactionStatus.PENDING, TransactionStatus.RUNNING)

    def can_commit(self) -> bool:
        """Check if commit() is legal."""
        return self in (TransactionStatus.RUNNING, TransactionStatus.PREPARED)

    def can_abort(self) -> bool:
        """Check if rollback() is legal."""
        return not self.is_terminal()

    def is_expirable(self) -> bool:
        """Check if the timeout sweep may roll this transaction back."""
        return self in (TransactionStatus.PENDING, TransactionStatus.RUNNING)


class OperationType(Enum):
    """Kind of data operation a transactional step performs."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    READ = "read"


class OperationStatus(Enum):
    """Outcome of a single operation inside a transaction."""

    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"
    COMPENSATED = "compensated"


class Vote(Enum):
    """Participant vote in the prepare phase."""

    YES = "yes"
    NO = "no"


class Decision(Enum):
    """Coordinator decision logged at the commit point."""

    COMMIT = "commit"
    ABORT = "abort"


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    @property
    def gauge_value(self) -> int:
        """Numeric value exported on the circuit state gauge."""
        return {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}[self]


class BackoffStrategy(Enum):
    """Delay growth between retry attempts."""

    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class SagaStatus(Enum):
    """Saga execution lifecycle."""

    PENDING = "pending"
    RUNNING = "running"
    COMPENSATING = "compensating"
    COMMITTED = "committed"
    FAILED = "failed"
    ABORTED = "aborted"

    def is_terminal(self) -> bool:
        return self in (SagaStatus.COMMITTED, SagaStatus.FAILED, SagaStatus.ABORTED)


class StepStatus(Enum):
    """Saga step lifecycle."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATED = "compensated"


class DeadlockResolution(Enum):
    """Which transaction in a wait-for cycle is rolled back."""

    ABORT_YOUNGEST = "ABORT_YOUNGEST"
    ABORT_OLDEST = "ABORT_OLDEST"
    ABORT_RANDOM = "ABORT_RANDOM"


class RollbackStrategy(Enum):
    """How the rollback manager undoes a failed transaction."""

    IMMEDIATE = "immediate"
    """Undo everything now, by priority; stop if a critical undo fails."""

    DEFERRED = "deferred"
    """Undo in dependency-ordered batches; each batch runs concurrently."""

    CHECKPOINT = "checkpoint"
    """Undo only what happened after the latest checkpoint."""

    COMPENSATION = "compensation"
    """Run compensations in reverse order, best effort."""

    HYBRID = "hybrid"
    """Pick a strategy per operation from its type and the failure scenario."""


class FailureScenario(Enum):
    """Classification of why a transaction is being rolled back."""

    OPERATION_FAILURE = "operation_failure"
    TIMEOUT = "timeout"
    DEADLOCK = "deadlock"
    CONSTRAINT_VIOLATION = "constraint_violation"
    NETWORK_FAILURE = "network_failure"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    BUSINESS_RULE_VIOLATION = "business_rule_violation"
    EXTERNAL_SERVICE_FAILURE = "external_service_failure"
    SYSTEM_FAILURE = "system_failure"


class RollbackOperationType(Enum):
    """How an individual rollback operation undoes its effect."""

    UNDO = "undo"
    COMPENSATE = "compensate"
    RESTORE = "restore"
    CLEANUP = "cleanup"


class CrossDomainState(Enum):
    """Cross-domain transaction lifecycle."""

    PENDING = "pending"
    ORCHESTRATING = "orchestrating"
    EXECUTING = "executing"
    COMPENSATING = "compensating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        return self in (
            CrossDomainState.COMPLETED,
            CrossDomainState.FAILED,
            CrossDomainState.CANCELLED,
        )


class HealthStatus(Enum):
    """Overall system health reported by the facade."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"
