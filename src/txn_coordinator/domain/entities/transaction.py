"""Transaction entities.

A TransactionContext is the coordinator's record of one transaction: its
mode and isolation, the operations it has executed, the compensations
registered for them and the optimistic locks it holds. Callers describe
work as TransactionalOperation objects; the coordinator turns each
successful one into a TransactionOperation record plus, when a
compensation was supplied, a CompensationAction.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable

from txn_coordinator.domain.value_objects import (
    IsolationLevel,
    OperationStatus,
    OperationType,
    TransactionId,
    TransactionMode,
    TransactionStatus,
    generate_id,
)
from txn_coordinator.domain.value_objects.identifiers import COMPENSATION_PREFIX, OPERATION_PREFIX

DEFAULT_TIMEOUT_MS = 30000
DEFAULT_LOCK_TIMEOUT_MS = 5000


@dataclass(frozen=True)
class TransactionOptions:
    """Options accepted by ``begin``."""

    mode: TransactionMode = TransactionMode.SINGLE_DOMAIN
    isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    user_id: str | None = None
    organization_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LockRequirement:
    """An optimistic lock an operation needs before it may run."""

    table: str
    entity_id: str
    expected_version: int


@dataclass
class TransactionalOperation:
    """A unit of work submitted to ``execute``.

    Attributes:
        execute: Called with the transaction context; returns the result.
        compensate: Called with the context and the result to undo the
            effect. Operations without one cannot be undone.
        description: Human-readable label used in logs.
        table: Table or resource the operation touches.
        operation_type: CREATE, UPDATE, DELETE or READ.
        entity_id: Optional id of the entity touched.
        locks: Optimistic locks acquired before ``execute`` runs.
        critical: Rollback of a critical operation must not fail silently.
        compensation_priority: Raises this compensation ahead of others
            during rollback. Equal priorities undo in reverse order.
        participant: In DISTRIBUTED mode, the participant that receives
            ``payload`` in its prepare call.
        payload: Participant-specific prepare payload.
        domain: In CROSS_DOMAIN mode, the domain label used for the saga step.
        dependencies: Descriptions of operations that must run first.
    """

    execute: Callable[[TransactionContext], Any] | None = None
    compensate: Callable[[TransactionContext, Any], None] | None = None
    description: str = ""
    table: str = ""
    operation_type: OperationType = OperationType.UPDATE
    entity_id: str | None = None
    locks: list[LockRequirement] = field(default_factory=list)
    critical: bool = False
    compensation_priority: int = 0
    participant: str | None = None
    payload: Any = None
    domain: str | None = None
    dependencies: list[str] = field(default_factory=list)


@dataclass
class TransactionOperation:
    """Record of an operation executed inside a transaction."""

    type: OperationType
    table: str
    description: str = ""
    entity_id: str | None = None
    result: Any = None
    status: OperationStatus = OperationStatus.PENDING
    error: str | None = None
    id: str = field(default_factory=lambda: generate_id(OPERATION_PREFIX))
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "table": self.table,
            "description": self.description,
            "entity_id": self.entity_id,
            "status": self.status.value,
            "error": self.error,
            "timestamp": self.timestamp,
        }


@dataclass
class CompensationAction:
    """An undo action registered for an executed operation.

    Higher ``priority`` runs first. Ties run in reverse registration
    order (``sequence``), which is the natural undo order.
    """

    operation_id: str
    action: Callable[[], None]
    description: str = ""
    priority: int = 0
    sequence: int = 0
    critical: bool = False
    id: str = field(default_factory=lambda: generate_id(COMPENSATION_PREFIX))

    @property
    def sort_key(self) -> tuple[int, int]:
        return (-self.priority, -self.sequence)


@dataclass
class OptimisticLock:
    """A version-checked lock on one entity."""

    table: str
    entity_id: str
    expected_version: int
    transaction_id: TransactionId
    locked_at: float
    expires_at: float

    @property
    def key(self) -> str:
        return lock_key(self.table, self.entity_id)

    def is_expired(self, now: float | None = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at


def lock_key(table: str, entity_id: str) -> str:
    """Lock table key for an entity."""
    return f"{table}:{entity_id}"


@dataclass
class TransactionContext:
    """Coordinator state for one transaction.

    Attributes:
        id: Transaction id.
        mode: Coordination mode chosen at begin.
        isolation_level: Isolation requested by the caller.
        start_time: Epoch seconds at begin.
        timeout_ms: Time after which the maintenance sweep rolls it back.
        status: Current lifecycle state.
        operations: Executed operation records, in execution order.
        compensations: Registered undo actions.
        locks: Optimistic locks held, keyed by ``table:entity_id``.
        clock: Time source for expiry and duration, the coordinator's clock.
    """

    id: TransactionId
    mode: TransactionMode = TransactionMode.SINGLE_DOMAIN
    isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED
    start_time: float = field(default_factory=time.time)
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    user_id: str | None = None
    organization_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    status: TransactionStatus = TransactionStatus.PENDING
    operations: list[TransactionOperation] = field(default_factory=list)
    compensations: list[CompensationAction] = field(default_factory=list)
    locks: dict[str, OptimisticLock] = field(default_factory=dict)
    end_time: float | None = None
    error: str | None = None
    retry_count: int = 0
    lock_wait_ms: float = 0.0
    deadlock_count: int = 0
    compensation_failures: int = 0
    clock: Callable[[], float] = field(default=time.time, repr=False, compare=False)

    @property
    def deadline(self) -> float:
        return self.start_time + self.timeout_ms / 1000.0

    def is_expired(self, now: float | None = None) -> bool:
        return (self.clock() if now is None else now) > self.deadline

    def duration_ms(self, now: float | None = None) -> float:
        end = self.end_time if self.end_time is not None else (self.clock() if now is None else now)
        return (end - self.start_time) * 1000.0

    def next_compensation_sequence(self) -> int:
        return len(self.compensations)

    def ordered_compensations(self) -> list[CompensationAction]:
        """Compensations in the order rollback runs them."""
        return sorted(self.compensations, key=lambda c: c.sort_key)

    def to_dict(self) -> dict[str, Any]:
        """Summary used by the REST API and status queries."""
        return {
            "id": self.id,
            "mode": self.mode.value,
            "isolation_level": self.isolation_level.value,
            "status": self.status.value,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_ms": self.duration_ms(),
            "timeout_ms": self.timeout_ms,
            "user_id": self.user_id,
            "organization_id": self.organization_id,
            "metadata": dict(self.metadata),
            "operations": [op.to_dict() for op in self.operations],
            "compensations": len(self.compensations),
            "locks": sorted(self.locks),
            "error": self.error,
        }


@dataclass
class TransactionMetrics:
    """Per-transaction metrics reported after completion."""

    transaction_id: TransactionId
    duration_ms: float
    operation_count: int
    retry_count: int = 0
    lock_wait_time_ms: float = 0.0
    deadlock_count: int = 0
    compensation_count: int = 0
    throughput: float = 0.0
    error_rate: float = 0.0

    @classmethod
    def from_context(cls, context: TransactionContext) -> TransactionMetrics:
        duration = context.duration_ms()
        op_count = len(context.operations)
        failed = sum(1 for op in context.operations if op.status == OperationStatus.FAILED)
        return cls(
            transaction_id=context.id,
            duration_ms=duration,
            operation_count=op_count,
            retry_count=context.retry_count,
            lock_wait_time_ms=context.lock_wait_ms,
            deadlock_count=context.deadlock_count,
            compensation_count=len(context.compensations),
            throughput=op_count / (duration / 1000.0) if duration > 0 else 0.0,
            error_rate=failed / op_count if op_count else 0.0,
        )
