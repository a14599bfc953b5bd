"""Cross-domain transaction entities.

A cross-domain transaction is a set of DomainOperations, each executed
by the handler registered for its domain. Operations reference each
other as ``domain:operation``; the coordinator layers them into
ExecutionPhases so that every phase only depends on earlier phases.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from txn_coordinator.domain.value_objects import (
    CrossDomainState,
    RetryPolicy,
    TransactionId,
    generate_id,
)
from txn_coordinator.domain.value_objects.identifiers import COMPENSATION_PREFIX, EVENT_PREFIX


@dataclass
class DomainOperation:
    """One operation against one domain."""

    domain: str
    operation: str
    input: Any = None
    idempotency_key: str | None = None
    timeout_ms: int | None = None
    retry_policy: RetryPolicy | None = None
    dependencies: list[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return f"{self.domain}:{self.operation}"


@dataclass
class ExecutionPhase:
    """Operations that can run once all earlier phases are done."""

    index: int
    operations: list[DomainOperation]

    @property
    def domains(self) -> set[str]:
        return {op.domain for op in self.operations}

    @property
    def parallel(self) -> bool:
        return len(self.domains) > 1


@dataclass
class ExecutionPlan:
    """Phased plan plus failure behavior for a cross-domain transaction."""

    phases: list[ExecutionPhase]
    continue_on_partial_failure: bool = False
    rollback_on_failure: bool = True

    @property
    def operation_count(self) -> int:
        return sum(len(phase.operations) for phase in self.phases)


@dataclass
class DomainEvent:
    """Event emitted while a cross-domain transaction runs."""

    transaction_id: TransactionId
    event_type: str
    domain: str
    operation: str
    payload: Any = None
    correlation_id: str | None = None
    id: str = field(default_factory=lambda: generate_id(EVENT_PREFIX))
    timestamp: float = field(default_factory=time.time)


@dataclass
class CompensationEntry:
    """Outcome of compensating one domain operation."""

    operation_id: str
    domain: str
    succeeded: bool
    error: str | None = None
    id: str = field(default_factory=lambda: generate_id(COMPENSATION_PREFIX))
    timestamp: float = field(default_factory=time.time)


@dataclass
class OperationOutcome:
    """Result of one domain operation."""

    operation_id: str
    domain: str
    succeeded: bool
    output: Any = None
    error: str | None = None
    attempts: int = 0
    duration_ms: float = 0.0
    cached: bool = False


@dataclass
class CrossDomainTransaction:
    """State of a cross-domain transaction."""

    id: TransactionId
    plan: ExecutionPlan
    correlation_id: str
    state: CrossDomainState = CrossDomainState.PENDING
    outcomes: dict[str, OperationOutcome] = field(default_factory=dict)
    executed: list[str] = field(default_factory=list)
    compensations: list[CompensationEntry] = field(default_factory=list)
    current_phase: int = 0
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)
    completed_at: float | None = None

    @property
    def duration_ms(self) -> float:
        end = self.completed_at if self.completed_at is not None else time.time()
        return (end - self.started_at) * 1000.0


@dataclass
class CrossDomainResult:
    """Returned to callers of ``execute``."""

    transaction_id: TransactionId
    state: CrossDomainState
    results: dict[str, Any]
    failed_operations: list[str]
    compensations: list[CompensationEntry]
    duration_ms: float
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == CrossDomainState.COMPLETED
