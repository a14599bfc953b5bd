"""Rollback entities used by the rollback manager."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable

from txn_coordinator.domain.value_objects import (
    FailureScenario,
    OperationType,
    RollbackOperationType,
    RollbackStrategy,
    TransactionId,
    generate_id,
)
from txn_coordinator.domain.value_objects.identifiers import CHECKPOINT_PREFIX


@dataclass
class RollbackOperation:
    """One undo step.

    ``index`` is the position of the forward operation in the transaction
    and drives checkpoint filtering: only operations with ``index`` at or
    after the checkpoint's ``operation_index`` are undone.
    """

    id: str
    undo: Callable[[], Any]
    index: int = 0
    type: RollbackOperationType = RollbackOperationType.UNDO
    operation_type: OperationType = OperationType.UPDATE
    description: str = ""
    priority: int = 0
    critical: bool = False
    dependencies: list[str] = field(default_factory=list)


@dataclass
class RollbackOperationResult:
    """Outcome of one undo step."""

    operation_id: str
    succeeded: bool
    attempts: int
    strategy: RollbackStrategy
    error: str | None = None
    duration_ms: float = 0.0


@dataclass
class RollbackResult:
    """Outcome of rolling back a transaction."""

    transaction_id: TransactionId
    strategy: RollbackStrategy
    succeeded: bool
    results: list[RollbackOperationResult] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    error: str | None = None
    duration_ms: float = 0.0

    @property
    def rolled_back(self) -> list[str]:
        return [r.operation_id for r in self.results if r.succeeded]

    @property
    def failed(self) -> list[str]:
        return [r.operation_id for r in self.results if not r.succeeded]


@dataclass
class Checkpoint:
    """A named point in a transaction that CHECKPOINT rollback returns to."""

    transaction_id: TransactionId
    operation_index: int
    state: dict[str, Any] = field(default_factory=dict)
    name: str = ""
    id: str = field(default_factory=lambda: generate_id(CHECKPOINT_PREFIX))
    created_at: float = field(default_factory=time.time)


@dataclass
class RollbackContext:
    """Everything the rollback manager needs for one transaction."""

    transaction_id: TransactionId
    operations: list[RollbackOperation]
    scenario: FailureScenario = FailureScenario.OPERATION_FAILURE
    strategy: RollbackStrategy = RollbackStrategy.IMMEDIATE
    reason: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class RollbackStatus:
    """Progress of an in-flight or finished rollback."""

    transaction_id: TransactionId
    strategy: RollbackStrategy
    total: int
    completed: int
    failed: int
    in_progress: bool

    @property
    def progress(self) -> float:
        return (self.completed + self.failed) / self.total if self.total else 1.0
