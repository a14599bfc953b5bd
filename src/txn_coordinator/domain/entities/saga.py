"""Saga entities.

A saga is a sequence of local steps, each paired with a compensation
that semantically undoes it. Steps declare dependencies on other steps;
the orchestrator runs them in dependency order and, on failure,
compensates completed steps in reverse completion order.

Step callables:
    action(input, context) -> output
    compensation(output, input, context) -> None
    validate(input, context) -> bool
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable

from txn_coordinator.domain.value_objects import (
    RetryPolicy,
    SagaStatus,
    StepStatus,
    TransactionId,
)

DEFAULT_STEP_RETRY = RetryPolicy(max_attempts=3, base_delay_ms=1000, max_delay_ms=10000)


@dataclass
class SagaContext:
    """Context passed to every step of one saga execution.

    ``results`` maps the ids of completed steps to their outputs, so later
    steps can read what earlier ones produced.
    """

    execution_id: TransactionId
    saga_id: str
    input: Any = None
    user_id: str | None = None
    organization_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    results: dict[str, Any] = field(default_factory=dict)


@dataclass
class SagaStep:
    """One step of a saga definition."""

    id: str
    name: str
    action: Callable[[Any, SagaContext], Any]
    compensation: Callable[[Any, Any, SagaContext], None] | None = None
    validate: Callable[[Any, SagaContext], bool] | None = None
    retry_policy: RetryPolicy = DEFAULT_STEP_RETRY
    timeout_ms: int | None = None
    dependencies: list[str] = field(default_factory=list)
    description: str = ""


@dataclass
class SagaDefinition:
    """A registered saga: named, ordered steps with compensations."""

    id: str
    name: str
    steps: list[SagaStep]
    description: str = ""
    timeout_ms: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def step(self, step_id: str) -> SagaStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)


@dataclass
class StepRecord:
    """Execution state of one step within a saga execution."""

    step_id: str
    status: StepStatus = StepStatus.PENDING
    output: Any = None
    error: str | None = None
    attempts: int = 0
    started_at: float | None = None
    completed_at: float | None = None
    compensated_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "error": self.error,
            "attempts": self.attempts,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "compensated_at": self.compensated_at,
        }


@dataclass
class SagaLogEntry:
    """A human-readable entry in a saga execution's log."""

    execution_id: TransactionId
    message: str
    level: str = "info"
    step_id: str | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class SagaExecution:
    """One run of a saga definition."""

    id: TransactionId
    saga_id: str
    context: SagaContext
    status: SagaStatus = SagaStatus.PENDING
    steps: dict[str, StepRecord] = field(default_factory=dict)
    completed_steps: list[str] = field(default_factory=list)
    compensated_steps: list[str] = field(default_factory=list)
    failed_step: str | None = None
    error: str | None = None
    result: Any = None
    started_at: float = field(default_factory=time.time)
    completed_at: float | None = None

    @property
    def duration_ms(self) -> float:
        end = self.completed_at if self.completed_at is not None else time.time()
        return (end - self.started_at) * 1000.0

    def final_result(self) -> Any:
        """Output of the saga.

        A single-step saga returns that step's output; otherwise a dict
        of step id to output for every completed step.
        """
        if len(self.steps) == 1:
            only = next(iter(self.steps.values()))
            return only.output
        return {step_id: self.steps[step_id].output for step_id in self.completed_steps}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "saga_id": self.saga_id,
            "status": self.status.value,
            "steps": {step_id: record.to_dict() for step_id, record in self.steps.items()},
            "completed_steps": list(self.completed_steps),
            "compensated_steps": list(self.compensated_steps),
            "failed_step": self.failed_step,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": self.duration_ms,
        }


@dataclass
class SagaMetrics:
    """Counts for one saga execution."""

    execution_id: TransactionId
    saga_id: str
    status: SagaStatus
    step_count: int
    completed_steps: int
    failed_steps: int
    compensated_steps: int
    duration_ms: float
