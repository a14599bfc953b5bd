"""Factories for common saga shapes."""

from __future__ import annotations

from typing import Any, Callable

from txn_coordinator.domain.entities import SagaContext, SagaDefinition, SagaStep
from txn_coordinator.domain.entities.saga import DEFAULT_STEP_RETRY
from txn_coordinator.domain.value_objects import RetryPolicy

Action = Callable[[Any, SagaContext], Any]
Compensation = Callable[[Any, Any, SagaContext], None]


def two_phase_commit_saga(
    saga_id: str,
    prepare: list[tuple[str, Action, Compensation | None]],
    commit: list[tuple[str, Action, Compensation | None]],
    name: str | None = None,
) -> SagaDefinition:
    """A saga whose commit steps run only after every prepare step.

    Each entry is ``(step_id, action, compensation)``. Every commit step
    depends on all prepare steps, so a failing prepare compensates the
    prepares that succeeded and no commit step ever runs.
    """
    prepare_ids = [step_id for step_id, _, _ in prepare]
    steps = [
        SagaStep(id=step_id, name=step_id, action=action, compensation=compensation)
        for step_id, action, compensation in prepare
    ]
    steps.extend(
        SagaStep(
            id=step_id,
            name=step_id,
            action=action,
            compensation=compensation,
            dependencies=list(prepare_ids),
        )
        for step_id, action, compensation in commit
    )
    return SagaDefinition(id=saga_id, name=name or saga_id, steps=steps)


def workflow_saga(
    saga_id: str,
    steps: list[tuple[str, Action, Compensation | None]],
    name: str | None = None,
    retry_policy: RetryPolicy = DEFAULT_STEP_RETRY,
) -> SagaDefinition:
    """A linear workflow: each step depends on the one before it."""
    saga_steps = []
    previous: str | None = None
    for step_id, action, compensation in steps:
        saga_steps.append(
            SagaStep(
                id=step_id,
                name=step_id,
                action=action,
                compensation=compensation,
                retry_policy=retry_policy,
                dependencies=[previous] if previous else [],
            )
        )
        previous = step_id
    return SagaDefinition(id=saga_id, name=name or saga_id, steps=saga_steps)


def parallel_execution_saga(
    saga_id: str,
    branches: list[tuple[str, Action, Compensation | None]],
    join: tuple[str, Action, Compensation | None] | None = None,
    name: str | None = None,
) -> SagaDefinition:
    """Independent branches, optionally followed by a join step.

    Branches have no dependencies on each other; the orchestrator runs
    them in declaration order. The join step depends on all branches and
    can read their outputs from ``context.results``.
    """
    steps = [
        SagaStep(id=step_id, name=step_id, action=action, compensation=compensation)
        for step_id, action, compensation in branches
    ]
    if join is not None:
        join_id, join_action, join_compensation = join
        steps.append(
            SagaStep(
                id=join_id,
                name=join_id,
                action=join_action,
                compensation=join_compensation,
                dependencies=[step_id for step_id, _, _ in branches],
            )
        )
    return SagaDefinition(id=saga_id, name=name or saga_id, steps=steps)
