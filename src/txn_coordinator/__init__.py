"""
Transaction Coordinator - sagas, two-phase commit and compensation

A standalone transaction coordination library: single-domain transactions
with compensating rollback, two-phase commit across participants, sagas,
cross-domain orchestration, optimistic locking with deadlock detection,
circuit breakers, and recovery from a durable coordinator log.
"""

__version__ = "0.1.0"
__author__ = "Systems Engineering Portfolio"

from txn_coordinator.domain.errors import (
    CircuitOpenError,
    CoordinatorError,
    CoordinatorLogError,
    DeadlockError,
    InvalidTransactionStateError,
    OperationFailedError,
    OptimisticLockConflictError,
    ParticipantError,
    QuotaExceededError,
    RecoveryError,
    SagaDefinitionError,
    StepTimeoutError,
    TransactionNotFoundError,
    TransactionTimeoutError,
)

__all__ = [
    "__version__",
    "CoordinatorError",
    "TransactionNotFoundError",
    "InvalidTransactionStateError",
    "QuotaExceededError",
    "OptimisticLockConflictError",
    "DeadlockError",
    "TransactionTimeoutError",
    "StepTimeoutError",
    "CircuitOpenError",
    "OperationFailedError",
    "SagaDefinitionError",
    "ParticipantError",
    "RecoveryError",
    "CoordinatorLogError",
]
