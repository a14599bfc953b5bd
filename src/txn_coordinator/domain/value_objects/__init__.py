"""Value objects for the transaction coordinator."""

from txn_coordinator.domain.value_objects.identifiers import (
    INVALID_LSN,
    LSN,
    TransactionId,
    generate_id,
    id_timestamp_ms,
    new_transaction_id,
)
from txn_coordinator.domain.value_objects.retry_policy import DEFAULT_RETRYABLE_CODES, RetryPolicy
from txn_coordinator.domain.value_objects.transaction_types import (
    BackoffStrategy,
    CircuitState,
    CrossDomainState,
    DeadlockResolution,
    Decision,
    FailureScenario,
    HealthStatus,
    IsolationLevel,
    OperationStatus,
    OperationType,
    RollbackOperationType,
    RollbackStrategy,
    SagaStatus,
    StepStatus,
    TransactionMode,
    TransactionStatus,
    Vote,
)

__all__ = [
    # Identifiers
    "TransactionId",
    "LSN",
    "INVALID_LSN",
    "generate_id",
    "new_transaction_id",
    "id_timestamp_ms",
    # Retry
    "RetryPolicy",
    "DEFAULT_RETRYABLE_CODES",
    # Types
    "BackoffStrategy",
    "CircuitState",
    "CrossDomainState",
    "DeadlockResolution",
    "Decision",
    "FailureScenario",
    "HealthStatus",
    "IsolationLevel",
    "OperationStatus",
    "OperationType",
    "RollbackOperationType",
    "RollbackStrategy",
    "SagaStatus",
    "StepStatus",
    "TransactionMode",
    "TransactionStatus",
    "Vote",
]
