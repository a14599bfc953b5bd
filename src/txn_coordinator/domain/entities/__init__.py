"""Domain entities for the transaction coordinator.

Exports:
    Transactions:
        - TransactionContext: Coordinator state for one transaction
        - TransactionOptions: Options accepted by begin
        - TransactionalOperation: Unit of work submitted to execute
        - TransactionOperation: Record of an executed operation
        - CompensationAction: Registered undo action
        - OptimisticLock, LockRequirement: Version-checked locks
        - TransactionMetrics: Per-transaction metrics

    Coordinator log:
        - LogRecord, LogRecordType, TransactionKind
        - BeginRecord, OperationRecord, PrepareRecord, VoteRecord,
          DecisionRecord, AckRecord, SagaStepRecord,
          CompensationLogRecord, EndRecord

    Sagas:
        - SagaDefinition, SagaStep, SagaContext
        - SagaExecution, StepRecord, SagaLogEntry, SagaMetrics

    Cross-domain:
        - DomainOperation, ExecutionPhase, ExecutionPlan
        - DomainEvent, CompensationEntry, OperationOutcome
        - CrossDomainTransaction, CrossDomainResult

    Rollback:
        - RollbackOperation, RollbackOperationResult, RollbackResult
        - RollbackContext, RollbackStatus, Checkpoint
"""

from txn_coordinator.domain.entities.cross_domain import (
    CompensationEntry,
    CrossDomainResult,
    CrossDomainTransaction,
    DomainEvent,
    DomainOperation,
    ExecutionPhase,
    ExecutionPlan,
    OperationOutcome,
)
from txn_coordinator.domain.entities.log_record import (
    AckRecord,
    BeginRecord,
    CompensationLogRecord,
    DecisionRecord,
    EndRecord,
    LogRecord,
    LogRecordType,
    OperationRecord,
    PrepareRecord,
    SagaStepRecord,
    TransactionKind,
    VoteRecord,
)
from txn_coordinator.domain.entities.rollback import (
    Checkpoint,
    RollbackContext,
    RollbackOperation,
    RollbackOperationResult,
    RollbackResult,
    RollbackStatus,
)
from txn_coordinator.domain.entities.saga import (
    SagaContext,
    SagaDefinition,
    SagaExecution,
    SagaLogEntry,
    SagaMetrics,
    SagaStep,
    StepRecord,
)
from txn_coordinator.domain.entities.transaction import (
    CompensationAction,
    LockRequirement,
    OptimisticLock,
    TransactionalOperation,
    TransactionContext,
    TransactionMetrics,
    TransactionOperation,
    TransactionOptions,
    lock_key,
)

__all__ = [
    # Transactions
    "TransactionContext",
    "TransactionOptions",
    "TransactionalOperation",
    "TransactionOperation",
    "CompensationAction",
    "OptimisticLock",
    "LockRequirement",
    "TransactionMetrics",
    "lock_key",
    # Coordinator log
    "LogRecord",
    "LogRecordType",
    "TransactionKind",
    "BeginRecord",
    "OperationRecord",
    "PrepareRecord",
    "VoteRecord",
    "DecisionRecord",
    "AckRecord",
    "SagaStepRecord",
    "CompensationLogRecord",
    "EndRecord",
    # Sagas
    "SagaDefinition",
    "SagaStep",
    "SagaContext",
    "SagaExecution",
    "StepRecord",
    "SagaLogEntry",
    "SagaMetrics",
    # Cross-domain
    "DomainOperation",
    "ExecutionPhase",
    "ExecutionPlan",
    "DomainEvent",
    "CompensationEntry",
    "OperationOutcome",
    "CrossDomainTransaction",
    "CrossDomainResult",
    # Rollback
    "RollbackOperation",
    "RollbackOperationResult",
    "RollbackResult",
    "RollbackContext",
    "RollbackStatus",
    "Checkpoint",
]
