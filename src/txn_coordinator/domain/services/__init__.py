"""Domain services for transaction coordination.

Services hold the coordination logic that spans several entities:
locking, deadlock detection, retries and circuit breakers, sagas,
two-phase commit, cross-domain orchestration, rollback, monitoring and
recovery.
"""

from txn_coordinator.domain.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerMetrics,
    CircuitBreakerRegistry,
)
from txn_coordinator.domain.services.cross_domain_coordinator import CrossDomainTransactionCoordinator
from txn_coordinator.domain.services.deadlock_detector import DeadlockDetector, DeadlockInfo
from txn_coordinator.domain.services.lock_registry import OptimisticLockRegistry
from txn_coordinator.domain.services.recovery_service import RecoveryService, RecoveryStats
from txn_coordinator.domain.services.retry import call_with_retry
from txn_coordinator.domain.services.rollback_manager import RollbackManager, strategy_for_scenario
from txn_coordinator.domain.services.saga_orchestrator import SagaCancelledError, SagaOrchestrator
from txn_coordinator.domain.services.saga_patterns import (
    parallel_execution_saga,
    two_phase_commit_saga,
    workflow_saga,
)
from txn_coordinator.domain.services.transaction_coordinator import TransactionCoordinator
from txn_coordinator.domain.services.transaction_monitor import (
    Alert,
    AlertSeverity,
    AlertThresholds,
    AlertType,
    MonitorSnapshot,
    TransactionEvent,
    TransactionEventType,
    TransactionMonitor,
)
from txn_coordinator.domain.services.two_phase_commit import (
    PrepareOutcome,
    TwoPhaseCommitCoordinator,
    TwoPhaseCommitResult,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerMetrics",
    "CircuitBreakerRegistry",
    "CrossDomainTransactionCoordinator",
    "DeadlockDetector",
    "DeadlockInfo",
    "OptimisticLockRegistry",
    "RecoveryService",
    "RecoveryStats",
    "call_with_retry",
    "RollbackManager",
    "strategy_for_scenario",
    "SagaCancelledError",
    "SagaOrchestrator",
    "two_phase_commit_saga",
    "workflow_saga",
    "parallel_execution_saga",
    "TransactionCoordinator",
    "Alert",
    "AlertSeverity",
    "AlertThresholds",
    "AlertType",
    "MonitorSnapshot",
    "TransactionEvent",
    "TransactionEventType",
    "TransactionMonitor",
    "PrepareOutcome",
    "TwoPhaseCommitCoordinator",
    "TwoPhaseCommitResult",
]
