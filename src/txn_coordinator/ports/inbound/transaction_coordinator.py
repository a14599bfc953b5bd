"""Transaction coordinator port.

This inbound port defines the contract application code uses to run
transactions, independent of how they are coordinated underneath.

Key responsibilities:
- Manage the transaction lifecycle (begin, execute, commit, rollback)
- Enforce the concurrent transaction limit
- Hold optimistic locks for the duration of a transaction
- Record every lifecycle step in the coordinator log

References:
    - Gray & Reuter, "Transaction Processing" (1993), Ch. 10
    - Garcia-Molina & Salem, "Sagas" (1987)
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Any, Protocol

from txn_coordinator.domain.entities import (
    OptimisticLock,
    TransactionalOperation,
    TransactionContext,
    TransactionMetrics,
    TransactionOptions,
)
from txn_coordinator.domain.value_objects import TransactionId, TransactionStatus


class TransactionCoordinatorPort(Protocol):
    """Protocol for coordinating transactions.

    Transaction states:
        PENDING -> RUNNING -> [PREPARING -> PREPARED ->] COMMITTING -> COMMITTED
                          \\-> ABORTING -> ABORTED
    """

    @abstractmethod
    def begin(self, options: TransactionOptions | None = None) -> TransactionContext:
        """Start a transaction.

        Raises:
            QuotaExceededError: If the concurrent transaction limit is reached.
        """
        ...

    @abstractmethod
    def execute(self, txn_id: TransactionId, operations: list[TransactionalOperation]) -> list[Any]:
        """Run operations inside the transaction; one result per operation.

        On failure the transaction is rolled back before the error is raised.
        """
        ...

    @abstractmethod
    def commit(self, txn_id: TransactionId) -> TransactionMetrics:
        """Commit the transaction.

        Raises:
            InvalidTransactionStateError: If it is not RUNNING or PREPARED.
        """
        ...

    @abstractmethod
    def rollback(self, txn_id: TransactionId, reason: str = "") -> None:
        """Run compensations, release locks and mark the transaction ABORTED."""
        ...

    @abstractmethod
    def acquire_optimistic_lock(
        self,
        txn_id: TransactionId,
        table: str,
        entity_id: str,
        expected_version: int,
        timeout_ms: int | None = None,
    ) -> OptimisticLock:
        """Declare the version of an entity the transaction read.

        Raises:
            OptimisticLockConflictError: If another live lock declares a
                different version.
        """
        ...

    @abstractmethod
    def get_transaction_status(self, txn_id: TransactionId) -> TransactionStatus:
        """Return the current status.

        Raises:
            TransactionNotFoundError: If the transaction is unknown.
        """
        ...

    @abstractmethod
    def get_active_transactions_count(self) -> int:
        """Return the number of non-terminal transactions."""
        ...
