"""Coordinator exceptions.

Every error raised by the coordinator derives from CoordinatorError and
carries a machine-readable ``code`` plus a ``recoverable`` flag. Retry
policies consult both: an error is retried when its code is listed as
retryable, or, when no codes are listed, when it is recoverable.

    Error                         | code                | recoverable
    ------------------------------|---------------------|------------
    TransactionNotFoundError      | NOT_FOUND           | no
    InvalidTransactionStateError  | INVALID_STATE       | no
    QuotaExceededError            | QUOTA_EXCEEDED      | yes
    OptimisticLockConflictError   | CONFLICT            | yes
    DeadlockError                 | DEADLOCK            | yes
    TransactionTimeoutError       | TIMEOUT             | yes
    StepTimeoutError              | TIMEOUT             | yes
    CircuitOpenError              | SERVICE_UNAVAILABLE | yes
    OperationFailedError          | OPERATION_FAILED    | from cause
    SagaDefinitionError           | VALIDATION          | no
    ParticipantError              | PARTICIPANT_ERROR   | yes
    RecoveryError                 | RECOVERY_FAILED     | no
    CoordinatorLogError           | LOG_ERROR           | no
"""

from __future__ import annotations

from typing import Any


class CoordinatorError(Exception):
    """Base class for all coordinator errors."""

    code: str = "INTERNAL_ERROR"
    recoverable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        recoverable: bool | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if recoverable is not None:
            self.recoverable = recoverable
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses and log records."""
        return {
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


class TransactionNotFoundError(CoordinatorError):
    """Raised when a transaction id is unknown to the coordinator."""

    code = "NOT_FOUND"

    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            f"Transaction {transaction_id} not found",
            details={"transaction_id": transaction_id},
        )
        self.transaction_id = transaction_id


class InvalidTransactionStateError(CoordinatorError):
    """Raised when an operation is illegal in the transaction's current state."""

    code = "INVALID_STATE"


class QuotaExceededError(CoordinatorError):
    """Raised when the concurrent transaction limit is reached."""

    code = "QUOTA_EXCEEDED"
    recoverable = True


class OptimisticLockConflictError(CoordinatorError):
    """Raised when a lock is held by another transaction at a different version."""

    code = "CONFLICT"
    recoverable = True


class DeadlockError(CoordinatorError):
    """Raised on a transaction chosen as a deadlock victim."""

    code = "DEADLOCK"
    recoverable = True


class TransactionTimeoutError(CoordinatorError):
    """Raised when a transaction exceeds its timeout."""

    code = "TIMEOUT"
    recoverable = True


class StepTimeoutError(CoordinatorError):
    """Raised when a saga step or participant call exceeds its timeout."""

    code = "TIMEOUT"
    recoverable = True


class CircuitOpenError(CoordinatorError):
    """Raised when a call is rejected by an open circuit breaker."""

    code = "SERVICE_UNAVAILABLE"
    recoverable = True

    def __init__(self, name: str = "", message: str = "Circuit breaker is open") -> None:
        super().__init__(message, details={"circuit": name} if name else None)
        self.circuit_name = name


class OperationFailedError(CoordinatorError):
    """Wraps an exception raised by a user-supplied operation or compensation.

    The original exception is kept as ``__cause__``; ``recoverable`` and
    ``code`` are inherited from it when it is itself a CoordinatorError.
    """

    code = "OPERATION_FAILED"

    @classmethod
    def wrap(cls, error: BaseException, context: str) -> CoordinatorError:
        """Wrap a foreign exception; coordinator errors pass through unchanged."""
        if isinstance(error, CoordinatorError):
            return error
        wrapped = cls(
            f"{context}: {error}",
            recoverable=bool(getattr(error, "recoverable", False)),
            details={"error_type": type(error).__name__},
        )
        wrapped.__cause__ = error
        return wrapped


class SagaDefinitionError(CoordinatorError):
    """Raised when a saga or execution plan is malformed."""

    code = "VALIDATION"


class ParticipantError(CoordinatorError):
    """Raised by participants when a prepare, commit or abort call fails."""

    code = "PARTICIPANT_ERROR"
    recoverable = True


class RecoveryError(CoordinatorError):
    """Raised when coordinator recovery fails.

    The coordinator refuses to accept new transactions until recovery
    has completed.
    """

    code = "RECOVERY_FAILED"


class CoordinatorLogError(CoordinatorError):
    """Raised when the coordinator log cannot be written or read."""

    code = "LOG_ERROR"


def error_code(error: BaseException) -> str:
    """Return the coordinator code for any exception.

    Foreign exceptions may expose a ``code`` attribute of their own; the
    class name is used otherwise.
    """
    code = getattr(error, "code", None)
    if isinstance(code, str):
        return code
    return type(error).__name__


def is_recoverable(error: BaseException) -> bool:
    """Return the ``recoverable`` flag of any exception (False when absent)."""
    return bool(getattr(error, "recoverable", False))
