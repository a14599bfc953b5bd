"""Participant port for two-phase commit.

A participant is a resource manager that owns data the coordinator does
not: a database, a remote service, another domain's backend. It takes
part in two-phase commit through four calls.

    Call      | Contract
    ----------|--------------------------------------------------------
    prepare   | Make the transaction's work durable but invisible and
              | vote YES, or refuse and vote NO. A YES is a promise: the
              | participant must be able to commit later, even after a
              | crash, until told otherwise.
    commit    | Make prepared work visible. Idempotent.
    abort     | Discard the transaction's work. Idempotent; aborting an
              | unknown transaction is a no-op (presumed abort).
    status    | Report what the participant knows about a transaction.
"""

from __future__ import annotations

from abc import abstractmethod
from enum import Enum
from typing import Any, Protocol

from txn_coordinator.domain.value_objects import TransactionId, Vote


class ParticipantTxnStatus(Enum):
    """A participant's view of a transaction."""

    UNKNOWN = "unknown"
    PREPARED = "prepared"
    COMMITTED = "committed"
    ABORTED = "aborted"


class Participant(Protocol):
    """Protocol for two-phase commit participants.

    Thread Safety:
        Participants may receive calls for different transactions from
        multiple threads concurrently.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique participant name, used in log records and circuit breakers."""
        ...

    @abstractmethod
    def prepare(self, txn_id: TransactionId, payload: Any) -> Vote:
        """Phase 1: stage the work described by ``payload`` and vote.

        Raises:
            ParticipantError: If the participant cannot be reached. The
                coordinator treats any exception as a NO vote.
        """
        ...

    @abstractmethod
    def commit(self, txn_id: TransactionId) -> None:
        """Phase 2: make prepared work visible.

        Raises:
            ParticipantError: If the participant cannot be reached; the
                coordinator retries and, failing that, leaves the
                participant in doubt for recovery.
        """
        ...

    @abstractmethod
    def abort(self, txn_id: TransactionId) -> None:
        """Phase 2: discard the transaction's work."""
        ...

    @abstractmethod
    def status(self, txn_id: TransactionId) -> ParticipantTxnStatus:
        """Return the participant's view of ``txn_id``."""
        ...
