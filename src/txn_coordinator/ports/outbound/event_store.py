"""Domain event store port.

Cross-domain transactions publish OPERATION_STARTED,
OPERATION_COMPLETED, OPERATION_FAILED and OPERATION_COMPENSATED events
when event sourcing is enabled.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Protocol

from txn_coordinator.domain.entities import DomainEvent
from txn_coordinator.domain.value_objects import TransactionId


class DomainEventStore(Protocol):
    """Protocol for storing domain events."""

    @abstractmethod
    def append(self, event: DomainEvent) -> None:
        """Store an event."""
        ...

    @abstractmethod
    def get_events(self, transaction_id: TransactionId) -> list[DomainEvent]:
        """Return a transaction's events in append order."""
        ...

    @abstractmethod
    def get_events_by_correlation(self, correlation_id: str) -> list[DomainEvent]:
        """Return every event sharing a correlation id."""
        ...
