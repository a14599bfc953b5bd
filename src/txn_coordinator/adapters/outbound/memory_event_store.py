"""In-memory DomainEventStore."""

from __future__ import annotations

import threading
from collections import defaultdict

from txn_coordinator.domain.entities import DomainEvent
from txn_coordinator.domain.value_objects import TransactionId


class InMemoryEventStore:
    """Keeps domain events in append order, indexed by transaction and correlation id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[DomainEvent] = []
        self._by_transaction: dict[TransactionId, list[DomainEvent]] = defaultdict(list)
        self._by_correlation: dict[str, list[DomainEvent]] = defaultdict(list)

    def append(self, event: DomainEvent) -> None:
        with self._lock:
            self._events.append(event)
            self._by_transaction[event.transaction_id].append(event)
            if event.correlation_id:
                self._by_correlation[event.correlation_id].append(event)

    def get_events(self, transaction_id: TransactionId) -> list[DomainEvent]:
        with self._lock:
            return list(self._by_transaction.get(transaction_id, []))

    def get_events_by_correlation(self, correlation_id: str) -> list[DomainEvent]:
        with self._lock:
            return list(self._by_correlation.get(correlation_id, []))

    def all_events(self) -> list[DomainEvent]:
        with self._lock:
            return list(self._events)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
