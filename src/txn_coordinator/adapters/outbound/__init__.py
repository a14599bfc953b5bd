"""Outbound adapters - implementations of outbound ports.

These adapters implement the coordinator's external dependencies: log
persistence, two-phase commit participants and domain event storage.
"""

from txn_coordinator.adapters.outbound.file_coordinator_log import FileCoordinatorLog
from txn_coordinator.adapters.outbound.memory_coordinator_log import InMemoryCoordinatorLog
from txn_coordinator.adapters.outbound.memory_event_store import InMemoryEventStore
from txn_coordinator.adapters.outbound.memory_participant import InMemoryParticipant

__all__ = [
    "FileCoordinatorLog",
    "InMemoryCoordinatorLog",
    "InMemoryEventStore",
    "InMemoryParticipant",
]
