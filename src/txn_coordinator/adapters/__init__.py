"""Adapters layer - concrete implementations of port interfaces.

Adapters provide the actual implementations:
- Inbound adapters: Handle incoming requests (REST)
- Outbound adapters: Implement external dependencies (log files, participants)
"""

from txn_coordinator.adapters.outbound import (
    FileCoordinatorLog,
    InMemoryCoordinatorLog,
    InMemoryEventStore,
    InMemoryParticipant,
)

__all__ = [
    # Outbound adapters
    "FileCoordinatorLog",
    "InMemoryCoordinatorLog",
    "InMemoryEventStore",
    "InMemoryParticipant",
]
