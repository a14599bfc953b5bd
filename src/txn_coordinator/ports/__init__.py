"""Ports layer - interface definitions following Hexagonal Architecture.

Ports are abstract interfaces (protocols) that define contracts:
- Inbound ports: APIs offered to clients (TransactionCoordinatorPort)
- Outbound ports: Dependencies on external systems (CoordinatorLog,
  Participant, DomainHandler, DomainEventStore)

Adapters implement these ports with concrete functionality.
"""

from txn_coordinator.ports.inbound import TransactionCoordinatorPort
from txn_coordinator.ports.outbound import (
    CoordinatorLog,
    DomainEventStore,
    DomainHandler,
    Participant,
    ParticipantTxnStatus,
    SyncMode,
)

__all__ = [
    # Inbound ports
    "TransactionCoordinatorPort",
    # Outbound ports
    "CoordinatorLog",
    "DomainEventStore",
    "DomainHandler",
    "Participant",
    "ParticipantTxnStatus",
    "SyncMode",
]
