"""Outbound ports - interfaces the coordinator depends on."""

from txn_coordinator.ports.outbound.coordinator_log import CoordinatorLog, SyncMode
from txn_coordinator.ports.outbound.domain_handler import DomainHandler
from txn_coordinator.ports.outbound.event_store import DomainEventStore
from txn_coordinator.ports.outbound.participant import Participant, ParticipantTxnStatus

__all__ = [
    "CoordinatorLog",
    "SyncMode",
    "DomainEventStore",
    "DomainHandler",
    "Participant",
    "ParticipantTxnStatus",
]
