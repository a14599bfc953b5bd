"""Inbound ports - API contracts offered by the transaction coordinator."""

from txn_coordinator.ports.inbound.transaction_coordinator import TransactionCoordinatorPort

__all__ = [
    "TransactionCoordinatorPort",
]
