"""Application layer for the transaction coordinator.

Exports:
    TransactionSystem:
        - TransactionSystem: Main entry point wiring every component
        - SystemHealth: Result of a health check
        - MaintenanceReport: Result of a maintenance sweep
"""

from txn_coordinator.application.transaction_system import (
    MaintenanceReport,
    SystemHealth,
    TransactionSystem,
)

__all__ = [
    "TransactionSystem",
    "SystemHealth",
    "MaintenanceReport",
]
