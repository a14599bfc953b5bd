"""Inbound adapters for the transaction coordinator.

Exports:
    REST API:
        - create_app: Create a FastAPI application
        - run_server: Run the REST API server with uvicorn
"""

from txn_coordinator.adapters.inbound.rest_api import create_app, run_server

__all__ = [
    "create_app",
    "run_server",
]
