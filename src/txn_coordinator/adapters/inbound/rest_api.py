"""REST API adapter for the transaction system.

This module provides a FastAPI-based REST API for inspecting and
operating a running transaction system. Transactions themselves are run
in-process through the TransactionSystem; the API exposes their state.

Endpoints:
    GET  /health                       - Health check
    GET  /stats                        - Component statistics
    GET  /transactions                 - List transactions (?status=)
    GET  /transactions/{id}            - One transaction
    POST /transactions/{id}/rollback   - Roll back an active transaction
    GET  /sagas/{id}                   - One saga execution
    GET  /circuit-breakers             - Circuit breaker states
    POST /maintenance                  - Run one maintenance sweep
    GET  /metrics/current              - Windowed monitor metrics and alerts

Usage:
    from txn_coordinator.adapters.inbound.rest_api import create_app
    from txn_coordinator.application import TransactionSystem

    system = TransactionSystem()
    system.start()

    app = create_app(system)
    # Run with uvicorn: uvicorn app:app --host 0.0.0.0 --port 8080

References:
    - FastAPI documentation: https://fastapi.tiangolo.com/
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from txn_coordinator import __version__
from txn_coordinator.application import TransactionSystem
from txn_coordinator.domain.errors import (
    CoordinatorError,
    InvalidTransactionStateError,
    TransactionNotFoundError,
)
from txn_coordinator.domain.value_objects import TransactionStatus


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str = Field(..., description="healthy, degraded or critical")
    version: str = Field(..., description="API version")
    started: bool = Field(..., description="Whether the system is started")
    active_transactions: int = Field(0, description="Active coordinator transactions")
    active_alerts: int = Field(0, description="Unresolved alerts")
    open_circuits: list[str] = Field(default_factory=list, description="Open circuit breakers")
    in_doubt_transactions: int = Field(0, description="Decisions not yet acknowledged")


class RollbackRequest(BaseModel):
    """Request model for a rollback."""

    reason: str = Field("Rolled back via API", description="Reason recorded with the rollback")


class MessageResponse(BaseModel):
    """Response model for simple acknowledgements."""

    message: str = Field(..., description="Status message")


class MaintenanceResponse(BaseModel):
    """Response model for a maintenance sweep."""

    expired_transactions: list[str] = Field(default_factory=list)
    expired_locks: int = 0
    deadlocks_resolved: int = 0
    in_doubt_remaining: int = 0
    alerts_raised: int = 0
    purged: int = 0
    duration_ms: float = 0.0


def _error_status(error: CoordinatorError) -> int:
    if isinstance(error, TransactionNotFoundError):
        return 404
    if isinstance(error, InvalidTransactionStateError):
        return 409
    if error.recoverable:
        return 503
    return 400


def create_app(system: TransactionSystem) -> FastAPI:
    """Create a FastAPI application for the transaction system.

    Args:
        system: The transaction system to expose.

    Returns:
        A configured FastAPI application.
    """
    app = FastAPI(
        title="Transaction Coordinator API",
        description="Inspect and operate the transaction coordinator",
        version=__version__,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def require_started() -> None:
        if not system.is_started:
            raise HTTPException(status_code=503, detail="Transaction system not started")

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        health = system.get_system_health()
        return HealthResponse(
            status=health.status.value if health.started else "unhealthy",
            version=__version__,
            started=health.started,
            active_transactions=health.active_transactions,
            active_alerts=health.active_alerts,
            open_circuits=health.open_circuits,
            in_doubt_transactions=health.in_doubt_transactions,
        )

    @app.get("/stats", tags=["Stats"])
    async def get_stats() -> dict[str, Any]:
        """Get statistics for every component."""
        require_started()
        return system.get_stats()

    @app.get("/transactions", tags=["Transactions"])
    async def list_transactions(status: str | None = None) -> list[dict[str, Any]]:
        """List coordinator transactions, optionally filtered by status."""
        require_started()
        wanted = None
        if status is not None:
            try:
                wanted = TransactionStatus(status.lower())
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
        return [ctx.to_dict() for ctx in system.coordinator.list_transactions(wanted)]

    @app.get("/transactions/{txn_id}", tags=["Transactions"])
    async def get_transaction(txn_id: str) -> dict[str, Any]:
        """Get one coordinator transaction."""
        require_started()
        try:
            return system.coordinator.get_transaction(txn_id).to_dict()
        except CoordinatorError as e:
            raise HTTPException(status_code=_error_status(e), detail=e.to_dict())

    @app.post("/transactions/{txn_id}/rollback", response_model=MessageResponse, tags=["Transactions"])
    def rollback_transaction(txn_id: str, request: RollbackRequest | None = None) -> MessageResponse:
        """Roll back an active transaction.

        Runs in the threadpool: rollback calls compensations and
        participants, which may block.
        """
        require_started()
        reason = request.reason if request is not None else RollbackRequest().reason
        try:
            system.rollback_transaction(txn_id, reason=reason)
        except CoordinatorError as e:
            raise HTTPException(status_code=_error_status(e), detail=e.to_dict())
        return MessageResponse(message=f"Transaction {txn_id} rolled back")

    @app.get("/sagas/{execution_id}", tags=["Sagas"])
    async def get_saga(execution_id: str) -> dict[str, Any]:
        """Get one saga execution."""
        require_started()
        try:
            return system.saga_orchestrator.get_execution(execution_id).to_dict()
        except CoordinatorError as e:
            raise HTTPException(status_code=_error_status(e), detail=e.to_dict())

    @app.get("/circuit-breakers", tags=["Resilience"])
    async def get_circuit_breakers() -> dict[str, dict[str, Any]]:
        """Get the state of every circuit breaker."""
        return {
            name: metrics.to_dict()
            for name, metrics in system.circuit_breakers.get_all_metrics().items()
        }

    @app.post("/maintenance", response_model=MaintenanceResponse, tags=["Operations"])
    def run_maintenance() -> MaintenanceResponse:
        """Run one maintenance sweep now."""
        require_started()
        return MaintenanceResponse(**system.run_maintenance().to_dict())

    @app.get("/metrics/current", tags=["Stats"])
    async def current_metrics(window_ms: int | None = None) -> dict[str, Any]:
        """Windowed monitor metrics plus active alerts."""
        snapshot = system.monitor.get_current_metrics(window_ms)
        return {
            "metrics": snapshot.to_dict(),
            "alerts": [alert.to_dict() for alert in system.monitor.get_alerts()],
        }

    return app


def run_server(
    system: TransactionSystem,
    host: str | None = None,
    port: int | None = None,
) -> None:
    """Run the REST API server.

    Args:
        system: The started transaction system.
        host: Host to bind to; defaults to ``config.server.host``.
        port: Port to bind to; defaults to ``config.server.port``.
    """
    import uvicorn

    app = create_app(system)
    uvicorn.run(
        app,
        host=host or system.config.server.host,
        port=port or system.config.server.port,
    )


if __name__ == "__main__":
    from txn_coordinator.infrastructure import get_config, setup_logging, setup_metrics, setup_tracing

    config = get_config()
    setup_logging(config.observability.log_level, config.observability.log_format)
    setup_tracing(config.observability.otel_service_name, config.observability.otel_endpoint)
    metrics = setup_metrics(config.server.metrics_port)

    with TransactionSystem(config, metrics=metrics) as system:
        run_server(system)
