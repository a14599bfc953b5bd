"""Integration tests for the REST API."""

from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from txn_coordinator.adapters.inbound.rest_api import create_app
from txn_coordinator.adapters.outbound import InMemoryParticipant
from txn_coordinator.application import TransactionSystem
from txn_coordinator.domain.entities import SagaDefinition, SagaStep, TransactionalOperation
from txn_coordinator.domain.value_objects import RetryPolicy


@pytest.fixture
def system(metrics_registry) -> TransactionSystem:
    system = TransactionSystem.testing(metrics=metrics_registry, sleep=lambda _s: None)
    system.register_participant(InMemoryParticipant("ledger"))
    system.register_saga(
        SagaDefinition(
            id="record_vote",
            name="Record vote",
            steps=[
                SagaStep(
                    id="tally",
                    name="Tally",
                    action=lambda input, context: {"yes": input["yes"]},
                    retry_policy=RetryPolicy.none(),
                )
            ],
        )
    )
    system.start()
    yield system
    if system.is_started:
        system.stop()


@pytest.fixture
def client(system: TransactionSystem) -> TestClient:
    return TestClient(create_app(system))


@pytest.mark.integration
class TestHealth:
    """Health and stats endpoints."""

    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["started"] is True
        assert body["open_circuits"] == []

    def test_health_before_start(self, metrics_registry) -> None:
        client = TestClient(create_app(TransactionSystem.testing(metrics=metrics_registry)))

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "unhealthy"

    def test_stats(self, client: TestClient, system: TransactionSystem) -> None:
        system.execute_transaction([TransactionalOperation(execute=lambda ctx: "ok")])

        response = client.get("/stats")

        assert response.status_code == 200
        body = response.json()
        assert body["coordinator"]["committed"] == 1
        assert body["two_phase_commit"]["participants"] == ["ledger"]
        assert body["sagas"]["registered"] == 1

    def test_stopped_system_unavailable(self, client: TestClient, system: TransactionSystem) -> None:
        system.stop()

        assert client.get("/stats").status_code == 503
        assert client.get("/transactions").status_code == 503


@pytest.mark.integration
class TestTransactionEndpoints:
    """Listing, lookup and rollback."""

    def test_list_and_filter(self, client: TestClient, system: TransactionSystem) -> None:
        system.execute_transaction([TransactionalOperation(execute=lambda ctx: "ok")])
        active = system.coordinator.begin()

        everything = client.get("/transactions").json()
        pending = client.get("/transactions", params={"status": "PENDING"}).json()

        assert len(everything) == 2
        assert [t["id"] for t in pending] == [active.id]
        assert pending[0]["status"] == "pending"

    def test_unknown_status_filter(self, client: TestClient) -> None:
        response = client.get("/transactions", params={"status": "sleeping"})

        assert response.status_code == 400

    def test_get_transaction(self, client: TestClient, system: TransactionSystem) -> None:
        context = system.coordinator.begin()

        response = client.get(f"/transactions/{context.id}")

        assert response.status_code == 200
        assert response.json()["mode"] == "single_domain"

    def test_get_unknown_transaction(self, client: TestClient) -> None:
        response = client.get("/transactions/txn_missing")

        assert response.status_code == 404

    def test_rollback(self, client: TestClient, system: TransactionSystem) -> None:
        context = system.coordinator.begin()

        response = client.post(f"/transactions/{context.id}/rollback", json={"reason": "motion withdrawn"})

        assert response.status_code == 200
        assert context.id in response.json()["message"]
        assert context.error == "motion withdrawn"

    def test_rollback_finished_transaction_conflicts(
        self, client: TestClient, system: TransactionSystem
    ) -> None:
        context = system.coordinator.begin()
        system.rollback_transaction(context.id)

        response = client.post(f"/transactions/{context.id}/rollback")

        assert response.status_code == 409


@pytest.mark.integration
class TestOtherEndpoints:
    """Sagas, circuit breakers, maintenance and live metrics."""

    def test_get_saga(self, client: TestClient, system: TransactionSystem) -> None:
        execution = system.execute_saga("record_vote", {"yes": 5})

        response = client.get(f"/sagas/{execution.id}")

        assert response.status_code == 200
        assert response.json()["status"] == "committed"

    def test_get_unknown_saga(self, client: TestClient) -> None:
        assert client.get("/sagas/saga_missing").status_code == 404

    def test_circuit_breakers(self, client: TestClient) -> None:
        response = client.get("/circuit-breakers")

        assert response.status_code == 200
        assert isinstance(response.json(), dict)

    def test_maintenance(self, client: TestClient) -> None:
        response = client.post("/maintenance")

        assert response.status_code == 200
        body: dict[str, Any] = response.json()
        assert body["expired_transactions"] == []
        assert body["in_doubt_remaining"] == 0

    def test_current_metrics(self, client: TestClient, system: TransactionSystem) -> None:
        system.execute_transaction([TransactionalOperation(execute=lambda ctx: "ok")])

        response = client.get("/metrics/current", params={"window_ms": 60000})

        assert response.status_code == 200
        body = response.json()
        assert body["metrics"]["committed"] == 1
        assert body["alerts"] == []
