"""Unit tests for CircuitBreaker and CircuitBreakerRegistry."""

from __future__ import annotations

import pytest

from txn_coordinator.domain.errors import CircuitOpenError
from txn_coordinator.domain.services import CircuitBreaker, CircuitBreakerRegistry
from txn_coordinator.domain.value_objects import CircuitState


def fail() -> None:
    raise RuntimeError("downstream failed")


@pytest.mark.unit
class TestCircuitBreaker:
    """State machine tests."""

    @pytest.fixture
    def breaker(self, clock) -> CircuitBreaker:
        return CircuitBreaker("ledger", failure_threshold=3, recovery_timeout_ms=1000, clock=clock)

    def trip(self, breaker: CircuitBreaker, times: int = 3) -> None:
        for _ in range(times):
            with pytest.raises(RuntimeError):
                breaker.call(fail)

    def test_starts_closed(self, breaker: CircuitBreaker) -> None:
        assert breaker.state == CircuitState.CLOSED
        assert breaker.call(lambda: "ok") == "ok"

    def test_opens_after_threshold(self, breaker: CircuitBreaker) -> None:
        self.trip(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

        self.trip(breaker, 1)
        assert breaker.state == CircuitState.OPEN

    def test_open_rejects_without_calling(self, breaker: CircuitBreaker) -> None:
        self.trip(breaker)
        calls = []

        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.call(lambda: calls.append(1))

        assert calls == []
        assert exc_info.value.circuit_name == "ledger"
        assert breaker.get_metrics().rejected == 1

    def test_success_resets_failure_count(self, breaker: CircuitBreaker) -> None:
        self.trip(breaker, 2)
        breaker.call(lambda: None)
        self.trip(breaker, 2)

        assert breaker.state == CircuitState.CLOSED

    def test_half_open_after_timeout(self, breaker: CircuitBreaker, clock) -> None:
        self.trip(breaker)
        clock.advance(1.0)

        assert breaker.state == CircuitState.HALF_OPEN

    def test_successful_probe_closes(self, breaker: CircuitBreaker, clock) -> None:
        self.trip(breaker)
        clock.advance(1.5)

        assert breaker.call(lambda: "probe") == "probe"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_metrics().next_attempt_time is None

    def test_failed_probe_reopens(self, breaker: CircuitBreaker, clock) -> None:
        self.trip(breaker)
        clock.advance(1.5)

        with pytest.raises(RuntimeError):
            breaker.call(fail)

        assert breaker.state == CircuitState.OPEN
        assert breaker.get_metrics().next_attempt_time == pytest.approx(clock.now + 1.0)

    def test_reset(self, breaker: CircuitBreaker) -> None:
        self.trip(breaker)
        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_metrics().failures == 0

    def test_disabled_passes_through(self, clock) -> None:
        breaker = CircuitBreaker("x", failure_threshold=1, enabled=False, clock=clock)
        for _ in range(5):
            with pytest.raises(RuntimeError):
                breaker.call(fail)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.call(lambda: 1) == 1

    def test_state_change_callback(self, clock) -> None:
        changes = []
        breaker = CircuitBreaker(
            "minutes",
            failure_threshold=1,
            recovery_timeout_ms=100,
            clock=clock,
            on_state_change=lambda name, old, new: changes.append((name, old, new)),
        )

        with pytest.raises(RuntimeError):
            breaker.call(fail)
        clock.advance(0.2)
        breaker.call(lambda: None)

        assert changes == [
            ("minutes", CircuitState.CLOSED, CircuitState.OPEN),
            ("minutes", CircuitState.OPEN, CircuitState.HALF_OPEN),
            ("minutes", CircuitState.HALF_OPEN, CircuitState.CLOSED),
        ]

    def test_invalid_threshold(self) -> None:
        with pytest.raises(ValueError):
            CircuitBreaker("x", failure_threshold=0)


@pytest.mark.unit
class TestCircuitBreakerRegistry:
    """Registry tests."""

    def test_breakers_are_independent(self, clock, metrics_registry) -> None:
        registry = CircuitBreakerRegistry(failure_threshold=1, clock=clock, metrics=metrics_registry)

        with pytest.raises(RuntimeError):
            registry.call("ledger", fail)

        assert registry.call("minutes", lambda: "ok") == "ok"
        assert registry.open_circuits() == ["ledger"]
        assert registry.names() == ["ledger", "minutes"]

    def test_get_returns_same_breaker(self) -> None:
        registry = CircuitBreakerRegistry()

        assert registry.get("a") is registry.get("a")

    def test_listener_notified(self, clock) -> None:
        seen = []
        registry = CircuitBreakerRegistry(failure_threshold=1, clock=clock)
        registry.add_listener(lambda name, old, new: seen.append((name, new)))

        with pytest.raises(RuntimeError):
            registry.call("ledger", fail)

        assert seen == [("ledger", CircuitState.OPEN)]

    def test_rejections_raise(self, clock, metrics_registry) -> None:
        registry = CircuitBreakerRegistry(failure_threshold=1, clock=clock, metrics=metrics_registry)
        with pytest.raises(RuntimeError):
            registry.call("ledger", fail)

        with pytest.raises(CircuitOpenError):
            registry.call("ledger", lambda: None)

    def test_reset_all(self, clock) -> None:
        registry = CircuitBreakerRegistry(failure_threshold=1, clock=clock)
        for name in ("a", "b"):
            with pytest.raises(RuntimeError):
                registry.call(name, fail)

        registry.reset_all()

        assert registry.open_circuits() == []
        metrics = registry.get_all_metrics()
        assert set(metrics) == {"a", "b"}
        assert metrics["a"].to_dict()["state"] == "closed"
