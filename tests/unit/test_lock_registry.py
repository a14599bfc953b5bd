"""Unit tests for OptimisticLockRegistry and DeadlockDetector."""

from __future__ import annotations

import random

import pytest

from txn_coordinator.domain.errors import OptimisticLockConflictError
from txn_coordinator.domain.services import DeadlockDetector, OptimisticLockRegistry
from txn_coordinator.domain.services.deadlock_detector import find_cycles
from txn_coordinator.domain.value_objects import DeadlockResolution, TransactionId

T1 = TransactionId("txn_1")
T2 = TransactionId("txn_2")
T3 = TransactionId("txn_3")


@pytest.mark.unit
class TestOptimisticLockRegistry:
    """Lock acquisition and release."""

    @pytest.fixture
    def registry(self, clock) -> OptimisticLockRegistry:
        return OptimisticLockRegistry(default_timeout_ms=1000, clock=clock)

    def test_acquire_free_entity(self, registry: OptimisticLockRegistry, clock) -> None:
        lock = registry.acquire(T1, "minutes", "m1", expected_version=3)

        assert lock.key == "minutes:m1"
        assert lock.expected_version == 3
        assert lock.expires_at == pytest.approx(clock.now + 1.0)
        assert registry.lock_count == 1

    def test_same_version_is_shared(self, registry: OptimisticLockRegistry) -> None:
        registry.acquire(T1, "minutes", "m1", 3)
        registry.acquire(T2, "minutes", "m1", 3)

        assert {lock.transaction_id for lock in registry.get_holders("minutes", "m1")} == {T1, T2}

    def test_different_version_conflicts(self, registry: OptimisticLockRegistry) -> None:
        registry.acquire(T1, "minutes", "m1", 3)

        with pytest.raises(OptimisticLockConflictError) as exc_info:
            registry.acquire(T2, "minutes", "m1", 4)

        assert exc_info.value.details["holder"] == T1
        assert exc_info.value.details["held_version"] == 3
        assert registry.wait_for_graph() == {T2: {T1}}

    def test_own_lock_can_be_redeclared(self, registry: OptimisticLockRegistry) -> None:
        registry.acquire(T1, "minutes", "m1", 3)
        lock = registry.acquire(T1, "minutes", "m1", 4)

        assert lock.expected_version == 4
        assert registry.lock_count == 1

    def test_expired_lock_does_not_conflict(self, registry: OptimisticLockRegistry, clock) -> None:
        registry.acquire(T1, "minutes", "m1", 3)
        clock.advance(1.0)

        lock = registry.acquire(T2, "minutes", "m1", 4)

        assert lock.transaction_id == T2
        assert registry.get_locks_held(T1) == []

    def test_release(self, registry: OptimisticLockRegistry) -> None:
        registry.acquire(T1, "minutes", "m1", 3)

        assert registry.release(T1, "minutes", "m1") is True
        assert registry.release(T1, "minutes", "m1") is False
        assert registry.lock_count == 0

    def test_release_all_clears_wait_edges(self, registry: OptimisticLockRegistry) -> None:
        registry.acquire(T1, "minutes", "m1", 1)
        registry.acquire(T1, "votes", "v1", 1)
        with pytest.raises(OptimisticLockConflictError):
            registry.acquire(T2, "minutes", "m1", 2)

        released = registry.release_all(T1)

        assert released == 2
        assert registry.wait_for_graph() == {}
        registry.acquire(T2, "minutes", "m1", 2)

    def test_cleanup_expired(self, registry: OptimisticLockRegistry, clock) -> None:
        registry.acquire(T1, "minutes", "m1", 1)
        registry.acquire(T2, "votes", "v1", 1, timeout_ms=5000)
        clock.advance(2.0)

        assert registry.cleanup_expired() == 1
        assert registry.lock_count == 1


@pytest.mark.unit
class TestFindCycles:
    """Cycle search over wait-for graphs."""

    def test_no_cycle(self) -> None:
        assert find_cycles({T1: {T2}, T2: {T3}}) == []

    def test_two_party_cycle_reported_once(self) -> None:
        assert find_cycles({T1: {T2}, T2: {T1}}) == [[T1, T2]]

    def test_three_party_cycle(self) -> None:
        cycles = find_cycles({T1: {T2}, T2: {T3}, T3: {T1}})

        assert cycles == [[T1, T2, T3]]

    def test_independent_cycles(self) -> None:
        a, b, c, d = (TransactionId(f"t{i}") for i in range(4))

        cycles = find_cycles({a: {b}, b: {a}, c: {d}, d: {c}})

        assert sorted(map(sorted, cycles)) == [[a, b], [c, d]]


@pytest.mark.unit
class TestDeadlockDetector:
    """Cycle detection and victim selection."""

    @pytest.fixture
    def registry(self, clock) -> OptimisticLockRegistry:
        registry = OptimisticLockRegistry(default_timeout_ms=60000, clock=clock)
        registry.acquire(T1, "minutes", "m1", 1)
        registry.acquire(T2, "votes", "v1", 1)
        with pytest.raises(OptimisticLockConflictError):
            registry.acquire(T1, "votes", "v1", 2)
        with pytest.raises(OptimisticLockConflictError):
            registry.acquire(T2, "minutes", "m1", 2)
        return registry

    def test_detects_cycle(self, registry: OptimisticLockRegistry) -> None:
        detector = DeadlockDetector(registry)

        deadlocks = detector.detect()

        assert len(deadlocks) == 1
        assert set(deadlocks[0].transaction_ids) == {T1, T2}
        assert deadlocks[0].resources == ["minutes:m1", "votes:v1"]

    def test_abort_youngest(self, registry: OptimisticLockRegistry) -> None:
        starts = {T1: 100.0, T2: 200.0}
        detector = DeadlockDetector(registry, start_time_of=starts.get)

        assert detector.detect()[0].victim == T2

    def test_abort_oldest(self, registry: OptimisticLockRegistry) -> None:
        starts = {T1: 100.0, T2: 200.0}
        detector = DeadlockDetector(
            registry, resolution=DeadlockResolution.ABORT_OLDEST, start_time_of=starts.get
        )

        assert detector.detect()[0].victim == T1

    def test_abort_random_picks_member(self, registry: OptimisticLockRegistry) -> None:
        detector = DeadlockDetector(
            registry, resolution=DeadlockResolution.ABORT_RANDOM, rng=random.Random(7)
        )

        assert detector.detect()[0].victim in {T1, T2}

    def test_unknown_start_times_fall_back_to_id(self, registry: OptimisticLockRegistry) -> None:
        detector = DeadlockDetector(registry)

        assert detector.select_victim([T1, T2]) == T2

    def test_empty_cycle_rejected(self, registry: OptimisticLockRegistry) -> None:
        with pytest.raises(ValueError):
            DeadlockDetector(registry).select_victim([])

    def test_release_breaks_cycle(self, registry: OptimisticLockRegistry) -> None:
        registry.release_all(T2)

        assert DeadlockDetector(registry).detect() == []
