"""Deadlock detection over the optimistic lock wait-for graph.

An edge ``A -> B`` means transaction A was refused a lock because B
holds a conflicting one. A cycle means no transaction in it can make
progress until one is rolled back. The detector finds every cycle and
picks a victim per cycle according to the configured resolution.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Callable

from txn_coordinator.domain.services.lock_registry import OptimisticLockRegistry
from txn_coordinator.domain.value_objects import DeadlockResolution, TransactionId
from txn_coordinator.infrastructure.logging import get_logger

logger = get_logger(__name__)


@dataclass
class DeadlockInfo:
    """One detected wait-for cycle."""

    transaction_ids: list[TransactionId]
    victim: TransactionId
    resources: list[str] = field(default_factory=list)
    resolution: DeadlockResolution = DeadlockResolution.ABORT_YOUNGEST
    detected_at: float = field(default_factory=time.time)


class DeadlockDetector:
    """Finds wait-for cycles and chooses victims.

    Victim selection:
        ABORT_YOUNGEST: latest start time (ties: largest id)
        ABORT_OLDEST: earliest start time (ties: smallest id)
        ABORT_RANDOM: uniformly random member of the cycle
    """

    def __init__(
        self,
        lock_registry: OptimisticLockRegistry,
        resolution: DeadlockResolution = DeadlockResolution.ABORT_YOUNGEST,
        start_time_of: Callable[[TransactionId], float | None] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the detector.

        Args:
            lock_registry: Source of the wait-for graph.
            resolution: Victim selection strategy.
            start_time_of: Returns a transaction's start time, or None
                when unknown. Unknown transactions sort by id alone.
            rng: Random source for ABORT_RANDOM.
        """
        self._locks = lock_registry
        self._resolution = resolution
        self._start_time_of = start_time_of or (lambda _txn: None)
        self._rng = rng or random.Random()

    @property
    def resolution(self) -> DeadlockResolution:
        return self._resolution

    def detect(self) -> list[DeadlockInfo]:
        """Find all cycles in the current wait-for graph."""
        graph = self._locks.wait_for_graph()
        deadlocks = []
        for cycle in find_cycles(graph):
            victim = self.select_victim(cycle)
            resources = sorted(
                {lock.key for txn in cycle for lock in self._locks.get_locks_held(txn)}
            )
            info = DeadlockInfo(
                transaction_ids=cycle,
                victim=victim,
                resources=resources,
                resolution=self._resolution,
            )
            logger.warning(
                "deadlock_detected",
                transactions=list(cycle),
                victim=victim,
                resources=resources,
            )
            deadlocks.append(info)
        return deadlocks

    def select_victim(self, cycle: list[TransactionId]) -> TransactionId:
        if not cycle:
            raise ValueError("cannot select a victim from an empty cycle")

        if self._resolution == DeadlockResolution.ABORT_RANDOM:
            return self._rng.choice(sorted(cycle))

        def age_key(txn: TransactionId) -> tuple[float, str]:
            started = self._start_time_of(txn)
            return (started if started is not None else 0.0, txn)

        if self._resolution == DeadlockResolution.ABORT_OLDEST:
            return min(cycle, key=age_key)
        return max(cycle, key=age_key)


def find_cycles(graph: dict[TransactionId, set[TransactionId]]) -> list[list[TransactionId]]:
    """Return each elementary cycle reachable in ``graph`` once.

    Cycles are reported in traversal order starting from their smallest
    member; cycles over the same member set are reported once.
    """
    seen: set[frozenset[TransactionId]] = set()
    cycles: list[list[TransactionId]] = []

    for start in sorted(graph):
        stack: list[tuple[TransactionId, list[TransactionId]]] = [(start, [start])]
        while stack:
            txn, path = stack.pop()
            for waiting_for in sorted(graph.get(txn, set())):
                if waiting_for == start:
                    members = frozenset(path)
                    if members not in seen:
                        seen.add(members)
                        cycles.append(list(path))
                elif waiting_for not in path and waiting_for > start:
                    # Only walk members larger than start; smaller ones
                    # were already tried as cycle starts.
                    stack.append((waiting_for, path + [waiting_for]))
    return cycles
