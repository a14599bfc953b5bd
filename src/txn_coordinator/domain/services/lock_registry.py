"""Optimistic lock registry.

Transactions declare the version of an entity they read before writing
it. The registry remembers those declarations for a bounded time and
rejects a second transaction that declares a *different* version of
the same entity while the first declaration is live: one of the two
is working from stale data.

    holder version | requested version | result
    ---------------|-------------------|------------------------------
    (none/expired) | v                 | granted
    v              | v                 | granted (shared declaration)
    v              | w != v            | OptimisticLockConflictError
    own lock       | any               | re-declared (version updated)

A rejected request records wait-for edges from the requester to every
conflicting holder. The deadlock detector reads that graph.

References:
    - Kung & Robinson, "On Optimistic Methods for Concurrency Control" (1981)
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from typing import Callable

from txn_coordinator.domain.entities import OptimisticLock, lock_key
from txn_coordinator.domain.errors import OptimisticLockConflictError
from txn_coordinator.domain.value_objects import TransactionId

DEFAULT_LOCK_TIMEOUT_MS = 5000


class OptimisticLockRegistry:
    """Registry of optimistic locks keyed by ``table:entity_id``.

    Thread Safety:
        All operations are thread-safe using a single registry lock.
    """

    def __init__(
        self,
        default_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the registry.

        Args:
            default_timeout_ms: Lock lifetime when ``acquire`` gets none.
            clock: Time source in epoch seconds.
        """
        self._default_timeout_ms = default_timeout_ms
        self._clock = clock
        self._lock = threading.Lock()

        # key -> {txn_id -> lock}
        self._locks: dict[str, dict[TransactionId, OptimisticLock]] = {}

        # Keys held by each transaction
        self._txn_locks: dict[TransactionId, set[str]] = defaultdict(set)

        # Wait-for graph: txn_id -> set of txn_ids it conflicted with
        self._wait_for: dict[TransactionId, set[TransactionId]] = defaultdict(set)

    def acquire(
        self,
        txn_id: TransactionId,
        table: str,
        entity_id: str,
        expected_version: int,
        timeout_ms: int | None = None,
    ) -> OptimisticLock:
        """Declare ``expected_version`` of an entity for a transaction.

        Args:
            txn_id: The requesting transaction.
            table: Table or resource name.
            entity_id: Entity identifier within the table.
            expected_version: Version the transaction read.
            timeout_ms: Lock lifetime (default from the registry).

        Returns:
            The granted lock.

        Raises:
            OptimisticLockConflictError: If another live lock declares a
                different version.
        """
        key = lock_key(table, entity_id)
        lifetime = (timeout_ms if timeout_ms is not None else self._default_timeout_ms) / 1000.0

        with self._lock:
            now = self._clock()
            holders = self._locks.setdefault(key, {})
            self._purge_expired_holders(key, holders, now)

            conflicting = [
                lock
                for holder, lock in holders.items()
                if holder != txn_id and lock.expected_version != expected_version
            ]
            if conflicting:
                self._wait_for[txn_id].update(lock.transaction_id for lock in conflicting)
                held = conflicting[0]
                raise OptimisticLockConflictError(
                    f"Optimistic lock conflict on {key}: expected version "
                    f"{expected_version}, held at version {held.expected_version} "
                    f"by {held.transaction_id}",
                    details={
                        "table": table,
                        "entity_id": entity_id,
                        "expected_version": expected_version,
                        "held_version": held.expected_version,
                        "holder": held.transaction_id,
                    },
                )

            lock = OptimisticLock(
                table=table,
                entity_id=entity_id,
                expected_version=expected_version,
                transaction_id=txn_id,
                locked_at=now,
                expires_at=now + lifetime,
            )
            holders[txn_id] = lock
            self._txn_locks[txn_id].add(key)
            # Granted: no longer waiting on anyone
            self._wait_for.pop(txn_id, None)
            return lock

    def release(self, txn_id: TransactionId, table: str, entity_id: str) -> bool:
        """Release one lock.

        Returns:
            True if the lock was held and released.
        """
        key = lock_key(table, entity_id)
        with self._lock:
            return self._release_key(txn_id, key)

    def release_all(self, txn_id: TransactionId) -> int:
        """Release every lock a transaction holds and drop it from the wait-for graph.

        Called on commit and rollback.

        Returns:
            Number of locks released.
        """
        with self._lock:
            count = 0
            for key in list(self._txn_locks.get(txn_id, set())):
                if self._release_key(txn_id, key):
                    count += 1
            self._txn_locks.pop(txn_id, None)

            self._wait_for.pop(txn_id, None)
            for waiters in self._wait_for.values():
                waiters.discard(txn_id)
            return count

    def cleanup_expired(self, now: float | None = None) -> int:
        """Drop expired locks.

        Returns:
            Number of locks removed.
        """
        with self._lock:
            now = self._clock() if now is None else now
            removed = 0
            for key in list(self._locks):
                removed += self._purge_expired_holders(key, self._locks[key], now)
                if not self._locks[key]:
                    del self._locks[key]
            return removed

    def get_locks_held(self, txn_id: TransactionId) -> list[OptimisticLock]:
        with self._lock:
            return [
                self._locks[key][txn_id]
                for key in sorted(self._txn_locks.get(txn_id, set()))
                if key in self._locks and txn_id in self._locks[key]
            ]

    def get_holders(self, table: str, entity_id: str) -> list[OptimisticLock]:
        with self._lock:
            return list(self._locks.get(lock_key(table, entity_id), {}).values())

    def wait_for_graph(self) -> dict[TransactionId, set[TransactionId]]:
        """Copy of the wait-for graph (only non-empty edges)."""
        with self._lock:
            return {txn: set(waits) for txn, waits in self._wait_for.items() if waits}

    def clear_waits(self, txn_id: TransactionId) -> None:
        """Forget the wait-for edges of a transaction that gave up waiting."""
        with self._lock:
            self._wait_for.pop(txn_id, None)

    @property
    def lock_count(self) -> int:
        with self._lock:
            return sum(len(holders) for holders in self._locks.values())

    def _release_key(self, txn_id: TransactionId, key: str) -> bool:
        holders = self._locks.get(key)
        if not holders or txn_id not in holders:
            return False
        del holders[txn_id]
        if not holders:
            del self._locks[key]
        self._txn_locks[txn_id].discard(key)
        return True

    def _purge_expired_holders(
        self, key: str, holders: dict[TransactionId, OptimisticLock], now: float
    ) -> int:
        expired = [txn for txn, lock in holders.items() if lock.is_expired(now)]
        for txn in expired:
            del holders[txn]
            self._txn_locks[txn].discard(key)
        return len(expired)
