"""In-memory two-phase commit participant.

A small versioned key-value store that takes part in two-phase commit.
Used by tests and examples, and as the reference for what a real
participant must do.

Prepare payload:
    A write ``{"key": k, "value": v, "expected_version": n}`` or a list of
    them. ``expected_version`` is optional; when given, the participant
    votes NO unless the key is currently at that version. A key staged by
    another prepared transaction also makes it vote NO.

Fault injection:
    vote_no            always vote NO
    fail_prepare       raise ParticipantError from prepare
    fail_commit_times  raise ParticipantError from the next N commits
    fail_abort_times   raise ParticipantError from the next N aborts
    prepare_delay_s    sleep before answering prepare
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any

from txn_coordinator.domain.errors import ParticipantError
from txn_coordinator.domain.value_objects import TransactionId, Vote
from txn_coordinator.infrastructure.logging import get_logger
from txn_coordinator.ports.outbound.participant import ParticipantTxnStatus

logger = get_logger(__name__)


@dataclass
class VersionedValue:
    value: Any
    version: int


@dataclass
class StagedTransaction:
    writes: dict[str, Any] = field(default_factory=dict)
    status: ParticipantTxnStatus = ParticipantTxnStatus.PREPARED


class InMemoryParticipant:
    """Versioned key-value participant with fault injection."""

    def __init__(
        self,
        name: str,
        vote_no: bool = False,
        fail_prepare: bool = False,
        fail_commit_times: int = 0,
        fail_abort_times: int = 0,
        prepare_delay_s: float = 0.0,
    ) -> None:
        self._name = name
        self.vote_no = vote_no
        self.fail_prepare = fail_prepare
        self.fail_commit_times = fail_commit_times
        self.fail_abort_times = fail_abort_times
        self.prepare_delay_s = prepare_delay_s

        self._lock = threading.Lock()
        self._data: dict[str, VersionedValue] = {}
        self._transactions: dict[TransactionId, StagedTransaction] = {}
        self.calls: list[tuple[str, TransactionId]] = []

    @property
    def name(self) -> str:
        return self._name

    # =========================================================================
    # Two-phase commit
    # =========================================================================

    def prepare(self, txn_id: TransactionId, payload: Any) -> Vote:
        with self._lock:
            self.calls.append(("prepare", txn_id))
        if self.prepare_delay_s:
            time.sleep(self.prepare_delay_s)
        if self.fail_prepare:
            raise ParticipantError(f"Participant {self._name} unavailable")
        if self.vote_no:
            return Vote.NO

        writes = _normalize(payload)
        with self._lock:
            staged_keys = {
                key
                for other_id, staged in self._transactions.items()
                if other_id != txn_id and staged.status == ParticipantTxnStatus.PREPARED
                for key in staged.writes
            }
            for write in writes:
                key = write["key"]
                if key in staged_keys:
                    logger.debug("participant_vote_no", participant=self._name, key=key, reason="staged")
                    return Vote.NO
                expected = write.get("expected_version")
                if expected is not None and self._version_locked(key) != expected:
                    logger.debug("participant_vote_no", participant=self._name, key=key, reason="version")
                    return Vote.NO

            self._transactions[txn_id] = StagedTransaction(
                writes={write["key"]: write.get("value") for write in writes}
            )
        return Vote.YES

    def commit(self, txn_id: TransactionId) -> None:
        with self._lock:
            self.calls.append(("commit", txn_id))
            if self.fail_commit_times > 0:
                self.fail_commit_times -= 1
                raise ParticipantError(f"Participant {self._name} failed to commit {txn_id}")

            staged = self._transactions.get(txn_id)
            if staged is None or staged.status == ParticipantTxnStatus.COMMITTED:
                return
            for key, value in staged.writes.items():
                self._data[key] = VersionedValue(value=value, version=self._version_locked(key) + 1)
            staged.status = ParticipantTxnStatus.COMMITTED

    def abort(self, txn_id: TransactionId) -> None:
        with self._lock:
            self.calls.append(("abort", txn_id))
            if self.fail_abort_times > 0:
                self.fail_abort_times -= 1
                raise ParticipantError(f"Participant {self._name} failed to abort {txn_id}")

            staged = self._transactions.get(txn_id)
            if staged is None:
                # Presumed abort: remember the outcome of an unknown transaction
                self._transactions[txn_id] = StagedTransaction(status=ParticipantTxnStatus.ABORTED)
                return
            if staged.status == ParticipantTxnStatus.PREPARED:
                staged.writes.clear()
                staged.status = ParticipantTxnStatus.ABORTED

    def status(self, txn_id: TransactionId) -> ParticipantTxnStatus:
        with self._lock:
            staged = self._transactions.get(txn_id)
            return staged.status if staged is not None else ParticipantTxnStatus.UNKNOWN

    # =========================================================================
    # Store access
    # =========================================================================

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._data.get(key)
            return entry.value if entry is not None else None

    def version(self, key: str) -> int:
        with self._lock:
            return self._version_locked(key)

    def put(self, key: str, value: Any) -> int:
        """Write outside any transaction; returns the new version."""
        with self._lock:
            version = self._version_locked(key) + 1
            self._data[key] = VersionedValue(value=value, version=version)
            return version

    def calls_for(self, method: str) -> list[TransactionId]:
        with self._lock:
            return [txn for name, txn in self.calls if name == method]

    def _version_locked(self, key: str) -> int:
        entry = self._data.get(key)
        return entry.version if entry is not None else 0


def _normalize(payload: Any) -> list[dict[str, Any]]:
    """Flatten a payload into a list of write dicts."""
    if payload is None:
        return []
    if isinstance(payload, dict):
        return [payload] if "key" in payload else []
    writes: list[dict[str, Any]] = []
    for item in payload:
        writes.extend(_normalize(item))
    return writes
