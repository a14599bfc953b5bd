"""Unit tests for InMemoryParticipant."""

from __future__ import annotations

import pytest

from txn_coordinator.adapters.outbound import InMemoryParticipant
from txn_coordinator.domain.errors import ParticipantError
from txn_coordinator.domain.value_objects import TransactionId, Vote
from txn_coordinator.ports.outbound import ParticipantTxnStatus

T1 = TransactionId("txn_1_aaaaaaaaa")
T2 = TransactionId("txn_2_bbbbbbbbb")


@pytest.mark.unit
class TestInMemoryParticipant:
    """Prepare, commit and abort semantics."""

    def test_writes_visible_only_after_commit(self) -> None:
        participant = InMemoryParticipant("ledger")

        assert participant.prepare(T1, {"key": "fee", "value": 10}) == Vote.YES
        assert participant.get("fee") is None
        assert participant.status(T1) == ParticipantTxnStatus.PREPARED

        participant.commit(T1)

        assert participant.get("fee") == 10
        assert participant.version("fee") == 1

    def test_list_payload(self) -> None:
        participant = InMemoryParticipant("ledger")

        participant.prepare(T1, [{"key": "a", "value": 1}, {"key": "b", "value": 2}])
        participant.commit(T1)

        assert (participant.get("a"), participant.get("b")) == (1, 2)

    def test_staged_key_blocks_other_transaction(self) -> None:
        participant = InMemoryParticipant("ledger")
        participant.prepare(T1, {"key": "fee", "value": 10})

        assert participant.prepare(T2, {"key": "fee", "value": 20}) == Vote.NO

        participant.abort(T1)
        assert participant.prepare(T2, {"key": "fee", "value": 20}) == Vote.YES

    def test_expected_version(self) -> None:
        participant = InMemoryParticipant("ledger")
        participant.put("fee", 5)

        assert participant.prepare(T1, {"key": "fee", "value": 6, "expected_version": 0}) == Vote.NO
        assert participant.prepare(T2, {"key": "fee", "value": 6, "expected_version": 1}) == Vote.YES

    def test_commit_is_idempotent(self) -> None:
        participant = InMemoryParticipant("ledger")
        participant.prepare(T1, {"key": "fee", "value": 10})

        participant.commit(T1)
        participant.commit(T1)

        assert participant.version("fee") == 1
        assert participant.calls_for("commit") == [T1, T1]

    def test_abort_of_unknown_transaction_is_remembered(self) -> None:
        participant = InMemoryParticipant("ledger")

        participant.abort(T1)

        assert participant.status(T1) == ParticipantTxnStatus.ABORTED

    def test_fault_injection(self) -> None:
        participant = InMemoryParticipant("ledger", fail_prepare=True, fail_commit_times=1)

        with pytest.raises(ParticipantError):
            participant.prepare(T1, None)

        participant.fail_prepare = False
        participant.prepare(T1, None)
        with pytest.raises(ParticipantError):
            participant.commit(T1)
        participant.commit(T1)

        assert participant.status(T1) == ParticipantTxnStatus.COMMITTED

    def test_vote_no(self) -> None:
        participant = InMemoryParticipant("minutes", vote_no=True)

        assert participant.prepare(T1, {"key": "m1", "value": "x"}) == Vote.NO
        assert participant.name == "minutes"
