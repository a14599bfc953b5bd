"""Coordinator log record types.

The coordinator log is a write-ahead log of coordination decisions, not
of data. Recovery replays it to finish or undo whatever was in flight
when the coordinator stopped:

    Record Type | Written when                        | Recovery action
    ------------|-------------------------------------|------------------------------
    BEGIN       | transaction or saga starts          | add to transaction table
    OPERATION   | single-domain operation executed    | informational
    PREPARE     | 2PC phase 1 starts                  | participants may hold locks
    VOTE        | a participant answers prepare       | informational
    DECISION    | commit point (flushed)              | redo commit / abort
    ACK         | participant acknowledged phase 2    | skip that participant
    SAGA_STEP   | saga step completed or compensated  | compensate completed steps
    COMPENSATION| compensation ran (or failed)        | informational
    END         | transaction fully resolved          | nothing left to do

Records serialize to JSON-compatible dictionaries. Values that are not
JSON types are stringified by the file log, so saga outputs used for
compensation after a crash should be plain data.

References:
    - Gray & Reuter, "Transaction Processing" (1993), Ch. 10 (2PC logging)
    - Mohan, Lindsay, Obermarck, "Transaction Management in the R*
      Distributed Database Management System" (1986) (presumed abort)
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from txn_coordinator.domain.value_objects import (
    INVALID_LSN,
    LSN,
    Decision,
    StepStatus,
    TransactionId,
    Vote,
)


class LogRecordType(Enum):
    """Coordinator log record types."""

    BEGIN = "BEGIN"
    OPERATION = "OPERATION"
    PREPARE = "PREPARE"
    VOTE = "VOTE"
    DECISION = "DECISION"
    ACK = "ACK"
    SAGA_STEP = "SAGA_STEP"
    COMPENSATION = "COMPENSATION"
    END = "END"


class TransactionKind(Enum):
    """What a BEGIN record started."""

    TRANSACTION = "transaction"
    TWO_PHASE_COMMIT = "two_phase_commit"
    SAGA = "saga"
    CROSS_DOMAIN = "cross_domain"


@dataclass
class LogRecord:
    """Base class for coordinator log records.

    ``lsn`` is assigned by the log on append; records built by callers
    carry INVALID_LSN until then.
    """

    txn_id: TransactionId
    lsn: LSN = INVALID_LSN
    timestamp: float = field(default_factory=time.time)

    record_type: ClassVar[LogRecordType]

    def payload(self) -> dict[str, Any]:
        """Record-specific fields."""
        return {}

    @classmethod
    def _from_payload(cls, common: dict[str, Any], data: dict[str, Any]) -> LogRecord:
        return cls(**common)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.record_type.value,
            "lsn": int(self.lsn),
            "txn_id": str(self.txn_id),
            "timestamp": self.timestamp,
            **self.payload(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogRecord:
        """Rebuild a record of the right subclass from ``to_dict`` output.

        Raises:
            ValueError: If the type is missing or unknown.
        """
        try:
            record_type = LogRecordType(data["type"])
        except (KeyError, ValueError):
            raise ValueError(f"Unknown log record type: {data.get('type')!r}")

        record_class = _RECORD_CLASSES[record_type]
        common = {
            "txn_id": TransactionId(data["txn_id"]),
            "lsn": LSN(int(data.get("lsn", 0))),
            "timestamp": float(data.get("timestamp", 0.0)),
        }
        return record_class._from_payload(common, data)


@dataclass
class BeginRecord(LogRecord):
    """A transaction, 2PC round, saga or cross-domain transaction started.

    For sagas, ``name`` is the saga definition id and ``input`` the saga
    input, so recovery can look the definition up and compensate.
    """

    kind: TransactionKind = TransactionKind.TRANSACTION
    name: str = ""
    mode: str = ""
    input: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)

    record_type: ClassVar[LogRecordType] = LogRecordType.BEGIN

    def payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "name": self.name,
            "mode": self.mode,
            "input": self.input,
            "metadata": self.metadata,
        }

    @classmethod
    def _from_payload(cls, common: dict[str, Any], data: dict[str, Any]) -> BeginRecord:
        return cls(
            **common,
            kind=TransactionKind(data.get("kind", TransactionKind.TRANSACTION.value)),
            name=data.get("name", ""),
            mode=data.get("mode", ""),
            input=data.get("input"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class OperationRecord(LogRecord):
    """An operation executed inside a single-domain transaction."""

    operation_id: str = ""
    description: str = ""
    table: str = ""
    entity_id: str | None = None

    record_type: ClassVar[LogRecordType] = LogRecordType.OPERATION

    def payload(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "description": self.description,
            "table": self.table,
            "entity_id": self.entity_id,
        }

    @classmethod
    def _from_payload(cls, common: dict[str, Any], data: dict[str, Any]) -> OperationRecord:
        return cls(
            **common,
            operation_id=data.get("operation_id", ""),
            description=data.get("description", ""),
            table=data.get("table", ""),
            entity_id=data.get("entity_id"),
        )


@dataclass
class PrepareRecord(LogRecord):
    """Phase 1 started; ``participants`` were asked to prepare."""

    participants: list[str] = field(default_factory=list)

    record_type: ClassVar[LogRecordType] = LogRecordType.PREPARE

    def payload(self) -> dict[str, Any]:
        return {"participants": list(self.participants)}

    @classmethod
    def _from_payload(cls, common: dict[str, Any], data: dict[str, Any]) -> PrepareRecord:
        return cls(**common, participants=list(data.get("participants") or []))


@dataclass
class VoteRecord(LogRecord):
    """A participant's prepare vote."""

    participant: str = ""
    vote: Vote = Vote.NO
    reason: str | None = None

    record_type: ClassVar[LogRecordType] = LogRecordType.VOTE

    def payload(self) -> dict[str, Any]:
        return {"participant": self.participant, "vote": self.vote.value, "reason": self.reason}

    @classmethod
    def _from_payload(cls, common: dict[str, Any], data: dict[str, Any]) -> VoteRecord:
        return cls(
            **common,
            participant=data.get("participant", ""),
            vote=Vote(data.get("vote", Vote.NO.value)),
            reason=data.get("reason"),
        )


@dataclass
class DecisionRecord(LogRecord):
    """The commit point. Once flushed, the outcome is final."""

    decision: Decision = Decision.ABORT
    participants: list[str] = field(default_factory=list)

    record_type: ClassVar[LogRecordType] = LogRecordType.DECISION

    def payload(self) -> dict[str, Any]:
        return {"decision": self.decision.value, "participants": list(self.participants)}

    @classmethod
    def _from_payload(cls, common: dict[str, Any], data: dict[str, Any]) -> DecisionRecord:
        return cls(
            **common,
            decision=Decision(data.get("decision", Decision.ABORT.value)),
            participants=list(data.get("participants") or []),
        )


@dataclass
class AckRecord(LogRecord):
    """A participant acknowledged the phase 2 decision."""

    participant: str = ""

    record_type: ClassVar[LogRecordType] = LogRecordType.ACK

    def payload(self) -> dict[str, Any]:
        return {"participant": self.participant}

    @classmethod
    def _from_payload(cls, common: dict[str, Any], data: dict[str, Any]) -> AckRecord:
        return cls(**common, participant=data.get("participant", ""))


@dataclass
class SagaStepRecord(LogRecord):
    """A saga step changed state (completed, failed or compensated)."""

    step_id: str = ""
    status: StepStatus = StepStatus.COMPLETED
    output: Any = None
    error: str | None = None

    record_type: ClassVar[LogRecordType] = LogRecordType.SAGA_STEP

    def payload(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
        }

    @classmethod
    def _from_payload(cls, common: dict[str, Any], data: dict[str, Any]) -> SagaStepRecord:
        return cls(
            **common,
            step_id=data.get("step_id", ""),
            status=StepStatus(data.get("status", StepStatus.COMPLETED.value)),
            output=data.get("output"),
            error=data.get("error"),
        )


@dataclass
class CompensationLogRecord(LogRecord):
    """A compensation ran for an operation."""

    operation_id: str = ""
    description: str = ""
    succeeded: bool = True
    error: str | None = None

    record_type: ClassVar[LogRecordType] = LogRecordType.COMPENSATION

    def payload(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "description": self.description,
            "succeeded": self.succeeded,
            "error": self.error,
        }

    @classmethod
    def _from_payload(cls, common: dict[str, Any], data: dict[str, Any]) -> CompensationLogRecord:
        return cls(
            **common,
            operation_id=data.get("operation_id", ""),
            description=data.get("description", ""),
            succeeded=bool(data.get("succeeded", True)),
            error=data.get("error"),
        )


@dataclass
class EndRecord(LogRecord):
    """Nothing is left to do for this transaction."""

    outcome: str = ""

    record_type: ClassVar[LogRecordType] = LogRecordType.END

    def payload(self) -> dict[str, Any]:
        return {"outcome": self.outcome}

    @classmethod
    def _from_payload(cls, common: dict[str, Any], data: dict[str, Any]) -> EndRecord:
        return cls(**common, outcome=data.get("outcome", ""))


_RECORD_CLASSES: dict[LogRecordType, type[LogRecord]] = {
    LogRecordType.BEGIN: BeginRecord,
    LogRecordType.OPERATION: OperationRecord,
    LogRecordType.PREPARE: PrepareRecord,
    LogRecordType.VOTE: VoteRecord,
    LogRecordType.DECISION: DecisionRecord,
    LogRecordType.ACK: AckRecord,
    LogRecordType.SAGA_STEP: SagaStepRecord,
    LogRecordType.COMPENSATION: CompensationLogRecord,
    LogRecordType.END: EndRecord,
}
