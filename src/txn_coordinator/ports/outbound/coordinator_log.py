"""Coordinator log port.

This outbound port defines the contract for durable storage of
coordinator decisions. The two-phase commit protocol depends on one
guarantee above all: a DECISION record passed to ``flush`` is on stable
storage before ``flush`` returns, so no participant is ever told to
commit a transaction the coordinator could forget.

References:
    - Gray & Reuter, "Transaction Processing" (1993), Ch. 10
    - ARIES paper (Mohan et al., 1992)
"""

from __future__ import annotations

from abc import abstractmethod
from enum import Enum
from typing import Iterator, Protocol

from txn_coordinator.domain.entities import LogRecord
from txn_coordinator.domain.value_objects import LSN


class SyncMode(Enum):
    """Log sync modes.

    FSYNC: flush and fsync on every ``flush`` call (durable)
    NONE: rely on OS buffering (tests, development)
    """

    FSYNC = "fsync"
    NONE = "none"


class CoordinatorLog(Protocol):
    """Protocol for the coordinator's write-ahead log.

    Key guarantees:
    - Records are assigned strictly increasing LSNs starting at 1
    - ``flush(lsn)`` makes every record up to ``lsn`` durable
    - ``read_from`` returns records in LSN order

    Thread Safety:
        Implementations serialize appends internally; any number of
        threads may append concurrently.
    """

    @abstractmethod
    def append(self, record: LogRecord) -> LSN:
        """Append a record and assign its LSN.

        Args:
            record: The record to append. Its ``lsn`` is overwritten.

        Returns:
            The assigned LSN.

        Raises:
            CoordinatorLogError: If the log is closed or the write fails.
        """
        ...

    @abstractmethod
    def flush(self, lsn: LSN) -> None:
        """Make all records up to and including ``lsn`` durable.

        Raises:
            CoordinatorLogError: If the flush fails.
        """
        ...

    @abstractmethod
    def read_from(self, start_lsn: LSN) -> Iterator[LogRecord]:
        """Yield records with ``lsn >= start_lsn`` in LSN order."""
        ...

    @abstractmethod
    def get_current_lsn(self) -> LSN:
        """Return the next LSN that will be assigned."""
        ...

    @abstractmethod
    def get_flushed_lsn(self) -> LSN:
        """Return the highest LSN known to be durable."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Flush and release resources."""
        ...
