"""In-memory coordinator log.

Implements the CoordinatorLog protocol without touching disk. Used by
tests and the ``testing`` configuration. Records are stored as their
dict form and rebuilt on read, so readers never share mutable records
with writers, matching what a file-backed log would return.

``crash()`` drops everything appended since the last flush. It lets
tests simulate losing the unflushed tail.
"""

from __future__ import annotations

import threading
from typing import Any, Iterator

from txn_coordinator.domain.entities import LogRecord
from txn_coordinator.domain.errors import CoordinatorLogError
from txn_coordinator.domain.value_objects import LSN
from txn_coordinator.infrastructure.metrics import MetricsRegistry


class InMemoryCoordinatorLog:
    """CoordinatorLog kept in a Python list."""

    def __init__(self, metrics: MetricsRegistry | None = None) -> None:
        self._metrics = metrics
        self._lock = threading.Lock()
        self._records: list[dict[str, Any]] = []
        self._current_lsn = LSN(1)
        self._flushed_lsn = LSN(0)
        self._closed = False
        self._flush_calls = 0

    def append(self, record: LogRecord) -> LSN:
        if self._closed:
            raise CoordinatorLogError("Coordinator log is closed")
        with self._lock:
            lsn = self._current_lsn
            self._current_lsn = LSN(lsn + 1)
            record.lsn = lsn
            self._records.append(record.to_dict())
        if self._metrics is not None:
            self._metrics.log_records_total.labels(record_type=record.record_type.value).inc()
        return lsn

    def flush(self, lsn: LSN) -> None:
        if self._closed:
            raise CoordinatorLogError("Coordinator log is closed")
        if lsn >= self._current_lsn:
            raise ValueError(f"LSN {lsn} has not been written yet")
        with self._lock:
            self._flush_calls += 1
            if lsn > self._flushed_lsn:
                self._flushed_lsn = lsn

    def read_from(self, start_lsn: LSN) -> Iterator[LogRecord]:
        with self._lock:
            snapshot = list(self._records)
        for data in snapshot:
            if data["lsn"] >= start_lsn:
                yield LogRecord.from_dict(data)

    def get_current_lsn(self) -> LSN:
        return self._current_lsn

    def get_flushed_lsn(self) -> LSN:
        return self._flushed_lsn

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._flushed_lsn = LSN(self._current_lsn - 1)

    def reopen(self) -> None:
        """Accept appends again after ``close`` or ``crash``."""
        with self._lock:
            self._closed = False

    def crash(self) -> int:
        """Discard unflushed records and close; return how many were lost."""
        with self._lock:
            kept = [r for r in self._records if r["lsn"] <= self._flushed_lsn]
            lost = len(self._records) - len(kept)
            self._records = kept
            self._current_lsn = LSN(self._flushed_lsn + 1)
            self._closed = True
        return lost

    @property
    def flush_calls(self) -> int:
        return self._flush_calls

    def records(self) -> list[LogRecord]:
        """All records in LSN order."""
        return list(self.read_from(LSN(1)))

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
