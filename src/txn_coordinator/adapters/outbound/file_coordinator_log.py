"""File-based coordinator log.

This adapter implements the CoordinatorLog protocol with a single
append-only file, ``coordinator.log``, in the log directory.

Record Format:
    [length(4, big-endian) + JSON UTF-8 payload + CRC32(4, big-endian)] ...

On open the file is scanned to find the next LSN. A torn record at the
tail (short read or CRC mismatch) is the trace of a crash mid-write; it
and anything after it are truncated away before new records are
appended.

Thread Safety:
    Appends and flushes are serialized internally.

References:
    - ARIES paper (Mohan et al., 1992)
"""

from __future__ import annotations

import json
import os
import struct
import threading
import zlib
from pathlib import Path
from typing import BinaryIO, Iterator

from txn_coordinator.domain.entities import LogRecord
from txn_coordinator.domain.errors import CoordinatorLogError
from txn_coordinator.domain.value_objects import LSN
from txn_coordinator.infrastructure.logging import get_logger
from txn_coordinator.infrastructure.metrics import MetricsRegistry
from txn_coordinator.ports.outbound.coordinator_log import SyncMode

LOG_FILE_NAME = "coordinator.log"

# Record wrapper format: length(4) + data + crc32(4)
RECORD_LENGTH_FORMAT = ">I"
RECORD_CRC_FORMAT = ">I"
RECORD_OVERHEAD = 8  # 4 bytes length + 4 bytes CRC

logger = get_logger(__name__)


def encode_record(record: LogRecord) -> bytes:
    """Frame a record as length + JSON + CRC32."""
    data = json.dumps(record.to_dict(), default=str, separators=(",", ":")).encode("utf-8")
    crc = zlib.crc32(data) & 0xFFFFFFFF
    return struct.pack(RECORD_LENGTH_FORMAT, len(data)) + data + struct.pack(RECORD_CRC_FORMAT, crc)


class FileCoordinatorLog:
    """File-based implementation of the CoordinatorLog protocol.

    Attributes:
        log_dir: Directory holding ``coordinator.log``.
        sync_mode: Whether ``flush`` fsyncs.
    """

    def __init__(
        self,
        log_dir: str | Path,
        sync_mode: SyncMode = SyncMode.FSYNC,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        """Open (or create) the log.

        Args:
            log_dir: Directory for the log file; created if missing.
            sync_mode: Sync mode for durability.
            metrics: Metrics registry; None disables metrics.

        Raises:
            CoordinatorLogError: If the file cannot be opened.
        """
        self._log_dir = Path(log_dir)
        self._path = self._log_dir / LOG_FILE_NAME
        self._sync_mode = sync_mode
        self._metrics = metrics

        self._lock = threading.Lock()
        self._closed = False
        self._current_lsn = LSN(1)  # LSN 0 is invalid
        self._flushed_lsn = LSN(0)
        self._buffer: list[tuple[LSN, bytes]] = []

        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
            self._recover_state()
            self._file: BinaryIO = open(self._path, "ab")
        except OSError as e:
            raise CoordinatorLogError(f"Cannot open coordinator log {self._path}: {e}") from e

    @property
    def path(self) -> Path:
        return self._path

    @property
    def sync_mode(self) -> SyncMode:
        return self._sync_mode

    def _recover_state(self) -> None:
        """Find the last valid record and truncate any torn tail."""
        if not self._path.exists():
            return

        valid_end = 0
        last_lsn = LSN(0)
        for offset, record in self._scan():
            valid_end = offset
            last_lsn = record.lsn

        size = self._path.stat().st_size
        if size > valid_end:
            logger.warning(
                "coordinator_log_tail_truncated",
                path=str(self._path),
                valid_bytes=valid_end,
                discarded_bytes=size - valid_end,
            )
            with open(self._path, "r+b") as f:
                f.truncate(valid_end)
                f.flush()
                os.fsync(f.fileno())

        self._current_lsn = LSN(last_lsn + 1)
        self._flushed_lsn = last_lsn

    def _scan(self) -> Iterator[tuple[int, LogRecord]]:
        """Yield (end offset, record) for each valid record in the file."""
        with open(self._path, "rb") as f:
            offset = 0
            while True:
                length_data = f.read(4)
                if len(length_data) < 4:
                    return

                (length,) = struct.unpack(RECORD_LENGTH_FORMAT, length_data)
                if length == 0:
                    return

                record_data = f.read(length)
                if len(record_data) < length:
                    return

                crc_data = f.read(4)
                if len(crc_data) < 4:
                    return

                (stored_crc,) = struct.unpack(RECORD_CRC_FORMAT, crc_data)
                if stored_crc != zlib.crc32(record_data) & 0xFFFFFFFF:
                    return

                try:
                    record = LogRecord.from_dict(json.loads(record_data.decode("utf-8")))
                except (ValueError, KeyError):
                    return

                offset += RECORD_OVERHEAD + length
                yield offset, record

    def append(self, record: LogRecord) -> LSN:
        """Append a record and assign its LSN.

        Raises:
            CoordinatorLogError: If the log is closed.
        """
        if self._closed:
            raise CoordinatorLogError("Coordinator log is closed")

        with self._lock:
            lsn = self._current_lsn
            self._current_lsn = LSN(self._current_lsn + 1)
            record.lsn = lsn
            self._buffer.append((lsn, encode_record(record)))

        if self._metrics is not None:
            self._metrics.log_records_total.labels(record_type=record.record_type.value).inc()
        return lsn

    def _flush_buffer(self) -> None:
        if not self._buffer:
            return
        for _, wrapped in self._buffer:
            self._file.write(wrapped)
        self._buffer.clear()
        self._file.flush()

    def flush(self, lsn: LSN) -> None:
        """Make every record up to and including ``lsn`` durable.

        Raises:
            ValueError: If ``lsn`` has not been assigned yet.
            CoordinatorLogError: If the log is closed or the write fails.
        """
        if self._closed:
            raise CoordinatorLogError("Coordinator log is closed")
        if lsn >= self._current_lsn:
            raise ValueError(f"LSN {lsn} has not been written yet")

        with self._lock:
            if lsn <= self._flushed_lsn:
                return  # Already flushed
            try:
                self._flush_buffer()
                if self._sync_mode == SyncMode.FSYNC:
                    os.fsync(self._file.fileno())
            except OSError as e:
                raise CoordinatorLogError(f"Coordinator log flush failed: {e}") from e
            self._flushed_lsn = LSN(self._current_lsn - 1)

    def get_current_lsn(self) -> LSN:
        """Return the next LSN that will be assigned."""
        return self._current_lsn

    def get_flushed_lsn(self) -> LSN:
        """Return the highest LSN known to be durable."""
        return self._flushed_lsn

    def read_from(self, start_lsn: LSN) -> Iterator[LogRecord]:
        """Yield records with ``lsn >= start_lsn`` in LSN order.

        Buffered records are written out first so they are included.
        """
        if self._closed:
            raise CoordinatorLogError("Coordinator log is closed")

        with self._lock:
            self._flush_buffer()

        for _, record in self._scan():
            if record.lsn >= start_lsn:
                yield record

    def close(self) -> None:
        """Flush and close the log file."""
        if self._closed:
            return

        with self._lock:
            self._closed = True
            self._flush_buffer()
            if self._sync_mode == SyncMode.FSYNC:
                os.fsync(self._file.fileno())
            self._flushed_lsn = LSN(self._current_lsn - 1)
            self._file.close()

    def __enter__(self) -> FileCoordinatorLog:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
