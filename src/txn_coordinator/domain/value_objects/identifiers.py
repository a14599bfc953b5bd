"""Identifiers used throughout the coordinator.

Transaction, saga and operation ids are opaque strings with a short
type prefix, a millisecond timestamp and a random suffix, e.g.
``txn_1718030000123_k3j9x0a1b``. The timestamp makes ids roughly
sortable by creation time; the suffix makes them unique across
coordinator instances.
"""

from __future__ import annotations

import secrets
import string
import time
from typing import NewType

TransactionId = NewType("TransactionId", str)
"""Identifier of a coordinator transaction, saga execution or cross-domain transaction."""

LSN = NewType("LSN", int)
"""Coordinator log sequence number. Monotonically increasing from 1."""

INVALID_LSN = LSN(0)

_ALPHABET = string.digits + string.ascii_lowercase
_SUFFIX_LENGTH = 9

# Prefixes by id kind
TRANSACTION_PREFIX = "txn"
SAGA_PREFIX = "saga"
CROSS_DOMAIN_PREFIX = "xdtx"
CORRELATION_PREFIX = "corr"
OPERATION_PREFIX = "op"
COMPENSATION_PREFIX = "comp"
CHECKPOINT_PREFIX = "cp"
EVENT_PREFIX = "evt"
ALERT_PREFIX = "alert"


def generate_id(prefix: str) -> str:
    """Generate a unique id of the form ``<prefix>_<epoch_ms>_<suffix>``.

    Args:
        prefix: Short id kind, such as ``"txn"`` or ``"saga"``.

    Returns:
        The new id.
    """
    if not prefix:
        raise ValueError("prefix must be non-empty")
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(_SUFFIX_LENGTH))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def new_transaction_id(prefix: str = TRANSACTION_PREFIX) -> TransactionId:
    """Generate a new transaction id."""
    return TransactionId(generate_id(prefix))


def id_timestamp_ms(identifier: str) -> int | None:
    """Extract the creation timestamp embedded in a generated id.

    Returns None for ids that were not produced by :func:`generate_id`.
    """
    parts = identifier.split("_")
    if len(parts) < 3:
        return None
    try:
        return int(parts[-2])
    except ValueError:
        return None
