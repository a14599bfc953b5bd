"""Domain handler port for cross-domain transactions.

Each business domain (meetings, documents, voting, ...) registers one
handler. The cross-domain coordinator dispatches every DomainOperation
to the handler of its domain and, on failure, asks the same handler to
compensate what it already did.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Any, Protocol

from txn_coordinator.domain.entities import DomainOperation


class DomainHandler(Protocol):
    """Protocol for per-domain operation handlers."""

    @abstractmethod
    def execute(self, operation: DomainOperation, input: Any) -> Any:
        """Run ``operation`` and return its output.

        Raises:
            Exception: Any error fails the operation; CoordinatorError
                subclasses keep their code for retry decisions.
        """
        ...

    @abstractmethod
    def compensate(self, operation: DomainOperation, output: Any) -> None:
        """Undo a completed ``operation`` given the output it returned."""
        ...
