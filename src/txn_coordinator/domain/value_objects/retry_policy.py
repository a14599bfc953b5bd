"""Retry policy value object.

A RetryPolicy is immutable: it answers two questions, "should attempt N
be retried after this error?" and "how long to wait before attempt N+1?".
Running the retries is the job of ``domain.services.retry``.

Delay for attempt ``n`` (1-based, the attempt that just failed):

    FIXED        base
    LINEAR       base * n
    EXPONENTIAL  base * multiplier ** (n - 1)

The result is capped at ``max_delay_ms``, then jitter in
``[-jitter_ms / 2, +jitter_ms / 2]`` is added, and it is never negative.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from txn_coordinator.domain.errors import error_code, is_recoverable
from txn_coordinator.domain.value_objects.transaction_types import BackoffStrategy

DEFAULT_RETRYABLE_CODES = frozenset({"NETWORK_ERROR", "TIMEOUT", "SERVICE_UNAVAILABLE"})


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits and backoff for a retryable call.

    Attributes:
        max_attempts: Total attempts including the first one.
        base_delay_ms: Delay before the first retry.
        max_delay_ms: Upper bound on any single delay.
        backoff: How the delay grows between attempts.
        multiplier: Growth factor for exponential backoff.
        jitter_ms: Width of the random jitter window.
        retryable_errors: Error codes that may be retried. When empty, any
            error flagged ``recoverable`` is retried.
    """

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    multiplier: float = 2.0
    jitter_ms: int = 0
    retryable_errors: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be non-negative")

    @classmethod
    def none(cls) -> RetryPolicy:
        """A policy that never retries."""
        return cls(max_attempts=1, base_delay_ms=0, max_delay_ms=0)

    @classmethod
    def for_network_calls(cls, max_attempts: int = 3, base_delay_ms: int = 1000) -> RetryPolicy:
        """Retry only the usual transient network codes."""
        return cls(
            max_attempts=max_attempts,
            base_delay_ms=base_delay_ms,
            retryable_errors=DEFAULT_RETRYABLE_CODES,
        )

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Return the delay in milliseconds after ``attempt`` failed."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")

        if self.backoff == BackoffStrategy.FIXED:
            delay = float(self.base_delay_ms)
        elif self.backoff == BackoffStrategy.LINEAR:
            delay = float(self.base_delay_ms * attempt)
        else:
            delay = self.base_delay_ms * self.multiplier ** (attempt - 1)

        delay = min(delay, float(self.max_delay_ms))

        if self.jitter_ms:
            source = rng or random
            delay += (source.random() - 0.5) * self.jitter_ms

        return max(0.0, delay)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Decide whether a failed ``attempt`` (1-based) may be retried."""
        if attempt >= self.max_attempts:
            return False
        if self.retryable_errors:
            return error_code(error) in self.retryable_errors
        return is_recoverable(error)
