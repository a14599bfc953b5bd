"""Retry execution for RetryPolicy."""

from __future__ import annotations

import random
import time
from typing import Callable, TypeVar

from txn_coordinator.domain.value_objects import RetryPolicy
from txn_coordinator.infrastructure.logging import get_logger

T = TypeVar("T")

RetryCallback = Callable[[BaseException, int, float], None]

logger = get_logger(__name__)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: RetryCallback | None = None,
    rng: random.Random | None = None,
) -> tuple[T, int]:
    """Call ``fn`` until it succeeds or the policy gives up.

    Args:
        fn: Zero-argument callable to run.
        policy: Decides which failures are retried and how long to wait.
        sleep: Sleep function taking seconds; tests pass a no-op.
        on_retry: Called with (error, failed_attempt, delay_ms) before
            each wait.
        rng: Random source for jitter.

    Returns:
        A tuple of (result, attempts used).

    Raises:
        The last exception raised by ``fn`` once no retry is allowed.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn(), attempt
        except Exception as e:
            if not policy.should_retry(e, attempt):
                raise
            delay_ms = policy.delay_for(attempt, rng)
            logger.debug(
                "retrying_call",
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_ms=delay_ms,
                error=str(e),
            )
            if on_retry is not None:
                on_retry(e, attempt, delay_ms)
            if delay_ms > 0:
                sleep(delay_ms / 1000.0)
