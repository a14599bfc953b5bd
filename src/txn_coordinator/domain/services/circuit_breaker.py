"""Circuit breaker for participant and domain calls.

State machine:

    CLOSED ──failures >= threshold──> OPEN ──recovery timeout──> HALF_OPEN
       ^                                ^                            │
       └───────────── success ──────────┼──────── failure ───────────┘

While OPEN, calls are rejected with CircuitOpenError without reaching
the wrapped callable. The first call after ``recovery_timeout_ms``
moves the breaker to HALF_OPEN and is let through as a probe; at most
``half_open_max_calls`` probes run at once. A successful probe closes
the circuit and resets the failure count; a failed one re-opens it.

References:
    - Nygard, "Release It!" (2007), Circuit Breaker pattern
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from txn_coordinator.domain.errors import CircuitOpenError
from txn_coordinator.domain.value_objects import CircuitState
from txn_coordinator.infrastructure.logging import get_logger
from txn_coordinator.infrastructure.metrics import MetricsRegistry

T = TypeVar("T")

StateChangeCallback = Callable[[str, CircuitState, CircuitState], None]

logger = get_logger(__name__)


@dataclass
class CircuitBreakerMetrics:
    """Snapshot of a breaker's counters."""

    name: str
    state: CircuitState
    failures: int
    successes: int
    rejected: int
    total_calls: int
    last_failure_time: float | None
    next_attempt_time: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failures": self.failures,
            "successes": self.successes,
            "rejected": self.rejected,
            "total_calls": self.total_calls,
            "last_failure_time": self.last_failure_time,
            "next_attempt_time": self.next_attempt_time,
        }


class CircuitBreaker:
    """Three-state circuit breaker.

    Thread Safety:
        State transitions are guarded by an internal lock. The wrapped
        callable runs outside it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout_ms: int = 60000,
        half_open_max_calls: int = 1,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        """Initialize the breaker.

        Args:
            name: Name used in errors, logs and metrics.
            failure_threshold: Consecutive failures that open the circuit.
            recovery_timeout_ms: Time the circuit stays open before a probe.
            half_open_max_calls: Concurrent probes allowed while half-open.
            enabled: When False, every call passes straight through.
            clock: Time source in epoch seconds.
            on_state_change: Called with (name, old_state, new_state).
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")

        self._name = name
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout_ms / 1000.0
        self._half_open_max_calls = half_open_max_calls
        self._enabled = enabled
        self._clock = clock
        self._on_state_change = on_state_change

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._rejected = 0
        self._total_calls = 0
        self._half_open_in_flight = 0
        self._last_failure_time: float | None = None
        self._next_attempt_time: float | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        """Current state, after applying any due OPEN to HALF_OPEN move."""
        with self._lock:
            changed = self._maybe_half_open(self._clock())
        self._notify(changed)
        return self._state

    @property
    def enabled(self) -> bool:
        return self._enabled

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open (or half-open with all
                probe slots taken).
            Whatever ``fn`` raises; the failure is recorded first.
        """
        if not self._enabled:
            return fn(*args, **kwargs)

        self._before_call()
        try:
            result = fn(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def _before_call(self) -> None:
        with self._lock:
            now = self._clock()
            changed = self._maybe_half_open(now)
            self._total_calls += 1

            if self._state == CircuitState.OPEN:
                self._rejected += 1
                rejected = True
            elif self._state == CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self._half_open_max_calls:
                    self._rejected += 1
                    rejected = True
                else:
                    self._half_open_in_flight += 1
                    rejected = False
            else:
                rejected = False

        self._notify(changed)
        if rejected:
            raise CircuitOpenError(self._name)

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            self._successes += 1
            self._failures = 0
            changed = None
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
                changed = self._transition(CircuitState.CLOSED)
                self._next_attempt_time = None
        self._notify(changed)

    def record_failure(self) -> None:
        """Record a failed call; may open the circuit."""
        with self._lock:
            now = self._clock()
            self._failures += 1
            self._last_failure_time = now
            changed = None
            if self._state == CircuitState.HALF_OPEN:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
                changed = self._open(now)
            elif self._state == CircuitState.CLOSED and self._failures >= self._failure_threshold:
                changed = self._open(now)
        self._notify(changed)

    def reset(self) -> None:
        """Force the circuit closed and clear counters."""
        with self._lock:
            changed = self._transition(CircuitState.CLOSED)
            self._failures = 0
            self._half_open_in_flight = 0
            self._next_attempt_time = None
        self._notify(changed)

    def get_metrics(self) -> CircuitBreakerMetrics:
        with self._lock:
            changed = self._maybe_half_open(self._clock())
            snapshot = CircuitBreakerMetrics(
                name=self._name,
                state=self._state,
                failures=self._failures,
                successes=self._successes,
                rejected=self._rejected,
                total_calls=self._total_calls,
                last_failure_time=self._last_failure_time,
                next_attempt_time=self._next_attempt_time,
            )
        self._notify(changed)
        return snapshot

    # Callers hold self._lock for the helpers below. Each returns the
    # (old, new) pair when the state changed, for _notify outside the lock.

    def _maybe_half_open(self, now: float) -> tuple[CircuitState, CircuitState] | None:
        if (
            self._state == CircuitState.OPEN
            and self._next_attempt_time is not None
            and now >= self._next_attempt_time
        ):
            self._half_open_in_flight = 0
            return self._transition(CircuitState.HALF_OPEN)
        return None

    def _open(self, now: float) -> tuple[CircuitState, CircuitState] | None:
        self._next_attempt_time = now + self._recovery_timeout
        return self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> tuple[CircuitState, CircuitState] | None:
        old_state = self._state
        if old_state == new_state:
            return None
        self._state = new_state
        return (old_state, new_state)

    def _notify(self, changed: tuple[CircuitState, CircuitState] | None) -> None:
        if changed is None:
            return
        old_state, new_state = changed
        logger.info(
            "circuit_state_changed",
            circuit=self._name,
            old_state=old_state.value,
            new_state=new_state.value,
            failures=self._failures,
        )
        if self._on_state_change is not None:
            self._on_state_change(self._name, old_state, new_state)


class CircuitBreakerRegistry:
    """One circuit breaker per downstream name, created on first use."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout_ms: int = 60000,
        half_open_max_calls: int = 1,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
        metrics: MetricsRegistry | None = None,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._recovery_timeout_ms = recovery_timeout_ms
        self._half_open_max_calls = half_open_max_calls
        self._enabled = enabled
        self._clock = clock
        self._metrics = metrics
        self._listeners: list[StateChangeCallback] = []
        if on_state_change is not None:
            self._listeners.append(on_state_change)

        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def add_listener(self, callback: StateChangeCallback) -> None:
        """Subscribe to state changes of every breaker."""
        self._listeners.append(callback)

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    failure_threshold=self._failure_threshold,
                    recovery_timeout_ms=self._recovery_timeout_ms,
                    half_open_max_calls=self._half_open_max_calls,
                    enabled=self._enabled,
                    clock=self._clock,
                    on_state_change=self._state_changed,
                )
                self._breakers[name] = breaker
                if self._metrics is not None:
                    self._metrics.circuit_state.labels(name=name).set(
                        CircuitState.CLOSED.gauge_value
                    )
            return breaker

    def call(self, name: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` through the breaker named ``name``."""
        breaker = self.get(name)
        try:
            return breaker.call(fn, *args, **kwargs)
        except CircuitOpenError:
            if self._metrics is not None:
                self._metrics.circuit_rejections_total.labels(name=name).inc()
            raise

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._breakers)

    def get_all_metrics(self) -> dict[str, CircuitBreakerMetrics]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.get_metrics() for b in breakers}

    def open_circuits(self) -> list[str]:
        """Names of breakers currently open."""
        return [
            name
            for name, m in self.get_all_metrics().items()
            if m.state == CircuitState.OPEN
        ]

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()

    def _state_changed(self, name: str, old: CircuitState, new: CircuitState) -> None:
        if self._metrics is not None:
            self._metrics.circuit_state.labels(name=name).set(new.gauge_value)
        for listener in self._listeners:
            listener(name, old, new)
