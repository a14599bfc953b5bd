"""Pytest configuration and fixtures for txn_coordinator tests."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Generator

import pytest
from prometheus_client import CollectorRegistry

from txn_coordinator.adapters.outbound import InMemoryCoordinatorLog, InMemoryParticipant
from txn_coordinator.infrastructure.config import Config, LogConfig, RetryConfig
from txn_coordinator.infrastructure.metrics import MetricsRegistry


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_config(temp_dir: Path) -> Config:
    """Provide a test configuration with an in-memory log and no retry delays."""
    return Config(
        log=LogConfig(log_dir=temp_dir / "log", sync_mode="none", in_memory=True),
        retry=RetryConfig(max_attempts=3, base_delay_ms=0, max_delay_ms=0),
    )


@pytest.fixture
def metrics_registry() -> MetricsRegistry:
    """Provide a fresh metrics registry for each test."""
    # Use a separate registry to avoid conflicts between tests
    registry = CollectorRegistry(auto_describe=True)
    return MetricsRegistry(registry=registry)


@pytest.fixture
def memory_log() -> InMemoryCoordinatorLog:
    """Provide an empty in-memory coordinator log."""
    return InMemoryCoordinatorLog()


@pytest.fixture
def participants() -> tuple[InMemoryParticipant, InMemoryParticipant]:
    """Two healthy participants named ledger and minutes."""
    return InMemoryParticipant("ledger"), InMemoryParticipant("minutes")


class FakeClock:
    """Manually advanced clock in epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Provide a manually advanced clock."""
    return FakeClock()


# Markers for test categories
def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "chaos: Chaos/fault injection tests")
    config.addinivalue_line("markers", "slow: Slow tests")
