"""Configuration management for the transaction coordinator."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CoordinatorConfig(BaseModel):
    """Transaction coordinator configuration."""

    max_concurrent_transactions: int = Field(
        default=100, ge=1, le=100000, description="Max in-flight transactions"
    )
    default_timeout_ms: int = Field(
        default=30000, ge=1, description="Default transaction timeout in milliseconds"
    )
    default_isolation_level: Literal[
        "READ_UNCOMMITTED", "READ_COMMITTED", "REPEATABLE_READ", "SERIALIZABLE"
    ] = Field(default="READ_COMMITTED", description="Default isolation level")
    lock_timeout_ms: int = Field(
        default=5000, ge=1, description="Optimistic lock lifetime in milliseconds"
    )
    deadlock_detection: bool = Field(default=True, description="Enable deadlock detection")
    deadlock_resolution: Literal["ABORT_YOUNGEST", "ABORT_OLDEST", "ABORT_RANDOM"] = Field(
        default="ABORT_YOUNGEST", description="Victim selection strategy"
    )
    maintenance_interval_ms: int = Field(
        default=1000, ge=10, description="Background maintenance sweep interval"
    )
    shutdown_grace_ms: int = Field(
        default=5000, ge=0, description="How long stop() waits for active transactions"
    )
    retention_ms: int = Field(
        default=3600000, ge=0, description="How long finished transactions stay queryable"
    )


class RetryConfig(BaseModel):
    """Retry policy defaults."""

    max_attempts: int = Field(default=3, ge=1, le=100, description="Max attempts per call")
    base_delay_ms: int = Field(default=1000, ge=0, description="Initial backoff delay")
    max_delay_ms: int = Field(default=10000, ge=0, description="Backoff ceiling")
    multiplier: float = Field(default=2.0, ge=1.0, description="Exponential backoff factor")
    jitter_ms: int = Field(default=0, ge=0, description="Random jitter range")


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker configuration."""

    enabled: bool = Field(default=True, description="Enable circuit breakers")
    failure_threshold: int = Field(default=5, ge=1, description="Failures before opening")
    recovery_timeout_ms: int = Field(
        default=60000, ge=0, description="Time spent open before half-open probe"
    )
    half_open_max_calls: int = Field(
        default=1, ge=1, description="Concurrent probes allowed while half-open"
    )


class LogConfig(BaseModel):
    """Coordinator log configuration."""

    log_dir: Path = Field(default=Path("data/coordinator"), description="Log directory")
    sync_mode: Literal["fsync", "none"] = Field(default="fsync", description="Log sync mode")
    in_memory: bool = Field(default=False, description="Keep the log in memory only")


class MonitoringConfig(BaseModel):
    """Transaction monitor thresholds."""

    window_ms: int = Field(default=60000, ge=1000, description="Metrics window")
    max_duration_ms: int = Field(default=10000, ge=1, description="Slow transaction threshold")
    max_error_rate: float = Field(default=0.1, ge=0.0, le=1.0, description="Error rate alert")
    max_concurrent_transactions: int = Field(
        default=80, ge=1, description="Concurrency alert threshold"
    )
    max_deadlocks_per_window: int = Field(default=5, ge=0, description="Deadlock alert")
    max_events: int = Field(default=10000, ge=100, description="Retained monitor events")


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, ge=1, le=65535, description="Server port")
    metrics_port: int = Field(default=8001, ge=1, le=65535, description="Prometheus metrics port")


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Log level"
    )
    log_format: Literal["json", "console"] = Field(default="json", description="Log format")
    otel_endpoint: str | None = Field(
        default=None, description="OpenTelemetry collector endpoint"
    )
    otel_service_name: str = Field(
        default="txn_coordinator", description="Service name for tracing"
    )


class Config(BaseSettings):
    """Main configuration for the transaction coordinator."""

    model_config = SettingsConfigDict(
        env_prefix="TXN_COORDINATOR_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    log: LogConfig = Field(default_factory=LogConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    def ensure_directories(self) -> None:
        """Ensure the coordinator log directory exists."""
        if not self.log.in_memory:
            self.log.log_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def production(cls) -> Config:
        """Preset for production: large limits, durable log, JSON logs."""
        return cls(
            coordinator=CoordinatorConfig(
                max_concurrent_transactions=1000,
                default_timeout_ms=60000,
                deadlock_detection=True,
            ),
            retry=RetryConfig(max_attempts=5, base_delay_ms=1000, max_delay_ms=30000),
            circuit_breaker=CircuitBreakerConfig(failure_threshold=10, recovery_timeout_ms=60000),
            monitoring=MonitoringConfig(max_duration_ms=30000, max_error_rate=0.05),
        )

    @classmethod
    def development(cls) -> Config:
        """Preset for local development: in-memory log, console output."""
        return cls(
            coordinator=CoordinatorConfig(max_concurrent_transactions=50, default_timeout_ms=30000),
            retry=RetryConfig(max_attempts=3, base_delay_ms=500),
            circuit_breaker=CircuitBreakerConfig(failure_threshold=5, recovery_timeout_ms=30000),
            log=LogConfig(in_memory=True),
            observability=ObservabilityConfig(log_level="DEBUG", log_format="console"),
        )

    @classmethod
    def testing(cls) -> Config:
        """Preset for tests: no sleeping, in-memory log, breakers off."""
        return cls(
            coordinator=CoordinatorConfig(
                max_concurrent_transactions=10,
                default_timeout_ms=5000,
                lock_timeout_ms=1000,
                shutdown_grace_ms=0,
            ),
            retry=RetryConfig(max_attempts=1, base_delay_ms=0, max_delay_ms=0),
            circuit_breaker=CircuitBreakerConfig(enabled=False),
            log=LogConfig(in_memory=True, sync_mode="none"),
            monitoring=MonitoringConfig(max_duration_ms=5000, max_error_rate=0.5),
        )


@lru_cache
def get_config() -> Config:
    """Get the global configuration instance."""
    config = Config()
    config.ensure_directories()
    return config
