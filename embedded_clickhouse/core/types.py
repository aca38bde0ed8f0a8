"""Core type definitions."""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .enums import AssetType, LifecycleState
from .value_objects import ClickHouseVersion

__all__ = [
    "AssetType",
    "LifecycleState",
    "TimeoutConfig",
    "RetryPolicy",
    "EmbeddedClickHouseConfig",
    "DownloadDescriptor",
    "CacheEntry",
    "ServerConfig",
    "HealthStatus",
    "ProcessStats",
]


def _setting_value(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


class TimeoutConfig(BaseModel):
    """Centralized timeout configuration (seconds)."""

    start: float = 30.0
    stop: float = 10.0
    download: float = 600.0
    connect: float = 30.0
    probe: float = 2.0
    install_lock: float = 600.0
    launch_grace_period: float = 0.2
    poll_interval: float = 0.05
    force_kill: float = 5.0

    @model_validator(mode="after")
    def validate_positive(self) -> "TimeoutConfig":
        from .errors import ConfigurationError

        for name, value in self:
            if value <= 0:
                raise ConfigurationError(f"Timeout '{name}' must be positive, got {value}")
        return self


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for transient download failures."""

    attempts: int = 3
    initial_backoff: float = 0.5
    backoff_factor: float = 2.0
    max_backoff: float = 8.0

    @model_validator(mode="after")
    def validate_policy(self) -> "RetryPolicy":
        from .errors import ConfigurationError

        if self.attempts < 1:
            raise ConfigurationError("Retry attempts must be at least 1")
        if self.initial_backoff < 0 or self.max_backoff < 0:
            raise ConfigurationError("Retry backoff must not be negative")
        if self.backoff_factor < 1:
            raise ConfigurationError("Retry backoff factor must be >= 1")
        return self

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = self.initial_backoff * (self.backoff_factor ** (attempt - 1))
        return min(delay, self.max_backoff)


class EmbeddedClickHouseConfig(BaseModel):
    """Main configuration for one embedded ClickHouse instance."""

    version: str = ClickHouseVersion.DEFAULT.value
    host: str = "127.0.0.1"

    # 0 means "allocate a free port"
    tcp_port: int = 0
    http_port: int = 0
    interserver_port: int = 0

    cache_dir: Optional[Path] = None
    work_dir: Optional[Path] = None
    binary_path: Optional[Path] = None
    repository_url: Optional[str] = None
    checksum: Optional[str] = None
    remote_index: bool = True
    index_url: str = "https://api.github.com/repos/ClickHouse/ClickHouse/releases"

    settings: Dict[str, str] = Field(default_factory=dict)
    keep_data_dir: bool = False
    port_conflict_retries: int = 3

    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    log_level: str = "INFO"

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, value: Any) -> Any:
        # "25.8" from an env var or YAML arrives as a float
        return str(value) if isinstance(value, (int, float)) else value

    @field_validator("settings", mode="before")
    @classmethod
    def coerce_settings(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): _setting_value(v) for k, v in value.items()}
        return value

    @model_validator(mode="after")
    def validate_config(self) -> "EmbeddedClickHouseConfig":
        """Validate configuration - no side effects."""
        from .errors import ConfigurationError

        try:
            ClickHouseVersion(self.version)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        for name in ("tcp_port", "http_port", "interserver_port"):
            port = getattr(self, name)
            if not 0 <= port <= 65535:
                raise ConfigurationError(f"{name} must be between 0 and 65535, got {port}")

        fixed = [p for p in (self.tcp_port, self.http_port, self.interserver_port) if p]
        if len(fixed) != len(set(fixed)):
            raise ConfigurationError(f"Fixed ports must be distinct, got {fixed}")

        if self.port_conflict_retries < 1:
            raise ConfigurationError("port_conflict_retries must be at least 1")

        return self

    @property
    def clickhouse_version(self) -> ClickHouseVersion:
        return ClickHouseVersion(self.version)


class DownloadDescriptor(BaseModel):
    """Concrete download instructions for one version on one platform."""

    version: str
    url: str
    filename: str
    asset_type: AssetType = AssetType.ARCHIVE
    platform_tag: str
    expected_checksum: Optional[str] = None
    checksum_url: Optional[str] = None
    checksum_algorithm: str = "sha512"


class CacheEntry(BaseModel):
    """A committed cache entry; serialized as the completion marker."""

    version: str
    platform_tag: str
    install_dir: Path
    binary_path: Path
    checksum: Optional[str] = None
    source_url: Optional[str] = None
    installed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ServerConfig(BaseModel):
    """Generated per-instance server configuration."""

    data_dir: Path
    tcp_port: int
    http_port: int
    interserver_port: int
    log_file: Path
    host: str = "127.0.0.1"
    settings: Dict[str, str] = Field(default_factory=dict)


class HealthStatus(BaseModel):
    """Result of a single readiness probe."""

    is_healthy: bool
    response_time: float
    error_message: Optional[str] = None


class ProcessStats(BaseModel):
    """Process statistics."""

    pid: int
    memory_rss: int
    memory_vms: int
    cpu_percent: float
    num_threads: int
    status: str
