"""
embedded-clickhouse: disposable ClickHouse servers for tests

Downloads and caches official ClickHouse builds, starts a server on free
ports with a throwaway data directory, waits until it answers, and tears
everything down again. Usable from plain Python, as a pytest plugin or
from the command line.
"""

__version__ = "1.0.0"

from .core.enums import LifecycleState
from .core.errors import (
    ConfigurationError,
    EmbeddedClickHouseError,
    FetchError,
    IntegrityError,
    LaunchError,
    ProcessExitedError,
    ReadinessTimeoutError,
    ShutdownError,
    UnresolvableVersionError,
    UnsupportedPlatformError,
)
from .core.types import EmbeddedClickHouseConfig, RetryPolicy, TimeoutConfig
from .core.value_objects import ClickHouseVersion
from .instances import EmbeddedClickHouse, RunningInstance, start, stop, stop_all

__all__ = [
    "__version__",
    "ClickHouseVersion",
    "EmbeddedClickHouse",
    "EmbeddedClickHouseConfig",
    "LifecycleState",
    "RetryPolicy",
    "RunningInstance",
    "TimeoutConfig",
    "start",
    "stop",
    "stop_all",
    "ConfigurationError",
    "EmbeddedClickHouseError",
    "FetchError",
    "IntegrityError",
    "LaunchError",
    "ProcessExitedError",
    "ReadinessTimeoutError",
    "ShutdownError",
    "UnresolvableVersionError",
    "UnsupportedPlatformError",
]
