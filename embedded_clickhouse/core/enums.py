"""Core enumerations.

Separated from types.py to break circular dependencies. This module contains
only enum definitions with no dependencies on other core modules.
"""

from enum import Enum


class AssetType(Enum):
    """Shape of a published ClickHouse release asset."""

    ARCHIVE = "archive"  # .tgz (Linux)
    RAW_BINARY = "raw_binary"  # bare executable (macOS)


class LifecycleState(Enum):
    """Lifecycle state of a running ClickHouse instance."""

    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (LifecycleState.STOPPED, LifecycleState.FAILED)


ALLOWED_TRANSITIONS = {
    LifecycleState.STARTING: {LifecycleState.READY, LifecycleState.FAILED},
    LifecycleState.READY: {LifecycleState.STOPPING, LifecycleState.FAILED},
    LifecycleState.STOPPING: {LifecycleState.STOPPED, LifecycleState.FAILED},
    LifecycleState.STOPPED: set(),
    LifecycleState.FAILED: set(),
}


class LockState(Enum):
    """State of a cross-process install lock."""

    UNLOCKED = "unlocked"
    LOCKED = "locked"
