"""Error hierarchy for the embedded ClickHouse lifecycle manager."""

from typing import Optional, Dict, Any


class EmbeddedClickHouseError(Exception):
    """Base exception for all embedded ClickHouse errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def add_context(self, **context: Any) -> "EmbeddedClickHouseError":
        """Attach diagnostic context without overwriting existing keys."""
        for key, value in context.items():
            if value is not None:
                self.details.setdefault(key, value)
        return self

    def __str__(self) -> str:
        if not self.details:
            return self.message
        context = ", ".join(f"{k}={v}" for k, v in sorted(self.details.items()))
        return f"{self.message} [{context}]"


# Configuration and Setup Errors
class ConfigurationError(EmbeddedClickHouseError):
    """Error in configuration."""


class InvalidSettingKeyError(ConfigurationError):
    """Server setting key is not a valid XML element name or shadows a generated key."""

    def __init__(self, key: str, reason: str = "must match [a-zA-Z][a-zA-Z0-9_]*") -> None:
        super().__init__(f'Invalid setting key "{key}" ({reason})', {"key": key})
        self.key = key


class UnsupportedPlatformError(EmbeddedClickHouseError):
    """No ClickHouse build is published for this OS/architecture."""

    def __init__(self, os_name: str, arch: str) -> None:
        super().__init__(
            f"Unsupported platform: {os_name}/{arch}", {"os": os_name, "arch": arch}
        )
        self.os_name = os_name
        self.arch = arch


# Version Resolution Errors
class UnresolvableVersionError(EmbeddedClickHouseError):
    """Requested version is not present in the distribution index."""

    def __init__(self, version: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"Cannot resolve ClickHouse version {version!r}", details)
        self.details.setdefault("version", version)
        self.version = version


# Download Errors
class FetchError(EmbeddedClickHouseError):
    """Base class for download failures."""

    def __init__(self, message: str, url: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.url = url
        if url:
            self.details.setdefault("url", url)


class TransientFetchError(FetchError):
    """Download failure that may succeed when retried (reset, timeout, 5xx)."""


class PermanentFetchError(FetchError):
    """Download failure that will not succeed when retried (404 and friends)."""

    def __init__(self, message: str, url: Optional[str] = None,
                 status_code: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, url, details)
        self.status_code = status_code
        if status_code is not None:
            self.details.setdefault("status_code", status_code)


class IntegrityError(FetchError):
    """Downloaded bytes do not match the expected checksum."""

    def __init__(self, message: str, url: Optional[str] = None,
                 expected: Optional[str] = None, actual: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, url, details)
        self.expected = expected
        self.actual = actual


# Archive Errors
class ArchiveError(EmbeddedClickHouseError):
    """Archive is malformed or contains unsafe entries."""


class BinaryNotFoundError(ArchiveError):
    """Archive does not contain the server binary."""


# Cache Errors
class CacheError(EmbeddedClickHouseError):
    """Artifact cache operation failed."""


class InstallLockTimeoutError(CacheError):
    """Timed out waiting for another installer of the same cache key."""

    def __init__(self, message: str, timeout: float,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.timeout = timeout


# Network Errors
class PortAllocationError(EmbeddedClickHouseError):
    """No free local port could be allocated."""


# Process Errors
class ProcessError(EmbeddedClickHouseError):
    """Base class for process-related errors."""


class LaunchError(ProcessError):
    """Server binary could not be launched or exited immediately."""

    def __init__(self, message: str, exit_code: Optional[int] = None,
                 output: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.exit_code = exit_code
        self.output = output


class PortConflictError(LaunchError):
    """Server could not bind an allocated port; retry with fresh ports."""


class ProcessExitedError(ProcessError):
    """Server process exited while waiting for it to become ready."""

    def __init__(self, message: str, exit_code: Optional[int] = None,
                 output: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.exit_code = exit_code
        self.output = output


class ShutdownError(ProcessError):
    """Server process could not be reaped; a child process has leaked."""


class ReadinessTimeoutError(EmbeddedClickHouseError):
    """Server did not become ready within the timeout."""

    def __init__(self, message: str, timeout: float,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.timeout = timeout


# Lifecycle Errors
class InstanceStateError(EmbeddedClickHouseError):
    """Illegal lifecycle state transition."""


# Filesystem and IO Errors
class FilesystemError(EmbeddedClickHouseError):
    """Filesystem operation error."""


class AtomicWriteError(FilesystemError):
    """Atomic write operation failed."""
