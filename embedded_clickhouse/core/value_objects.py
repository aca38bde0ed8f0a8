"""Domain primitives for versions, platforms and cache keys."""

import hashlib
import re
from dataclasses import dataclass
from typing import ClassVar

_RELEASE_SUFFIXES = ("lts", "stable", "testing")
_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True)
class ClickHouseVersion:
    """Requested ClickHouse build: an exact version, ``latest`` or an archive URL.

    Hashable for use as dictionary key.
    """

    value: str

    LATEST: ClassVar[str] = "latest"

    def __post_init__(self) -> None:
        if not self.value or not self.value.strip():
            raise ValueError("ClickHouseVersion cannot be empty")
        if self.value != self.value.strip():
            raise ValueError(f"ClickHouseVersion has surrounding whitespace: {self.value!r}")

    def __str__(self) -> str:
        return self.value

    @property
    def is_latest(self) -> bool:
        return self.value.lower() == self.LATEST

    @property
    def is_url(self) -> bool:
        return self.value.startswith(("http://", "https://"))

    def numeric_version(self) -> str:
        """Return the version without its release channel suffix.

        "25.8.16.34-lts" -> "25.8.16.34"
        """
        head, sep, suffix = self.value.rpartition("-")
        if sep and suffix in _RELEASE_SUFFIXES:
            return head
        return self.value

    def channel(self) -> str:
        """Release channel suffix, or an empty string."""
        _, sep, suffix = self.value.rpartition("-")
        return suffix if sep and suffix in _RELEASE_SUFFIXES else ""

    def sort_key(self) -> tuple:
        """Numeric ordering key; non-numeric components sort first."""
        parts = []
        for component in self.numeric_version().split("."):
            parts.append(int(component) if component.isdigit() else -1)
        return tuple(parts)


ClickHouseVersion.V26_1 = ClickHouseVersion("26.1.3.52-stable")
ClickHouseVersion.V25_8 = ClickHouseVersion("25.8.16.34-lts")
ClickHouseVersion.V25_3 = ClickHouseVersion("25.3.14.14-lts")
ClickHouseVersion.DEFAULT = ClickHouseVersion.V25_8

KNOWN_VERSIONS = (
    ClickHouseVersion.V26_1,
    ClickHouseVersion.V25_8,
    ClickHouseVersion.V25_3,
)


@dataclass(frozen=True)
class Platform:
    """Normalized host platform (``linux``/``darwin`` x ``amd64``/``arm64``)."""

    os: str
    arch: str

    @property
    def tag(self) -> str:
        return f"{self.os}-{self.arch}"

    def __str__(self) -> str:
        return self.tag


@dataclass(frozen=True)
class CacheKey:
    """Identity of a cached distribution: version plus platform tag."""

    version: str
    platform_tag: str

    @classmethod
    def for_version(cls, version: ClickHouseVersion, platform_tag: str) -> "CacheKey":
        if version.is_url:
            digest = hashlib.sha256(version.value.encode("utf-8")).hexdigest()[:16]
            return cls(version=f"url-{digest}", platform_tag=platform_tag)
        return cls(version=version.value, platform_tag=platform_tag)

    @property
    def dirname(self) -> str:
        safe_version = _UNSAFE_PATH_CHARS.sub("_", self.version)
        return f"clickhouse-{safe_version}-{self.platform_tag}"

    def __str__(self) -> str:
        return f"{self.version}/{self.platform_tag}"


@dataclass(frozen=True)
class InstanceId:
    """Validated instance identifier."""

    value: str

    def __post_init__(self) -> None:
        if not self.value or not self.value.strip():
            raise ValueError("InstanceId cannot be empty")
        normalized = self.value.replace("_", "").replace("-", "")
        if not normalized.isalnum():
            raise ValueError(f"InstanceId must be alphanumeric with _ or -: {self.value}")

    def __str__(self) -> str:
        return self.value
