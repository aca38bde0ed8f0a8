"""Host platform detection and release asset naming."""

import platform as _platform
import sys
from typing import Optional, Tuple

from ..core.enums import AssetType
from ..core.errors import UnsupportedPlatformError
from ..core.value_objects import ClickHouseVersion, Platform

DEFAULT_BASE_URL = "https://github.com/ClickHouse/ClickHouse/releases/download"

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}

_DARWIN_ASSETS = {
    "amd64": "clickhouse-macos",
    "arm64": "clickhouse-macos-aarch64",
}


def normalize_os(name: str) -> str:
    name = name.lower()
    if name.startswith("linux"):
        return "linux"
    if name.startswith("darwin") or name.startswith("mac"):
        return "darwin"
    if name.startswith("win"):
        return "windows"
    return name


def normalize_arch(machine: str) -> str:
    return _ARCH_ALIASES.get(machine.lower(), machine.lower())


def detect_platform(os_name: Optional[str] = None, machine: Optional[str] = None) -> Platform:
    """Detect the host platform, raising UnsupportedPlatformError if no build exists for it."""
    os_name = normalize_os(os_name if os_name is not None else sys.platform)
    arch = normalize_arch(machine if machine is not None else _platform.machine())
    if os_name not in ("linux", "darwin") or arch not in ("amd64", "arm64"):
        raise UnsupportedPlatformError(os_name, arch)
    return Platform(os=os_name, arch=arch)


def resolve_asset(version: ClickHouseVersion, platform: Platform) -> Tuple[str, AssetType]:
    """Release asset filename and shape for ``version`` on ``platform``."""
    if platform.os == "linux":
        if platform.arch not in ("amd64", "arm64"):
            raise UnsupportedPlatformError(platform.os, platform.arch)
        filename = f"clickhouse-common-static-{version.numeric_version()}-{platform.arch}.tgz"
        return filename, AssetType.ARCHIVE
    if platform.os == "darwin":
        try:
            return _DARWIN_ASSETS[platform.arch], AssetType.RAW_BINARY
        except KeyError:
            raise UnsupportedPlatformError(platform.os, platform.arch) from None
    raise UnsupportedPlatformError(platform.os, platform.arch)


def download_url(base_url: Optional[str], version: ClickHouseVersion, filename: str) -> str:
    base = (base_url or DEFAULT_BASE_URL).rstrip("/")
    return f"{base}/v{version}/{filename}"


def checksum_url(url: str) -> str:
    return f"{url}.sha512"


def asset_type_for_url(url: str) -> AssetType:
    path = url.split("?", 1)[0].lower()
    if path.endswith((".tgz", ".tar.gz")):
        return AssetType.ARCHIVE
    return AssetType.RAW_BINARY
