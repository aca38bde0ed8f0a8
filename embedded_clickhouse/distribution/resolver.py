"""Map a requested version onto concrete download instructions."""

import threading
from typing import Dict, List, Optional
from urllib.parse import urlparse

import requests

from ..artifacts.downloader import user_agent
from ..core.errors import UnresolvableVersionError
from ..core.log import get_logger
from ..core.types import DownloadDescriptor
from ..core.value_objects import KNOWN_VERSIONS, ClickHouseVersion, Platform
from .platform import (
    asset_type_for_url,
    checksum_url,
    detect_platform,
    download_url,
    resolve_asset,
)

logger = get_logger(__name__)

DEFAULT_INDEX_URL = "https://api.github.com/repos/ClickHouse/ClickHouse/releases"
_RELEASE_CHANNELS = ("stable", "lts")

# "latest" is pinned once per index URL for the rest of the process
_latest_cache: Dict[str, ClickHouseVersion] = {}
_latest_lock = threading.Lock()


def clear_latest_cache() -> None:
    with _latest_lock:
        _latest_cache.clear()


class VersionResolver:
    """Resolve exact versions, ``latest`` and explicit URLs.

    Built-in versions resolve without touching the network. Anything else
    is looked up in the remote release index when ``remote_index`` is on.
    """

    def __init__(
        self,
        repository_url: Optional[str] = None,
        index_url: str = DEFAULT_INDEX_URL,
        remote_index: bool = True,
        checksum: Optional[str] = None,
        platform: Optional[Platform] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ) -> None:
        self.repository_url = repository_url
        self.index_url = index_url
        self.remote_index = remote_index
        self.checksum = checksum
        self._platform = platform
        self._session = session
        self.timeout = timeout

    @property
    def platform(self) -> Platform:
        if self._platform is None:
            self._platform = detect_platform()
        return self._platform

    def resolve(self, version: ClickHouseVersion) -> DownloadDescriptor:
        """Resolve ``version`` into a DownloadDescriptor.

        Raises:
            UnresolvableVersionError: Version absent from the distribution index.
            UnsupportedPlatformError: No build published for this host.
        """
        if version.is_url:
            return self._resolve_url(version)

        if version.is_latest:
            version = self.resolve_latest()
        elif version not in KNOWN_VERSIONS:
            self._require_in_remote_index(version)

        filename, asset_type = resolve_asset(version, self.platform)
        url = download_url(self.repository_url, version, filename)
        descriptor = DownloadDescriptor(
            version=version.value,
            url=url,
            filename=filename,
            asset_type=asset_type,
            platform_tag=self.platform.tag,
            expected_checksum=self.checksum,
            checksum_url=None if self.checksum else checksum_url(url),
        )
        logger.debug("Resolved %s to %s", version, url)
        return descriptor

    def _resolve_url(self, version: ClickHouseVersion) -> DownloadDescriptor:
        path = urlparse(version.value).path
        filename = path.rstrip("/").rsplit("/", 1)[-1] or "clickhouse"
        return DownloadDescriptor(
            version=version.value,
            url=version.value,
            filename=filename,
            asset_type=asset_type_for_url(version.value),
            platform_tag=self.platform.tag,
            expected_checksum=self.checksum,
        )

    def resolve_latest(self) -> ClickHouseVersion:
        """Newest stable or LTS release, pinned for the rest of the process."""
        with _latest_lock:
            cached = _latest_cache.get(self.index_url)
            if cached is not None:
                return cached

            if not self.remote_index:
                raise UnresolvableVersionError(
                    ClickHouseVersion.LATEST, {"reason": "remote index disabled"}
                )
            candidates = [
                v for v in self.list_remote_versions() if v.channel() in _RELEASE_CHANNELS
            ]
            if not candidates:
                raise UnresolvableVersionError(
                    ClickHouseVersion.LATEST, {"index_url": self.index_url}
                )
            latest = max(candidates, key=lambda v: v.sort_key())
            _latest_cache[self.index_url] = latest
            logger.info("Resolved latest ClickHouse release to %s", latest)
            return latest

    def _require_in_remote_index(self, version: ClickHouseVersion) -> None:
        if not self.remote_index:
            raise UnresolvableVersionError(
                version.value, {"reason": "not a built-in version and remote index disabled"}
            )
        if not self.release_exists(version):
            raise UnresolvableVersionError(version.value, {"index_url": self.index_url})

    def _headers(self) -> Dict[str, str]:
        return {"Accept": "application/vnd.github+json", "User-Agent": user_agent()}

    def release_exists(self, version: ClickHouseVersion) -> bool:
        """Whether ``version`` is a published release, looked up by its tag.

        The release listing is paginated and newest first, so exact versions
        are checked directly instead of being searched for.
        """
        url = f"{self.index_url.rstrip('/')}/tags/v{version.value}"
        session = self._session or requests.Session()
        try:
            response = session.get(url, headers=self._headers(), timeout=self.timeout)
            if response.status_code == 404:
                return False
            response.raise_for_status()
        except requests.RequestException as e:
            raise UnresolvableVersionError(
                version.value, {"index_url": url, "error": str(e)}
            ) from e
        finally:
            if self._session is None:
                session.close()
        return True

    def list_remote_versions(self, requested: str = ClickHouseVersion.LATEST) -> List[ClickHouseVersion]:
        """Newest published releases (the first page of the index)."""
        session = self._session or requests.Session()
        try:
            response = session.get(
                self.index_url,
                params={"per_page": 100},
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
            releases = response.json()
        except (requests.RequestException, ValueError) as e:
            raise UnresolvableVersionError(
                requested, {"index_url": self.index_url, "error": str(e)}
            ) from e
        finally:
            if self._session is None:
                session.close()

        versions = []
        for release in releases:
            if not isinstance(release, dict) or release.get("draft"):
                continue
            tag = str(release.get("tag_name") or "")
            if tag.startswith("v") and len(tag) > 1:
                versions.append(ClickHouseVersion(tag[1:]))
        return versions

    @staticmethod
    def known_versions() -> List[ClickHouseVersion]:
        return list(KNOWN_VERSIONS)
