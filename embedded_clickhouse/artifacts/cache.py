"""On-disk cache of installed ClickHouse distributions.

Layout under the base directory::

    clickhouse-<version>-<platform>/      committed install
        .complete                         JSON marker, written last
    .staging/<dirname>-<random>/          in-progress installs
    .locks/<dirname>.lock                 advisory install locks

Only an install directory carrying a parseable marker is ever used; a
crash at any point of an install leaves either nothing visible or a
marker-less directory that the next installer replaces.
"""

import os
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from ..core.errors import CacheError
from ..core.log import get_logger, log_artifact_event
from ..core.types import CacheEntry
from ..core.value_objects import CacheKey
from ..utils.crypto import random_id
from ..utils.filesystem import atomic_write, ensure_dir, safe_remove
from .locking import InstallLock

logger = get_logger(__name__)

MARKER_NAME = ".complete"
STAGING_DIR = ".staging"
LOCKS_DIR = ".locks"


class InstallSession:
    """Exclusive right to install one cache key.

    Use as a context manager. If the key was committed by someone else while
    we waited for the lock, ``existing`` holds that entry and no staging
    directory is created. Leaving the block without a commit aborts.
    """

    def __init__(self, cache: "ArtifactCache", key: CacheKey, lock: InstallLock) -> None:
        self.cache = cache
        self.key = key
        self.lock = lock
        self.staging_dir: Optional[Path] = None
        self.existing: Optional[CacheEntry] = None
        self.committed = False

    def __enter__(self) -> "InstallSession":
        self.lock.acquire()
        try:
            self.existing = self.cache.lookup(self.key)
            if self.existing is None:
                staging_root = ensure_dir(self.cache.base_dir / STAGING_DIR)
                self.staging_dir = staging_root / f"{self.key.dirname}-{random_id(8)}"
                self.staging_dir.mkdir()
        except BaseException:
            self.lock.release()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        try:
            if not self.committed:
                self.cache.abort(self)
        finally:
            self.lock.release()
        return False


class ArtifactCache:
    """Cache of verified, extracted distributions keyed by version and platform."""

    def __init__(self, base_dir: Path, lock_timeout: float = 600.0) -> None:
        self.base_dir = Path(base_dir)
        self.lock_timeout = lock_timeout

    def install_dir(self, key: CacheKey) -> Path:
        return self.base_dir / key.dirname

    def lookup(self, key: CacheKey) -> Optional[CacheEntry]:
        """Committed entry for ``key``, or None. Takes no locks."""
        return self._read_entry(self.install_dir(key))

    def begin_install(self, key: CacheKey) -> InstallSession:
        lock = InstallLock(
            self.base_dir / LOCKS_DIR / f"{key.dirname}.lock", timeout=self.lock_timeout
        )
        return InstallSession(self, key, lock)

    def commit(
        self,
        session: InstallSession,
        binary_relpath: Path,
        checksum: Optional[str] = None,
        source_url: Optional[str] = None,
    ) -> CacheEntry:
        """Move the staged install into place and write its completion marker."""
        if session.staging_dir is None or session.committed:
            raise CacheError(f"Install session for {session.key} is not active")

        staged_binary = session.staging_dir / binary_relpath
        if not staged_binary.is_file():
            raise CacheError(
                f"Staged install for {session.key} has no binary at {binary_relpath}",
                {"staging_dir": str(session.staging_dir)},
            )

        final_dir = self.install_dir(session.key)
        if final_dir.exists():
            # Marker-less leftover from an interrupted install
            logger.warning("Replacing incomplete cache entry %s", final_dir)
            if not safe_remove(final_dir):
                raise CacheError(f"Cannot remove incomplete cache entry {final_dir}")

        try:
            os.rename(session.staging_dir, final_dir)
        except OSError as e:
            raise CacheError(f"Failed to activate cache entry {final_dir}: {e}") from e
        session.staging_dir = None

        entry = CacheEntry(
            version=session.key.version,
            platform_tag=session.key.platform_tag,
            install_dir=final_dir,
            binary_path=final_dir / binary_relpath,
            checksum=checksum,
            source_url=source_url,
        )
        atomic_write(final_dir / MARKER_NAME, entry.model_dump_json(indent=2))
        session.committed = True
        log_artifact_event(logger, "cache.committed", key=session.key, path=str(final_dir))
        return entry

    def abort(self, session: InstallSession) -> None:
        """Discard the staging directory of an uncommitted session."""
        if session.staging_dir is not None:
            safe_remove(session.staging_dir)
            logger.debug("Aborted install of %s", session.key)
            session.staging_dir = None

    def entries(self) -> List[CacheEntry]:
        """All committed entries, sorted by directory name."""
        if not self.base_dir.is_dir():
            return []
        found = []
        for child in sorted(self.base_dir.iterdir()):
            if child.name.startswith(".") or not child.is_dir():
                continue
            entry = self._read_entry(child)
            if entry is not None:
                found.append(entry)
        return found

    def remove(self, key: CacheKey) -> bool:
        """Delete an entry under its install lock. Returns False if absent."""
        lock = InstallLock(
            self.base_dir / LOCKS_DIR / f"{key.dirname}.lock", timeout=self.lock_timeout
        )
        with lock:
            install_dir = self.install_dir(key)
            if not install_dir.exists():
                return False
            # Marker first, so a half-deleted entry is never trusted
            safe_remove(install_dir / MARKER_NAME)
            return safe_remove(install_dir)

    def _read_entry(self, install_dir: Path) -> Optional[CacheEntry]:
        marker = install_dir / MARKER_NAME
        try:
            entry = CacheEntry.model_validate_json(marker.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as e:
            logger.warning("Ignoring unreadable cache marker %s: %s", marker, e)
            return None
        if not entry.binary_path.is_file():
            logger.warning("Ignoring cache entry %s: binary %s missing", install_dir, entry.binary_path)
            return None
        return entry
