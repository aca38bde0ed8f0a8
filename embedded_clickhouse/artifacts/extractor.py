"""Safe extraction of release archives into a staging directory."""

import os
import shutil
import tarfile
from pathlib import Path
from typing import List, Optional, Sequence

from ..core.errors import ArchiveError, BinaryNotFoundError
from ..core.log import get_logger
from ..core.time import Deadline

logger = get_logger(__name__)

BINARY_NAME = "clickhouse"
# Locations of the server binary inside an unpacked release, in search order
BINARY_CANDIDATES = (
    Path("usr/bin/clickhouse"),
    Path("bin/clickhouse"),
    Path("clickhouse"),
)


def _within(root: str, path: str) -> bool:
    return os.path.commonpath([root, path]) == root


class ArchiveExtractor:
    """Extract gzip tarballs, rejecting any member that would land outside ``dest``."""

    def extract(self, archive: Path, dest: Path, deadline: Optional[Deadline] = None) -> List[Path]:
        """Extract ``archive`` into ``dest`` and return the regular files written.

        Every member is validated before anything is written. Absolute paths,
        ``..`` escapes and links pointing outside ``dest`` raise ArchiveError.
        Device nodes and FIFOs are skipped.
        """
        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        root = os.path.realpath(dest)

        try:
            with tarfile.open(archive, "r:gz") as tar:
                members = tar.getmembers()
                for member in members:
                    self._validate(member, root)
                written = self._extract_members(tar, members, root, deadline)
        except (tarfile.TarError, EOFError) as e:
            raise ArchiveError(f"Malformed archive {Path(archive).name}: {e}") from e
        except OSError as e:
            raise ArchiveError(f"Failed to extract {Path(archive).name}: {e}") from e

        logger.debug("Extracted %s files from %s", len(written), Path(archive).name)
        return written

    def _validate(self, member: tarfile.TarInfo, root: str) -> None:
        name = member.name
        if not name or os.path.isabs(name) or name.startswith(("/", "\\")):
            raise ArchiveError(f"Archive member has an absolute path: {name!r}")
        target = os.path.normpath(os.path.join(root, name))
        if not _within(root, target):
            raise ArchiveError(f"Archive member escapes the destination: {name!r}")

        if member.issym():
            if os.path.isabs(member.linkname):
                raise ArchiveError(
                    f"Symlink {name!r} points to an absolute path: {member.linkname!r}"
                )
            link_target = os.path.normpath(
                os.path.join(os.path.dirname(target), member.linkname)
            )
            if not _within(root, link_target):
                raise ArchiveError(
                    f"Symlink {name!r} points outside the destination: {member.linkname!r}"
                )
        elif member.islnk():
            link_target = os.path.normpath(os.path.join(root, member.linkname))
            if os.path.isabs(member.linkname) or not _within(root, link_target):
                raise ArchiveError(
                    f"Hard link {name!r} points outside the destination: {member.linkname!r}"
                )

    def _extract_members(
        self,
        tar: tarfile.TarFile,
        members: Sequence[tarfile.TarInfo],
        root: str,
        deadline: Optional[Deadline],
    ) -> List[Path]:
        written: List[Path] = []
        for member in members:
            if deadline is not None and deadline.is_expired():
                raise ArchiveError(
                    f"Extraction did not finish within {deadline.timeout}s",
                    {"timeout": deadline.timeout},
                )
            target = os.path.normpath(os.path.join(root, member.name))

            if member.isdir():
                os.makedirs(target, exist_ok=True)
            elif member.isfile():
                os.makedirs(os.path.dirname(target), exist_ok=True)
                source = tar.extractfile(member)
                if source is None:
                    raise ArchiveError(f"Cannot read archive member {member.name!r}")
                with source, open(target, "wb") as out:
                    shutil.copyfileobj(source, out, 1024 * 1024)
                os.chmod(target, member.mode & 0o777)
                written.append(Path(target))
            elif member.issym():
                os.makedirs(os.path.dirname(target), exist_ok=True)
                if os.path.lexists(target):
                    os.unlink(target)
                os.symlink(member.linkname, target)
            elif member.islnk():
                source_path = os.path.normpath(os.path.join(root, member.linkname))
                if not os.path.isfile(source_path):
                    raise ArchiveError(
                        f"Hard link {member.name!r} refers to missing member {member.linkname!r}"
                    )
                os.makedirs(os.path.dirname(target), exist_ok=True)
                shutil.copy2(source_path, target)
                written.append(Path(target))
            else:
                logger.debug("Skipping special archive member %s", member.name)
        return written

    def find_binary(self, root: Path) -> Path:
        """Locate the server binary in an unpacked release.

        Releases nest everything in one top-level directory
        (``clickhouse-common-static-<version>/``), so candidates are searched
        both at the root and one level down.
        """
        root = Path(root)
        search_roots = [root] + sorted(p for p in root.iterdir() if p.is_dir() and not p.is_symlink())
        for base in search_roots:
            for candidate in BINARY_CANDIDATES:
                path = base / candidate
                if path.is_file():
                    return path
        raise BinaryNotFoundError(
            f"No {BINARY_NAME} binary found in extracted archive",
            {"searched": [str(c) for c in BINARY_CANDIDATES], "root": str(root)},
        )

    def install_raw_binary(self, source: Path, dest_dir: Path) -> Path:
        """Place a downloaded bare executable into ``dest_dir`` as ``clickhouse``."""
        target = Path(dest_dir) / BINARY_NAME
        try:
            os.replace(source, target)
            os.chmod(target, 0o755)
        except OSError as e:
            raise ArchiveError(f"Failed to install binary {target}: {e}") from e
        return target
