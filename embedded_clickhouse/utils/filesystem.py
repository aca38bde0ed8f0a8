"""Filesystem helpers for safe path operations and atomic writes."""

import os
import tempfile
import shutil
from pathlib import Path
from typing import Optional, Union

from ..core.errors import FilesystemError, AtomicWriteError
from ..core.log import get_logger

logger = get_logger(__name__)


def atomic_write(path: Path, data: Union[str, bytes], mode: str = "w") -> None:
    """Atomically write data to a file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    is_binary = isinstance(data, bytes) or "b" in mode
    write_mode = mode if is_binary else mode.replace("b", "")
    if is_binary and "b" not in write_mode:
        write_mode += "b"
    tmp_path: Optional[Path] = None
    try:
        with tempfile.NamedTemporaryFile(
            mode=write_mode,
            dir=path.parent,
            delete=False,
            prefix=f".{path.name}.tmp",
        ) as tmp_file:
            tmp_path = Path(tmp_file.name)
            tmp_file.write(data)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
        tmp_path.replace(path)
        logger.debug(
            "Atomically wrote %s %s to %s",
            len(data),
            "bytes" if is_binary else "chars",
            path,
        )
    except OSError as e:
        if tmp_path is not None and tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass
        raise AtomicWriteError(f"Failed to atomically write to {path}: {e}") from e


def ensure_dir(path: Path) -> Path:
    """Ensure directory exists and return it."""
    try:
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)
        return path
    except PermissionError as e:
        raise FilesystemError(f"Permission denied creating directory {path}") from e
    except OSError as e:
        raise FilesystemError(f"Error creating directory {path}: {e}") from e


def make_unique_dir(parent: Optional[Path], prefix: str) -> Path:
    """Create a fresh, uniquely named directory (under the system temp dir if no parent)."""
    try:
        if parent is not None:
            ensure_dir(parent)
        return Path(tempfile.mkdtemp(prefix=prefix, dir=str(parent) if parent else None))
    except OSError as e:
        raise FilesystemError(f"Error creating directory under {parent}: {e}") from e


def safe_remove(path: Path) -> bool:
    """Safely remove a file or directory, returning success status."""
    try:
        path = Path(path)
        if path.is_symlink() or path.is_file():
            path.unlink()
            return True
        elif path.is_dir():
            shutil.rmtree(path)
            return True
        else:
            return False
    except OSError as e:
        logger.warning("Failed to remove %s: %s", path, e)
        return False


def get_size(path: Path) -> int:
    """Total size in bytes of a file or directory tree."""
    path = Path(path)
    try:
        if path.is_file():
            return path.stat().st_size
        return sum(p.stat().st_size for p in path.rglob("*") if p.is_file() and not p.is_symlink())
    except OSError as e:
        raise FilesystemError(f"Error getting size of {path}: {e}") from e
