"""Test configuration and fixtures for embedded_clickhouse tests."""

import io
import shutil
import tarfile
import tempfile
from pathlib import Path
from typing import Dict, Optional
from unittest.mock import Mock, patch

import pytest

from embedded_clickhouse.core.types import EmbeddedClickHouseConfig, RetryPolicy, TimeoutConfig


@pytest.fixture
def temp_dir():
    """Provide a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp(prefix="embedded_clickhouse_test_"))
    try:
        yield temp_path
    finally:
        if temp_path.exists():
            shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def fast_config(temp_dir):
    """Configuration with short timeouts rooted in a temp directory."""
    return EmbeddedClickHouseConfig(
        cache_dir=temp_dir / "cache",
        work_dir=temp_dir / "work",
        remote_index=False,
        timeouts=TimeoutConfig(
            start=2.0,
            stop=1.0,
            download=5.0,
            install_lock=2.0,
            launch_grace_period=0.01,
            poll_interval=0.01,
            force_kill=1.0,
        ),
        retry=RetryPolicy(attempts=2, initial_backoff=0.01, max_backoff=0.01),
    )


@pytest.fixture
def isolated_environment():
    """Clear EMBEDDED_CLICKHOUSE_* and XDG variables for the test."""
    with patch.dict("os.environ", {}, clear=True):
        yield


@pytest.fixture
def mock_process():
    """Mock subprocess.Popen for process testing."""
    mock_popen = Mock()
    mock_popen.pid = 12345
    mock_popen.returncode = None
    mock_popen.poll.return_value = None  # Still running
    mock_popen.wait.return_value = 0
    return mock_popen


@pytest.fixture(autouse=True)
def reset_latest_cache():
    """Forget any ``latest`` resolution between tests."""
    from embedded_clickhouse.distribution.resolver import clear_latest_cache

    clear_latest_cache()
    yield
    clear_latest_cache()


def make_tarball(
    path: Path,
    files: Dict[str, bytes],
    modes: Optional[Dict[str, int]] = None,
    symlinks: Optional[Dict[str, str]] = None,
) -> Path:
    """Write a gzip tarball with the given members to ``path``."""
    modes = modes or {}
    with tarfile.open(path, "w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = modes.get(name, 0o644)
            tar.addfile(info, io.BytesIO(data))
        for name, target in (symlinks or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tar.addfile(info)
    return path


@pytest.fixture
def tarball_factory():
    """Factory fixture wrapping make_tarball."""
    return make_tarball
