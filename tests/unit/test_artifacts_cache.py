"""Tests for ArtifactCache install sessions and markers."""

import json
import os
import threading
from pathlib import Path

import pytest

from embedded_clickhouse.artifacts.cache import (
    LOCKS_DIR,
    MARKER_NAME,
    STAGING_DIR,
    ArtifactCache,
)
from embedded_clickhouse.core.errors import CacheError
from embedded_clickhouse.core.value_objects import CacheKey, ClickHouseVersion

KEY = CacheKey.for_version(ClickHouseVersion.V25_8, "linux-amd64")


def stage_binary(staging_dir: Path, relpath: str = "usr/bin/clickhouse") -> Path:
    binary = staging_dir / relpath
    binary.parent.mkdir(parents=True, exist_ok=True)
    binary.write_bytes(b"#!/bin/sh\n")
    binary.chmod(0o755)
    return Path(relpath)


def install(cache: ArtifactCache, key: CacheKey = KEY):
    with cache.begin_install(key) as session:
        relpath = stage_binary(session.staging_dir)
        return cache.commit(session, relpath, checksum="abc", source_url="http://x/a.tgz")


class TestArtifactCache:
    """Test the commit protocol and lookups."""

    def test_lookup_miss(self, temp_dir: Path) -> None:
        assert ArtifactCache(temp_dir).lookup(KEY) is None

    def test_commit_and_lookup(self, temp_dir: Path) -> None:
        cache = ArtifactCache(temp_dir)
        entry = install(cache)

        assert entry.install_dir == temp_dir / KEY.dirname
        assert entry.binary_path == entry.install_dir / "usr/bin/clickhouse"
        assert entry.version == "25.8.16.34-lts"
        marker = json.loads((entry.install_dir / MARKER_NAME).read_text())
        assert marker["checksum"] == "abc"
        assert marker["source_url"] == "http://x/a.tgz"

        found = cache.lookup(KEY)
        assert found is not None
        assert found.binary_path == entry.binary_path
        assert os.listdir(temp_dir / STAGING_DIR) == []

    def test_marker_less_directory_is_ignored_and_replaced(self, temp_dir: Path) -> None:
        cache = ArtifactCache(temp_dir)
        leftover = cache.install_dir(KEY)
        (leftover / "usr" / "bin").mkdir(parents=True)
        (leftover / "usr" / "bin" / "clickhouse").write_text("partial")
        (leftover / "junk").write_text("x")

        assert cache.lookup(KEY) is None
        entry = install(cache)
        assert not (entry.install_dir / "junk").exists()
        assert cache.lookup(KEY) is not None

    def test_corrupt_marker_is_a_miss(self, temp_dir: Path) -> None:
        cache = ArtifactCache(temp_dir)
        entry = install(cache)
        (entry.install_dir / MARKER_NAME).write_text("{not json")
        assert cache.lookup(KEY) is None

    def test_marker_with_missing_binary_is_a_miss(self, temp_dir: Path) -> None:
        cache = ArtifactCache(temp_dir)
        entry = install(cache)
        entry.binary_path.unlink()
        assert cache.lookup(KEY) is None

    def test_abort_on_exception_leaves_nothing(self, temp_dir: Path) -> None:
        cache = ArtifactCache(temp_dir)
        with pytest.raises(RuntimeError):
            with cache.begin_install(KEY) as session:
                stage_binary(session.staging_dir)
                raise RuntimeError("extraction interrupted")
        assert cache.lookup(KEY) is None
        assert not cache.install_dir(KEY).exists()
        assert os.listdir(temp_dir / STAGING_DIR) == []

    def test_commit_requires_binary(self, temp_dir: Path) -> None:
        cache = ArtifactCache(temp_dir)
        with cache.begin_install(KEY) as session:
            with pytest.raises(CacheError, match="no binary"):
                cache.commit(session, Path("usr/bin/clickhouse"))
        assert cache.lookup(KEY) is None

    def test_commit_twice_fails(self, temp_dir: Path) -> None:
        cache = ArtifactCache(temp_dir)
        with cache.begin_install(KEY) as session:
            relpath = stage_binary(session.staging_dir)
            cache.commit(session, relpath)
            with pytest.raises(CacheError, match="not active"):
                cache.commit(session, relpath)

    def test_session_sees_entry_committed_while_waiting(self, temp_dir: Path) -> None:
        cache = ArtifactCache(temp_dir)
        install(cache)
        with cache.begin_install(KEY) as session:
            assert session.existing is not None
            assert session.staging_dir is None

    def test_concurrent_installers_install_once(self, temp_dir: Path) -> None:
        cache = ArtifactCache(temp_dir, lock_timeout=10)
        installs = []

        def worker():
            with cache.begin_install(KEY) as session:
                if session.existing is not None:
                    return
                installs.append(1)
                cache.commit(session, stage_binary(session.staging_dir))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert installs == [1]
        assert cache.lookup(KEY) is not None

    def test_entries_and_remove(self, temp_dir: Path) -> None:
        cache = ArtifactCache(temp_dir)
        other = CacheKey.for_version(ClickHouseVersion.V25_3, "linux-amd64")
        install(cache)
        install(cache, other)

        versions = [e.version for e in cache.entries()]
        assert versions == ["25.3.14.14-lts", "25.8.16.34-lts"]

        assert cache.remove(KEY)
        assert not cache.remove(KEY)
        assert [e.version for e in cache.entries()] == ["25.3.14.14-lts"]
        assert (temp_dir / LOCKS_DIR).is_dir()

    def test_entries_on_missing_base_dir(self, temp_dir: Path) -> None:
        assert ArtifactCache(temp_dir / "nope").entries() == []
