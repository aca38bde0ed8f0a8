"""Tests for server config generation."""

import xml.etree.ElementTree as ET
from pathlib import Path

import pytest

from embedded_clickhouse.core.errors import InvalidSettingKeyError
from embedded_clickhouse.core.types import EmbeddedClickHouseConfig, ServerConfig
from embedded_clickhouse.instances.server_config_builder import (
    CONFIG_FILE_NAME,
    LOG_FILE_NAME,
    ServerConfigBuilder,
    ServerConfigWriter,
    validate_settings,
)


def server_config(data_dir: Path, **settings) -> ServerConfig:
    return ServerConfig(
        data_dir=data_dir,
        tcp_port=19000,
        http_port=18123,
        interserver_port=19009,
        log_file=data_dir / LOG_FILE_NAME,
        settings=settings,
    )


class TestValidateSettings:
    @pytest.mark.parametrize("key", ["max_concurrent_queries", "mark_cache_size", "a1"])
    def test_valid(self, key) -> None:
        validate_settings({key: "1"})

    @pytest.mark.parametrize("key", ["1abc", "has-dash", "has space", "", "x<y"])
    def test_invalid(self, key) -> None:
        with pytest.raises(InvalidSettingKeyError):
            validate_settings({key: "1"})

    @pytest.mark.parametrize("key", ["tcp_port", "path", "users", "listen_host"])
    def test_generated_keys_cannot_be_overridden(self, key) -> None:
        with pytest.raises(InvalidSettingKeyError, match="generated"):
            validate_settings({key: "1"})


class TestServerConfigBuilder:
    def test_build(self, temp_dir: Path) -> None:
        config = EmbeddedClickHouseConfig(settings={"max_concurrent_queries": 5})
        result = ServerConfigBuilder(config).build(temp_dir, 1, 2, 3)
        assert (result.tcp_port, result.http_port, result.interserver_port) == (1, 2, 3)
        assert result.log_file == temp_dir / LOG_FILE_NAME
        assert result.settings == {"max_concurrent_queries": "5"}
        assert result.host == "127.0.0.1"

    def test_build_rejects_bad_keys(self, temp_dir: Path) -> None:
        config = EmbeddedClickHouseConfig(settings={"bad-key": 1})
        with pytest.raises(InvalidSettingKeyError):
            ServerConfigBuilder(config).build(temp_dir, 1, 2, 3)


class TestServerConfigWriter:
    """Test config.xml rendering."""

    def test_render(self, temp_dir: Path) -> None:
        xml = ServerConfigWriter().render(server_config(temp_dir, max_concurrent_queries="7"))
        assert xml.startswith('<?xml version="1.0"?>')
        root = ET.fromstring(xml.split("\n", 1)[1])

        assert root.tag == "clickhouse"
        assert root.findtext("logger/level") == "warning"
        assert root.findtext("logger/console") == "1"
        assert root.findtext("listen_host") == "127.0.0.1"
        assert root.findtext("tcp_port") == "19000"
        assert root.findtext("http_port") == "18123"
        assert root.findtext("interserver_http_port") == "19009"
        assert root.findtext("path") == f"{temp_dir / 'data'}/"
        assert root.findtext("tmp_path") == f"{temp_dir / 'tmp'}/"
        assert root.findtext("user_files_path") == f"{temp_dir / 'user_files'}/"
        assert root.findtext("format_schema_path") == f"{temp_dir / 'format_schemas'}/"
        assert [ip.text for ip in root.findall("users/default/networks/ip")] == ["::1", "127.0.0.1"]
        assert root.findtext("users/default/profile") == "default"
        assert root.find("profiles/default") is not None
        assert root.find("quotas/default") is not None
        assert root.findtext("max_concurrent_queries") == "7"

    def test_values_are_escaped(self, temp_dir: Path) -> None:
        xml = ServerConfigWriter().render(server_config(temp_dir, display_name="a<b&c"))
        root = ET.fromstring(xml.split("\n", 1)[1])
        assert root.findtext("display_name") == "a<b&c"

    def test_write_creates_directories(self, temp_dir: Path) -> None:
        path = ServerConfigWriter().write(server_config(temp_dir))
        assert path == temp_dir / CONFIG_FILE_NAME
        assert path.read_text().startswith('<?xml version="1.0"?>')
        for subdir in ("data", "tmp", "user_files", "format_schemas"):
            assert (temp_dir / subdir).is_dir()
