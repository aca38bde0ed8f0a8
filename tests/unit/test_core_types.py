"""Tests for configuration models."""

import pytest

from embedded_clickhouse.core.errors import ConfigurationError
from embedded_clickhouse.core.types import (
    EmbeddedClickHouseConfig,
    RetryPolicy,
    TimeoutConfig,
)
from embedded_clickhouse.core.value_objects import ClickHouseVersion


class TestEmbeddedClickHouseConfig:
    """Test EmbeddedClickHouseConfig defaults and validation."""

    def test_defaults(self) -> None:
        config = EmbeddedClickHouseConfig()
        assert config.version == ClickHouseVersion.DEFAULT.value
        assert config.host == "127.0.0.1"
        assert (config.tcp_port, config.http_port, config.interserver_port) == (0, 0, 0)
        assert config.settings == {}
        assert config.keep_data_dir is False
        assert config.timeouts.start == 30.0
        assert config.timeouts.stop == 10.0
        assert config.timeouts.download == 600.0
        assert config.clickhouse_version == ClickHouseVersion.DEFAULT

    def test_numeric_version_is_coerced(self) -> None:
        assert EmbeddedClickHouseConfig(version=25.8).version == "25.8"

    def test_settings_are_stringified(self) -> None:
        config = EmbeddedClickHouseConfig(
            settings={"max_concurrent_queries": 10, "allow_ddl": True, "flag": False}
        )
        assert config.settings == {
            "max_concurrent_queries": "10",
            "allow_ddl": "1",
            "flag": "0",
        }

    def test_invalid_port(self) -> None:
        with pytest.raises(ConfigurationError, match="tcp_port"):
            EmbeddedClickHouseConfig(tcp_port=70000)

    def test_fixed_ports_must_differ(self) -> None:
        with pytest.raises(ConfigurationError, match="distinct"):
            EmbeddedClickHouseConfig(tcp_port=9000, http_port=9000)

    def test_zero_ports_may_repeat(self) -> None:
        EmbeddedClickHouseConfig(tcp_port=9000, http_port=0, interserver_port=0)

    def test_retries_at_least_one(self) -> None:
        with pytest.raises(ConfigurationError):
            EmbeddedClickHouseConfig(port_conflict_retries=0)

    def test_blank_version_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            EmbeddedClickHouseConfig(version=" ")


class TestTimeoutConfig:
    def test_non_positive_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="stop"):
            TimeoutConfig(stop=0)


class TestRetryPolicy:
    """Test bounded exponential backoff."""

    def test_backoff_grows_and_caps(self) -> None:
        policy = RetryPolicy(initial_backoff=0.5, backoff_factor=2.0, max_backoff=3.0)
        assert policy.backoff(1) == 0.5
        assert policy.backoff(2) == 1.0
        assert policy.backoff(3) == 2.0
        assert policy.backoff(4) == 3.0
        assert policy.backoff(10) == 3.0

    def test_validation(self) -> None:
        with pytest.raises(ConfigurationError):
            RetryPolicy(attempts=0)
        with pytest.raises(ConfigurationError):
            RetryPolicy(backoff_factor=0.5)
