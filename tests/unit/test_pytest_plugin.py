"""Unit tests for pytest_plugin/plugin.py."""

from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from embedded_clickhouse.core.errors import ShutdownError
from embedded_clickhouse.pytest_plugin import plugin


def mock_pytest_config(**options):
    config = Mock()
    config.stash = pytest.Stash()
    values = {
        "--clickhouse-version": None,
        "--clickhouse-binary": None,
        "--clickhouse-cache-dir": None,
        "--clickhouse-config": None,
    }
    values.update(options)
    config.getoption.side_effect = values.__getitem__
    return config


class TestHooks:
    def test_addoption(self) -> None:
        parser = Mock()
        plugin.pytest_addoption(parser)
        group = parser.getgroup.return_value
        options = [call[0][0] for call in group.addoption.call_args_list]
        assert options == [
            "--clickhouse-version",
            "--clickhouse-binary",
            "--clickhouse-cache-dir",
            "--clickhouse-config",
        ]

    def test_configure_registers_marker(self) -> None:
        config = mock_pytest_config()
        plugin.pytest_configure(config)
        marker_lines = [call[0][1] for call in config.addinivalue_line.call_args_list]
        assert any(line.startswith("clickhouse:") for line in marker_lines)

    def test_unconfigure_without_facade(self) -> None:
        plugin.pytest_unconfigure(mock_pytest_config())

    def test_unconfigure_stops_leftovers(self) -> None:
        config = mock_pytest_config()
        facade = Mock()
        facade.instances = [Mock()]
        config.stash[plugin._facade_key] = facade
        plugin.pytest_unconfigure(config)
        facade.stop_all.assert_called_once()

    def test_unconfigure_logs_shutdown_errors(self) -> None:
        config = mock_pytest_config()
        facade = Mock()
        facade.instances = []
        facade.stop_all.side_effect = ShutdownError("leaked")
        config.stash[plugin._facade_key] = facade
        plugin.pytest_unconfigure(config)


class TestPluginConfig:
    def test_only_given_options_override(self, isolated_environment) -> None:
        config = mock_pytest_config(**{"--clickhouse-version": "25.3.14.14-lts"})
        with patch.object(plugin, "is_logging_configured", return_value=True):
            result = plugin.load_plugin_config(config)
        assert result.version == "25.3.14.14-lts"
        assert result.binary_path is None

    def test_config_file_and_options(self, isolated_environment, temp_dir: Path) -> None:
        config_file = temp_dir / "clickhouse.yaml"
        config_file.write_text("version: 25.3.14.14-lts\nkeep_data_dir: true\n")
        config = mock_pytest_config(
            **{
                "--clickhouse-config": str(config_file),
                "--clickhouse-cache-dir": str(temp_dir / "cache"),
                "--clickhouse-version": "26.1.3.52-stable",
            }
        )
        with patch.object(plugin, "is_logging_configured", return_value=True):
            result = plugin.load_plugin_config(config)
        assert result.version == "26.1.3.52-stable"
        assert result.keep_data_dir is True
        assert result.cache_dir == temp_dir / "cache"

    def test_configures_logging_once(self, isolated_environment) -> None:
        with patch.object(plugin, "is_logging_configured", return_value=False), patch.object(
            plugin, "configure_logging"
        ) as configure:
            plugin.load_plugin_config(mock_pytest_config())
        configure.assert_called_once_with(level="INFO", enable_console=True, enable_json=False)
