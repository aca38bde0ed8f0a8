"""pytest plugin exposing embedded ClickHouse servers as fixtures."""

from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import pytest
from pytest import StashKey

from ..core.config import ConfigManager
from ..core.errors import EmbeddedClickHouseError
from ..core.log import configure_logging, get_logger, is_logging_configured
from ..core.types import EmbeddedClickHouseConfig
from ..instances.lifecycle import EmbeddedClickHouse
from ..instances.server import RunningInstance
from ..testing.hooks import ClickHouseLifecycleHook

logger = get_logger(__name__)

_facade_key = StashKey[EmbeddedClickHouse]()


def pytest_addoption(parser: Any) -> None:
    """Add custom command line options."""
    group = parser.getgroup("embedded-clickhouse")
    group.addoption(
        "--clickhouse-version",
        action="store",
        default=None,
        help="ClickHouse version for the clickhouse_server fixture (or 'latest')",
    )
    group.addoption(
        "--clickhouse-binary",
        action="store",
        default=None,
        help="use this clickhouse binary instead of downloading one",
    )
    group.addoption(
        "--clickhouse-cache-dir",
        action="store",
        default=None,
        help="directory for downloaded ClickHouse builds",
    )
    group.addoption(
        "--clickhouse-config",
        action="store",
        default=None,
        help="YAML configuration file for embedded ClickHouse",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers", "clickhouse: test uses an embedded ClickHouse server"
    )


def pytest_unconfigure(config: pytest.Config) -> None:
    """Safety net: stop servers whose fixtures did not finalize."""
    facade = config.stash.get(_facade_key, None)
    if facade is None:
        return
    leftovers = facade.instances
    if leftovers:
        logger.warning("Stopping %s ClickHouse server(s) left running", len(leftovers))
    try:
        facade.stop_all()
    except EmbeddedClickHouseError as e:
        logger.error("Error during plugin cleanup: %s", e)


def _option_overrides(config: pytest.Config) -> Dict[str, Any]:
    """Command line options that were actually given, as config overrides."""
    overrides: Dict[str, Any] = {
        "version": config.getoption("--clickhouse-version"),
        "binary_path": config.getoption("--clickhouse-binary"),
        "cache_dir": config.getoption("--clickhouse-cache-dir"),
    }
    return {k: v for k, v in overrides.items() if v is not None}


def load_plugin_config(pytestconfig: pytest.Config) -> EmbeddedClickHouseConfig:
    """Effective configuration: file, environment, then command line options."""
    config_file: Optional[str] = pytestconfig.getoption("--clickhouse-config")
    framework_config = ConfigManager().load_config(
        Path(config_file) if config_file else None, **_option_overrides(pytestconfig)
    )
    if not is_logging_configured():
        configure_logging(
            level=framework_config.log_level, enable_console=True, enable_json=False
        )
    return framework_config


@pytest.fixture(scope="session")
def clickhouse_config(pytestconfig: pytest.Config) -> EmbeddedClickHouseConfig:
    return load_plugin_config(pytestconfig)


@pytest.fixture(scope="session")
def clickhouse_facade(
    pytestconfig: pytest.Config, clickhouse_config: EmbeddedClickHouseConfig
) -> Iterator[EmbeddedClickHouse]:
    """Session-wide facade shared by every ClickHouse fixture."""
    facade = EmbeddedClickHouse(clickhouse_config)
    pytestconfig.stash[_facade_key] = facade
    try:
        yield facade
    finally:
        facade.stop_all()


@pytest.fixture(scope="module")
def clickhouse_server(clickhouse_facade: EmbeddedClickHouse) -> Iterator[RunningInstance]:
    """A ClickHouse server shared by all tests of one module."""
    hook = ClickHouseLifecycleHook(facade=clickhouse_facade)
    instance = hook.setup()
    logger.info("ClickHouse server for module ready at %s", instance.http_url)
    try:
        yield instance
    finally:
        hook.teardown()
