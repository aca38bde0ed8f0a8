"""Per-instance server configuration: building ServerConfig and writing config.xml."""

import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Mapping, Optional

from ..core.errors import InvalidSettingKeyError
from ..core.log import Logger, get_logger
from ..core.types import EmbeddedClickHouseConfig, ServerConfig
from ..utils.filesystem import atomic_write, ensure_dir

logger = get_logger(__name__)

CONFIG_FILE_NAME = "config.xml"
LOG_FILE_NAME = "clickhouse-server.log"

VALID_SETTING_KEY = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*$")

# Sub-directories of the instance directory, keyed by config element
DATA_SUBDIRS = {
    "path": "data",
    "tmp_path": "tmp",
    "user_files_path": "user_files",
    "format_schema_path": "format_schemas",
}

GENERATED_KEYS = frozenset(
    {
        "logger",
        "listen_host",
        "tcp_port",
        "http_port",
        "interserver_http_port",
        "users",
        "profiles",
        "quotas",
    }
    | set(DATA_SUBDIRS)
)


def validate_settings(settings: Mapping[str, str]) -> None:
    """Reject keys that are not plain XML element names or that shadow generated keys."""
    for key in settings:
        if not VALID_SETTING_KEY.match(key):
            raise InvalidSettingKeyError(key)
        if key in GENERATED_KEYS:
            raise InvalidSettingKeyError(key, "overrides a generated server setting")


class ServerConfigBuilder:
    """Builds the ServerConfig for one instance from the user configuration."""

    def __init__(self, config: EmbeddedClickHouseConfig, logger: Optional[Logger] = None) -> None:
        self._config = config
        self._logger = logger or get_logger(__name__)

    def build(
        self, instance_dir: Path, tcp_port: int, http_port: int, interserver_port: int
    ) -> ServerConfig:
        validate_settings(self._config.settings)
        server_config = ServerConfig(
            data_dir=Path(instance_dir),
            tcp_port=tcp_port,
            http_port=http_port,
            interserver_port=interserver_port,
            log_file=Path(instance_dir) / LOG_FILE_NAME,
            host=self._config.host,
            settings=dict(self._config.settings),
        )
        self._logger.debug(
            "Server config for %s: tcp=%s http=%s interserver=%s",
            instance_dir,
            tcp_port,
            http_port,
            interserver_port,
        )
        return server_config


def _sub(parent: ET.Element, tag: str, text: Optional[str] = None) -> ET.Element:
    element = ET.SubElement(parent, tag)
    if text is not None:
        element.text = text
    return element


class ServerConfigWriter:
    """Renders ServerConfig as a ClickHouse ``config.xml``."""

    def render(self, server_config: ServerConfig) -> str:
        validate_settings(server_config.settings)
        root = ET.Element("clickhouse")

        log_config = _sub(root, "logger")
        _sub(log_config, "level", "warning")
        _sub(log_config, "console", "1")

        _sub(root, "listen_host", server_config.host)
        _sub(root, "tcp_port", str(server_config.tcp_port))
        _sub(root, "http_port", str(server_config.http_port))
        _sub(root, "interserver_http_port", str(server_config.interserver_port))

        for tag, subdir in DATA_SUBDIRS.items():
            # ClickHouse requires the trailing slash on directory paths
            _sub(root, tag, f"{server_config.data_dir / subdir}/")

        users = _sub(root, "users")
        default_user = _sub(users, "default")
        _sub(default_user, "password", "")
        networks = _sub(default_user, "networks")
        _sub(networks, "ip", "::1")
        _sub(networks, "ip", "127.0.0.1")
        _sub(default_user, "profile", "default")
        _sub(default_user, "quota", "default")
        _sub(default_user, "access_management", "1")

        _sub(_sub(root, "profiles"), "default")
        _sub(_sub(root, "quotas"), "default")

        for key, value in server_config.settings.items():
            _sub(root, key, value)

        ET.indent(root, space="    ")
        return '<?xml version="1.0"?>\n' + ET.tostring(root, encoding="unicode") + "\n"

    def write(self, server_config: ServerConfig) -> Path:
        """Create the data directories and write ``config.xml``; returns its path."""
        for subdir in DATA_SUBDIRS.values():
            ensure_dir(server_config.data_dir / subdir)
        config_path = server_config.data_dir / CONFIG_FILE_NAME
        atomic_write(config_path, self.render(server_config))
        logger.debug("Wrote %s", config_path)
        return config_path

