"""Configuration management with environment variable integration and validation."""

import os
import yaml
from pydantic import ValidationError
from pathlib import Path
from typing import Dict, Any, Optional, Mapping

from .types import EmbeddedClickHouseConfig
from .errors import ConfigurationError

ENV_PREFIX = "EMBEDDED_CLICKHOUSE_"
CACHE_DIR_NAME = "embedded-clickhouse"

# Never numeric: "25.10" must not become 25.1
STRING_FIELDS = frozenset({"version", "checksum"})


def default_cache_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Per-user cache directory: ``$XDG_CACHE_HOME`` or ``~/.cache``."""
    environ = os.environ if environ is None else environ
    xdg = environ.get("XDG_CACHE_HOME")
    if xdg:
        return Path(xdg) / CACHE_DIR_NAME
    return Path.home() / ".cache" / CACHE_DIR_NAME


def load_env_overrides(
    prefix: str = ENV_PREFIX, environ: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    """Load environment variables with the given prefix and convert to appropriate types."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}

    for key, value in environ.items():
        if not key.startswith(prefix):
            continue
        field_name = key[len(prefix):].lower()

        converted = value if field_name in STRING_FIELDS else _convert_env_value(value)
        if converted is None or converted == "":
            continue

        # Nested sections, e.g. EMBEDDED_CLICKHOUSE_TIMEOUTS__START=60
        if "__" in field_name:
            section, _, sub_field = field_name.partition("__")
            if section and sub_field:
                overrides.setdefault(section, {})[sub_field] = converted
            continue

        overrides[field_name] = converted

    return overrides


def _convert_env_value(value: str) -> Any:
    """Convert string environment value to appropriate Python type."""
    if not value:
        return None

    # Try to convert to int first (before boolean check)
    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    return value


def _merge(base: Dict[str, Any], update: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``update`` into ``base``, descending into nested sections."""
    for key, value in update.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


class ConfigManager:
    """Central configuration management."""

    def __init__(self) -> None:
        self._config: Optional[EmbeddedClickHouseConfig] = None

    def load_config(
        self, config_file: Optional[Path] = None, **overrides: Any
    ) -> EmbeddedClickHouseConfig:
        """Load configuration from file and environment with explicit overrides.

        Precedence, lowest first: model defaults, YAML file, environment
        variables, explicit overrides. ``None`` overrides are ignored so that
        unset CLI options do not mask lower layers.
        """
        config_data: Dict[str, Any] = {}

        if config_file is not None:
            config_file = Path(config_file)
            if not config_file.exists():
                raise ConfigurationError(f"Config file not found: {config_file}")
            _merge(config_data, self._load_from_file(config_file))

        _merge(config_data, load_env_overrides())
        _merge(config_data, {k: v for k, v in overrides.items() if v is not None})

        try:
            self._config = EmbeddedClickHouseConfig(**config_data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e
        return self._config

    def get_config(self) -> EmbeddedClickHouseConfig:
        """Get current configuration."""
        if self._config is None:
            self._config = self.load_config()
        return self._config

    def reset(self) -> None:
        self._config = None

    def _load_from_file(self, config_file: Path) -> Dict[str, Any]:
        """Load configuration from YAML file."""
        if config_file.suffix.lower() not in (".yml", ".yaml"):
            raise ConfigurationError(
                f"Unsupported config file format: {config_file.suffix}"
            )
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Failed to load config file {config_file}: {e}"
            ) from e
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Config file {config_file} must contain a mapping at top level"
            )
        return data


# Global config manager instance
_config_manager = ConfigManager()


def load_config(config_file: Optional[Path] = None, **kwargs: Any) -> EmbeddedClickHouseConfig:
    """Load global configuration."""
    return _config_manager.load_config(config_file, **kwargs)


def get_config() -> EmbeddedClickHouseConfig:
    """Get current global configuration."""
    return _config_manager.get_config()


def resolve_cache_dir(config: EmbeddedClickHouseConfig) -> Path:
    """Cache directory from configuration, falling back to the per-user default."""
    return Path(config.cache_dir) if config.cache_dir else default_cache_dir()
