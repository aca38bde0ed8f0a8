"""ClickHouse server command line builder."""

from typing import List, Protocol
from pathlib import Path


class CommandBuilder(Protocol):
    """Protocol for command builders to enable dependency injection."""

    def build_command(self, binary: Path, config_file: Path) -> List[str]:
        """Build command line arguments for server startup."""


class ServerCommandBuilder:
    """Builds the ``clickhouse server`` command line.

    The single multi-call ``clickhouse`` binary selects the server tool from
    its first argument; every other setting lives in the config file.
    """

    def build_command(self, binary: Path, config_file: Path) -> List[str]:
        return [str(binary), "server", f"--config-file={config_file}"]
