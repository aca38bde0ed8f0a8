"""Main CLI entry point for embedded ClickHouse."""

import sys
import time
from pathlib import Path
from typing import Optional

import typer
from pydantic import BaseModel, ConfigDict, Field
from rich.console import Console
from rich.table import Table

from ..core.config import get_config, load_config
from ..core.errors import EmbeddedClickHouseError
from ..core.log import configure_logging, get_logger, shutdown_logging
from .commands.cache import cache_app


class GlobalCliOptions(BaseModel):
    """Global CLI options that can be used across all commands."""

    verbose: int = Field(0, description="Increase verbosity level")
    config_file: Optional[Path] = Field(None, description="Configuration file path")
    log_level: str = Field(
        "WARNING", description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    model_config = ConfigDict(use_enum_values=True)


app = typer.Typer(
    name="embedded-clickhouse",
    help="Download, cache and run disposable ClickHouse servers",
    no_args_is_help=True,
    rich_markup_mode="markdown",
)
app.add_typer(cache_app, name="cache", help="Manage downloaded ClickHouse builds")
console = Console()
logger = get_logger(__name__)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0, "--verbose", "-v", count=True, help="Increase verbosity level"
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR) - explicit level",
    ),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="YAML configuration file"
    ),
) -> None:
    """embedded-clickhouse: throwaway ClickHouse servers for tests."""
    if verbose > 0 and log_level is not None:
        console.print("[red]Error: Cannot specify both --verbose and --log-level[/red]")
        raise typer.Exit(1)

    if log_level is None:
        resolved_log_level = (
            "DEBUG" if verbose >= 2 else "INFO" if verbose == 1 else "WARNING"
        )
    else:
        resolved_log_level = log_level.upper()

    cli_options = GlobalCliOptions(
        verbose=verbose,
        config_file=config_file,
        log_level=resolved_log_level,
    )
    ctx.ensure_object(dict)
    ctx.obj["cli_options"] = cli_options

    configure_logging(
        level=cli_options.log_level, enable_console=True, enable_json=False
    )
    try:
        load_config(cli_options.config_file)
    except EmbeddedClickHouseError as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show version information."""
    from .. import __version__
    from ..core.value_objects import ClickHouseVersion

    table = Table(title="embedded-clickhouse Version Information")
    table.add_column("Component", style="cyan")
    table.add_column("Version", style="green")
    table.add_row("embedded-clickhouse", __version__)
    table.add_row("Default ClickHouse", ClickHouseVersion.DEFAULT.value)
    try:
        import requests

        table.add_row("requests", requests.__version__)
    except ImportError:
        table.add_row("requests", "[red]Not installed[/red]")
    console.print(table)


@app.command()
def config() -> None:
    """Show current configuration."""
    from ..core.config import resolve_cache_dir

    current_config = get_config()
    table = Table(title="embedded-clickhouse Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Version", current_config.version)
    table.add_row("Host", current_config.host)
    for name in ("tcp_port", "http_port", "interserver_port"):
        port = getattr(current_config, name)
        table.add_row(name.replace("_", " ").title(), str(port) if port else "auto")
    table.add_row("Cache Directory", str(resolve_cache_dir(current_config)))
    if current_config.work_dir:
        table.add_row("Work Directory", str(current_config.work_dir))
    if current_config.binary_path:
        table.add_row("Binary", str(current_config.binary_path))
    if current_config.repository_url:
        table.add_row("Repository URL", current_config.repository_url)
    table.add_row("Remote Index", str(current_config.remote_index))
    table.add_row("Keep Data Directory", str(current_config.keep_data_dir))
    for key, value in sorted(current_config.settings.items()):
        table.add_row(f"Setting: {key}", value)
    table.add_row("Start Timeout", f"{current_config.timeouts.start}s")
    table.add_row("Stop Timeout", f"{current_config.timeouts.stop}s")
    table.add_row("Download Timeout", f"{current_config.timeouts.download}s")
    table.add_row("Download Attempts", str(current_config.retry.attempts))
    table.add_row("Log Level", current_config.log_level)
    console.print(table)


@app.command()
def versions(
    remote: bool = typer.Option(
        False, "--remote", help="Also list releases from the remote index"
    ),
) -> None:
    """List built-in (and optionally published) ClickHouse versions."""
    from ..core.value_objects import ClickHouseVersion
    from ..distribution.resolver import VersionResolver

    current_config = get_config()
    resolver = VersionResolver(
        repository_url=current_config.repository_url,
        index_url=current_config.index_url,
        remote_index=current_config.remote_index,
        timeout=current_config.timeouts.connect,
    )
    table = Table(title="ClickHouse Versions")
    table.add_column("Version", style="cyan")
    table.add_column("Channel", style="magenta")
    table.add_column("Source", style="green")
    known = resolver.known_versions()
    for known_version in known:
        marker = " (default)" if known_version == ClickHouseVersion.DEFAULT else ""
        table.add_row(known_version.value + marker, known_version.channel(), "built-in")

    if remote:
        try:
            published = resolver.list_remote_versions()
        except EmbeddedClickHouseError as e:
            console.print(f"[red]Cannot read release index: {e}[/red]")
            raise typer.Exit(1)
        for published_version in sorted(published, key=lambda v: v.sort_key(), reverse=True):
            if published_version not in known:
                table.add_row(published_version.value, published_version.channel(), "remote")
    console.print(table)


@app.command()
def fetch(
    clickhouse_version: Optional[str] = typer.Option(
        None, "--version", help="Version, 'latest' or an archive URL"
    ),
) -> None:
    """Download and cache a ClickHouse build without starting it."""
    from ..core.types import EmbeddedClickHouseConfig
    from ..instances.lifecycle import EmbeddedClickHouse

    try:
        current_config = get_config()
        if clickhouse_version is not None:
            current_config = EmbeddedClickHouseConfig.model_validate(
                {**current_config.model_dump(), "version": clickhouse_version}
            )
        with console.status(f"Fetching ClickHouse {current_config.version}..."):
            binary = EmbeddedClickHouse(current_config).ensure_binary()
    except EmbeddedClickHouseError as e:
        logger.error("Fetch failed: %s", e)
        console.print(f"[red]Fetch failed: {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]ClickHouse {current_config.version} ready:[/green] {binary}")


@app.command()
def run(
    clickhouse_version: Optional[str] = typer.Option(
        None, "--version", help="Version, 'latest' or an archive URL"
    ),
    tcp_port: Optional[int] = typer.Option(None, "--tcp-port", help="Native protocol port"),
    http_port: Optional[int] = typer.Option(None, "--http-port", help="HTTP interface port"),
    keep_data: bool = typer.Option(
        False, "--keep-data", help="Keep the data directory after shutdown"
    ),
) -> None:
    """Start a server in the foreground until interrupted."""
    from ..instances.lifecycle import EmbeddedClickHouse

    facade = EmbeddedClickHouse(get_config())
    try:
        instance = facade.start(
            version=clickhouse_version,
            tcp_port=tcp_port,
            http_port=http_port,
            keep_data_dir=keep_data or None,
        )
    except EmbeddedClickHouseError as e:
        logger.error("Start failed: %s", e)
        console.print(f"[red]Start failed: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"ClickHouse {instance.version}")
    table.add_column("Endpoint", style="cyan")
    table.add_column("Address", style="green")
    table.add_row("DSN", instance.dsn)
    table.add_row("HTTP", instance.http_url)
    table.add_row("JDBC", instance.jdbc_url)
    table.add_row("Data Directory", str(instance.data_dir))
    table.add_row("PID", str(instance.pid))
    console.print(table)
    console.print("[dim]Press Ctrl+C to stop[/dim]")

    try:
        while instance.is_running():
            time.sleep(0.5)
        console.print("[red]Server exited unexpectedly[/red]")
        console.print(instance.log_tail())
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping...[/yellow]")
    finally:
        try:
            facade.stop(instance)
        except EmbeddedClickHouseError as e:
            console.print(f"[red]Shutdown failed: {e}[/red]")
            raise typer.Exit(1)


def cli_main() -> None:
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except (RuntimeError, OSError, ValueError, ImportError) as e:
        logger.error("Unexpected error: %s", e)
        console.print(f"[red]Unexpected error: {e}[/red]")
        sys.exit(1)
    finally:
        shutdown_logging()


if __name__ == "__main__":
    cli_main()
