"""Commands for inspecting and pruning the local distribution cache."""

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ...artifacts.cache import ArtifactCache
from ...core.config import get_config, resolve_cache_dir
from ...core.errors import EmbeddedClickHouseError
from ...core.log import get_logger
from ...core.value_objects import CacheKey
from ...utils.filesystem import get_size

console = Console()
logger = get_logger(__name__)
cache_app = typer.Typer(help="Manage downloaded ClickHouse builds")


def _open_cache() -> ArtifactCache:
    config = get_config()
    return ArtifactCache(resolve_cache_dir(config), lock_timeout=config.timeouts.install_lock)


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB"):
        if value < 1024:
            return f"{size} B" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GiB"


@cache_app.command("list")
def list_entries() -> None:
    """List installed ClickHouse builds."""
    cache = _open_cache()
    entries = cache.entries()
    if not entries:
        console.print(f"[yellow]No cached builds in {cache.base_dir}[/yellow]")
        return

    table = Table(title=f"Cached ClickHouse builds ({cache.base_dir})")
    table.add_column("Version", style="cyan")
    table.add_column("Platform", style="magenta")
    table.add_column("Size", justify="right")
    table.add_column("Installed", style="green")
    table.add_column("Verified")
    for entry in entries:
        table.add_row(
            entry.version,
            entry.platform_tag,
            _human_size(get_size(entry.install_dir)),
            entry.installed_at.strftime("%Y-%m-%d %H:%M"),
            "yes" if entry.checksum else "no",
        )
    console.print(table)


@cache_app.command()
def remove(
    version: Optional[str] = typer.Argument(
        None, help="Version to remove; every build when omitted"
    ),
    platform_tag: Optional[str] = typer.Option(
        None, "--platform", help="Only remove builds for this platform tag"
    ),
) -> None:
    """Remove cached builds."""
    cache = _open_cache()
    removed = 0
    try:
        for entry in cache.entries():
            if version is not None and entry.version != version:
                continue
            if platform_tag is not None and entry.platform_tag != platform_tag:
                continue
            if cache.remove(CacheKey(version=entry.version, platform_tag=entry.platform_tag)):
                console.print(f"Removed {entry.version} ({entry.platform_tag})")
                removed += 1
    except EmbeddedClickHouseError as e:
        logger.error("Cache removal failed: %s", e)
        console.print(f"[red]Cache removal failed: {e}[/red]")
        raise typer.Exit(1)

    if removed == 0:
        console.print("[yellow]Nothing to remove[/yellow]")
