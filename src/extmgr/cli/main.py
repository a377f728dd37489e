"""Typer application for extmgr."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import typer
from rich.console import Console
from rich.table import Table

from extmgr.auto_update import (
    AutoUpdateConfigStore,
    check_for_updates,
    disable_auto_update,
    enable_auto_update,
    parse_duration,
)
from extmgr.cache import MetadataCache
from extmgr.config import Settings, get_settings
from extmgr.core.exceptions import ExtmgrError
from extmgr.core.logging import configure_logging
from extmgr.extensions.discovery import discover_extensions
from extmgr.history import ChangeEntry, JsonlChangeLog, format_change_entry, recent_changes
from extmgr.marketplace.formatting import format_bytes, pluralize, truncate
from extmgr.models import State
from extmgr.packages.discovery import get_installed_packages, search_registry_packages
from extmgr.packages.extensions import discover_package_extensions, discover_package_resources
from extmgr.packages.management import (
    PackageOperationOutcome,
    install_package,
    remove_package,
    update_package,
    update_packages,
)
from extmgr.packages.settings_store import SettingsFilterStore
from extmgr.paths import ExtmgrPaths, resolve_paths
from extmgr.process import AsyncioCommandRunner, CommandRunner
from extmgr.reconcile import UnifiedItem, apply_staged_changes, build_unified_items
from extmgr.status import build_status_text

app = typer.Typer(
    name="extmgr",
    help="Manage pi extensions and packages.",
    no_args_is_help=True,
)
cache_app = typer.Typer(help="Inspect or clear the metadata cache.", no_args_is_help=True)
app.add_typer(cache_app, name="cache")

console = Console()


def create_runner() -> CommandRunner:
    return AsyncioCommandRunner()


@dataclass
class CliContext:
    settings: Settings
    paths: ExtmgrPaths
    runner: CommandRunner
    cache: MetadataCache
    store: SettingsFilterStore
    history: JsonlChangeLog
    auto_update: AutoUpdateConfigStore


def _context() -> CliContext:
    settings = get_settings()
    paths = resolve_paths(settings)
    return CliContext(
        settings=settings,
        paths=paths,
        runner=create_runner(),
        cache=MetadataCache.from_settings(settings, paths),
        store=SettingsFilterStore(paths),
        history=JsonlChangeLog(paths.history_path),
        auto_update=AutoUpdateConfigStore(paths.auto_update_path),
    )


async def _unified_items(ctx: CliContext, *, with_metadata: bool) -> list[UnifiedItem]:
    installed = await get_installed_packages(
        ctx.runner,
        ctx.settings,
        cwd=ctx.paths.cwd,
        cache=ctx.cache,
        with_metadata=with_metadata,
    )
    local = discover_extensions(ctx.paths)
    package_extensions = discover_package_extensions(installed, ctx.paths, ctx.store)
    resources = discover_package_resources(installed, ctx.paths, ctx.store)
    return build_unified_items(
        local,
        installed,
        package_extensions,
        ctx.store,
        known_updates=ctx.auto_update.load().updates_available,
        package_resources=resources,
    )


def _report(outcome: PackageOperationOutcome) -> None:
    if not outcome.ok:
        console.print(f"[red]✗[/red] {outcome.message}")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] {outcome.message}")
    if outcome.reload_recommended:
        console.print("[dim]Run /reload in pi to apply changes.[/dim]")


@app.callback()
def main_callback() -> None:
    configure_logging(get_settings().logging)


@app.command("list")
def list_items(
    metadata: bool = typer.Option(False, "--metadata", help="Fetch package descriptions and sizes."),
) -> None:
    """List local extensions, packages and package entrypoints."""
    ctx = _context()
    items = asyncio.run(_unified_items(ctx, with_metadata=metadata))
    if not items:
        console.print("[yellow]No extensions or packages found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("State")
    table.add_column("Scope", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Summary")
    table.add_column("ID", style="dim")
    for item in items:
        if item.original_state is None:
            state = "[dim]-[/dim]"
        elif item.original_state == "enabled":
            state = "[green]on[/green]"
        else:
            state = "[red]off[/red]"
        name = item.display_name
        if item.update_available:
            name += " [yellow]↑[/yellow]"
        table.add_row(state, item.scope, name, truncate(item.summary, 60), item.id)
    console.print(table)


@app.command()
def packages() -> None:
    """List installed packages with registry metadata."""
    ctx = _context()
    installed = asyncio.run(
        get_installed_packages(ctx.runner, ctx.settings, cwd=ctx.paths.cwd, cache=ctx.cache)
    )
    if not installed:
        console.print("No packages installed.")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Name", style="cyan")
    table.add_column("Version")
    table.add_column("Scope", style="dim")
    table.add_column("Size", justify="right")
    table.add_column("Description")
    for package in installed:
        table.add_row(
            package.name,
            package.version or "",
            package.scope,
            format_bytes(package.size) if package.size else "",
            truncate(package.description or "", 60),
        )
    console.print(table)


def _set_state(item_id: str, target: State) -> None:
    ctx = _context()

    async def run() -> tuple[int, list[str]]:
        items = await _unified_items(ctx, with_metadata=False)
        if not any(item.id == item_id and item.toggleable for item in items):
            console.print(f"[red]✗[/red] No toggleable item with id {item_id}")
            raise typer.Exit(1)
        result = await apply_staged_changes(items, {item_id: target}, change_log=ctx.history)
        return result.changed, result.errors

    changed, errors = asyncio.run(run())
    for error in errors:
        console.print(f"[red]✗[/red] {error}")
    if errors:
        raise typer.Exit(1)
    if changed == 0:
        console.print(f"{item_id} is already {target}.")
        return
    console.print(f"[green]✓[/green] {item_id} {target}")
    console.print("[dim]Run /reload in pi to apply changes.[/dim]")


@app.command()
def enable(item_id: str = typer.Argument(..., help="Item id as shown by `extmgr list`.")) -> None:
    """Enable an extension, package entrypoint or package."""
    _set_state(item_id, "enabled")


@app.command()
def disable(item_id: str = typer.Argument(..., help="Item id as shown by `extmgr list`.")) -> None:
    """Disable an extension, package entrypoint or package."""
    _set_state(item_id, "disabled")


@app.command()
def search(query: str = typer.Argument(..., help="Registry search terms.")) -> None:
    """Search the registry for packages."""
    ctx = _context()
    try:
        results = asyncio.run(
            search_registry_packages(
                query, ctx.runner, ctx.settings, cache=ctx.cache, cwd=ctx.paths.cwd
            )
        )
    except ExtmgrError as exc:
        console.print(f"[red]✗[/red] {exc}")
        raise typer.Exit(1) from exc

    if not results:
        console.print("No packages found.")
        return
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Name", style="cyan")
    table.add_column("Version")
    table.add_column("Description")
    for package in results:
        table.add_row(package.name, package.version or "", truncate(package.description or "", 70))
    console.print(table)


@app.command()
def install(
    source: str = typer.Argument(..., help="npm:name, git:url, a path, or a bare package name."),
    project: bool = typer.Option(False, "--project", "-l", help="Install into the project scope."),
) -> None:
    """Install a package through pi."""
    ctx = _context()
    outcome = asyncio.run(
        install_package(
            source,
            ctx.runner,
            ctx.settings,
            scope="project" if project else "global",
            cwd=ctx.paths.cwd,
            cache=ctx.cache,
            store=ctx.store,
            change_log=ctx.history,
        )
    )
    _report(outcome)


@app.command()
def remove(
    source: str = typer.Argument(..., help="Installed package source."),
    project: bool = typer.Option(False, "--project", "-l", help="Remove from the project scope."),
) -> None:
    """Remove a package through pi."""
    ctx = _context()
    outcome = asyncio.run(
        remove_package(
            source,
            ctx.runner,
            ctx.settings,
            scope="project" if project else "global",
            cwd=ctx.paths.cwd,
            cache=ctx.cache,
            change_log=ctx.history,
        )
    )
    _report(outcome)


@app.command()
def update(source: str | None = typer.Argument(None, help="Package to update; all when omitted.")) -> None:
    """Update one package or every package."""
    ctx = _context()
    if source:
        outcome = asyncio.run(
            update_package(
                source, ctx.runner, ctx.settings, cwd=ctx.paths.cwd, change_log=ctx.history
            )
        )
    else:
        outcome = asyncio.run(update_packages(ctx.runner, ctx.settings, cwd=ctx.paths.cwd))
    _report(outcome)


@app.command("auto-update")
def auto_update(
    duration: str = typer.Argument(..., help="1h, 1d, 1w, 1m, daily, weekly or never."),
) -> None:
    """Configure how often to check for package updates."""
    ctx = _context()
    parsed = parse_duration(duration)
    if parsed is None:
        console.print("[red]✗[/red] Invalid duration. Examples: 1h, 1d, 1w, 1m, never")
        raise typer.Exit(1)
    if parsed.ms == 0:
        disable_auto_update(ctx.auto_update)
        console.print("Auto-update disabled")
        return
    config = enable_auto_update(ctx.auto_update, parsed)
    console.print(f"[green]✓[/green] Auto-update enabled: {config.display_text}")


@app.command("check-updates")
def check_updates() -> None:
    """Check registry packages for newer published versions."""
    ctx = _context()
    updates = asyncio.run(
        check_for_updates(ctx.runner, ctx.settings, ctx.auto_update, cwd=ctx.paths.cwd)
    )
    if not updates:
        console.print("All packages are up to date.")
        return
    console.print(f"{pluralize(len(updates), 'update')} available:")
    for name in updates:
        console.print(f"  [yellow]↑[/yellow] {name}")


@app.command()
def status() -> None:
    """Print the one-line status summary."""
    ctx = _context()
    installed = asyncio.run(
        get_installed_packages(ctx.runner, ctx.settings, cwd=ctx.paths.cwd, with_metadata=False)
    )
    console.print(build_status_text(len(installed), ctx.auto_update.load()))


@app.command()
def history(
    limit: int = typer.Option(10, "--limit", "-n", help="Number of entries to show."),
) -> None:
    """Show recent extension and package changes."""
    ctx = _context()
    entries = recent_changes(ctx.history, limit)
    if not entries:
        console.print("No changes recorded.")
        return
    for entry in entries:
        console.print(format_change_entry(entry), markup=False)


@cache_app.command("stats")
def cache_stats() -> None:
    """Show how many cached entries are still fresh."""
    ctx = _context()
    stats = asyncio.run(ctx.cache.stats())
    console.print(f"Total: {stats.total}  Valid: {stats.valid}  Expired: {stats.expired}")
    console.print(f"[dim]{ctx.cache.path}[/dim]")


@cache_app.command("clear")
def cache_clear() -> None:
    """Drop every cached package and search result."""
    ctx = _context()
    asyncio.run(ctx.cache.clear())
    ctx.history.append(ChangeEntry(action="cache_clear", success=True))
    console.print("[green]✓[/green] Cache cleared")