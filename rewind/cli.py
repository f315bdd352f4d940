"""Rewind CLI - undoable snapshots of a project directory."""

import json
import logging
import sys
from pathlib import Path
from typing import NoReturn

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from rewind import __version__
from rewind.config import RewindConfig, ensure_directories, get_config_path, get_rewind_dir
from rewind.engine import ADDED, DELETED, SnapshotEngine
from rewind.errors import RewindError, format_error
from rewind.hooks import HookPayload, find_settings_path, handle_hook, install_hook, uninstall_hook
from rewind.storage import format_bytes, remove_stale_projects, storage_info, validate_storage

console = Console()

DEFAULT_MESSAGE = "Manual checkpoint"


def _fail(error: BaseException) -> NoReturn:
    console.print(f"[red]{escape(format_error(error))}[/red]")
    sys.exit(1)


def _engine(ctx: click.Context) -> SnapshotEngine:
    rewind_dir = get_rewind_dir()
    config = RewindConfig.load(rewind_dir)
    return SnapshotEngine.for_project(ctx.obj["project"], config, storage_root=rewind_dir)


def _when(timestamp: str) -> str:
    return timestamp[:16].replace("T", " ")


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option(
    "--project",
    "-p",
    type=click.Path(exists=True, file_okay=False),
    help="Project directory (default: current directory)",
)
@click.pass_context
def main(ctx, verbose, project):
    """Rewind: undoable snapshots of your project."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["project"] = Path(project) if project else Path.cwd()


# =============================================================================
# Checkpoints
# =============================================================================


@main.command()
@click.argument("message", required=False)
@click.option("--session", "-s", help="Session id to group this checkpoint under")
@click.pass_context
def create(ctx, message, session):
    """Create a checkpoint of the project."""
    try:
        checkpoint = _engine(ctx).create(message or DEFAULT_MESSAGE, session_id=session)
    except (RewindError, ValueError) as e:
        _fail(e)

    console.print(f"[green]✓[/green] Created checkpoint [bold]{checkpoint.short_id}[/bold]")
    console.print(f"  {escape(checkpoint.message)}")


@main.command("list")
@click.option("--all", "-a", "all_projects", is_flag=True, help="Show checkpoints from every project")
@click.option("--session", "-s", "session_prefix", help="Only sessions starting with this id")
@click.option("--limit", "-n", type=int, help="Number of checkpoints to show")
@click.option("--json", "as_json", is_flag=True, help="Output JSON lines")
@click.pass_context
def list_cmd(ctx, all_projects, session_prefix, limit, as_json):
    """List checkpoints, newest first."""
    engine = _engine(ctx)
    if limit is None and not all_projects:
        limit = RewindConfig.load(get_rewind_dir()).list_limit

    try:
        checkpoints = engine.list(session_prefix=session_prefix, limit=limit, all_projects=all_projects)
        current = engine.get_current()
    except RewindError as e:
        _fail(e)

    if as_json:
        for checkpoint in checkpoints:
            click.echo(json.dumps(checkpoint.to_dict()))
        return

    if not checkpoints:
        console.print("[yellow]No checkpoints found.[/yellow]")
        console.print("Create one with: rewind create \"message\"")
        return

    table = Table()
    table.add_column("", width=1)
    table.add_column("ID")
    table.add_column("SESSION")
    table.add_column("TIME (UTC)")
    table.add_column("MESSAGE")
    if all_projects:
        table.add_column("PROJECT")

    for cp in checkpoints:
        message = cp.message[:50] + "..." if len(cp.message) > 50 else cp.message
        row = [
            "●" if cp.id == current else "",
            cp.short_id,
            escape(cp.session_id),
            _when(cp.timestamp),
            escape(message),
        ]
        if all_projects:
            row.append(escape(cp.project_path))
        table.add_row(*row)

    console.print(table)


@main.command()
@click.argument("checkpoint_id", required=False)
@click.option("--force", "-f", is_flag=True, help="Skip confirmation")
@click.option("--cancel", is_flag=True, help="Undo the last restore")
@click.pass_context
def restore(ctx, checkpoint_id, force, cancel):
    """Restore the project to a checkpoint."""
    engine = _engine(ctx)

    if cancel:
        try:
            engine.cancel_restore()
        except RewindError as e:
            _fail(e)
        console.print(f"[green]✓[/green] Restore cancelled, back at {engine.get_current()[:8]}")
        return

    if not checkpoint_id:
        raise click.UsageError("Missing CHECKPOINT_ID (or use --cancel)")

    if not force:
        prompt = f"Restore to checkpoint {checkpoint_id}? Changes since the last checkpoint will be lost."
        if not click.confirm(prompt):
            console.print("Cancelled.")
            return

    try:
        engine.restore(checkpoint_id)
    except RewindError as e:
        _fail(e)

    console.print(f"[green]✓[/green] Restored to checkpoint {engine.get_current()[:8]}")
    console.print("[dim]Undo with: rewind restore --cancel[/dim]")


@main.command()
@click.argument("checkpoint_id")
@click.pass_context
def diff(ctx, checkpoint_id):
    """Show files changed between a checkpoint and the current one."""
    try:
        changes = _engine(ctx).diff(checkpoint_id)
    except RewindError as e:
        _fail(e)

    if not changes:
        console.print("No differences found")
        return

    for change in changes:
        path = escape(change.path)
        if change.type == ADDED:
            console.print(f"[green]+ {path}[/green]")
        elif change.type == DELETED:
            console.print(f"[red]- {path}[/red]")
        else:
            console.print(f"[yellow]~ {path}[/yellow]")


@main.command()
@click.option("--days", "-d", default=7, show_default=True, help="Age threshold in days")
@click.pass_context
def clean(ctx, days):
    """Report checkpoints older than N days (history is kept)."""
    try:
        count = _engine(ctx).count_older_than(days)
    except RewindError as e:
        _fail(e)

    console.print(f"{count} checkpoint(s) older than {days} days")
    console.print("[dim]History is never rewritten; use 'rewind storage clean' to drop inactive projects.[/dim]")


@main.command()
@click.pass_context
def status(ctx):
    """Show checkpoint status for the project."""
    try:
        info = _engine(ctx).status()
    except RewindError as e:
        _fail(e)

    console.print(f"[bold]Project:[/bold] {escape(info.project_path)}")
    console.print(f"[bold]Checkpoints:[/bold] {info.total_checkpoints}")
    if info.latest:
        latest = info.latest
        console.print(
            f"[bold]Latest:[/bold] {latest.short_id} {escape(latest.message)} "
            f"[dim]({_when(latest.timestamp)})[/dim]"
        )
    else:
        console.print("[bold]Latest:[/bold] [dim]none[/dim]")
    console.print(f"[bold]Storage:[/bold] {format_bytes(info.storage_bytes)}")


@main.command()
@click.pass_context
def statusline(ctx):
    """One-line status for a shell or editor status bar."""
    try:
        latest = _engine(ctx).list(limit=1)
    except (RewindError, OSError):
        return

    if not latest:
        click.echo("📍 No checkpoints")
        return
    cp = latest[0]
    message = cp.message[:40] + "..." if len(cp.message) > 40 else cp.message
    click.echo(f"📍 {cp.short_id} • {message}")


# =============================================================================
# Assistant hook
# =============================================================================


@main.command()
def hook():
    """Assistant hook entry point (reads JSON on stdin)."""
    raw = sys.stdin.read()
    try:
        payload = HookPayload.from_json(raw)
    except ValueError as e:
        click.echo(json.dumps({"allow": True, "context": f"⚠️ Hook error: {e}"}, ensure_ascii=False))
        return

    reply = handle_hook(payload, RewindConfig.load(get_rewind_dir()), storage_root=get_rewind_dir())
    click.echo(json.dumps(reply, ensure_ascii=False))


@main.command()
def setup():
    """Install the auto-checkpoint hook into the assistant's settings."""
    settings_path = find_settings_path()
    result = install_hook(settings_path)
    if result.is_err():
        _fail(result.unwrap_err())

    rewind_dir = ensure_directories()
    config = RewindConfig.load(rewind_dir)
    config.hook_enabled = True
    config.save(rewind_dir)

    if result.unwrap():
        console.print(f"[green]✓[/green] Hook installed in {settings_path}")
    else:
        console.print(f"[yellow]Hook already installed in {settings_path}[/yellow]")
    console.print("[dim]A checkpoint is created before every prompt.[/dim]")


@main.command()
def unsetup():
    """Remove the auto-checkpoint hook from the assistant's settings."""
    settings_path = find_settings_path()
    result = uninstall_hook(settings_path)
    if result.is_err():
        _fail(result.unwrap_err())

    rewind_dir = get_rewind_dir()
    config = RewindConfig.load(rewind_dir)
    if config.hook_enabled:
        config.hook_enabled = False
        config.save(rewind_dir)

    if result.unwrap():
        console.print(f"[green]✓[/green] Hook removed from {settings_path}")
    else:
        console.print(f"[yellow]No hook found in {settings_path}[/yellow]")


# =============================================================================
# Configuration
# =============================================================================


@main.group()
def config():
    """View and edit ~/.rewind/config.yaml."""
    pass


@config.command("list")
def config_list():
    """Show the current configuration."""
    rewind_dir = get_rewind_dir()
    cfg = RewindConfig.load(rewind_dir)

    console.print(f"[bold]Configuration[/bold] [dim]({get_config_path(rewind_dir)})[/dim]")
    console.print()
    for key, value in cfg.to_dict().items():
        if isinstance(value, list):
            console.print(f"  {key}: {escape(', '.join(value)) or '[dim](none)[/dim]'}")
        else:
            console.print(f"  {key}: {value}")
    console.print()
    console.print("[dim]rewind config set KEY VALUE    Set a value[/dim]")
    console.print("[dim]rewind config reset            Restore defaults[/dim]")


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str):
    """Set a configuration value."""
    rewind_dir = get_rewind_dir()
    cfg = RewindConfig.load(rewind_dir)
    try:
        new_value = cfg.set_value(key, value)
    except KeyError:
        console.print(f"[red]Unknown config key: {escape(key)}[/red]")
        console.print("[dim]Valid keys: list_limit, cleanup_days, hook_enabled, auto_checkpoint[/dim]")
        sys.exit(1)
    except ValueError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)

    cfg.save(rewind_dir)
    console.print(f"[green]✓[/green] Set {key} = {new_value}")


@config.command("reset")
def config_reset():
    """Reset the configuration to defaults."""
    RewindConfig().save(get_rewind_dir())
    console.print("[green]✓[/green] Configuration reset to defaults")


@main.group()
def ignore():
    """Manage custom ignore patterns."""
    pass


@ignore.command("list")
def ignore_list():
    """Show default and custom ignore patterns."""
    cfg = RewindConfig.load(get_rewind_dir())

    console.print("[bold]Default patterns[/bold]")
    for pattern in cfg.ignore_patterns:
        console.print(f"  {escape(pattern)}")
    console.print()
    console.print("[bold]Custom patterns[/bold]")
    if cfg.custom_ignore_patterns:
        for pattern in cfg.custom_ignore_patterns:
            console.print(f"  {escape(pattern)}")
    else:
        console.print("  [dim]none[/dim]")


@ignore.command("add")
@click.argument("pattern")
def ignore_add(pattern: str):
    """Add a custom ignore pattern (gitignore syntax)."""
    rewind_dir = get_rewind_dir()
    cfg = RewindConfig.load(rewind_dir)
    if not cfg.add_ignore_pattern(pattern):
        console.print(f"[yellow]Pattern already present: {escape(pattern)}[/yellow]")
        return
    cfg.save(rewind_dir)
    console.print(f"[green]✓[/green] Added ignore pattern: {escape(pattern)}")


@ignore.command("remove")
@click.argument("pattern")
def ignore_remove(pattern: str):
    """Remove a custom ignore pattern."""
    rewind_dir = get_rewind_dir()
    cfg = RewindConfig.load(rewind_dir)
    if not cfg.remove_ignore_pattern(pattern):
        console.print(f"[red]Pattern not found: {escape(pattern)}[/red]")
        sys.exit(1)
    cfg.save(rewind_dir)
    console.print(f"[green]✓[/green] Removed ignore pattern: {escape(pattern)}")


# =============================================================================
# Storage maintenance
# =============================================================================


@main.group()
def storage():
    """Inspect and maintain the storage root."""
    pass


@storage.command("info")
def storage_info_cmd():
    """Show storage root usage."""
    info = storage_info(get_rewind_dir())
    console.print(f"[bold]Base directory:[/bold] {info.base_dir}")
    console.print(f"[bold]Projects:[/bold] {info.total_projects}")
    console.print(f"[bold]Total size:[/bold] {format_bytes(info.total_bytes)}")
    console.print(f"[bold]Config file:[/bold] {'present' if info.config_exists else 'absent'}")


@storage.command("clean")
@click.option("--days", "-d", type=int, help="Remove projects inactive for this many days")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation")
def storage_clean(days, force):
    """Remove whole projects with no recent checkpoint activity."""
    rewind_dir = get_rewind_dir()
    if days is None:
        days = RewindConfig.load(rewind_dir).cleanup_days

    if not force:
        if not click.confirm(f"Remove all checkpoints of projects inactive for {days} days?"):
            console.print("Cancelled.")
            return

    try:
        result = remove_stale_projects(rewind_dir, days)
    except OSError as e:
        _fail(e)

    if not result.removed_projects:
        console.print("Nothing to clean.")
        return
    console.print(
        f"[green]✓[/green] Removed {result.removed_projects} project(s), "
        f"freed {format_bytes(result.freed_bytes)}"
    )


@storage.command("validate")
def storage_validate():
    """Check the storage root for problems."""
    result = validate_storage(get_rewind_dir())
    if result.is_valid:
        console.print("[green]✓[/green] Storage is valid")
        return

    for issue in result.issues:
        console.print(f"[red]✗ {escape(issue)}[/red]")
    for suggestion in result.suggestions:
        console.print(f"  [dim]{escape(suggestion)}[/dim]")
    sys.exit(1)


if __name__ == "__main__":
    main()
