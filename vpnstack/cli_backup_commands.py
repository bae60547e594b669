"""Backup CLI commands - backup, restore, snapshots."""
import typer
from rich.console import Console
from rich.table import Table

from vpnstack.cli_support import (
    confirm_action,
    get_layout,
    get_runner,
    handle_cli_error,
    is_mock,
    print_info,
    print_success,
    print_warning,
)
from vpnstack.core.backup import BackupCoordinator
from vpnstack.core.errors import VpnstackError
from vpnstack.core.lock import stack_lock

# Module-level console instance (will be set by register function)
console: Console = Console()


def _coordinator() -> BackupCoordinator:
    return BackupCoordinator(get_layout(), get_runner())


def backup():
    """Snapshot the database, Authelia config, WireGuard state and secrets."""
    coordinator = _coordinator()
    try:
        with stack_lock(coordinator.layout.root):
            snapshot = coordinator.backup()
    except VpnstackError as e:
        handle_cli_error(e, console)

    print_success(console, f"Backup saved to {snapshot.path}")
    for path in snapshot.files:
        console.print(f"  {path.name}")
    print_warning(console, f"{snapshot.path}/.env.bak holds every secret. Store it securely")


def restore(
    snapshot: str = typer.Argument(..., help="Snapshot name (e.g. 20250109_120000) or path"),
    force: bool = typer.Option(False, "--force", help="Replace a live .env that differs from the snapshot"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Restore a snapshot over the current install."""
    coordinator = _coordinator()

    if not confirm_action(
        f"Restore {snapshot}? The current database and WireGuard state will be overwritten.",
        yes_flag=yes,
        mock=is_mock(),
    ):
        print_warning(console, "Cancelled")
        raise typer.Exit(0)

    try:
        with stack_lock(coordinator.layout.root):
            restored = coordinator.restore(snapshot, force=force)
    except VpnstackError as e:
        handle_cli_error(e, console)

    print_success(console, f"Restored {restored.name}")
    print_info(console, "Run 'vpnstack restart' so every service picks up the restored state")


def snapshots():
    """List completed backups, newest first."""
    found = _coordinator().list_snapshots()
    if not found:
        print_warning(console, "No backups found")
        return

    table = Table(title="vpnstack backups")
    table.add_column("Snapshot", style="cyan", no_wrap=True)
    table.add_column("Created", style="yellow")
    table.add_column("Path", style="green")
    for snap in found:
        table.add_row(snap.name, snap.created_at.strftime('%Y-%m-%d %H:%M:%S'), str(snap.path))
    console.print(table)


def register_backup_commands(app: typer.Typer, shared_console: Console):
    """Register backup commands with the main Typer app.

    Args:
        app: Main Typer application
        shared_console: Shared Rich console instance
    """
    global console
    console = shared_console

    app.command()(backup)
    app.command()(restore)
    app.command()(snapshots)
