"""Utility CLI commands - render, doctor, version."""
import os
import shutil
import stat
from pathlib import Path
from typing import List, Optional, Tuple

import typer
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from vpnstack.cli_support import (
    get_layout,
    get_runner,
    handle_cli_error,
    load_parameters,
    print_error,
    print_info,
    print_success,
    print_warning,
)
from vpnstack.core.config import get_settings
from vpnstack.core.errors import StackEnvironmentError, VpnstackError
from vpnstack.core.layout import atomic_write
from vpnstack.core.preflight import REQUIRED_TOOLS, check_docker_version, detect_platform
from vpnstack.core.secret_store import SecretStore
from vpnstack.core.synthesizer import synthesize
from vpnstack.models.artifacts import ARTIFACT_PATHS
from vpnstack.models.lifecycle import StackState
from vpnstack.models.secrets import SecretMaterial

VERSION = "0.1.0"

# Module-level console instance (will be set by register function)
console: Console = Console()


def render(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Parameter file (vpnstack.yml)"),
    artifact: Optional[str] = typer.Option(None, "--artifact", "-a", help="Only this artifact (topology, auth_policy, tls, credentials)"),
    output_dir: Optional[str] = typer.Option(None, "--output-dir", "-o", help="Write files here instead of printing"),
):
    """Render the configuration files without touching the install.

    Uses the install's secrets when they exist, placeholders otherwise.
    """
    if artifact and artifact not in ARTIFACT_PATHS:
        print_error(console, f"Unknown artifact '{artifact}'. Choose from: {', '.join(ARTIFACT_PATHS)}")
        raise typer.Exit(1)

    try:
        params = load_parameters(config)
        store = SecretStore(get_layout())
        if store.exists():
            secrets = store.load()
        else:
            print_info(console, "No secrets yet: rendering with placeholder values")
            secrets = SecretMaterial.placeholder()
        artifacts = synthesize(params, secrets)
    except VpnstackError as e:
        handle_cli_error(e, console)

    for item in artifacts:
        if artifact and item.name != artifact:
            continue
        if output_dir:
            target = Path(output_dir) / item.path
            atomic_write(target, item.content, mode=item.mode)
            print_success(console, f"Wrote {target}")
        else:
            console.rule(f"[bold]{item.path}[/bold]")
            console.print(Syntax(item.content, "yaml"))


def _check(checks: List[Tuple[str, bool, str]], name: str, func) -> None:
    try:
        detail = func()
    except StackEnvironmentError as e:
        checks.append((name, False, str(e)))
    else:
        checks.append((name, True, detail or "ok"))


def doctor():
    """Check the host and the install for common problems."""
    settings = get_settings()
    layout = get_layout()
    runner = get_runner()
    checks: List[Tuple[str, bool, str]] = []

    _check(checks, "Operating system", lambda: detect_platform().pretty_name)
    for tool in REQUIRED_TOOLS:
        _check(checks, f"Tool: {tool}", lambda tool=tool: shutil.which(tool) or _missing(tool))

    def docker():
        version = runner.docker_version()
        check_docker_version(version, settings.min_docker_major)
        return f"Docker {version}"
    _check(checks, "Docker engine", docker)

    def root():
        if hasattr(os, "geteuid") and os.geteuid() != 0:
            raise StackEnvironmentError("not running as root (install and day-2 commands need it)")
        return "root"
    _check(checks, "Privileges", root)

    def wireguard():
        if not Path("/sys/module/wireguard").exists():
            raise StackEnvironmentError("kernel module not loaded (kernel >= 5.6 required)")
        return "loaded"
    _check(checks, "WireGuard", wireguard)

    def secrets():
        if not layout.env_file.exists():
            raise StackEnvironmentError(f"{layout.env_file} missing")
        mode = stat.S_IMODE(layout.env_file.stat().st_mode)
        if mode & 0o077:
            raise StackEnvironmentError(f"{layout.env_file} is mode {oct(mode)}, expected 0o600")
        return "present, mode 600"
    _check(checks, "Secret file", secrets)

    table = Table(title="vpnstack doctor")
    table.add_column("Check", style="cyan", no_wrap=True)
    table.add_column("Result")
    table.add_column("Detail")
    for name, ok, detail in checks:
        table.add_row(name, "[green]✓[/green]" if ok else "[red]✗[/red]", detail)
    console.print(table)

    state = StackState.detect(layout)
    console.print(f"[bold]Install:[/bold] {layout.root} ({state.value})")

    failed = [name for name, ok, _ in checks if not ok]
    if failed:
        print_warning(console, f"{len(failed)} check(s) need attention")
        raise typer.Exit(1)
    print_success(console, "All checks passed")


def _missing(tool: str) -> str:
    raise StackEnvironmentError(f"{tool} not installed")


def version():
    """Show vpnstack version."""
    console.print(f"vpnstack v{VERSION} - self-hosted WireGuard behind Traefik and Authelia")


def register_utility_commands(app: typer.Typer, shared_console: Console):
    """Register utility commands with the main Typer app.

    Args:
        app: Main Typer application
        shared_console: Shared Rich console instance
    """
    global console
    console = shared_console

    app.command()(render)
    app.command()(doctor)
    app.command()(version)
