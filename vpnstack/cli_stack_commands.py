"""Stack lifecycle CLI commands - install, up, down, restart, status, logs, update."""
import warnings
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from vpnstack.cli_support import (
    get_orchestrator,
    handle_cli_error,
    is_mock,
    load_parameters,
    print_info,
    print_success,
    print_warning,
    setup_file_logging,
)
from vpnstack.core.errors import HealthTimeoutWarning, LifecycleError, VpnstackError
from vpnstack.core.lock import stack_lock
from vpnstack.models.lifecycle import HealthReport, StackState

# Module-level console instance (will be set by register function)
console: Console = Console()

STATUS_STYLES = {
    'healthy': 'green',
    'running': 'green',
    'starting': 'yellow',
    'unhealthy': 'red',
    'exited': 'red',
    'not found': 'dim',
}


def _await_healthy(orchestrator, timeout: Optional[int] = None) -> HealthReport:
    """Run the health poll, showing a timeout as a warning."""
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", HealthTimeoutWarning)
        report = orchestrator.await_healthy(timeout=timeout)
    for warning in caught:
        if issubclass(warning.category, HealthTimeoutWarning):
            print_warning(console, str(warning.message))
    return report


def _require_installed(orchestrator) -> None:
    if orchestrator.state == StackState.UNINITIALIZED or not orchestrator.layout.env_file.exists():
        raise LifecycleError(
            f"No vpnstack install at {orchestrator.layout.root}. Run 'vpnstack install' first"
        )


def install(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Parameter file (vpnstack.yml)"),
    domain: Optional[str] = typer.Option(None, "--domain", help="Override the base domain"),
    skip_firewall: bool = typer.Option(False, "--skip-firewall", help="Leave firewall rules untouched"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Install or reconfigure the stack and start it.

    Safe to re-run: configuration files are regenerated from vpnstack.yml,
    the secrets in .env are reused.

    Examples:
        sudo vpnstack install -c vpnstack.yml
        VPNSTACK_ADMIN_PASSWORD=... sudo vpnstack install
    """
    setup_file_logging(log_file=log_file, verbose=verbose)

    try:
        overrides = {'domain': domain}
        if skip_firewall:
            overrides['setup_firewall'] = False
        params = load_parameters(config, overrides)
        orchestrator = get_orchestrator(params)

        with stack_lock(orchestrator.layout.root):
            orchestrator.preflight()
            orchestrator.prepare()
            orchestrator.configure_firewall()
            orchestrator.start()
            report = _await_healthy(orchestrator)
    except VpnstackError as e:
        handle_cli_error(e, console, verbose=verbose)

    console.print()
    if report.healthy:
        print_success(console, "Installation complete")
    else:
        print_warning(console, "Installation finished, but services are not healthy yet")

    table = Table(title="Access")
    table.add_column("Service", style="cyan")
    table.add_column("URL", style="green")
    table.add_row("WireGuard admin", f"https://{params.vpn_hostname}")
    table.add_row("Authelia portal", f"https://{params.auth_hostname}")
    table.add_row("Traefik dashboard", f"https://{params.dashboard_hostname}")
    table.add_row("WireGuard endpoint", f"{params.vpn_host}:51820/udp")
    console.print(table)

    if params.enable_totp:
        print_info(console, "First login asks the admin to enroll a TOTP device")
    if params.tls_method == 'selfsigned':
        print_warning(console, "Self-signed certificate: browsers will warn until you trust it")


def up(
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Wait for services to report healthy"),
    timeout: Optional[int] = typer.Option(None, "--timeout", help="Health wait in seconds"),
):
    """Start the stack."""
    try:
        orchestrator = get_orchestrator()
        _require_installed(orchestrator)
        with stack_lock(orchestrator.layout.root):
            orchestrator.start(pull=False)
            if wait:
                report = _await_healthy(orchestrator, timeout)
                if report.healthy:
                    print_success(console, "Stack is healthy")
    except VpnstackError as e:
        handle_cli_error(e, console)


def down():
    """Stop the stack."""
    try:
        orchestrator = get_orchestrator()
        _require_installed(orchestrator)
        with stack_lock(orchestrator.layout.root):
            orchestrator.stop()
    except VpnstackError as e:
        handle_cli_error(e, console)
    print_success(console, "Stack stopped")


def restart():
    """Restart every service."""
    try:
        orchestrator = get_orchestrator()
        _require_installed(orchestrator)
        with stack_lock(orchestrator.layout.root):
            orchestrator.restart()
    except VpnstackError as e:
        handle_cli_error(e, console)
    print_success(console, "Stack restarted")


def update():
    """Pull the latest images and recreate containers."""
    try:
        orchestrator = get_orchestrator()
        _require_installed(orchestrator)
        with stack_lock(orchestrator.layout.root):
            orchestrator.update()
    except VpnstackError as e:
        handle_cli_error(e, console)
    print_success(console, "Stack updated")


def status():
    """Show container health."""
    try:
        orchestrator = get_orchestrator()
        rows = orchestrator.status()
    except VpnstackError as e:
        handle_cli_error(e, console)

    console.print(f"[bold]Install:[/bold] {orchestrator.layout.root} ({orchestrator.state.value})")
    if is_mock():
        console.print("[dim]Mock mode: container states are simulated[/dim]")

    table = Table(title="vpnstack services")
    table.add_column("Container", style="cyan", no_wrap=True)
    table.add_column("Status")
    for name, state in rows:
        style = STATUS_STYLES.get(state, 'yellow')
        table.add_row(name, f"[{style}]{state}[/{style}]")
    console.print(table)


def logs(
    service: Optional[str] = typer.Argument(None, help="Service name (all services when omitted)"),
    follow: bool = typer.Option(True, "--follow/--no-follow", help="Stream new log lines"),
):
    """Show service logs.

    Examples:
        vpnstack logs              # All services
        vpnstack logs authelia     # Authentication service only
    """
    try:
        orchestrator = get_orchestrator()
        _require_installed(orchestrator)
        orchestrator.logs(service, follow=follow)
    except VpnstackError as e:
        handle_cli_error(e, console)


def register_stack_commands(app: typer.Typer, shared_console: Console):
    """Register stack lifecycle commands with the main Typer app.

    Args:
        app: Main Typer application
        shared_console: Shared Rich console instance
    """
    global console
    console = shared_console

    app.command()(install)
    app.command()(up)
    app.command()(down)
    app.command()(restart)
    app.command()(status)
    app.command()(logs)
    app.command()(update)
