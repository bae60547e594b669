#!/usr/bin/env python3
"""vpnstack CLI - Self-hosted WireGuard VPN behind Traefik and Authelia."""

import typer
from rich.console import Console

from vpnstack.cli_backup_commands import register_backup_commands
from vpnstack.cli_stack_commands import register_stack_commands
from vpnstack.cli_user_commands import register_user_commands
from vpnstack.cli_utility_commands import register_utility_commands
from vpnstack.core.logger import get_logger

app = typer.Typer(
    name="vpnstack",
    help="""vpnstack - WireGuard VPN with an SSO-protected admin UI

One YAML file. VPN + reverse proxy + authentication.

Quick start:
  vpnstack render -c vpnstack.yml     # Preview the generated files
  sudo vpnstack install -c vpnstack.yml
  vpnstack status                     # Check container health
  vpnstack backup                     # Snapshot everything

More commands: vpnstack --help
""",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

# Attach modular subcommands
register_stack_commands(app, console)
register_user_commands(app, console)
register_backup_commands(app, console)
register_utility_commands(app, console)

if __name__ == "__main__":
    app()
