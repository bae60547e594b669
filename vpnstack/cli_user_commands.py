"""User management CLI commands - hash-password, add-user, totp-reset."""
from typing import Optional

import typer
from rich.console import Console

from vpnstack.cli_support import (
    get_hasher,
    get_layout,
    get_runner,
    handle_cli_error,
    print_info,
    print_success,
)
from vpnstack.core.credentials import CredentialStore, totp_reset as reset_totp
from vpnstack.core.errors import CredentialError, VpnstackError
from vpnstack.core.lock import stack_lock
from vpnstack.models.parameters import MIN_PASSWORD_LENGTH

# Module-level console instance (will be set by register function)
console: Console = Console()


def hash_password(
    password: str = typer.Argument(..., help="Plaintext password to hash"),
):
    """Print the argon2id digest for a password."""
    try:
        digest = get_hasher().hash(password)
    except VpnstackError as e:
        handle_cli_error(e, console)
    console.print(digest, highlight=False, markup=False, soft_wrap=True)


def add_user(
    username: str = typer.Argument(..., help="Login name"),
    email: str = typer.Argument(..., help="Email address"),
    password: str = typer.Argument(..., help="Initial password"),
    group: str = typer.Argument("vpn-admins", help="Group (vpn-admins can reach the admin UI)"),
    display_name: Optional[str] = typer.Option(None, "--display-name", help="Name shown in the portal"),
):
    """Add a user to the Authelia credential store.

    Authelia reloads the file on its own; no restart is needed.

    Examples:
        vpnstack add-user alice alice@example.com 'correct-horse-battery' vpn-admins
    """
    layout = get_layout()
    try:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise CredentialError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if not layout.users_file.exists():
            raise CredentialError(f"No credential store at {layout.users_file}. Run 'vpnstack install' first")

        with stack_lock(layout.root):
            store = CredentialStore.load(layout.users_file)
            if username in store:
                raise CredentialError(f"User '{username}' already exists")
            digest = get_hasher().hash(password)
            store.add_user(username, email, digest, group, display_name=display_name)
            store.save()
    except VpnstackError as e:
        handle_cli_error(e, console)

    print_success(console, f"User '{username}' added to group '{group}'")
    print_info(console, "They will be asked to enroll TOTP on first login")


def totp_reset(
    username: str = typer.Argument(..., help="User whose TOTP device is removed"),
):
    """Force a user to re-enroll their TOTP device."""
    try:
        reset_totp(get_runner(), username)
    except VpnstackError as e:
        handle_cli_error(e, console)
    print_success(console, f"TOTP cleared for '{username}'")


def register_user_commands(app: typer.Typer, shared_console: Console):
    """Register user management commands with the main Typer app.

    Args:
        app: Main Typer application
        shared_console: Shared Rich console instance
    """
    global console
    console = shared_console

    app.command("hash-password")(hash_password)
    app.command("add-user")(add_user)
    app.command("totp-reset")(totp_reset)
