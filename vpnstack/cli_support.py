"""Shared utilities for vpnstack CLI modules."""
from __future__ import annotations

import os
from typing import Any, Dict, Optional

import typer
from rich.console import Console
from rich.markup import escape

from vpnstack.core.config import get_settings
from vpnstack.core.errors import ParameterValidationError
from vpnstack.core.layout import InstallLayout
from vpnstack.models.parameters import StackParameters


def is_mock() -> bool:
    """Return True when CLI runs in mock mode."""
    return os.environ.get("VPNSTACK_MOCK") == "1"


def get_layout() -> InstallLayout:
    """Layout of the install directory (VPNSTACK_DIR, default /opt/vpnstack)."""
    return InstallLayout.at(get_settings().install_dir)


def setup_file_logging(log_file: Optional[str] = None, verbose: bool = False) -> None:
    """Set up file logging for CLI commands.

    Args:
        log_file: Path to log file (optional)
        verbose: Enable verbose logging
    """
    from vpnstack.core.logger import setup_file_logging as _setup_file_logging
    _setup_file_logging(log_file=log_file, verbose=verbose)


def load_parameters(
    config_path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> StackParameters:
    """Find, read and validate the parameter file."""
    from vpnstack.config.loader import ParameterLoader, find_config

    path = find_config(config_path)
    loader = ParameterLoader(str(path) if path else None)
    return loader.load(overrides)


def get_runner(mock: Optional[bool] = None):
    """Return a ComposeRunner for the install directory."""
    from vpnstack.services.docker_compose import ComposeRunner

    if mock is None:
        mock = is_mock()
    return ComposeRunner(get_layout().root, mock=mock)


def get_hasher(mock: Optional[bool] = None):
    from vpnstack.services.password_hasher import AutheliaPasswordHasher

    if mock is None:
        mock = is_mock()
    return AutheliaPasswordHasher(mock=mock)


def get_orchestrator(params: Optional[StackParameters] = None, mock: Optional[bool] = None):
    """Return a LifecycleOrchestrator wired with mock defaults."""
    from vpnstack.core.orchestrator import LifecycleOrchestrator

    if mock is None:
        mock = is_mock()
    return LifecycleOrchestrator(
        get_layout(),
        params=params,
        runner=get_runner(mock),
        hasher=get_hasher(mock),
        mock=mock,
    )


def confirm_action(message: str, yes_flag: bool = False, mock: bool = False) -> bool:
    """Prompt user for confirmation unless --yes or mock mode.

    Args:
        message: Confirmation message to display
        yes_flag: Skip prompt if True (from --yes flag)
        mock: Skip prompt if True (mock mode)

    Returns:
        True if confirmed, False otherwise
    """
    if yes_flag or mock:
        return True
    return typer.confirm(message)


def handle_cli_error(
    e: Exception,
    console: Console,
    verbose: bool = False,
    exit_code: int = 1
) -> None:
    """Report an error as ``Error [<category>]: <cause>`` and exit.

    Args:
        e: Exception to handle
        console: Rich console for output
        verbose: Show exception traceback if True
        exit_code: Exit code to use
    """
    category = getattr(e, 'category', 'error')
    if isinstance(e, ParameterValidationError) and e.errors:
        console.print(f"[red]Error \\[{category}]:[/red] invalid parameters")
        for error in e.errors:
            console.print(f"  • {escape(error)}")
    else:
        console.print(f"[red]Error \\[{category}]:[/red] {escape(str(e))}")
    if verbose:
        console.print_exception()
    raise typer.Exit(exit_code)


def print_success(console: Console, message: str, prefix: str = "✓") -> None:
    """Print success message with consistent formatting.

    Args:
        console: Rich console for output
        message: Success message
        prefix: Prefix symbol (default: ✓)
    """
    console.print(f"[green]{prefix}[/green] {message}")


def print_error(console: Console, message: str, prefix: str = "✗") -> None:
    """Print error message with consistent formatting.

    Args:
        console: Rich console for output
        message: Error message
        prefix: Prefix symbol (default: ✗)
    """
    console.print(f"[red]{prefix}[/red] {message}")


def print_warning(console: Console, message: str, prefix: str = "⚠") -> None:
    """Print warning message with consistent formatting.

    Args:
        console: Rich console for output
        message: Warning message
        prefix: Prefix symbol (default: ⚠)
    """
    console.print(f"[yellow]{prefix}[/yellow] {message}")


def print_info(console: Console, message: str, prefix: str = "ℹ") -> None:
    """Print info message with consistent formatting.

    Args:
        console: Rich console for output
        message: Info message
        prefix: Prefix symbol (default: ℹ)
    """
    console.print(f"[cyan]{prefix}[/cyan] {message}")
