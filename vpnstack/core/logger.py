"""Logging for vpnstack: rich console output plus an optional log file.

Every module logger is a child of the ``vpnstack`` logger and inherits its
level, so one call to ``setup_file_logging(verbose=True)`` turns on debug
records everywhere. The console handler stays at INFO.
"""
import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

console = Console()

PACKAGE_LOGGER = "vpnstack"
LOG_FILE = Path("/var/log/vpnstack/vpnstack.log")
FALLBACK_LOG_FILE = Path("/tmp/vpnstack-install.log")
FILE_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _package_logger() -> logging.Logger:
    package = logging.getLogger(PACKAGE_LOGGER)
    if not any(isinstance(h, RichHandler) for h in package.handlers):
        handler = RichHandler(console=console, show_path=False)
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(message)s"))
        package.addHandler(handler)
        package.setLevel(logging.INFO)
    return package


def _open_log_file(path: Path) -> logging.FileHandler:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(path)
    except PermissionError:
        FALLBACK_LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(FALLBACK_LOG_FILE)


def setup_file_logging(log_file: Optional[str] = None, verbose: bool = False) -> Path:
    """Also write vpnstack log records to a file.

    Args:
        log_file: Target file (default /var/log/vpnstack/vpnstack.log,
            /tmp/vpnstack-install.log when that is not writable)
        verbose: Record debug messages

    Returns:
        The file being written
    """
    package = _package_logger()
    level = logging.DEBUG if verbose else logging.INFO
    package.setLevel(level)

    for handler in package.handlers:
        if isinstance(handler, logging.FileHandler):
            handler.setLevel(level)
            return Path(handler.baseFilename)

    file_handler = _open_log_file(Path(log_file) if log_file else LOG_FILE)
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    package.addHandler(file_handler)

    target = Path(file_handler.baseFilename)
    package.info(f"vpnstack logging initialized: {target}")
    return target


def get_logger(name: str) -> logging.Logger:
    """Logger for a vpnstack module (pass ``__name__``)."""
    _package_logger()
    return logging.getLogger(name)
