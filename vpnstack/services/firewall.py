"""Host firewall rules for the stack's public ports."""
import shutil
import subprocess
from typing import List, Optional, Tuple

from vpnstack.core.errors import CommandError, StackEnvironmentError
from vpnstack.core.logger import get_logger

logger = get_logger(__name__)

# (port, comment)
UFW_ALLOW: Tuple[Tuple[str, str], ...] = (
    ("22/tcp", "SSH"),
    ("80/tcp", "HTTP (Traefik)"),
    ("443/tcp", "HTTPS (Traefik)"),
    ("51820/udp", "WireGuard"),
)
UFW_DENY: Tuple[Tuple[str, str], ...] = (
    ("51821/tcp", "wg-easy UI (internal)"),
    ("9091/tcp", "Authelia (internal)"),
)
FIREWALLD_SERVICES = ("ssh", "http", "https")
FIREWALLD_PORTS = ("51820/udp",)
COMMAND_TIMEOUT = 30


class FirewallConfigurator:
    """Opens the stack's ports with ufw or firewalld, whichever is present."""

    def __init__(self, mock: bool = False):
        self.mock = mock
        self.history: List[List[str]] = []

    def detect_backend(self) -> Optional[str]:
        if self.mock:
            return "ufw"
        if shutil.which("ufw"):
            return "ufw"
        if shutil.which("firewall-cmd"):
            return "firewalld"
        return None

    def ufw_commands(self) -> List[Tuple[List[str], bool]]:
        """Commands with a flag telling whether failure is fatal."""
        commands = [(["ufw", "--force", "enable"], False)]
        for port, comment in UFW_ALLOW:
            commands.append((["ufw", "allow", port, "comment", comment], True))
        for port, comment in UFW_DENY:
            commands.append((["ufw", "deny", port, "comment", comment], False))
        commands.append((["ufw", "reload"], False))
        return commands

    def firewalld_commands(self) -> List[Tuple[List[str], bool]]:
        commands = []
        for service in FIREWALLD_SERVICES:
            commands.append((["firewall-cmd", "--permanent", f"--add-service={service}"], True))
        for port in FIREWALLD_PORTS:
            commands.append((["firewall-cmd", "--permanent", f"--add-port={port}"], True))
        commands.append((["firewall-cmd", "--reload"], True))
        return commands

    def configure(self) -> Optional[str]:
        """Apply the rules.

        Returns:
            The backend used, or None if no supported firewall was found
        """
        backend = self.detect_backend()
        if backend is None:
            logger.warning("No firewall found. Open ports 80/tcp, 443/tcp, 51820/udp manually")
            return None

        commands = self.ufw_commands() if backend == "ufw" else self.firewalld_commands()
        for args, required in commands:
            self._run(args, required)

        logger.info(f"✓ {backend} rules applied")
        return backend

    def _run(self, args: List[str], required: bool) -> None:
        self.history.append(args)
        if self.mock:
            logger.info(f"MOCK: Would run: {' '.join(args)}")
            return
        try:
            subprocess.run(args, check=True, capture_output=True, text=True, timeout=COMMAND_TIMEOUT)
        except subprocess.CalledProcessError as e:
            error = CommandError(
                f"Firewall command failed: {' '.join(args)}",
                returncode=e.returncode,
                stderr=e.stderr or "",
            )
        except subprocess.TimeoutExpired:
            error = CommandError(f"Firewall command timed out after {COMMAND_TIMEOUT}s: {' '.join(args)}")
        except FileNotFoundError:
            error = StackEnvironmentError(f"Required tool not found: {args[0]}")
        else:
            return

        if required:
            raise error
        logger.debug(f"Ignoring failure of {' '.join(args)}: {error}")
