"""
Docker Compose runner - drive the stack through the docker CLI.

Every interaction with the orchestrated services goes through this class:
- compose lifecycle (pull, up, down, ps, logs)
- container health inspection
- one-off commands inside containers (pg_dump, psql)
- throwaway helper containers (volume archives)

Runs from the install directory so compose picks up docker-compose.yml and
the .env secret file.
"""
import json
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from vpnstack.core.config import get_settings
from vpnstack.core.errors import CommandError, StackEnvironmentError
from vpnstack.core.logger import get_logger

logger = get_logger(__name__)

HEALTH_FORMAT = '{{if .State.Health}}{{.State.Health.Status}}{{else}}{{.State.Status}}{{end}}'


class ComposeRunner:
    """
    Runs docker and docker compose commands for one install directory.

    Example workflow:
        runner = ComposeRunner(Path("/opt/vpnstack"))
        runner.pull()
        runner.up(["postgres", "redis"])
        runner.container_status("authelia-postgres")
    """

    def __init__(self, install_dir: Path, mock: bool = False, settings=None):
        """
        Initialize runner for an install directory.

        Args:
            install_dir: Directory holding docker-compose.yml and .env
            mock: If True, record commands instead of executing them
            settings: StackSettings (defaults to the global settings)
        """
        self.install_dir = Path(install_dir)
        self.mock = mock
        self.settings = settings or get_settings()
        self.history: List[List[str]] = []
        self.logger = logger

    # Compose lifecycle

    def pull(self) -> None:
        """Pull every image referenced by the topology."""
        self.logger.info("Pulling Docker images (this may take a few minutes)...")
        self.run(self._compose("pull"), timeout=self.settings.pull_timeout)

    def up(self, services: Optional[Sequence[str]] = None) -> None:
        """Start services in the background (all services when None)."""
        args = self._compose("up", "-d")
        if services:
            args.extend(services)
        self.run(args, timeout=self.settings.pull_timeout)

    def down(self) -> None:
        """Stop and remove the stack's containers."""
        self.run(self._compose("down"))

    def ps(self) -> List[Dict[str, Any]]:
        """Return one dict per compose container."""
        if self.mock:
            self.history.append(self._compose("ps", "--format", "json"))
            return []

        output = self.run(self._compose("ps", "--format", "json"), capture=True)
        services = []
        output = (output or "").strip()
        if not output:
            return services

        # Newer compose prints a JSON array, older prints one object per line
        if output.startswith('['):
            return json.loads(output)
        for line in output.splitlines():
            if line.strip():
                services.append(json.loads(line))
        return services

    def logs(self, service: Optional[str] = None, follow: bool = True, tail: int = 100) -> None:
        """Stream service logs to the terminal."""
        args = self._compose("logs", f"--tail={tail}")
        if follow:
            args.append("-f")
        if service:
            args.append(service)
        self.run(args, timeout=None)

    # Containers

    def container_status(self, container: str) -> str:
        """Return the health (or run state) docker reports for a container.

        Returns "not found" when docker does not know the container.
        """
        if self.mock:
            self.history.append(["docker", "inspect", container])
            return "healthy"

        try:
            output = self.run(
                ["docker", "inspect", f"--format={HEALTH_FORMAT}", container],
                capture=True,
            )
        except CommandError:
            return "not found"
        return (output or "").strip() or "unknown"

    def exec(
        self,
        container: str,
        command: Sequence[str],
        input: Optional[bytes] = None,
        text: bool = True,
    ) -> Union[str, bytes, None]:
        """Run a command inside a running container and capture its output."""
        args = ["docker", "exec"]
        if input is not None:
            args.append("-i")
        args.append(container)
        args.extend(command)
        return self.run(args, capture=True, input=input, text=text)

    def run_helper(self, image: str, command: Sequence[str], volumes: Dict[str, str]) -> None:
        """Run a throwaway container with the given volume mounts."""
        args = ["docker", "run", "--rm"]
        for source, target in volumes.items():
            args.extend(["-v", f"{source}:{target}"])
        args.append(image)
        args.extend(command)
        self.run(args, timeout=self.settings.pull_timeout)

    def docker_version(self) -> Optional[str]:
        """Return the Docker Engine server version, or None if unreachable."""
        if self.mock:
            return "27.0.0"
        try:
            output = self.run(
                ["docker", "version", "--format", "{{.Server.Version}}"],
                capture=True,
            )
        except (CommandError, StackEnvironmentError):
            return None
        return (output or "").strip() or None

    # Plumbing

    def _compose(self, *args: str) -> List[str]:
        return ["docker", "compose", "--project-directory", str(self.install_dir), *args]

    def run(
        self,
        args: List[str],
        capture: bool = False,
        input: Optional[bytes] = None,
        text: bool = True,
        timeout: Optional[int] = -1,
    ) -> Union[str, bytes, None]:
        """Execute a command from the install directory.

        Args:
            args: Command and arguments
            capture: Return stdout instead of streaming it
            input: Bytes fed to stdin
            text: Decode captured output as text
            timeout: Seconds before giving up (-1 = command_timeout, None = no limit)

        Returns:
            Captured stdout when capture=True, else None

        Raises:
            CommandError: If the command exits non-zero or times out
            StackEnvironmentError: If the executable is missing
        """
        self.history.append(list(args))

        if self.mock:
            self.logger.info(f"MOCK: Would run: {' '.join(args)}")
            if capture:
                return "" if text else b""
            return None

        if timeout == -1:
            timeout = self.settings.command_timeout

        self.logger.debug(f"Running: {' '.join(args)}")
        if input is not None and text:
            input_data = input.decode('utf-8') if isinstance(input, bytes) else input
        else:
            input_data = input
        try:
            result = subprocess.run(
                args,
                cwd=self.install_dir if self.install_dir.exists() else None,
                capture_output=capture,
                input=input_data,
                text=text,
                timeout=timeout,
                check=True,
            )
        except FileNotFoundError:
            raise StackEnvironmentError(f"Required tool not found: {args[0]}")
        except subprocess.TimeoutExpired:
            raise CommandError(f"Command timed out after {timeout}s: {' '.join(args[:4])}")
        except subprocess.CalledProcessError as e:
            stderr = e.stderr or ""
            if isinstance(stderr, bytes):
                stderr = stderr.decode('utf-8', errors='replace')
            raise CommandError(
                f"Command failed ({e.returncode}): {' '.join(args[:4])}"
                + (f"\n{stderr.strip()}" if stderr.strip() else ""),
                returncode=e.returncode,
                stderr=stderr,
            )

        return result.stdout if capture else None
