"""Host checks that must pass before anything is written."""
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from vpnstack.core.errors import StackEnvironmentError
from vpnstack.core.logger import get_logger

logger = get_logger(__name__)

OS_FAMILIES = {
    'ubuntu': 'debian',
    'debian': 'debian',
    'raspbian': 'debian',
    'rhel': 'rhel',
    'centos': 'rhel',
    'almalinux': 'rhel',
    'rocky': 'rhel',
    'fedora': 'rhel',
    'ol': 'rhel',
}

REQUIRED_TOOLS = ("docker", "openssl")


@dataclass
class PlatformInfo:
    os_id: str
    version: str
    pretty_name: str
    family: str


@dataclass
class PreflightReport:
    platform: Optional[PlatformInfo] = None
    docker_version: Optional[str] = None
    tools: Dict[str, Optional[str]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


def parse_os_release(content: str) -> Dict[str, str]:
    values = {}
    for line in content.splitlines():
        key, sep, value = line.strip().partition('=')
        if sep:
            values[key] = value.strip().strip('"').strip("'")
    return values


def detect_platform(os_release: Path = Path("/etc/os-release")) -> PlatformInfo:
    """Identify the host distribution family.

    Raises:
        StackEnvironmentError: If the OS cannot be detected or is unsupported
    """
    if not os_release.exists():
        raise StackEnvironmentError(f"Cannot detect OS: {os_release} missing")

    values = parse_os_release(os_release.read_text())
    os_id = values.get('ID', '').lower()
    family = OS_FAMILIES.get(os_id)
    if family is None:
        raise StackEnvironmentError(
            f"Unsupported OS: {os_id or 'unknown'}. "
            "Supported: Ubuntu, Debian, RHEL, AlmaLinux, Rocky, CentOS Stream, Fedora"
        )

    return PlatformInfo(
        os_id=os_id,
        version=values.get('VERSION_ID', '').split('.')[0],
        pretty_name=values.get('PRETTY_NAME', os_id),
        family=family,
    )


def require_tools(tools: Sequence[str] = REQUIRED_TOOLS) -> Dict[str, str]:
    """Return the path of every required tool.

    Raises:
        StackEnvironmentError: Naming every missing tool
    """
    found = {tool: shutil.which(tool) for tool in tools}
    missing = [tool for tool, path in found.items() if path is None]
    if missing:
        raise StackEnvironmentError(f"Required tools not installed: {', '.join(missing)}")
    return found


def require_root() -> None:
    if hasattr(os, "geteuid") and os.geteuid() != 0:
        raise StackEnvironmentError("Run as root:  sudo vpnstack install")


def check_docker_version(version: Optional[str], min_major: int) -> None:
    """Raises StackEnvironmentError when the engine is missing or too old."""
    if not version:
        raise StackEnvironmentError("Docker daemon is not reachable. Is the docker service running?")
    try:
        major = int(version.split('.')[0])
    except ValueError:
        raise StackEnvironmentError(f"Cannot parse Docker version: {version}")
    if major < min_major:
        raise StackEnvironmentError(
            f"Docker {version} is too old (need >= {min_major}). Upgrade Docker Engine first."
        )


def run_preflight(runner, min_docker_major: int, require_superuser: bool = True,
                  os_release: Path = Path("/etc/os-release")) -> PreflightReport:
    """Run every host check; the first failure aborts.

    Args:
        runner: ComposeRunner used to query the docker daemon
        min_docker_major: Oldest supported Docker Engine major version
        require_superuser: Check for root
        os_release: os-release file to inspect
    """
    report = PreflightReport()
    if runner.mock:
        logger.info("MOCK: Skipping host preflight checks")
        report.docker_version = runner.docker_version()
        return report

    if require_superuser:
        require_root()
    report.platform = detect_platform(os_release)
    logger.info(f"OS: {report.platform.pretty_name} (family: {report.platform.family})")

    report.tools = require_tools()
    report.docker_version = runner.docker_version()
    check_docker_version(report.docker_version, min_docker_major)
    logger.info(f"✓ Docker {report.docker_version}")

    if not Path("/sys/module/wireguard").exists():
        report.warnings.append("WireGuard kernel module not loaded (kernel >= 5.6 required)")

    for warning in report.warnings:
        logger.warning(warning)
    return report
