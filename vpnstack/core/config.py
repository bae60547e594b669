"""vpnstack runtime configuration and settings."""
import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class StackSettings:
    """Runtime configuration for vpnstack operations.

    Attributes:
        install_dir: Root directory of the installed stack (default: /opt/vpnstack)
        health_timeout: Seconds to wait for the data tier to report healthy (default: 120)
        health_interval: Seconds between health polls (default: 5)
        command_timeout: Timeout in seconds for short docker commands (default: 60)
        pull_timeout: Timeout in seconds for image pulls (default: 900)
        min_docker_major: Oldest supported Docker Engine major version (default: 24)
    """

    install_dir: str = "/opt/vpnstack"

    # Health polling
    health_timeout: int = 120
    health_interval: int = 5

    # Subprocess timeouts
    command_timeout: int = 60
    pull_timeout: int = 900  # image pulls can take a while on first install

    min_docker_major: int = 24

    @classmethod
    def from_env(cls) -> "StackSettings":
        """Create settings from environment variables.

        Environment variables:
            VPNSTACK_DIR: Install directory
            VPNSTACK_HEALTH_TIMEOUT: Health poll timeout in seconds
            VPNSTACK_HEALTH_INTERVAL: Health poll interval in seconds
            VPNSTACK_COMMAND_TIMEOUT: Docker command timeout in seconds
            VPNSTACK_PULL_TIMEOUT: Image pull timeout in seconds

        Returns:
            StackSettings instance with values from environment or defaults
        """
        return cls(
            install_dir=os.getenv("VPNSTACK_DIR", cls.install_dir),
            health_timeout=int(
                os.getenv("VPNSTACK_HEALTH_TIMEOUT", cls.health_timeout)
            ),
            health_interval=int(
                os.getenv("VPNSTACK_HEALTH_INTERVAL", cls.health_interval)
            ),
            command_timeout=int(
                os.getenv("VPNSTACK_COMMAND_TIMEOUT", cls.command_timeout)
            ),
            pull_timeout=int(
                os.getenv("VPNSTACK_PULL_TIMEOUT", cls.pull_timeout)
            ),
        )


# Global settings instance (can be overridden)
_settings: Optional[StackSettings] = None


def get_settings() -> StackSettings:
    """Get the global vpnstack settings.

    Returns:
        StackSettings instance (creates from environment if not set)
    """
    global _settings
    if _settings is None:
        _settings = StackSettings.from_env()
    return _settings


def set_settings(settings: Optional[StackSettings]):
    """Set the global vpnstack settings.

    Args:
        settings: StackSettings instance to use globally, or None to reset
    """
    global _settings
    _settings = settings
