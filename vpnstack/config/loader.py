"""YAML parameter file loader."""
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from vpnstack.core.errors import ParameterValidationError
from vpnstack.models.parameters import StackParameters, collect

CONFIG_FILENAME = "vpnstack.yml"
PASSWORD_ENV = "VPNSTACK_ADMIN_PASSWORD"


def search_paths(explicit: Optional[str] = None) -> List[Path]:
    """Candidate parameter files, highest precedence first."""
    paths = []
    if explicit:
        paths.append(Path(explicit))
    env_path = os.getenv("VPNSTACK_CONFIG")
    if env_path:
        paths.append(Path(env_path))
    paths.extend([
        Path.cwd() / CONFIG_FILENAME,
        Path.home() / ".config" / "vpnstack" / CONFIG_FILENAME,
        Path("/etc/vpnstack") / CONFIG_FILENAME,
    ])
    return paths


def find_config(explicit: Optional[str] = None) -> Optional[Path]:
    """Return the first existing parameter file, or None.

    An explicitly requested file that does not exist is an error rather
    than a fall-through to the defaults.
    """
    if explicit and not Path(explicit).exists():
        raise ParameterValidationError(f"Config file not found: {explicit}")
    for path in search_paths(explicit):
        if path.is_file():
            return path
    return None


class ParameterLoader:
    """Loads vpnstack.yml into validated StackParameters."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path) if config_path else find_config()
        self.raw_config: Dict[str, Any] = {}

    def load_raw(self) -> Dict[str, Any]:
        if self.config_path is None:
            raise ParameterValidationError(
                f"No {CONFIG_FILENAME} found. Pass --config or set VPNSTACK_CONFIG"
            )
        if not self.config_path.exists():
            raise ParameterValidationError(f"Config file not found: {self.config_path}")

        with open(self.config_path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ParameterValidationError(f"{self.config_path}: invalid YAML: {e}") from e

        # Handle empty config file
        if not data:
            raise ParameterValidationError(f"Config file {self.config_path} is empty")
        if not isinstance(data, dict):
            raise ParameterValidationError(f"{self.config_path}: top level must be a mapping")

        self.raw_config = data
        return data

    def load(self, overrides: Optional[Dict[str, Any]] = None) -> StackParameters:
        """Validate the file, applying overrides and the password variable.

        The admin password is best kept out of the file; VPNSTACK_ADMIN_PASSWORD
        supplies it for first-time installs.
        """
        values = dict(self.load_raw())
        password = os.getenv(PASSWORD_ENV)
        if password:
            values['admin_password'] = password
        if overrides:
            values.update({k: v for k, v in overrides.items() if v is not None})
        return collect(values)
