"""Authelia file-backend user management."""
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from vpnstack.core.errors import CredentialError
from vpnstack.core.layout import atomic_write
from vpnstack.core.logger import get_logger
from vpnstack.models.artifacts import ARTIFACT_PATHS, CREDENTIALS, render_artifact

logger = get_logger(__name__)

USERNAME_RE = re.compile(r'^[A-Za-z0-9._-]+$')
GROUP_RE = re.compile(r'^[A-Za-z0-9._-]+$')
CREDENTIALS_MODE = ARTIFACT_PATHS[CREDENTIALS][1]


def validate_username(username: str) -> str:
    if not username or not USERNAME_RE.match(username):
        raise CredentialError(
            f"Invalid username '{username}': use letters, digits, '.', '_' and '-' only"
        )
    return username


class CredentialStore:
    """The users_database.yml credential store of one install.

    Authelia watches the file and reloads it, so every save is atomic.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.users: Dict[str, Dict[str, Any]] = {}

    @classmethod
    def load(cls, path: Path) -> 'CredentialStore':
        store = cls(path)
        if store.path.exists():
            data = yaml.safe_load(store.path.read_text()) or {}
            users = data.get('users') or {}
            if not isinstance(users, dict):
                raise CredentialError(f"{store.path}: 'users' must be a mapping")
            store.users = users
        return store

    def __contains__(self, username: str) -> bool:
        return username in self.users

    def get(self, username: str) -> Optional[Dict[str, Any]]:
        return self.users.get(username)

    def add_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        group: str,
        display_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Add a user entry.

        Raises:
            CredentialError: If the user exists or a field is invalid
        """
        validate_username(username)
        if username in self.users:
            raise CredentialError(f"User '{username}' already exists")
        if '@' not in email:
            raise CredentialError(f"Invalid email address: {email}")
        if not GROUP_RE.match(group):
            raise CredentialError(f"Invalid group name: {group}")
        if not password_hash:
            raise CredentialError("Password hash is empty")

        entry = {
            'disabled': False,
            'displayname': display_name or username,
            'password': password_hash,
            'email': email,
            'groups': [group],
        }
        self.users[username] = entry
        return entry

    def merge_missing(self, other: 'CredentialStore') -> int:
        """Copy users this store lacks from another store; returns the count."""
        added = 0
        for username, entry in other.users.items():
            if username not in self.users:
                self.users[username] = entry
                added += 1
        return added

    def render(self) -> str:
        return render_artifact(CREDENTIALS, {'users': self.users})

    def save(self) -> None:
        atomic_write(self.path, self.render(), mode=CREDENTIALS_MODE)
        logger.debug(f"Saved credential store {self.path}")


TOTP_RESET_SQL = "DELETE FROM totp_configurations WHERE username = '{username}';"


def totp_reset(runner, username: str) -> None:
    """Force TOTP re-enrollment for a user.

    Args:
        runner: ComposeRunner for the install
        username: Authelia username

    Raises:
        CredentialError: If the username is invalid
        CommandError: If psql fails
    """
    validate_username(username)
    # validate_username restricts the charset, so quoting is safe here
    sql = TOTP_RESET_SQL.format(username=username)
    runner.exec(
        "authelia-postgres",
        ["psql", "-U", "authelia", "-d", "authelia", "-c", sql],
    )
    logger.info(f"TOTP cleared for '{username}'. They must re-enroll on next login")
