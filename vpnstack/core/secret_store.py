"""Secret material generation and persistence.

Secrets are created exactly once per install. An existing secret file is
always loaded verbatim and never rewritten: authelia encrypts its records
with AUTHELIA_STORAGE_ENCRYPTION_KEY, and a regenerated key makes every
stored record unreadable.
"""
import secrets
import string
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from vpnstack.core.errors import ParameterValidationError, SecretIntegrityError
from vpnstack.core.layout import InstallLayout, atomic_write
from vpnstack.core.logger import get_logger
from vpnstack.models.parameters import StackParameters
from vpnstack.models.secrets import SecretMaterial

logger = get_logger(__name__)

TOKEN_BYTES = 32  # 256 bits, 64 hex chars
PASSWORD_LENGTH = 24
PASSWORD_ALPHABET = string.ascii_letters + string.digits + "@#%^&"
SECRET_FILE_MODE = 0o600

PasswordHasher = Callable[[str], str]


def generate_token() -> str:
    """Return a 256-bit hex token."""
    return secrets.token_hex(TOKEN_BYTES)


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Return a random password drawn from PASSWORD_ALPHABET."""
    return ''.join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def parse_env(content: str) -> Dict[str, str]:
    """Parse KEY=value lines, honouring single and double quotes."""
    env = {}
    for raw in content.splitlines():
        line = raw.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        key, _, value = line.partition('=')
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        env[key.strip()] = value
    return env


def render_env(material: SecretMaterial, generated_at: Optional[datetime] = None) -> str:
    """Render secret material as a compose-compatible .env file.

    Values are single-quoted so compose does not interpolate the '$'
    characters of the argon2 digest.
    """
    generated_at = generated_at or datetime.now(timezone.utc)
    lines = [
        f"# vpnstack secrets, generated {generated_at.strftime('%Y-%m-%d %H:%M UTC')}",
        "# KEEP THIS FILE SECRET. Never commit to git.",
        "# DO NOT CHANGE after first run: the storage key encrypts authelia's database.",
        "",
    ]
    for key, value in material.to_env().items():
        lines.append(f"{key}='{value}'")
    return "\n".join(lines) + "\n"


class SecretStore:
    """Owns the .env secret file of one install."""

    def __init__(self, layout: InstallLayout, hasher: Optional[PasswordHasher] = None):
        self.layout = layout
        self.hasher = hasher

    @property
    def path(self) -> Path:
        return self.layout.env_file

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> SecretMaterial:
        """Load the existing secret file verbatim.

        Raises:
            SecretIntegrityError: If the file is missing required secrets
        """
        env = parse_env(self.path.read_text())
        try:
            return SecretMaterial.from_env(env)
        except KeyError as e:
            raise SecretIntegrityError(
                f"{self.path} is missing required secrets: {e.args[0]}. "
                "Restore it from a backup; regenerating would corrupt stored data."
            )

    def write(self, material: SecretMaterial) -> None:
        """Persist secret material, refusing to replace an existing file.

        Raises:
            SecretIntegrityError: If a secret file already exists
        """
        if self.exists():
            raise SecretIntegrityError(
                f"Refusing to overwrite existing secret file {self.path}"
            )
        atomic_write(self.path, render_env(material), mode=SECRET_FILE_MODE)
        logger.info(f"✓ {self.path.name} generated with random secrets")

    def generate(self, admin_password: str) -> SecretMaterial:
        """Generate a fresh set of secrets in memory.

        Raises:
            HashingError: If the hashing collaborator fails
        """
        if self.hasher is None:
            raise SecretIntegrityError("No password hasher configured for secret generation")

        admin_hash = self.hasher(admin_password)
        return SecretMaterial(
            jwt_secret=generate_token(),
            session_secret=generate_token(),
            storage_encryption_key=generate_token(),
            postgres_password=generate_password(),
            redis_password=generate_password(),
            admin_password_hash=admin_hash,
        )

    def ensure(self, params: StackParameters) -> SecretMaterial:
        """Return the install's secrets, creating them only on first use."""
        if self.exists():
            logger.info(f"Using existing secrets from {self.path}")
            return self.load()

        if params.admin_password is None:
            raise ParameterValidationError(
                "An admin password is required to initialize a new install",
                errors=["admin_password: required on first install"],
            )

        material = self.generate(params.admin_password.get_secret_value())
        self.write(material)
        return material


def ensure_secrets(
    install_dir: Union[str, Path],
    params: StackParameters,
    hasher: Optional[PasswordHasher] = None,
) -> SecretMaterial:
    """Load the secrets of an install, generating them if absent.

    Calling this repeatedly on the same install returns identical material
    and leaves the secret file untouched.
    """
    return SecretStore(InstallLayout.at(install_dir), hasher=hasher).ensure(params)

