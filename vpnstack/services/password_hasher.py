"""Argon2id password hashing through the authelia image.

The hash is produced by authelia's own ``crypto hash generate`` command so
the digest format always matches what the running authelia expects.
"""
import hashlib
import subprocess
from typing import List

from vpnstack.core.config import get_settings
from vpnstack.core.errors import HashingError
from vpnstack.core.logger import get_logger

logger = get_logger(__name__)

AUTHELIA_IMAGE = "authelia/authelia:4.39"


class AutheliaPasswordHasher:
    """Memory-hard password hashing collaborator."""

    def __init__(self, image: str = AUTHELIA_IMAGE, mock: bool = False, timeout: int = None):
        self.image = image
        self.mock = mock
        self.timeout = timeout or get_settings().pull_timeout

    def command(self, password: str) -> List[str]:
        return [
            "docker", "run", "--rm", self.image,
            "authelia", "crypto", "hash", "generate", "argon2",
            "--password", password,
        ]

    def hash(self, password: str) -> str:
        """Return the encoded argon2id digest for a plaintext password.

        Raises:
            HashingError: If docker is unavailable, the command fails or no
                digest is printed
        """
        if not password:
            raise HashingError("Refusing to hash an empty password")

        if self.mock:
            # Deterministic placeholder so tests can compare digests
            fingerprint = hashlib.sha256(password.encode('utf-8')).hexdigest()[:43]
            return f"$argon2id$v=19$m=65536,t=3,p=4$bW9jaw${fingerprint}"

        logger.info("Hashing password with Argon2id...")
        try:
            result = subprocess.run(
                self.command(password),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=True,
            )
        except FileNotFoundError:
            raise HashingError("Password hashing failed: docker is not installed")
        except subprocess.TimeoutExpired:
            raise HashingError(f"Password hashing timed out after {self.timeout}s")
        except subprocess.CalledProcessError as e:
            raise HashingError(
                f"Password hashing failed (exit {e.returncode}). Check Docker is working."
            )

        digest = self.parse_digest(result.stdout)
        if not digest:
            raise HashingError("Password hashing failed: no digest in authelia output")
        return digest

    __call__ = hash

    @staticmethod
    def parse_digest(output: str) -> str:
        """Extract the value of the ``Digest:`` line from authelia output."""
        for line in output.splitlines():
            label, _, value = line.strip().partition(':')
            if label.strip().lower() == 'digest' and value.strip():
                return value.strip()
        return ""
