"""Certificate material for the edge proxy.

Let's Encrypt certificates are issued by traefik itself once the ACME
resolver is configured; vpnstack only prepares acme.json. For self-signed
installs a wildcard certificate is generated with openssl.
"""
import os
import subprocess
from pathlib import Path

from vpnstack.core.errors import StackEnvironmentError
from vpnstack.core.logger import get_logger

logger = get_logger(__name__)

CERT_DAYS = 3650
KEY_BITS = 4096


class CertificateProvisioner:
    """Prepares the certificate files referenced by the TLS descriptor."""

    def __init__(self, certs_dir: Path, mock: bool = False, openssl_path: str = "openssl"):
        self.certs_dir = Path(certs_dir)
        self.mock = mock
        self.openssl_path = openssl_path

    @property
    def acme_file(self) -> Path:
        return self.certs_dir / "acme.json"

    @property
    def cert_file(self) -> Path:
        return self.certs_dir / "cert.pem"

    @property
    def key_file(self) -> Path:
        return self.certs_dir / "key.pem"

    def ensure_acme_storage(self) -> Path:
        """Create acme.json with the 600 mode traefik insists on."""
        self.certs_dir.mkdir(parents=True, exist_ok=True)
        self.acme_file.touch(exist_ok=True)
        os.chmod(self.acme_file, 0o600)
        return self.acme_file

    def self_signed_command(self, domain: str) -> list:
        return [
            self.openssl_path, "req", "-x509",
            "-newkey", f"rsa:{KEY_BITS}", "-nodes",
            "-keyout", str(self.key_file),
            "-out", str(self.cert_file),
            "-days", str(CERT_DAYS),
            "-subj", f"/CN=*.{domain}",
            "-addext", f"subjectAltName=DNS:*.{domain},DNS:{domain}",
        ]

    def ensure_self_signed(self, domain: str) -> bool:
        """Generate a wildcard certificate unless a pair already exists.

        Returns:
            True if a new certificate was generated

        Raises:
            StackEnvironmentError: If openssl is missing or fails
        """
        if self.cert_file.exists() and self.key_file.exists():
            logger.debug(f"Certificate pair already present in {self.certs_dir}")
            return False

        if self.mock:
            logger.info(f"MOCK: Would generate self-signed certificate for *.{domain}")
            return True

        self.certs_dir.mkdir(parents=True, exist_ok=True)
        try:
            subprocess.run(
                self.self_signed_command(domain),
                check=True,
                capture_output=True,
                text=True,
                timeout=120,
            )
        except FileNotFoundError:
            raise StackEnvironmentError("openssl is required to generate a self-signed certificate")
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            stderr = getattr(e, 'stderr', '') or ''
            raise StackEnvironmentError(f"Self-signed certificate generation failed: {stderr.strip() or e}")

        os.chmod(self.key_file, 0o600)
        logger.info(f"✓ Self-signed wildcard cert created for *.{domain} (valid {CERT_DAYS // 365} years)")
        return True
