"""On-disk layout of an install directory."""
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple, Union


@dataclass(frozen=True)
class InstallLayout:
    """Paths of every file vpnstack manages under one install directory."""

    root: Path

    @classmethod
    def at(cls, install_dir: Union[str, Path]) -> 'InstallLayout':
        return cls(root=Path(install_dir))

    @property
    def env_file(self) -> Path:
        return self.root / ".env"

    @property
    def compose_file(self) -> Path:
        return self.root / "docker-compose.yml"

    @property
    def authelia_config_dir(self) -> Path:
        return self.root / "authelia" / "config"

    @property
    def auth_policy_file(self) -> Path:
        return self.authelia_config_dir / "configuration.yml"

    @property
    def users_file(self) -> Path:
        return self.authelia_config_dir / "users_database.yml"

    @property
    def traefik_config_dir(self) -> Path:
        return self.root / "traefik" / "config"

    @property
    def tls_file(self) -> Path:
        return self.traefik_config_dir / "tls.yml"

    @property
    def certs_dir(self) -> Path:
        return self.root / "traefik" / "certs"

    @property
    def acme_file(self) -> Path:
        return self.certs_dir / "acme.json"

    @property
    def cert_file(self) -> Path:
        return self.certs_dir / "cert.pem"

    @property
    def key_file(self) -> Path:
        return self.certs_dir / "key.pem"

    @property
    def scripts_dir(self) -> Path:
        return self.root / "scripts"

    @property
    def backups_dir(self) -> Path:
        return self.root / "backups"

    def directories(self) -> Tuple[Path, ...]:
        """Directories created by prepare(), parents first."""
        return (
            self.root,
            self.authelia_config_dir,
            self.traefik_config_dir,
            self.certs_dir,
            self.scripts_dir,
            self.backups_dir,
        )

    def resolve(self, relative: str) -> Path:
        return self.root / relative


def atomic_write(path: Path, content: Union[str, bytes], mode: int = 0o644) -> None:
    """Write a file so readers see either the old or the complete new content.

    The temporary file gets its final mode before any content is written, so
    secret-bearing files are never group or world readable, even briefly.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode('utf-8') if isinstance(content, str) else content

    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        os.fchmod(fd, mode)
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise
    os.chmod(path, mode)
