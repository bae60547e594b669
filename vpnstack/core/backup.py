"""Point-in-time snapshots of an install's state and their restore."""
import gzip
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple, Union

from vpnstack.core.errors import CommandError, SecretIntegrityError, SnapshotError
from vpnstack.core.layout import InstallLayout, atomic_write
from vpnstack.core.logger import get_logger

logger = get_logger(__name__)

TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'

DB_DUMP = "authelia_db.sql.gz"
CONFIG_COPY = "authelia_config"
TUNNEL_ARCHIVE = "wireguard.tar.gz"
ENV_COPY = ".env.bak"

# Creation order; every snapshot holds all of them
SNAPSHOT_FILES: Tuple[str, ...] = (DB_DUMP, CONFIG_COPY, TUNNEL_ARCHIVE, ENV_COPY)

DB_CONTAINER = "authelia-postgres"
DB_USER = "authelia"
DB_NAME = "authelia"
TUNNEL_VOLUME = "wg_data"
HELPER_IMAGE = "alpine"


@dataclass(frozen=True)
class Snapshot:
    """A completed snapshot directory under backups/."""

    path: Path
    created_at: datetime

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def files(self) -> List[Path]:
        return [self.path / name for name in SNAPSHOT_FILES]

    def missing(self) -> List[str]:
        return [name for name in SNAPSHOT_FILES if not (self.path / name).exists()]

    @classmethod
    def from_path(cls, path: Path) -> Optional['Snapshot']:
        """Return a Snapshot for a timestamp-named directory, else None."""
        try:
            created_at = datetime.strptime(path.name, TIMESTAMP_FORMAT)
        except ValueError:
            return None
        return cls(path=path, created_at=created_at)


class BackupCoordinator:
    """Creates and restores snapshots for one install.

    A snapshot is built in a hidden staging directory and only renamed to
    its timestamped name once every file is in place, so a directory that
    list_snapshots() returns is always complete.
    """

    def __init__(self, layout: InstallLayout, runner):
        self.layout = layout
        self.runner = runner

    @property
    def backups_dir(self) -> Path:
        return self.layout.backups_dir

    def backup(self, now: Optional[datetime] = None) -> Snapshot:
        """Create a new snapshot.

        Raises:
            SnapshotError: If any step fails; nothing is left behind
        """
        created_at = (now or datetime.now()).replace(microsecond=0)
        name = created_at.strftime(TIMESTAMP_FORMAT)
        final = self.backups_dir / name
        if final.exists():
            raise SnapshotError(f"Snapshot {name} already exists")

        self.backups_dir.mkdir(parents=True, exist_ok=True)
        staging = self.backups_dir / f".{name}.staging"
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir(mode=0o700)

        try:
            self._dump_database(staging)
            self._copy_config(staging)
            self._archive_tunnel_state(staging)
            self._copy_env(staging)
            staging.rename(final)
        except (CommandError, OSError) as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise SnapshotError(f"Backup failed: {e}") from e
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        logger.info(f"✓ Backup saved to {final}")
        return Snapshot(path=final, created_at=created_at)

    def _dump_database(self, staging: Path) -> None:
        part = staging / f"{DB_DUMP}.part"
        dump = self.runner.exec(
            DB_CONTAINER,
            ["pg_dump", "--clean", "--if-exists", "-U", DB_USER, DB_NAME],
            text=False,
        )
        with gzip.open(part, 'wb') as f:
            f.write(dump or b"")
        part.rename(staging / DB_DUMP)
        logger.debug("Database dumped")

    def _copy_config(self, staging: Path) -> None:
        part = staging / f"{CONFIG_COPY}.part"
        shutil.copytree(self.layout.authelia_config_dir, part)
        part.rename(staging / CONFIG_COPY)

    def _archive_tunnel_state(self, staging: Path) -> None:
        part_name = f"{TUNNEL_ARCHIVE}.part"
        self.runner.run_helper(
            HELPER_IMAGE,
            ["tar", "czf", f"/backup/{part_name}", "-C", "/data", "."],
            volumes={TUNNEL_VOLUME: "/data", str(staging.resolve()): "/backup"},
        )
        part = staging / part_name
        if self.runner.mock:
            part.touch()
        part.rename(staging / TUNNEL_ARCHIVE)

    def _copy_env(self, staging: Path) -> None:
        if not self.layout.env_file.exists():
            raise SnapshotError(f"Secret file {self.layout.env_file} missing")
        part = staging / f"{ENV_COPY}.part"
        shutil.copyfile(self.layout.env_file, part)
        part.chmod(0o600)
        part.rename(staging / ENV_COPY)

    def list_snapshots(self) -> List[Snapshot]:
        """Completed snapshots, newest first."""
        if not self.backups_dir.exists():
            return []
        snapshots = []
        for path in self.backups_dir.iterdir():
            if not path.is_dir() or path.name.startswith('.'):
                continue
            snapshot = Snapshot.from_path(path)
            if snapshot is not None:
                snapshots.append(snapshot)
        snapshots.sort(key=lambda s: s.created_at, reverse=True)
        return snapshots

    def resolve(self, snapshot: Union[str, Path, Snapshot]) -> Snapshot:
        """Find a snapshot by name, path or value.

        Raises:
            SnapshotError: If it does not exist or is incomplete
        """
        if isinstance(snapshot, Snapshot):
            found = snapshot
        else:
            path = Path(snapshot)
            if not path.is_dir():
                path = self.backups_dir / str(snapshot)
            if not path.is_dir():
                raise SnapshotError(f"Snapshot not found: {snapshot}")
            found = Snapshot.from_path(path) or Snapshot(
                path=path, created_at=datetime.fromtimestamp(path.stat().st_mtime)
            )

        missing = found.missing()
        if missing:
            raise SnapshotError(f"Snapshot {found.name} is incomplete, missing: {', '.join(missing)}")
        return found

    def restore(self, snapshot: Union[str, Path, Snapshot], force: bool = False) -> Snapshot:
        """Restore database, tunnel volume, config tree and secret file.

        The database is replaced in a single transaction and the container
        steps run first, so a failure there leaves the files on disk as they
        were. The config tree swap is undone if the secret file cannot be
        written.

        Raises:
            SnapshotError: If the snapshot is incomplete or a step fails
            SecretIntegrityError: If the live secret file differs and force is False
        """
        found = self.resolve(snapshot)
        saved_env = (found.path / ENV_COPY).read_bytes()
        live_env = self.layout.env_file
        if live_env.exists() and live_env.read_bytes() != saved_env and not force:
            raise SecretIntegrityError(
                f"{live_env} differs from the snapshot's secrets. "
                "Re-run with --force to replace them"
            )

        try:
            self._restore_database(found)
            self._restore_tunnel_state(found)
            previous = self._swap_config(found)
            try:
                atomic_write(live_env, saved_env, mode=0o600)
            except OSError:
                self._undo_config_swap(previous)
                raise
        except (CommandError, OSError) as e:
            raise SnapshotError(f"Restore from {found.name} failed: {e}") from e

        if previous.exists():
            shutil.rmtree(previous)
        logger.info("✓ Authelia config and secret file restored")
        logger.info(f"✓ Restored snapshot {found.name}")
        return found

    def _swap_config(self, snapshot: Snapshot) -> Path:
        """Put the snapshot's config tree in place, keeping the live one aside.

        Returns:
            Where the previous tree was moved (may not exist)
        """
        live = self.layout.authelia_config_dir
        staging = live.parent / f".{live.name}.restore"
        previous = live.parent / f".{live.name}.previous"
        for leftover in (staging, previous):
            if leftover.exists():
                shutil.rmtree(leftover)

        shutil.copytree(snapshot.path / CONFIG_COPY, staging)
        if live.exists():
            live.rename(previous)
        staging.rename(live)
        return previous

    def _undo_config_swap(self, previous: Path) -> None:
        if not previous.exists():
            return
        live = self.layout.authelia_config_dir
        shutil.rmtree(live)
        previous.rename(live)
        logger.warning("Authelia config rolled back")

    def _restore_database(self, snapshot: Snapshot) -> None:
        with gzip.open(snapshot.path / DB_DUMP, 'rb') as f:
            dump = f.read()
        self.runner.exec(
            DB_CONTAINER,
            ["psql", "-v", "ON_ERROR_STOP=1", "--single-transaction", "-U", DB_USER, "-d", DB_NAME],
            input=dump,
            text=False,
        )
        logger.info("✓ Database restored")

    def _restore_tunnel_state(self, snapshot: Snapshot) -> None:
        self.runner.run_helper(
            HELPER_IMAGE,
            ["tar", "xzf", f"/backup/{TUNNEL_ARCHIVE}", "-C", "/data"],
            volumes={TUNNEL_VOLUME: "/data", str(snapshot.path.resolve()): "/backup:ro"},
        )
        logger.info("✓ WireGuard state restored")
