"""Concurrent access locking for vpnstack operations.

Prevents two mutating vpnstack commands from touching the same install
directory at once.
"""
import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from vpnstack.core.errors import VpnstackError
from vpnstack.core.logger import get_logger

logger = get_logger(__name__)

LOCK_FILENAME = ".vpnstack.lock"


class LockError(VpnstackError):
    """Raised when unable to acquire lock."""

    category = "lock"


class StackLock:
    """File-based lock guarding one install directory."""

    def __init__(self, install_dir: Path, timeout: int = 0):
        """Initialize lock.

        Args:
            install_dir: Install directory the lock protects
            timeout: Seconds to wait for lock (0 = fail immediately)
        """
        self.lock_file = Path(install_dir) / LOCK_FILENAME
        self.timeout = timeout
        self.lock_fd = None

    def acquire(self) -> bool:
        """Acquire the lock.

        Returns:
            True if lock acquired successfully

        Raises:
            LockError: If unable to acquire lock
        """
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)

        start_time = time.time()
        while True:
            # Append mode keeps the holder's info readable until we own the lock
            lock_fd = open(self.lock_file, 'a+')
            try:
                fcntl.flock(lock_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                lock_fd.close()
                if self.timeout == 0 or time.time() - start_time >= self.timeout:
                    lock_info = self._read_lock_info()
                    raise LockError(
                        f"Another vpnstack operation is in progress.\n"
                        f"Lock held by PID {lock_info['pid']} since {lock_info['time']}\n"
                        f"Wait for it to finish, or remove {self.lock_file} if stale."
                    )
                time.sleep(0.5)
                continue

            if not self._is_current(lock_fd):
                # The previous holder removed the file between our open and flock
                lock_fd.close()
                continue

            lock_fd.seek(0)
            lock_fd.truncate()
            lock_fd.write(f"{os.getpid()}\n")
            lock_fd.write(f"{time.strftime('%Y-%m-%d %H:%M:%S')}\n")
            lock_fd.flush()

            self.lock_fd = lock_fd
            logger.debug(f"Acquired lock: {self.lock_file}")
            return True

    def _is_current(self, lock_fd) -> bool:
        """True if the open file is still the one at lock_file."""
        try:
            on_disk = os.stat(self.lock_file)
        except FileNotFoundError:
            return False
        held = os.fstat(lock_fd.fileno())
        return (held.st_dev, held.st_ino) == (on_disk.st_dev, on_disk.st_ino)

    def release(self):
        """Release the lock.

        The file is removed while still locked, so a waiter that opened it
        earlier sees a stale file after its flock and retries.
        """
        if self.lock_fd is None:
            return

        try:
            self.lock_file.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Error removing lock file: {e}")

        try:
            fcntl.flock(self.lock_fd.fileno(), fcntl.LOCK_UN)
            self.lock_fd.close()
            logger.debug(f"Released lock: {self.lock_file}")
        except OSError as e:
            logger.warning(f"Error releasing lock: {e}")
        finally:
            self.lock_fd = None

    def _read_lock_info(self) -> dict:
        """Read info from lock file about who holds it."""
        try:
            lines = self.lock_file.read_text().splitlines()
        except OSError:
            lines = []

        if len(lines) >= 2:
            return {'pid': lines[0].strip(), 'time': lines[1].strip()}
        return {'pid': 'unknown', 'time': 'unknown'}

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


@contextmanager
def stack_lock(install_dir: Path, timeout: int = 0):
    """Hold the install-directory lock for the duration of the block.

    Usage:
        with stack_lock(layout.root):
            orchestrator.prepare()

    Raises:
        LockError: If unable to acquire lock
    """
    lock = StackLock(install_dir, timeout=timeout)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()
