"""Tests for concurrent access locking."""
import fcntl
import os

import pytest

from vpnstack.core.lock import LOCK_FILENAME, LockError, StackLock, stack_lock


class TestStackLock:
    """Test file-based locking mechanism."""

    def test_acquire_and_release(self, tmp_path):
        """Can acquire and release lock."""
        lock = StackLock(tmp_path)
        lock_file = tmp_path / LOCK_FILENAME

        assert lock.acquire() is True
        assert lock_file.exists()

        lock.release()
        assert not lock_file.exists()

    def test_concurrent_lock_fails(self, tmp_path):
        """Second lock attempt fails when first is held."""
        lock1 = StackLock(tmp_path, timeout=0)
        lock1.acquire()

        lock2 = StackLock(tmp_path, timeout=0)
        with pytest.raises(LockError) as exc_info:
            lock2.acquire()

        assert "Another vpnstack operation is in progress" in str(exc_info.value)
        assert f"PID {os.getpid()}" in str(exc_info.value)
        assert exc_info.value.category == "lock"

        lock1.release()

    def test_context_manager(self, tmp_path):
        """Lock works as context manager."""
        with StackLock(tmp_path):
            assert (tmp_path / LOCK_FILENAME).exists()

        assert not (tmp_path / LOCK_FILENAME).exists()

    def test_lock_info_written(self, tmp_path):
        """Lock file contains PID and timestamp."""
        lock = StackLock(tmp_path)
        lock.acquire()

        lines = (tmp_path / LOCK_FILENAME).read_text().splitlines()
        assert str(os.getpid()) in lines[0]
        assert '-' in lines[1]

        lock.release()

    def test_install_dir_created(self, tmp_path):
        """Lock directory is created if missing."""
        install_dir = tmp_path / "opt" / "vpnstack"
        with StackLock(install_dir):
            assert install_dir.is_dir()

    def test_retries_when_file_replaced_before_flock(self, tmp_path, monkeypatch):
        """A holder releasing between our open and flock leaves us a stale inode."""
        lock = StackLock(tmp_path)
        lock_file = tmp_path / LOCK_FILENAME
        real_flock = fcntl.flock
        replaced = []

        def flock(fd, operation):
            if operation & fcntl.LOCK_EX and not replaced:
                replaced.append(True)
                lock_file.unlink()
                lock_file.write_text("")
            return real_flock(fd, operation)

        monkeypatch.setattr(fcntl, "flock", flock)
        lock.acquire()

        held = os.fstat(lock.lock_fd.fileno())
        assert held.st_ino == lock_file.stat().st_ino
        assert str(os.getpid()) in lock_file.read_text()
        lock.release()

    def test_release_removes_file_before_unlocking(self, tmp_path, monkeypatch):
        lock = StackLock(tmp_path)
        lock_file = tmp_path / LOCK_FILENAME
        lock.acquire()
        real_flock = fcntl.flock
        seen = []

        def flock(fd, operation):
            if operation == fcntl.LOCK_UN:
                seen.append(lock_file.exists())
            return real_flock(fd, operation)

        monkeypatch.setattr(fcntl, "flock", flock)
        lock.release()
        assert seen == [False]

    def test_release_twice(self, tmp_path):
        lock = StackLock(tmp_path)
        lock.acquire()
        lock.release()
        lock.release()


class TestStackLockContext:
    def test_success(self, tmp_path):
        executed = False
        with stack_lock(tmp_path):
            executed = True
        assert executed

    def test_failure_when_held(self, tmp_path):
        held = StackLock(tmp_path)
        held.acquire()

        with pytest.raises(LockError):
            with stack_lock(tmp_path):
                pass

        held.release()

    def test_released_on_error(self, tmp_path):
        with pytest.raises(RuntimeError):
            with stack_lock(tmp_path):
                raise RuntimeError("boom")
        assert not (tmp_path / LOCK_FILENAME).exists()
