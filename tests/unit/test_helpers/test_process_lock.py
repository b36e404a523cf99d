"""Unit tests for ProcessLock - prevents two daemons on one host."""

import os
from unittest.mock import patch

import pytest

from dockvault.helpers.constants import DEFAULT_LOCK_PATH, FALLBACK_LOCK_PATH
from dockvault.helpers.exceptions import LockHeldError
from dockvault.helpers.process_lock import ProcessLock


@pytest.mark.unit
class TestProcessLockBasic:
    """Basic functionality tests."""

    def test_acquire_and_release(self, tmp_path):
        lock_file = tmp_path / "test.lock"
        lock = ProcessLock(str(lock_file))

        assert lock.acquire() is True
        assert lock.held is True
        assert lock_file.exists()

        lock.release()
        assert lock.held is False
        assert not lock_file.exists()

    def test_lock_writes_pid(self, tmp_path):
        lock_file = tmp_path / "test.lock"
        lock = ProcessLock(str(lock_file))

        lock.acquire()
        try:
            assert lock_file.read_text().strip() == str(os.getpid())
            assert lock.holder_pid() == os.getpid()
        finally:
            lock.release()

    def test_context_manager(self, tmp_path):
        lock_file = tmp_path / "test.lock"

        with ProcessLock(str(lock_file)) as lock:
            assert lock.held is True

        lock2 = ProcessLock(str(lock_file))
        assert lock2.acquire() is True
        lock2.release()

    def test_file_kept_when_not_removed_on_release(self, tmp_path):
        lock_file = tmp_path / "locks" / "app.lock"
        lock = ProcessLock(str(lock_file), remove_on_release=False)

        assert lock.acquire() is True
        lock.release()

        assert lock_file.exists()
        assert ProcessLock(str(lock_file)).acquire() is True

    def test_release_without_acquire_is_noop(self, tmp_path):
        ProcessLock(str(tmp_path / "never.lock")).release()


@pytest.mark.unit
class TestProcessLockContention:
    """Tests for lock contention scenarios."""

    def test_second_lock_fails(self, tmp_path):
        lock_file = tmp_path / "test.lock"
        first = ProcessLock(str(lock_file))
        second = ProcessLock(str(lock_file))

        assert first.acquire() is True
        try:
            assert second.acquire() is False
            assert second.held is False
        finally:
            first.release()

    def test_context_manager_raises_when_held(self, tmp_path):
        lock_file = tmp_path / "test.lock"
        first = ProcessLock(str(lock_file))
        first.acquire()
        try:
            with pytest.raises(LockHeldError, match=f"pid {os.getpid()}"):
                with ProcessLock(str(lock_file)):
                    pass
        finally:
            first.release()


@pytest.mark.unit
class TestProcessLockDefaults:

    def test_uses_run_when_writable(self):
        with patch("dockvault.helpers.process_lock.os.access", return_value=True):
            assert str(ProcessLock().path) == DEFAULT_LOCK_PATH

    def test_falls_back_to_tmp(self):
        with patch("dockvault.helpers.process_lock.os.access", return_value=False):
            assert str(ProcessLock().path) == FALLBACK_LOCK_PATH
