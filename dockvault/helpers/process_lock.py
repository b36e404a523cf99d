"""
Host-level process lock.

Prevents two DockVault daemons from driving the same Docker host, and two
processes from backing up the same target at once.
"""

import fcntl
import os
from pathlib import Path
from typing import Optional

from .constants import DEFAULT_LOCK_PATH, FALLBACK_LOCK_PATH
from .exceptions import LockHeldError
from .logging import get_logger

logger = get_logger(__name__)


class ProcessLock:
    """
    Exclusive fcntl lock on a PID file.
    """

    def __init__(self, path: Optional[str] = None, remove_on_release: bool = True):
        """
        Initialize lock file.

        Args:
            path: Path to lock file; defaults to /run, falling back to /tmp when not writable
            remove_on_release: Delete the file on release; keep it for locks that are
                taken repeatedly so a waiting process never locks an unlinked inode
        """
        if path is None:
            path = DEFAULT_LOCK_PATH if os.access(Path(DEFAULT_LOCK_PATH).parent, os.W_OK) \
                else FALLBACK_LOCK_PATH
        self.path = Path(path)
        self.remove_on_release = remove_on_release
        self.fd = None

    @property
    def held(self) -> bool:
        return self.fd is not None

    def acquire(self) -> bool:
        """
        Try to acquire lock.

        Returns:
            True if lock acquired, False if already locked
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.fd = open(self.path, 'a+')
            fcntl.flock(self.fd, fcntl.LOCK_EX | fcntl.LOCK_NB)

            self.fd.seek(0)
            self.fd.truncate()
            self.fd.write(str(os.getpid()))
            self.fd.flush()
            logger.debug(f"Acquired process lock {self.path}")
            return True

        except OSError as e:
            logger.debug(f"Process lock {self.path} unavailable: {e}")
            if self.fd:
                self.fd.close()
                self.fd = None
            return False

    def holder_pid(self) -> Optional[int]:
        """PID written by the current holder, if readable."""
        try:
            content = self.path.read_text().strip()
            return int(content) if content else None
        except (OSError, ValueError):
            return None

    def release(self) -> None:
        """Release the lock."""
        if not self.fd:
            return
        try:
            if self.remove_on_release:
                self.path.unlink(missing_ok=True)
            fcntl.flock(self.fd, fcntl.LOCK_UN)
        except OSError as e:
            logger.warning(f"Error releasing process lock {self.path}: {e}")
        finally:
            self.fd.close()
            self.fd = None

    def __enter__(self):
        if not self.acquire():
            pid = self.holder_pid()
            holder = f" (pid {pid})" if pid else ""
            raise LockHeldError(f"Another instance is already running{holder}: {self.path}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
