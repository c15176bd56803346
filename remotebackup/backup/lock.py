"""
Per-host run locks.

A lock file ``<lock_dir>/<hostname>.pid`` marks a backup run in progress.
The file is created with ``O_CREAT | O_EXCL`` so two runs racing for the
same host cannot both win.

Two strategies are available:
- ExistenceLock: the file's existence is the lock. A run that crashes
  leaves the lock behind and the host stays skipped until an operator
  removes it.
- PidLock: the file records the owning process; a lock whose process is
  gone (same machine) is considered stale and taken over.
"""

import os
import json
import socket
import logging
from datetime import datetime, timezone
from pathlib import Path

from remotebackup.models import BackupTarget

logger = logging.getLogger(__name__)


class LockStrategy:
    """Interface for lock strategies used by LockCoordinator."""

    def acquire(self, lock_path: Path) -> bool:
        raise NotImplementedError

    def release(self, lock_path: Path):
        raise NotImplementedError


class ExistenceLock(LockStrategy):
    """Plain existence marker, no liveness check."""

    def _create(self, lock_path: Path, content: bytes = b'') -> bool:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        try:
            if content:
                os.write(fd, content)
        finally:
            os.close(fd)
        return True

    def acquire(self, lock_path: Path) -> bool:
        return self._create(lock_path)

    def release(self, lock_path: Path):
        lock_path.unlink(missing_ok=True)


class PidLock(ExistenceLock):
    """
    Lock file carrying the owner's pid and hostname.

    An existing lock is stale if it was written on this machine by a process
    that no longer exists, or if it cannot be parsed. Locks written on another
    machine are never taken over.
    """

    def __init__(self):
        self.hostname = socket.gethostname()

    def _lock_data(self) -> bytes:
        return json.dumps({
            'pid': os.getpid(),
            'hostname': self.hostname,
            'acquired_at': datetime.now(timezone.utc).isoformat()
        }).encode()

    @staticmethod
    def _is_process_alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)  # Signal 0 = check existence only
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Process exists but belongs to another user
            return True

    def is_stale(self, lock_path: Path) -> bool:
        try:
            with open(lock_path) as f:
                lock_data = json.load(f)
            pid = int(lock_data['pid'])
            lock_hostname = lock_data.get('hostname')
        except FileNotFoundError:
            return False
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Lock file {lock_path} unreadable, treating as stale: {e}")
            return True

        if lock_hostname != self.hostname:
            return False
        return not self._is_process_alive(pid)

    def acquire(self, lock_path: Path) -> bool:
        if self._create(lock_path, self._lock_data()):
            return True

        if not self.is_stale(lock_path):
            return False

        logger.warning(f"Removing stale lock file {lock_path}")
        lock_path.unlink(missing_ok=True)
        # Retry once; a concurrent run may have won the race in between
        return self._create(lock_path, self._lock_data())


LOCK_STRATEGIES = {
    'existence': ExistenceLock,
    'pid': PidLock,
}


def create_lock_strategy(name: str) -> LockStrategy:
    """
    Factory function for lock strategies.

    Args:
        name: 'existence' or 'pid'

    Raises:
        ValueError: If name is unknown
    """
    try:
        return LOCK_STRATEGIES[name]()
    except KeyError:
        raise ValueError(f"Invalid lock strategy: {name}")


class LockCoordinator:
    """
    Guards a backup run so only one run per host proceeds at a time.
    """

    def __init__(self, lock_dir, strategy: LockStrategy = None):
        """
        Args:
            lock_dir: Directory holding the lock files
            strategy: LockStrategy instance (default: ExistenceLock)
        """
        self.lock_dir = Path(lock_dir)
        self.strategy = strategy or ExistenceLock()

    def lock_path(self, target: BackupTarget) -> Path:
        return self.lock_dir / f"{target.hostname}.pid"

    def acquire(self, target: BackupTarget) -> bool:
        """
        Take the lock for a target.

        Returns:
            True if the lock was taken, False if another run holds it
        """
        path = self.lock_path(target)
        if self.strategy.acquire(path):
            logger.info(f"Lock {path} acquired")
            return True
        logger.warning(f"Lock file {path} present, another run is active")
        return False

    def release(self, target: BackupTarget):
        """Remove the lock for a target, whether or not it exists."""
        path = self.lock_path(target)
        self.strategy.release(path)
        logger.info(f"Lock {path} released")
