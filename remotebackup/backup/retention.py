"""
Retention policy enforcement for rotating rollback snapshots.

The rotating (limited) rollback root holds one timestamp-named directory per
run. Rotation keeps the newest entries unconditionally and evicts older
entries only once they pass the maximum age, so whichever rule is more
permissive wins for every entry.
"""

import os
import shutil
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from remotebackup.models import RetentionEntry, RotationResult
from .errors import RotationError

logger = logging.getLogger(__name__)

DEFAULT_MIN_ENTRIES = 10
DEFAULT_MAX_AGE_DAYS = 14


class RetentionRotator:
    """
    Prunes the rotating rollback directory of one host.

    - the ``min_entries`` most recently modified entries are always kept
    - any other entry is evicted iff it is older than ``max_age_days``
    """

    def __init__(self, min_entries: int = DEFAULT_MIN_ENTRIES, max_age_days: int = DEFAULT_MAX_AGE_DAYS):
        """
        Initialize retention rotator.

        Args:
            min_entries: Number of newest entries kept regardless of age
            max_age_days: Age after which entries beyond min_entries are evicted
        """
        self.min_entries = min_entries
        self.max_age = timedelta(days=max_age_days)
        self.logs = []

    def list_entries(self, rotating_root: Path) -> List[RetentionEntry]:
        """
        List snapshot entries, newest first.

        Args:
            rotating_root: Rotating rollback directory

        Returns:
            RetentionEntry list sorted descending by modification time

        Raises:
            RotationError: If rotating_root is missing or not a directory
        """
        rotating_root = Path(rotating_root)
        if not rotating_root.is_dir():
            raise RotationError(f"rotating rollback dir ({rotating_root}) is not a directory")

        entries = []
        with os.scandir(rotating_root) as it:
            for item in it:
                if item.name.startswith('.'):
                    continue
                stat = item.stat(follow_symlinks=False)
                entries.append(RetentionEntry(
                    name=item.name,
                    path=Path(item.path),
                    mtime=datetime.fromtimestamp(stat.st_mtime, timezone.utc)
                ))

        entries.sort(key=lambda e: e.mtime, reverse=True)
        return entries

    def rotate(self, rotating_root, now: Optional[datetime] = None) -> RotationResult:
        """
        Evict expired snapshots.

        Args:
            rotating_root: Rotating rollback directory
            now: Reference time (default: current time). A naive value is
                taken as local time.

        Returns:
            RotationResult with kept, evicted and failed entries

        Raises:
            RotationError: If rotating_root is missing or not a directory
        """
        # Compare in UTC: ages are elapsed time, unaffected by DST changes
        if now is None:
            now = datetime.now(timezone.utc)
        elif now.tzinfo is None:
            now = datetime.fromtimestamp(now.timestamp(), timezone.utc)

        entries = self.list_entries(rotating_root)
        result = RotationResult()

        for entry in entries[:self.min_entries]:
            self._log(f"{entry.name} is recent, leaving it be")
            result.kept.append(entry)

        for entry in entries[self.min_entries:]:
            age = now - entry.mtime
            if age <= self.max_age:
                self._log(f"{entry.name} is less than {self.max_age.days} days old, leaving it be")
                result.kept.append(entry)
                continue

            self._log(f"{entry.name} is more than {self.max_age.days} days old, deleting")
            try:
                self._remove(entry.path)
                result.evicted.append(entry)
            except OSError as e:
                # One stuck entry must not stop the rest of the rotation
                self._log(f"Failed to delete {entry.name}: {e}", level=logging.ERROR)
                result.failed.append(entry)

        self._log(
            f"Rotation complete. Kept: {len(result.kept)}, "
            f"evicted: {len(result.evicted)}, failed: {len(result.failed)}"
        )
        return result

    @staticmethod
    def _remove(path: Path):
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def create_rotator(settings: dict) -> RetentionRotator:
    """Build a rotator from settings."""
    return RetentionRotator(
        min_entries=settings.get('ROLLBACK_MIN_ENTRIES', DEFAULT_MIN_ENTRIES),
        max_age_days=settings.get('ROLLBACK_MAX_AGE_DAYS', DEFAULT_MAX_AGE_DAYS)
    )
