"""
Backup executor - orchestrates one backup run for one host.

Workflow:
1. Check local preconditions (backup root, local exclude list)
2. Take the host lock (skip the run if another run holds it)
3. Fetch the host's exclude list (required) and incremental list (optional)
4. Create the host's directory tree
5. Rotate the limited rollback directory
6. Create this run's snapshot directories and sync
7. Send the run report to the host
8. Remove scratch files and release the lock
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from remotebackup.models import BackupTarget, HostLayout, RunResult, SnapshotId
from .errors import BackupError, PreconditionError, ReportError
from .lock import LockCoordinator, create_lock_strategy
from .pipeline import SyncPipeline
from .report import StatusReporter
from .retention import create_rotator
from .rsync import create_sync
from .sources import RemoteConfigFetcher, create_remote_copy

logger = logging.getLogger(__name__)


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for a host.
    """

    def __init__(
        self,
        target: BackupTarget,
        settings: dict,
        remote_copy=None,
        sync=None,
        lock: Optional[LockCoordinator] = None
    ):
        """
        Initialize backup executor.

        Args:
            target: Host to back up
            settings: Settings dict (see remotebackup.config)
            remote_copy: Remote copy primitive (default: SFTP from settings)
            sync: Sync primitive (default: rsync from settings)
            lock: LockCoordinator (default: from LOCK_DIR/LOCK_STRATEGY)
        """
        self.target = target
        self.settings = settings
        self.layout = HostLayout.for_target(target, settings)

        remote_copy = remote_copy or create_remote_copy(settings)
        self.fetcher = RemoteConfigFetcher(settings, remote_copy)
        self.reporter = StatusReporter(settings, remote_copy)
        self.pipeline = SyncPipeline(settings, sync or create_sync(settings))
        self.rotator = create_rotator(settings)
        self.lock = lock or LockCoordinator(
            settings['LOCK_DIR'],
            create_lock_strategy(settings.get('LOCK_STRATEGY', 'existence'))
        )

        self.result = None
        self.logs = []

    def execute(self) -> RunResult:
        """
        Execute the backup run.

        Never raises for run failures; they are recorded on the result.

        Returns:
            RunResult with status 'success', 'skipped' or 'failed'
        """
        started_at = datetime.now()
        snapshot_id = SnapshotId.from_datetime(started_at)
        self.result = RunResult(
            target=self.target,
            status='running',
            exit_code=0,
            started_at=started_at
        )
        self._log(f"Starting backup process for {self.target.hostname}")

        locked = False
        try:
            self._check_preconditions()

            if not self.lock.acquire(self.target):
                self._log(f"Another backup of {self.target.hostname} is running, skipping")
                self.result.status = 'skipped'
                return self.result
            locked = True

            self._execute_workflow(snapshot_id)

            self.result.status = 'success'
            self._log("Backup complete")

        except BackupError as e:
            self.result.status = 'failed'
            self.result.exit_code = e.exit_code
            self.result.error = str(e)
            self._log(f"Backup failed: {e}", level=logging.ERROR)

        except Exception as e:
            self.result.status = 'failed'
            self.result.exit_code = 1
            self.result.error = str(e)
            logger.exception(f"Unexpected error backing up {self.target.hostname}")
            self._log(f"Backup failed: {e}", level=logging.ERROR)

        finally:
            if locked:
                self.fetcher.cleanup(self.target)
                self.lock.release(self.target)
            if self.result.finished_at is None:
                self.result.finished_at = datetime.now()
            self.result.logs = self.logs + self.rotator.logs

        return self.result

    def _check_preconditions(self):
        """
        Raises:
            PreconditionError: If the backup root or the local exclude list is missing
        """
        backup_root = Path(self.settings['BACKUP_ROOT'])
        if not backup_root.is_dir():
            raise PreconditionError(f"base target path ({backup_root}) is not a directory")

        local_exclude = Path(self.settings['LOCAL_EXCLUDE_LIST_FILE'])
        if not local_exclude.is_file():
            raise PreconditionError(f"local exclude list file ({local_exclude}) does not exist")

    def _execute_workflow(self, snapshot_id: SnapshotId):
        """Execute the main backup workflow steps."""
        # Step 1: Fetch per-host lists
        exclude_list, incremental_list = self.fetcher.fetch(self.target)
        mode = 'incremental' if incremental_list is not None else 'simple'
        self._log(f"Exclude patterns: {len(exclude_list.patterns)}, mode: {mode}")

        # Step 2: Directory tree (the run's own snapshot dirs come after rotation)
        self.layout.current.mkdir(parents=True, exist_ok=True)
        if not self.layout.limited_root.exists():
            self.layout.limited_root.mkdir(parents=True)

        # Step 3: Rotate limited rollbacks
        self._log("Rotating limited rollback snapshots")
        rotation = self.rotator.rotate(self.layout.limited_root)
        self._log(f"Rotation evicted {len(rotation.evicted)} snapshots")

        # Step 4: This run's snapshot dirs
        self.layout.limited_snapshot(snapshot_id).mkdir(parents=True, exist_ok=True)
        if incremental_list is not None:
            self.layout.unlimited_snapshot(snapshot_id).mkdir(parents=True, exist_ok=True)

        # Step 5: Sync
        self._log(f"Making total backup of {self.target.hostname}")
        self.result.outcome = self.pipeline.run(
            self.target, exclude_list, incremental_list, snapshot_id
        )
        self.result.finished_at = datetime.now()
        self._log(f"Sync finished ({len(self.result.outcome.phases)} passes)")

        # Step 6: Report; the backup itself is already safe at this point
        try:
            self.reporter.report(
                self.target,
                self.result.started_at,
                self.result.finished_at,
                exclude_list,
                self.layout.host_dir
            )
        except ReportError as e:
            self._log(f"Warning: {e}", level=logging.WARNING)

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


def execute_backup(hostname: str, port: int = 22, settings: Optional[dict] = None) -> RunResult:
    """
    Execute a backup run for a host.

    Args:
        hostname: Host to back up
        port: ssh port of the host
        settings: Settings dict (default: loaded from the environment)

    Returns:
        RunResult
    """
    if settings is None:
        from remotebackup.config import load_config
        settings = load_config()

    executor = BackupExecutor(BackupTarget(hostname=hostname, ssh_port=int(port)), settings)
    return executor.execute()
