"""
Backup module for remotebackup.

This module handles the core backup functionality including:
- Per-host run locking
- Fetching the host's exclude/incremental lists
- Rotation of limited rollback snapshots
- rsync sync passes and reconciliation of the rollback tiers
- Run reports
- Execution orchestration
"""

from .executor import BackupExecutor, execute_backup
from .lock import LockCoordinator, ExistenceLock, PidLock
from .sources import SFTPRemoteCopy, RemoteConfigFetcher
from .retention import RetentionRotator
from .pipeline import SyncPipeline
from .report import StatusReporter
from .rsync import RsyncSync

__all__ = [
    'BackupExecutor',
    'execute_backup',
    'LockCoordinator',
    'ExistenceLock',
    'PidLock',
    'SFTPRemoteCopy',
    'RemoteConfigFetcher',
    'RetentionRotator',
    'SyncPipeline',
    'StatusReporter',
    'RsyncSync'
]
