"""
Shared pytest fixtures for remotebackup tests.

This module provides fixtures for:
- Settings pointing every directory into tmp_path
- A backup target
- Fake remote copy and sync primitives
- Mock fixtures for external services (SSH, scheduler)
- Rollback snapshot trees with controlled ages
"""

import os
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from remotebackup.config import load_config
from remotebackup.models import BackupTarget


class FakeRemoteCopy:
    """
    In-memory stand-in for SFTPRemoteCopy.

    ``files`` maps remote paths to their content; a fetch of a path that is
    not in ``files`` fails like a missing remote file does.
    """

    def __init__(self, files=None):
        self.files = dict(files or {})
        self.fetched = []
        self.pushed = {}
        self.push_succeeds = True

    def fetch(self, target, remote_path, local_path):
        self.fetched.append(remote_path)
        if remote_path not in self.files:
            return False
        Path(local_path).write_text(self.files[remote_path])
        return True

    def push(self, target, local_path, remote_path):
        if not self.push_succeeds:
            return False
        self.pushed[remote_path] = {
            'content': Path(local_path).read_text(),
            'mode': os.stat(local_path).st_mode & 0o777
        }
        return True


@pytest.fixture(scope='function')
def settings(tmp_path):
    """
    Testing settings with every directory inside tmp_path.

    Creates the backup root and a local common exclude list.
    """
    settings = load_config('testing')

    backup_root = tmp_path / 'backup'
    backup_root.mkdir()
    local_exclude = tmp_path / 'etc' / 'backupexcludelist'
    local_exclude.parent.mkdir()
    local_exclude.write_text("# common excludes\n/proc\n/sys\n/dev\nlost+found\n")

    settings.update({
        'BACKUP_ROOT': str(backup_root),
        'LOCAL_EXCLUDE_LIST_FILE': str(local_exclude),
        'SCRATCH_DIR': str(tmp_path / 'scratch'),
        'LOCK_DIR': str(tmp_path / 'locks'),
        'LOCK_STRATEGY': 'existence',
        'LOG_DIR': None,
    })
    return settings


@pytest.fixture
def target():
    """Backup target on a non-standard ssh port."""
    return BackupTarget(hostname='web1.example.com', ssh_port=2222)


@pytest.fixture
def remote_files(settings):
    """Remote control files of an eligible host (exclude list only)."""
    return {
        settings['REMOTE_EXCLUDE_LIST_FILE']: "/var/cache\n*.tmp\n",
    }


@pytest.fixture
def fake_remote_copy(remote_files):
    """FakeRemoteCopy serving remote_files."""
    return FakeRemoteCopy(remote_files)


@pytest.fixture
def mock_sync():
    """Sync primitive that succeeds without touching the filesystem."""
    sync = MagicMock()
    sync.sync.return_value = 0
    return sync


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SSH/SFTP testing.

    Returns the patched class; the SFTP client used inside ``with`` blocks is
    ``mock_ssh.return_value.open_sftp.return_value.__enter__.return_value``.
    """
    with patch('remotebackup.backup.sources.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value.__enter__.return_value = mock_sftp

        # Mock connection success
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh


def set_age(path, now, days=0, hours=0, seconds=0):
    """Set a path's mtime to ``now`` minus the given age."""
    moment = now - timedelta(days=days, hours=hours, seconds=seconds)
    ts = moment.timestamp()
    os.utime(path, (ts, ts))


@pytest.fixture
def age_path():
    """The set_age helper, for tests that build their own trees."""
    return set_age


@pytest.fixture
def make_snapshots(tmp_path):
    """
    Factory creating snapshot directories with given ages.

    Usage: make_snapshots(root, now, [ages in days, newest first])
    Returns the created paths in the same order.
    """
    def _make(root, now, ages_days):
        root = Path(root)
        root.mkdir(parents=True, exist_ok=True)
        paths = []
        for index, age in enumerate(ages_days):
            moment = now - timedelta(days=age, seconds=index)
            path = root / moment.strftime('%Y-%m-%d_%H:%M:%S')
            path.mkdir()
            (path / 'changed.txt').write_text(f'snapshot {index}')
            set_age(path, now, days=age, seconds=index)
            paths.append(path)
        return paths

    return _make


@pytest.fixture
def now():
    """Fixed reference time for rotation tests."""
    return datetime(2024, 1, 15, 12, 0, 0)


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('remotebackup.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        # Mock scheduler methods
        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
