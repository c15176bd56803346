"""
Remote host access for small files.

Supports:
- SFTPRemoteCopy: copy single files to/from the remote host over SSH/SFTP
- RemoteConfigFetcher: fetch the host's exclude and incremental lists

The bulk transfer of the host's filesystem is done by rsync (see rsync.py);
this module only moves the control files and the run report.
"""

import os
import logging
from pathlib import Path
from typing import Optional, Tuple

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from remotebackup.models import BackupTarget, ExcludeList, IncrementalList
from .errors import MissingRemoteExcludeList
from .patterns import load_pattern_file

logger = logging.getLogger(__name__)


class SourceError(Exception):
    """Raised when the remote host cannot be reached or a file cannot be copied."""
    pass


class SFTPRemoteCopy:
    """
    Copy primitive for single files on the remote host.

    ``fetch`` and ``push`` never raise for transfer problems: failure is
    reported as ``False`` and, for fetches, as an absent destination file.
    """

    def __init__(self, username: str = 'root', key_filename: Optional[str] = None, timeout: int = 30):
        """
        Initialize SFTP copy handler.

        Args:
            username: SSH username on the remote host
            key_filename: Private key file (optional; agent and default keys are tried otherwise)
            timeout: Connection timeout in seconds
        """
        self.username = username
        self.key_filename = key_filename
        self.timeout = timeout

    def _connect(self, target: BackupTarget) -> SSHClient:
        """
        Open an SSH connection to the target.

        Raises:
            SourceError: If connection fails
        """
        ssh_client = SSHClient()
        ssh_client.load_system_host_keys()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        connect_kwargs = {
            'hostname': target.hostname,
            'port': target.ssh_port,
            'username': self.username,
            'timeout': self.timeout
        }
        if self.key_filename:
            key_path = Path(self.key_filename).expanduser()
            if not key_path.exists():
                raise SourceError(f"Private key not found: {self.key_filename}")
            connect_kwargs['key_filename'] = str(key_path)

        try:
            ssh_client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            ssh_client.close()
            raise SourceError(f"SSH authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            ssh_client.close()
            raise SourceError(f"Failed to connect to {target}: {e}")

        return ssh_client

    def fetch(self, target: BackupTarget, remote_path: str, local_path) -> bool:
        """
        Download one file from the remote host.

        Args:
            target: Host to copy from
            remote_path: Absolute path on the remote host
            local_path: Destination path

        Returns:
            True if the file was copied
        """
        local_path = str(local_path)
        try:
            ssh_client = self._connect(target)
        except SourceError as e:
            logger.warning(f"Could not fetch {target.hostname}:{remote_path}: {e}")
            return False

        try:
            with ssh_client.open_sftp() as sftp:
                sftp.get(remote_path, local_path)
            return True
        except (IOError, OSError, paramiko.SSHException) as e:
            logger.info(f"Could not fetch {target.hostname}:{remote_path}: {e}")
            # Don't leave a partial file behind; its presence means success
            if os.path.exists(local_path):
                os.remove(local_path)
            return False
        finally:
            ssh_client.close()

    def push(self, target: BackupTarget, local_path, remote_path: str) -> bool:
        """
        Upload one file to the remote host.

        Returns:
            True if the file was copied
        """
        try:
            ssh_client = self._connect(target)
        except SourceError as e:
            logger.warning(f"Could not push to {target.hostname}:{remote_path}: {e}")
            return False

        try:
            with ssh_client.open_sftp() as sftp:
                sftp.put(str(local_path), remote_path)
            return True
        except (IOError, OSError, paramiko.SSHException) as e:
            logger.warning(f"Could not push to {target.hostname}:{remote_path}: {e}")
            return False
        finally:
            ssh_client.close()


class RemoteConfigFetcher:
    """
    Fetches a host's exclude list and incremental list.

    The remote exclude list doubles as an on/off switch: a host without one
    is not backed up. The incremental list is optional; without it the run
    uses simple mode.
    """

    def __init__(self, settings: dict, remote_copy: SFTPRemoteCopy):
        self.settings = settings
        self.remote_copy = remote_copy
        self.scratch_dir = Path(settings['SCRATCH_DIR'])

    def exclude_list_path(self, target: BackupTarget) -> Path:
        return self.scratch_dir / f"{target.hostname}.backupexcludelist"

    def incremental_list_path(self, target: BackupTarget) -> Path:
        return self.scratch_dir / f"{target.hostname}.incrementallist"

    def _refetch(self, target: BackupTarget, remote_path: str, local_path: Path) -> bool:
        """Delete the cached copy, then fetch a fresh one."""
        if local_path.exists():
            local_path.unlink()
        self.remote_copy.fetch(target, remote_path, local_path)
        return local_path.is_file()

    def fetch(self, target: BackupTarget) -> Tuple[ExcludeList, Optional[IncrementalList]]:
        """
        Fetch the per-run exclude and incremental lists.

        The local common exclude list is checked by the executor before the
        host is locked.

        Args:
            target: Host being backed up

        Returns:
            (ExcludeList, IncrementalList or None)

        Raises:
            MissingRemoteExcludeList: If the remote exclude list cannot be fetched
        """
        local_exclude = Path(self.settings['LOCAL_EXCLUDE_LIST_FILE'])
        self.scratch_dir.mkdir(parents=True, exist_ok=True)

        logger.info("Deleting host exclude list and fetching new from host")
        remote_exclude = self.settings['REMOTE_EXCLUDE_LIST_FILE']
        exclude_path = self.exclude_list_path(target)
        if not self._refetch(target, remote_exclude, exclude_path):
            raise MissingRemoteExcludeList(
                f"could not fetch remote exclude list file {remote_exclude} for {target.hostname}"
            )
        logger.info("Fetched remote exclude list file")

        exclude_list = ExcludeList(
            patterns=load_pattern_file(local_exclude) + load_pattern_file(exclude_path),
            source_files=[str(local_exclude), str(exclude_path)]
        )

        logger.info("Deleting host incremental list and fetching new from host")
        remote_incremental = self.settings['REMOTE_INCREMENTAL_LIST_FILE']
        incremental_path = self.incremental_list_path(target)
        if not self._refetch(target, remote_incremental, incremental_path):
            logger.info(f"No remote incremental list file {remote_incremental} for {target.hostname}")
            return exclude_list, None

        logger.info("Fetched remote incremental list file")
        incremental_list = IncrementalList(
            patterns=load_pattern_file(incremental_path),
            source_file=str(incremental_path)
        )
        return exclude_list, incremental_list

    def cleanup(self, target: BackupTarget):
        """Remove the scratch copies of the lists."""
        for path in (self.exclude_list_path(target), self.incremental_list_path(target)):
            path.unlink(missing_ok=True)


def create_remote_copy(settings: dict) -> SFTPRemoteCopy:
    """Build the SFTP copy primitive from settings."""
    return SFTPRemoteCopy(
        username=settings.get('SSH_USERNAME', 'root'),
        key_filename=settings.get('SSH_KEY_FILE'),
        timeout=settings.get('SSH_TIMEOUT', 30)
    )
