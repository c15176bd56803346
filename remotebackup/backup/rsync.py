"""
rsync sync primitive.

Mirrors a remote tree into a local directory, archiving every file it
overwrites or deletes into a backup directory instead of discarding it.
"""

import os
import shlex
import logging
import subprocess
import tempfile
from typing import List, Optional

from .errors import SyncError

logger = logging.getLogger(__name__)

# rsync exit codes that still mean "the tree was synced"
PARTIAL_TRANSFER = 23  # some files could not be transferred (e.g. /proc entries)
VANISHED_SOURCE = 24   # source files vanished during the transfer
ACCEPTED_EXIT_CODES = {0, PARTIAL_TRANSFER, VANISHED_SOURCE}


class RsyncSync:
    """
    Runs rsync over ssh.

    Each call writes the exclude patterns to a temporary ``--exclude-from``
    file, runs rsync, and removes the file again.
    """

    def __init__(
        self,
        rsync_binary: str = 'rsync',
        extra_args: Optional[List[str]] = None,
        ssh_username: Optional[str] = None,
        ssh_key_file: Optional[str] = None,
        ssh_timeout: Optional[int] = None
    ):
        """
        Args:
            rsync_binary: rsync executable
            extra_args: Extra rsync arguments, placed before source and destination
            ssh_username: Remote login name (ssh -l)
            ssh_key_file: Private key (ssh -i)
            ssh_timeout: Connection timeout in seconds (ssh -o ConnectTimeout)
        """
        self.rsync_binary = rsync_binary
        self.extra_args = extra_args or []
        self.ssh_username = ssh_username
        self.ssh_key_file = ssh_key_file
        self.ssh_timeout = ssh_timeout

    def ssh_command(self, ssh_port: int = 22) -> str:
        """Remote shell for rsync -e, logging in the same way as the SFTP copies."""
        parts = ['ssh', '-p', str(ssh_port)]
        if self.ssh_username:
            parts.extend(['-l', self.ssh_username])
        if self.ssh_key_file:
            parts.extend(['-i', os.path.expanduser(self.ssh_key_file)])
        if self.ssh_timeout:
            parts.extend(['-o', f'ConnectTimeout={self.ssh_timeout}'])
        return ' '.join(shlex.quote(part) for part in parts)

    def build_command(
        self,
        source: str,
        local_root,
        exclude_file: Optional[str],
        delete_extraneous: bool,
        delete_excluded: bool,
        backup_dir,
        bwlimit_kbps: int,
        ssh_port: int = 22
    ) -> List[str]:
        """Build the rsync argument list for one pass."""
        cmd = [
            self.rsync_binary,
            '-e', self.ssh_command(ssh_port),
            f'--bwlimit={bwlimit_kbps}',
            '-a',
            '--partial',
            '--sparse',
        ]
        if exclude_file:
            cmd.append(f'--exclude-from={exclude_file}')
        if delete_extraneous:
            cmd.append('--delete')
        if delete_excluded:
            cmd.append('--delete-excluded')
        cmd.extend(['--backup', '--backup-dir', str(backup_dir)])
        cmd.extend(self.extra_args)
        # Trailing slash: copy the source entries into local_root itself
        cmd.extend([source, str(local_root).rstrip('/') + '/'])
        return cmd

    @staticmethod
    def _write_exclude_file(patterns: List[str]) -> str:
        tf = tempfile.NamedTemporaryFile('w', delete=False, encoding='utf-8',
                                         prefix='remotebackup_', suffix='.exclude')
        try:
            for pattern in patterns:
                tf.write(pattern + '\n')
        finally:
            tf.close()
        return tf.name

    def sync(
        self,
        source: str,
        local_root,
        exclude_patterns: List[str],
        delete_extraneous: bool,
        delete_excluded: bool,
        backup_dir,
        bwlimit_kbps: int,
        ssh_port: int = 22
    ) -> int:
        """
        Run one rsync pass.

        Args:
            source: rsync source argument, e.g. ``host:/*``
            local_root: Local mirror directory
            exclude_patterns: rsync exclude patterns
            delete_extraneous: Delete local files absent on the remote (--delete)
            delete_excluded: Also delete local files matching excludes (--delete-excluded)
            backup_dir: Directory receiving overwritten/deleted files (--backup-dir)
            bwlimit_kbps: Bandwidth limit in KBytes/s
            ssh_port: ssh port of the remote host

        Returns:
            rsync exit code (0, 23 or 24)

        Raises:
            SyncError: If rsync cannot be run or fails
        """
        exclude_file = self._write_exclude_file(exclude_patterns) if exclude_patterns else None
        cmd = self.build_command(
            source, local_root, exclude_file, delete_extraneous, delete_excluded,
            backup_dir, bwlimit_kbps, ssh_port
        )
        logger.debug("Running: " + ' '.join(cmd))

        try:
            result = subprocess.run(cmd, check=False, capture_output=True, text=True)
        except OSError as e:
            raise SyncError(f"Failed to run {self.rsync_binary}: {e}")
        finally:
            if exclude_file:
                try:
                    os.unlink(exclude_file)
                except OSError:
                    pass

        if result.returncode not in ACCEPTED_EXIT_CODES:
            stderr = (result.stderr or '').strip()
            raise SyncError(f"rsync failed with exit code {result.returncode}: {stderr}")

        if result.returncode != 0:
            logger.warning(
                f"rsync finished with exit code {result.returncode} "
                f"(some files were not transferred): {(result.stderr or '').strip()}"
            )
        return result.returncode


def create_sync(settings: dict) -> RsyncSync:
    """Build the sync primitive from settings."""
    return RsyncSync(
        rsync_binary=settings.get('RSYNC_BINARY', 'rsync'),
        ssh_username=settings.get('SSH_USERNAME'),
        ssh_key_file=settings.get('SSH_KEY_FILE'),
        ssh_timeout=settings.get('SSH_TIMEOUT')
    )
