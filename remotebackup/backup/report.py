"""
Run report sent back to the backed-up host.

The report lists the run's start/end time, the exclude patterns in effect and
a recursive listing of the host's backup tree, so the host's admin can see
what was (and wasn't) backed up without logging in to the backup server.
"""

import os
import logging
from datetime import datetime
from pathlib import Path
from typing import List

from remotebackup.models import BackupTarget, ExcludeList, RunReport
from .errors import ReportError
from .patterns import read_raw_lines
from .sources import SFTPRemoteCopy

logger = logging.getLogger(__name__)

REPORT_TIME_FORMAT = '%Y-%m-%d %H:%M:%S'
LISTING_TIME_FORMAT = '%b %d %H:%M'


def build_listing(root) -> List[str]:
    """
    Recursive listing of root in the style of ``tree -afD``.

    Every entry is shown with its modification time and its path relative
    to root; symlinked directories are listed but not descended into.

    Args:
        root: Directory to list

    Returns:
        Listing lines, ending with a directory/file count summary
    """
    root = Path(root)
    lines = ['.']
    counts = {'dirs': 0, 'files': 0}

    def walk(directory: Path, prefix: str):
        try:
            children = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as e:
            lines.append(f"{prefix}[error opening dir: {e.strerror}]")
            return

        for index, child in enumerate(children):
            last = index == len(children) - 1
            stat = child.stat(follow_symlinks=False)
            stamp = datetime.fromtimestamp(stat.st_mtime).strftime(LISTING_TIME_FORMAT)
            rel = Path(child.path).relative_to(root).as_posix()
            connector = '└── ' if last else '├── '
            label = f"./{rel}"
            if child.is_symlink():
                label += f" -> {os.readlink(child.path)}"
            lines.append(f"{prefix}{connector}[{stamp}]  {label}")

            if child.is_dir(follow_symlinks=False):
                counts['dirs'] += 1
                walk(Path(child.path), prefix + ('    ' if last else '│   '))
            else:
                counts['files'] += 1

    if root.is_dir():
        walk(root, '')
    lines.append('')
    lines.append(f"{counts['dirs']} directories, {counts['files']} files")
    return lines


def render_report(report: RunReport) -> str:
    """Render a RunReport as the plain-text file sent to the host."""
    lines = [
        f"server: {report.target.hostname}",
        f"run start: {report.started_at.strftime(REPORT_TIME_FORMAT)}",
        f"      end: {report.finished_at.strftime(REPORT_TIME_FORMAT)}",
        '',
        'excludes:',
        '',
    ]

    # Prefer the list files verbatim (comments included); fall back to the parsed patterns
    if report.exclude_list.source_files:
        for source_file in report.exclude_list.source_files:
            if os.path.isfile(source_file):
                lines.extend(read_raw_lines(source_file))
    else:
        lines.extend(report.exclude_list.patterns)

    lines.extend([
        '',
        'post-rsync file status:',
        '',
    ])
    lines.extend(report.listing)
    return '\n'.join(lines) + '\n'


class StatusReporter:
    """
    Builds the run report and uploads it to the host.
    """

    def __init__(self, settings: dict, remote_copy: SFTPRemoteCopy):
        self.settings = settings
        self.remote_copy = remote_copy
        self.scratch_dir = Path(settings['SCRATCH_DIR'])

    def report_path(self, target: BackupTarget) -> Path:
        return self.scratch_dir / f"{target.hostname}.backupstatus.txt"

    def report(
        self,
        target: BackupTarget,
        started_at: datetime,
        finished_at: datetime,
        exclude_list: ExcludeList,
        host_root
    ) -> bool:
        """
        Write the report, send it to the host and remove the local copy.

        Args:
            target: Host that was backed up
            started_at: Run start time
            finished_at: Sync end time
            exclude_list: Exclude patterns in effect
            host_root: The host's backup directory (listed in the report)

        Returns:
            True if the report reached the host

        Raises:
            ReportError: If the local report file cannot be written
        """
        logger.info("Creating status log and sending to host")
        report = RunReport(
            target=target,
            started_at=started_at,
            finished_at=finished_at,
            exclude_list=exclude_list,
            listing=build_listing(host_root)
        )

        path = self.report_path(target)
        try:
            self.scratch_dir.mkdir(parents=True, exist_ok=True)
            with open(path, 'w', encoding='utf-8', errors='surrogateescape') as f:
                f.write(render_report(report))
            os.chmod(path, 0o600)
        except OSError as e:
            path.unlink(missing_ok=True)
            raise ReportError(f"Failed to write report {path}: {e}")

        try:
            remote_path = self.settings['REMOTE_REPORT_FILE']
            delivered = self.remote_copy.push(target, path, remote_path)
        finally:
            path.unlink(missing_ok=True)

        if delivered:
            logger.info(f"Report stored on {target.hostname}:{remote_path}")
        else:
            logger.warning(f"Report could not be delivered to {target.hostname}")
        return delivered
