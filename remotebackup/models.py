"""
Value types passed between the backup components.

A run is described by an immutable ``BackupTarget`` and a ``SnapshotId``
generated once at run start; everything else is derived from those two and
the settings dict.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

SNAPSHOT_ID_FORMAT = '%Y-%m-%d_%H:%M:%S'


@dataclass(frozen=True)
class BackupTarget:
    """Remote host being backed up"""
    hostname: str
    ssh_port: int = 22
    remote_root: str = '/'

    @property
    def rsync_source(self) -> str:
        """rsync source argument: every top-level entry below remote_root."""
        root = self.remote_root.rstrip('/')
        return f"{self.hostname}:{root}/*"

    def __str__(self):
        return f"{self.hostname}:{self.ssh_port}"


@dataclass(frozen=True)
class SnapshotId:
    """Name shared by every snapshot directory written during one run"""
    value: str

    @classmethod
    def from_datetime(cls, moment: datetime) -> 'SnapshotId':
        return cls(moment.strftime(SNAPSHOT_ID_FORMAT))

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class HostLayout:
    """On-disk layout of one host's backup tree."""
    host_dir: Path
    current: Path
    limited_root: Path
    unlimited_root: Path

    @classmethod
    def for_target(cls, target: BackupTarget, settings: dict) -> 'HostLayout':
        host_dir = Path(settings['BACKUP_ROOT']) / target.hostname
        return cls(
            host_dir=host_dir,
            current=host_dir / settings.get('CURRENT_DIR_NAME', 'current'),
            limited_root=host_dir / settings.get('LIMITED_ROLLBACK_DIR_NAME', 'rollback-limited'),
            unlimited_root=host_dir / settings.get('UNLIMITED_ROLLBACK_DIR_NAME', 'rollback-unlimited'),
        )

    def limited_snapshot(self, snapshot_id: SnapshotId) -> Path:
        return self.limited_root / str(snapshot_id)

    def unlimited_snapshot(self, snapshot_id: SnapshotId) -> Path:
        return self.unlimited_root / str(snapshot_id)


@dataclass
class ExcludeList:
    """Patterns never backed up: local common list first, then the host's own list"""
    patterns: List[str]
    source_files: List[str] = field(default_factory=list)


@dataclass
class IncrementalList:
    """Patterns kept in unlimited retention"""
    patterns: List[str]
    source_file: Optional[str] = None


@dataclass
class RetentionEntry:
    """One snapshot directory below the rotating rollback root"""
    name: str
    path: Path
    mtime: datetime


@dataclass
class RotationResult:
    kept: List[RetentionEntry] = field(default_factory=list)
    evicted: List[RetentionEntry] = field(default_factory=list)
    failed: List[RetentionEntry] = field(default_factory=list)


@dataclass
class SyncPhase:
    """
    One parameterised sync pass.

    The pipeline runs one of these in simple mode and two in incremental mode;
    only the exclude set, the deletion flags and the archive directory differ.
    """
    name: str
    exclude_patterns: List[str]
    delete_extraneous: bool
    delete_excluded: bool
    archive_root: Path


@dataclass
class SyncOutcome:
    mode: str  # 'simple' or 'incremental'
    phases: List[SyncPhase] = field(default_factory=list)
    moved_to_limited: List[str] = field(default_factory=list)
    pruned_dirs: List[str] = field(default_factory=list)


@dataclass
class RunReport:
    target: BackupTarget
    started_at: datetime
    finished_at: datetime
    exclude_list: ExcludeList
    listing: List[str]


@dataclass
class RunResult:
    """Outcome of one executor run"""
    target: BackupTarget
    status: str  # 'success', 'skipped' or 'failed'
    exit_code: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    logs: List[str] = field(default_factory=list)
    outcome: Optional[SyncOutcome] = None
