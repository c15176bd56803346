"""
Sync pipeline - mirrors the remote host and files changes into the right
rollback tier.

Simple mode (no incremental list):
1. One pass: standard excludes, --delete, --delete-excluded,
   changed files archived into rollback-limited/<id>

Incremental mode:
1. Pass A: standard + incremental excludes, --delete (incremental paths are
   left alone), changed files archived into rollback-limited/<id>
2. Pass B: standard excludes only, --delete, --delete-excluded, changed files
   archived into rollback-unlimited/<id>
3. Reconcile: files in rollback-unlimited/<id> that do not match the
   incremental list move to rollback-limited/<id>
4. Remove directories left empty in both snapshot directories
"""

import os
import shutil
import logging
from pathlib import Path
from typing import List, Optional

from remotebackup.models import (
    BackupTarget, ExcludeList, IncrementalList, HostLayout, SnapshotId,
    SyncPhase, SyncOutcome
)
from .patterns import PatternSet
from .rsync import RsyncSync

logger = logging.getLogger(__name__)


def prune_empty_dirs(root) -> List[str]:
    """
    Remove empty directories below root, bottom-up, root included.

    Args:
        root: Directory to clean

    Returns:
        List of removed directories
    """
    root = Path(root)
    removed = []
    if not root.is_dir() or root.is_symlink():
        return removed

    for dirpath, dirnames, filenames in os.walk(root, topdown=False):
        if not os.listdir(dirpath):
            os.rmdir(dirpath)
            removed.append(dirpath)
    return removed


class SyncPipeline:
    """
    Runs the sync phases for one host and reconciles the two rollback tiers.
    """

    def __init__(self, settings: dict, sync: RsyncSync):
        """
        Args:
            settings: Settings dict (BACKUP_ROOT, BWLIMIT, ...)
            sync: Sync primitive
        """
        self.settings = settings
        self.sync = sync

    def build_phases(
        self,
        layout: HostLayout,
        exclude_list: ExcludeList,
        incremental_list: Optional[IncrementalList],
        snapshot_id: SnapshotId
    ) -> List[SyncPhase]:
        """Return the sync passes for this run, in execution order."""
        limited = layout.limited_snapshot(snapshot_id)

        if incremental_list is None:
            return [
                SyncPhase(
                    name='full',
                    exclude_patterns=list(exclude_list.patterns),
                    delete_extraneous=True,
                    delete_excluded=True,
                    archive_root=limited
                )
            ]

        return [
            SyncPhase(
                name='rotating',
                exclude_patterns=list(exclude_list.patterns) + list(incremental_list.patterns),
                delete_extraneous=True,
                # Incremental paths are excluded here but must not be purged yet
                delete_excluded=False,
                archive_root=limited
            ),
            SyncPhase(
                name='incremental',
                exclude_patterns=list(exclude_list.patterns),
                delete_extraneous=True,
                delete_excluded=True,
                archive_root=layout.unlimited_snapshot(snapshot_id)
            ),
        ]

    def run_phase(self, target: BackupTarget, layout: HostLayout, phase: SyncPhase) -> int:
        """
        Run one sync pass.

        Raises:
            SyncError: If the pass fails
        """
        logger.info(
            f"Sync pass '{phase.name}' for {target.hostname}: "
            f"{len(phase.exclude_patterns)} exclude patterns, "
            f"delete_excluded={phase.delete_excluded}, archive={phase.archive_root}"
        )
        return self.sync.sync(
            source=target.rsync_source,
            local_root=layout.current,
            exclude_patterns=phase.exclude_patterns,
            delete_extraneous=phase.delete_extraneous,
            delete_excluded=phase.delete_excluded,
            backup_dir=phase.archive_root,
            bwlimit_kbps=self.settings.get('BWLIMIT', 3000),
            ssh_port=target.ssh_port
        )

    def run(
        self,
        target: BackupTarget,
        exclude_list: ExcludeList,
        incremental_list: Optional[IncrementalList],
        snapshot_id: SnapshotId
    ) -> SyncOutcome:
        """
        Sync the host and file its changes.

        Args:
            target: Host being backed up
            exclude_list: Standard exclude patterns
            incremental_list: Incremental patterns, or None for simple mode
            snapshot_id: Snapshot name shared by all phases

        Returns:
            SyncOutcome

        Raises:
            SyncError: If any sync pass fails
        """
        layout = HostLayout.for_target(target, self.settings)
        mode = 'simple' if incremental_list is None else 'incremental'
        outcome = SyncOutcome(mode=mode)
        logger.info(f"Making total backup of {target.hostname} ({mode} mode)")

        for phase in self.build_phases(layout, exclude_list, incremental_list, snapshot_id):
            self.run_phase(target, layout, phase)
            outcome.phases.append(phase)

        if incremental_list is None:
            return outcome

        limited = layout.limited_snapshot(snapshot_id)
        unlimited = layout.unlimited_snapshot(snapshot_id)

        outcome.moved_to_limited = self.reconcile(
            unlimited, limited, PatternSet(incremental_list.patterns)
        )

        logger.info("Cleaning up empty dirs")
        outcome.pruned_dirs = prune_empty_dirs(unlimited) + prune_empty_dirs(limited)
        return outcome

    def reconcile(self, unlimited_dir, limited_dir, incremental: PatternSet) -> List[str]:
        """
        Move files that do not belong in unlimited retention to the rotating tier.

        Between the two passes files can change on the remote host, so the
        incremental pass may archive files outside the incremental list.

        Args:
            unlimited_dir: rollback-unlimited/<id>
            limited_dir: rollback-limited/<id>
            incremental: Incremental patterns

        Returns:
            Moved paths, relative to the snapshot directories
        """
        unlimited_dir = Path(unlimited_dir)
        limited_dir = Path(limited_dir)
        moved = []
        if not unlimited_dir.is_dir():
            return moved
        limited_dir.mkdir(parents=True, exist_ok=True)

        for dirpath, dirnames, filenames in os.walk(unlimited_dir):
            base = Path(dirpath)
            # os.walk does not descend into symlinked directories; move them as files
            leaves = filenames + [d for d in dirnames if (base / d).is_symlink()]
            for name in leaves:
                src = base / name
                rel = src.relative_to(unlimited_dir)
                if incremental.matches(rel.as_posix()):
                    continue

                dest = limited_dir / rel
                if dest.exists() or dest.is_symlink():
                    # Pass A already archived the pre-run version; keep that one
                    logger.debug(f"{rel} already archived in rotating snapshot, dropping newer copy")
                    src.unlink()
                elif not self._make_parents(unlimited_dir, limited_dir, rel.parent):
                    # A file or symlink archived by pass A sits where a parent dir is needed
                    logger.warning(f"{rel} clashes with a non-directory in rotating snapshot, dropping newer copy")
                    src.unlink()
                else:
                    shutil.move(str(src), str(dest))
                moved.append(rel.as_posix())

        if moved:
            logger.info(f"Moved {len(moved)} non-incremental files to rotating rollback")
        return moved

    @staticmethod
    def _make_parents(src_root: Path, dest_root: Path, rel_dir: Path) -> bool:
        """
        Create rel_dir below dest_root, copying mode and times from src_root.

        Returns:
            False if a component already exists as a file or symlink
        """
        current = Path()
        for part in rel_dir.parts:
            current = current / part
            dest = dest_root / current
            if dest.is_symlink() or (dest.exists() and not dest.is_dir()):
                return False
            if dest.is_dir():
                continue
            dest.mkdir()
            src = src_root / current
            shutil.copystat(src, dest, follow_symlinks=False)
            if os.geteuid() == 0:
                st = src.lstat()
                os.chown(dest, st.st_uid, st.st_gid)
