"""
Unit tests for the sync pipeline (remotebackup/backup/pipeline.py).

The sync primitive is mocked; where a test needs files in the snapshot
directories, the mock's side effect writes them the way rsync's
--backup-dir would.
"""

import os
from pathlib import Path

import pytest

from remotebackup.backup.errors import SyncError
from remotebackup.backup.patterns import PatternSet
from remotebackup.backup.pipeline import SyncPipeline, prune_empty_dirs
from remotebackup.models import ExcludeList, HostLayout, IncrementalList, SnapshotId

SNAPSHOT = SnapshotId('2024-01-15_12:00:00')


@pytest.fixture
def layout(settings, target):
    layout = HostLayout.for_target(target, settings)
    layout.current.mkdir(parents=True)
    layout.limited_snapshot(SNAPSHOT).mkdir(parents=True)
    layout.unlimited_snapshot(SNAPSHOT).mkdir(parents=True)
    return layout


@pytest.fixture
def exclude_list():
    return ExcludeList(patterns=['/proc', '*.tmp'])


@pytest.fixture
def incremental_list():
    return IncrementalList(patterns=['/home/*/documents', '*.pdf'])


def write_files(root, files):
    for rel, content in files.items():
        path = Path(root) / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)


class TestBuildPhases:
    """Test phase construction per mode."""

    def test_simple_mode_single_phase(self, settings, mock_sync, layout, exclude_list):
        """Test simple mode runs one delete-excluded pass into the rotating tier."""
        phases = SyncPipeline(settings, mock_sync).build_phases(layout, exclude_list, None, SNAPSHOT)

        assert len(phases) == 1
        assert phases[0].exclude_patterns == ['/proc', '*.tmp']
        assert phases[0].delete_extraneous is True
        assert phases[0].delete_excluded is True
        assert phases[0].archive_root == layout.limited_snapshot(SNAPSHOT)

    def test_incremental_mode_two_phases(self, settings, mock_sync, layout, exclude_list, incremental_list):
        """Test incremental mode runs the rotating pass, then the incremental pass."""
        phases = SyncPipeline(settings, mock_sync).build_phases(
            layout, exclude_list, incremental_list, SNAPSHOT
        )

        rotating, incremental = phases
        assert rotating.exclude_patterns == ['/proc', '*.tmp', '/home/*/documents', '*.pdf']
        assert rotating.delete_excluded is False
        assert rotating.archive_root == layout.limited_snapshot(SNAPSHOT)
        assert incremental.exclude_patterns == ['/proc', '*.tmp']
        assert incremental.delete_excluded is True
        assert incremental.archive_root == layout.unlimited_snapshot(SNAPSHOT)


class TestRun:
    """Test running the pipeline with a mocked sync primitive."""

    def test_simple_mode_run(self, settings, target, mock_sync, layout, exclude_list):
        """Test simple mode calls sync once with the host's settings."""
        outcome = SyncPipeline(settings, mock_sync).run(target, exclude_list, None, SNAPSHOT)

        assert outcome.mode == 'simple'
        mock_sync.sync.assert_called_once()
        kwargs = mock_sync.sync.call_args[1]
        assert kwargs['source'] == 'web1.example.com:/*'
        assert kwargs['local_root'] == layout.current
        assert kwargs['delete_excluded'] is True
        assert kwargs['backup_dir'] == layout.limited_snapshot(SNAPSHOT)
        assert kwargs['bwlimit_kbps'] == 3000
        assert kwargs['ssh_port'] == 2222
        # Simple mode leaves the unlimited tier alone
        assert layout.unlimited_snapshot(SNAPSHOT).is_dir()

    def test_incremental_mode_order(self, settings, target, mock_sync, layout, exclude_list, incremental_list):
        """Test the rotating pass runs before the incremental pass."""
        outcome = SyncPipeline(settings, mock_sync).run(
            target, exclude_list, incremental_list, SNAPSHOT
        )

        assert outcome.mode == 'incremental'
        calls = mock_sync.sync.call_args_list
        assert len(calls) == 2
        assert calls[0][1]['backup_dir'] == layout.limited_snapshot(SNAPSHOT)
        assert calls[0][1]['delete_excluded'] is False
        assert calls[1][1]['backup_dir'] == layout.unlimited_snapshot(SNAPSHOT)
        assert calls[1][1]['delete_excluded'] is True

    def test_sync_error_stops_pipeline(self, settings, target, mock_sync, layout, exclude_list, incremental_list):
        """Test a failing first pass skips the second."""
        mock_sync.sync.side_effect = SyncError("rsync failed with exit code 12")

        with pytest.raises(SyncError):
            SyncPipeline(settings, mock_sync).run(target, exclude_list, incremental_list, SNAPSHOT)
        assert mock_sync.sync.call_count == 1

    def test_incremental_run_files_changes(self, settings, target, mock_sync, layout, exclude_list, incremental_list):
        """Test archived files end up in the right tier after reconciliation."""
        limited = layout.limited_snapshot(SNAPSHOT)
        unlimited = layout.unlimited_snapshot(SNAPSHOT)

        def fake_sync(**kwargs):
            if kwargs['backup_dir'] == limited:
                write_files(limited, {'etc/hosts': 'old hosts'})
            else:
                write_files(unlimited, {
                    'home/alice/documents/cv.odt': 'old cv',
                    'srv/manual.pdf': 'old manual',
                    # Changed on the host between the two passes
                    'etc/motd': 'old motd',
                })
            return 0

        mock_sync.sync.side_effect = fake_sync

        outcome = SyncPipeline(settings, mock_sync).run(target, exclude_list, incremental_list, SNAPSHOT)

        assert outcome.moved_to_limited == ['etc/motd']
        assert (limited / 'etc' / 'motd').read_text() == 'old motd'
        assert (limited / 'etc' / 'hosts').exists()
        assert (unlimited / 'home' / 'alice' / 'documents' / 'cv.odt').exists()
        assert (unlimited / 'srv' / 'manual.pdf').exists()
        assert not (unlimited / 'etc').exists()

    def test_incremental_run_prunes_empty_snapshots(
        self, settings, target, mock_sync, layout, exclude_list, incremental_list
    ):
        """Test snapshot dirs that received nothing are removed."""
        outcome = SyncPipeline(settings, mock_sync).run(target, exclude_list, incremental_list, SNAPSHOT)

        assert not layout.limited_snapshot(SNAPSHOT).exists()
        assert not layout.unlimited_snapshot(SNAPSHOT).exists()
        assert str(layout.unlimited_snapshot(SNAPSHOT)) in outcome.pruned_dirs
        # The tier roots themselves are untouched
        assert layout.limited_root.is_dir()
        assert layout.unlimited_root.is_dir()


class TestReconcile:
    """Test moving non-incremental files to the rotating tier."""

    def test_tiers_are_disjoint_after_reconcile(self, settings, mock_sync, tmp_path):
        """Test no non-matching file stays in unlimited, no matching file is moved."""
        unlimited = tmp_path / 'unlimited'
        limited = tmp_path / 'limited'
        write_files(unlimited, {
            'home/bob/documents/a.txt': 'a',
            'home/bob/documents/sub/b.txt': 'b',
            'var/log/syslog': 'log',
            'opt/guide.pdf': 'pdf',
            'opt/notes.txt': 'notes',
        })
        patterns = PatternSet(['/home/*/documents', '*.pdf'])

        moved = SyncPipeline(settings, mock_sync).reconcile(unlimited, limited, patterns)

        assert sorted(moved) == ['opt/notes.txt', 'var/log/syslog']
        for dirpath, _, filenames in os.walk(unlimited):
            for name in filenames:
                rel = (Path(dirpath) / name).relative_to(unlimited).as_posix()
                assert patterns.matches(rel)
        for dirpath, _, filenames in os.walk(limited):
            for name in filenames:
                rel = (Path(dirpath) / name).relative_to(limited).as_posix()
                assert not patterns.matches(rel)

    def test_existing_rotating_copy_wins(self, settings, mock_sync, tmp_path):
        """Test the rotating pass's copy is kept when both tiers hold a file."""
        unlimited = tmp_path / 'unlimited'
        limited = tmp_path / 'limited'
        write_files(unlimited, {'etc/motd': 'newer'})
        write_files(limited, {'etc/motd': 'pre-run'})

        moved = SyncPipeline(settings, mock_sync).reconcile(unlimited, limited, PatternSet(['*.pdf']))

        assert moved == ['etc/motd']
        assert (limited / 'etc' / 'motd').read_text() == 'pre-run'
        assert not (unlimited / 'etc' / 'motd').exists()

    def test_symlinks_are_moved_not_followed(self, settings, mock_sync, tmp_path):
        """Test symlinks are moved as links."""
        unlimited = tmp_path / 'unlimited'
        limited = tmp_path / 'limited'
        (unlimited / 'srv').mkdir(parents=True)
        os.symlink('/etc', unlimited / 'srv' / 'conf')

        moved = SyncPipeline(settings, mock_sync).reconcile(unlimited, limited, PatternSet(['*.pdf']))

        assert moved == ['srv/conf']
        assert os.readlink(limited / 'srv' / 'conf') == '/etc'

    def test_parent_dir_mode_is_copied(self, settings, mock_sync, tmp_path):
        """Test created parent directories take the source directory's mode."""
        unlimited = tmp_path / 'unlimited'
        limited = tmp_path / 'limited'
        write_files(unlimited, {'private/key': 'k'})
        os.chmod(unlimited / 'private', 0o700)

        SyncPipeline(settings, mock_sync).reconcile(unlimited, limited, PatternSet([]))

        assert (limited / 'private').stat().st_mode & 0o777 == 0o700

    def test_missing_unlimited_dir(self, settings, mock_sync, tmp_path):
        """Test reconciling a missing snapshot dir moves nothing."""
        moved = SyncPipeline(settings, mock_sync).reconcile(
            tmp_path / 'missing', tmp_path / 'limited', PatternSet(['*.pdf'])
        )

        assert moved == []

    def test_file_archived_where_parent_dir_needed(self, settings, mock_sync, tmp_path):
        """Test a file in the rotating tier blocking a parent dir drops the newer copy."""
        unlimited = tmp_path / 'unlimited'
        limited = tmp_path / 'limited'
        write_files(limited, {'srv/data': 'pre-run file'})
        write_files(unlimited, {'srv/data/new.txt': 'newer'})

        moved = SyncPipeline(settings, mock_sync).reconcile(unlimited, limited, PatternSet(['*.pdf']))

        assert moved == ['srv/data/new.txt']
        assert (limited / 'srv' / 'data').read_text() == 'pre-run file'
        assert not (unlimited / 'srv' / 'data' / 'new.txt').exists()

    def test_symlinked_parent_is_not_written_through(self, settings, mock_sync, tmp_path):
        """Test a symlink archived in the rotating tier is never used as a parent dir."""
        unlimited = tmp_path / 'unlimited'
        limited = tmp_path / 'limited'
        outside = tmp_path / 'outside'
        outside.mkdir()
        limited.mkdir()
        os.symlink(outside, limited / 'srv')
        write_files(unlimited, {'srv/conf': 'c'})

        moved = SyncPipeline(settings, mock_sync).reconcile(unlimited, limited, PatternSet(['*.pdf']))

        assert moved == ['srv/conf']
        assert list(outside.iterdir()) == []
        assert not (unlimited / 'srv' / 'conf').exists()

    def test_include_rule_keeps_file_rotating(self, settings, mock_sync, tmp_path):
        """Test a path re-included ahead of an incremental pattern moves to rotating."""
        unlimited = tmp_path / 'unlimited'
        limited = tmp_path / 'limited'
        write_files(unlimited, {'home/keep/a.txt': 'a', 'home/other/b.txt': 'b'})

        moved = SyncPipeline(settings, mock_sync).reconcile(
            unlimited, limited, PatternSet(['+ /home/keep', '/home/*'])
        )

        assert moved == ['home/keep/a.txt']
        assert (limited / 'home' / 'keep' / 'a.txt').read_text() == 'a'
        assert (unlimited / 'home' / 'other' / 'b.txt').exists()


class TestPruneEmptyDirs:
    """Test removing empty directories."""

    def test_nested_empty_dirs_removed(self, tmp_path):
        """Test empty chains are removed bottom-up, non-empty dirs stay."""
        root = tmp_path / 'snapshot'
        (root / 'a' / 'b' / 'c').mkdir(parents=True)
        write_files(root, {'d/file.txt': 'x'})

        removed = prune_empty_dirs(root)

        assert not (root / 'a').exists()
        assert (root / 'd' / 'file.txt').exists()
        assert str(root / 'a' / 'b' / 'c') in removed
        assert root.exists()

    def test_empty_root_removed(self, tmp_path):
        """Test a snapshot dir with nothing in it disappears."""
        root = tmp_path / 'snapshot'
        (root / 'x').mkdir(parents=True)

        prune_empty_dirs(root)

        assert not root.exists()

    def test_missing_root(self, tmp_path):
        assert prune_empty_dirs(tmp_path / 'missing') == []
