"""
Exceptions raised by the backup engine.

Every fatal failure of a run maps to a ``BackupError`` subclass carrying the
process exit code the CLI should use.
"""


class BackupError(Exception):
    """Base class for backup run failures."""
    exit_code = 1


class PreconditionError(BackupError):
    """Raised when the local setup is unusable (missing backup root, missing local exclude list)."""
    pass


class MissingRemoteExcludeList(BackupError):
    """Raised when the remote exclude list cannot be fetched; the host has opted out."""
    pass


class RotationError(BackupError):
    """Raised when the rotating rollback directory is malformed."""
    pass


class SyncError(BackupError):
    """Raised when a sync pass against the remote host fails."""
    pass


class ReportError(BackupError):
    """Raised when the run report cannot be delivered. Never fatal."""
    exit_code = 0
