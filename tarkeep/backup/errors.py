"""
Exception taxonomy for the backup engine.

Every engine failure derives from BackupError so callers (CLI commands,
HTTP routes, scheduler tasks) can catch one type and still tell the
cases apart.
"""

from typing import Dict, Optional


class BackupError(Exception):
    """Base class for all backup engine errors."""
    pass


class ConfigurationError(BackupError):
    """Raised when a job is missing or its configuration is invalid."""
    pass


class SourceUnavailable(BackupError):
    """Raised when a configured source directory does not exist."""
    pass


class ArchiveWriteFailure(BackupError):
    """Raised when an archive cannot be written or a source file cannot be read."""
    pass


class RestoreReadFailure(BackupError):
    """Raised when an archive is missing, corrupt or fails verification."""
    pass


class MetadataError(BackupError):
    """Raised when a metadata file cannot be read or parsed."""
    pass


class RetentionDeletionFailure(BackupError):
    """Raised when a backup directory cannot be deleted."""
    pass


class ScheduleParseFailure(BackupError):
    """Raised when a schedule interval cannot be parsed."""
    pass


class OperationCancelled(BackupError):
    """Raised when an archive or restore walk is cancelled."""
    pass


class QuiesceError(BackupError):
    """Raised when external services cannot be stopped or restarted."""
    pass


class BackupRunError(BackupError):
    """
    Raised when a backup run aborts.

    Attributes:
        step: RunStep the run was trying to reach when it failed
        cause: Original exception
    """

    def __init__(self, step, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"Backup failed during {step.value}: {message}")
        self.step = step
        self.cause = cause


class RestoreError(BackupError):
    """
    Raised when one or more directories of a backup could not be restored.

    Attributes:
        failures: Mapping of directory logical name to the exception raised
    """

    def __init__(self, backup_id: str, failures: Dict[str, BaseException]):
        names = ', '.join(sorted(failures))
        super().__init__(f"Restore of {backup_id} failed for: {names}")
        self.backup_id = backup_id
        self.failures = failures
