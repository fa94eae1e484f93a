"""
Data model for backup jobs and backup records.

Jobs are immutable snapshots of the configuration stored in the database;
records describe completed backups and are persisted next to their archives.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .errors import ConfigurationError


STORAGE_LOCAL = 'local'
STORAGE_REMOTE = 'remote'
STORAGE_KINDS = (STORAGE_LOCAL, STORAGE_REMOTE)


@dataclass(frozen=True)
class DirectoryEntry:
    """A source directory to archive, with its logical name."""
    path: str
    name: str
    compression: bool = True


@dataclass(frozen=True)
class RetentionPolicy:
    """Retention criteria. A value of 0 disables the criterion."""
    keep_days: int = 0
    keep_count: int = 0
    keep_monthly: int = 0


@dataclass(frozen=True)
class ScheduleConfig:
    """Schedule descriptor: a duration, a named alias or a crontab expression."""
    interval: str = ''
    enabled: bool = False


@dataclass(frozen=True)
class JobConfig:
    """Snapshot of one backup job's configuration."""
    name: str
    directories: Tuple[DirectoryEntry, ...] = ()
    id: Optional[int] = None
    description: str = ''
    enabled: bool = True
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    storage_kind: str = STORAGE_LOCAL
    storage_path: Optional[str] = None
    mount_point: Optional[str] = None
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    skip_quiesce: bool = False
    skip_remote: bool = False

    @property
    def uses_remote_storage(self) -> bool:
        return self.storage_kind == STORAGE_REMOTE and not self.skip_remote

    def validate(self):
        """
        Check the job for configuration mistakes.

        Raises:
            ConfigurationError: If the job cannot be run as configured
        """
        if not self.name or not self.name.strip():
            raise ConfigurationError("Job name cannot be empty")

        if not self.directories:
            raise ConfigurationError(f"At least one directory must be specified for job {self.name}")

        seen = set()
        for index, entry in enumerate(self.directories):
            if not entry.path:
                raise ConfigurationError(
                    f"Directory path cannot be empty for directory {index} in job {self.name}"
                )
            if not entry.name:
                raise ConfigurationError(
                    f"Directory name cannot be empty for directory {index} in job {self.name}"
                )
            if '/' in entry.name or entry.name in ('.', '..'):
                raise ConfigurationError(f"Invalid directory name '{entry.name}' in job {self.name}")
            if entry.name in seen:
                raise ConfigurationError(f"Duplicate directory name '{entry.name}' in job {self.name}")
            seen.add(entry.name)

        if self.storage_kind not in STORAGE_KINDS:
            raise ConfigurationError(
                f"Invalid storage kind '{self.storage_kind}' for job {self.name}. "
                f"Valid options: {list(STORAGE_KINDS)}"
            )

        policy = self.retention
        if policy.keep_days < 0 or policy.keep_count < 0 or policy.keep_monthly < 0:
            raise ConfigurationError(f"Retention values cannot be negative for job {self.name}")


@dataclass
class FilePermissionRecord:
    """Permission metadata captured for one archived entry."""
    mode: int
    uid: int
    gid: int
    size: int
    mod_time: datetime


@dataclass
class DirectoryRecord:
    """Description of one archived directory inside a backup."""
    path: str
    name: str
    size: int
    file_count: int
    checksum: str
    compressed: bool
    permissions: Dict[str, FilePermissionRecord] = field(default_factory=dict)


@dataclass
class BackupRecord:
    """Description of one completed backup."""
    id: str
    timestamp: datetime
    directories: List[DirectoryRecord]
    total_size: int
    checksum: str
    compressed: bool

    def get_directory(self, name: str) -> Optional[DirectoryRecord]:
        for directory in self.directories:
            if directory.name == name:
                return directory
        return None
