"""
Backup orchestrator - runs the complete backup workflow for one job.

Workflow:
1. Quiesce external services (unless the job skips it)
2. Prepare the storage path (local directory or remote mount point)
3. Archive every configured directory
4. Write the backup record
5. Resume external services (always attempted once quiesced)
6. Apply the retention policy
"""

import logging
import shutil
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from .archiver import Archiver, generate_backup_id
from .checksum import combined_checksum
from .errors import BackupRunError, SourceUnavailable
from .metadata import MetadataStore
from .quiesce import NoopQuiescer
from .retention import RetentionManager, RetentionResult
from .types import BackupRecord, DirectoryRecord, JobConfig

logger = logging.getLogger(__name__)


class RunStep(Enum):
    """States of a backup run."""
    INIT = 'init'
    QUIESCED = 'quiesce'
    ARCHIVED = 'archive'
    RECORDED = 'record'
    RESUMED = 'resume'
    PRUNED = 'prune'
    DONE = 'done'
    ABORTED = 'aborted'


class BackupOrchestrator:
    """
    Orchestrates one backup run of a job.

    The run moves strictly through INIT -> QUIESCED -> ARCHIVED -> RECORDED
    -> RESUMED -> PRUNED -> DONE, or ends in ABORTED.
    """

    def __init__(self, job: JobConfig, storage_resolver, quiescer=None,
                 cancellation_check: Optional[Callable[[], None]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize backup orchestrator.

        Args:
            job: Job to run
            storage_resolver: StorageResolver (or any object with prepare(job) -> path)
            quiescer: Object with quiesce() -> tokens and resume(tokens)
            cancellation_check: Optional function raising OperationCancelled
            clock: Optional function returning the current UTC time
        """
        self.job = job
        self.storage_resolver = storage_resolver
        self.quiescer = quiescer or NoopQuiescer()
        self.cancellation_check = cancellation_check
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.state = RunStep.INIT
        self.storage_path: Optional[str] = None
        self.started_at: Optional[datetime] = None
        self.backup_id: Optional[str] = None
        self.backup_dir: Optional[str] = None
        self.record: Optional[BackupRecord] = None
        self.retention_result: Optional[RetentionResult] = None
        self.logs: List[str] = []

        self._tokens: List = []
        self._quiesced = False

    def run(self) -> BackupRecord:
        """
        Execute the backup run.

        Returns:
            The created BackupRecord

        Raises:
            BackupRunError: If the run aborts; its step names the failing stage
        """
        self.job.validate()
        self._log(f"Starting backup job: {self.job.name}")

        attempting = RunStep.QUIESCED
        failure: Optional[Exception] = None

        try:
            self._quiesce()
            self.state = RunStep.QUIESCED

            attempting = RunStep.ARCHIVED
            directories = self._archive()
            self.state = RunStep.ARCHIVED

            attempting = RunStep.RECORDED
            self._write_record(directories)
            self.state = RunStep.RECORDED

        except Exception as e:
            failure = e
            self._log(f"Backup failed: {e}")
            self._discard_backup_dir()

        finally:
            self._resume()

        if failure is not None:
            self.state = RunStep.ABORTED
            raise BackupRunError(attempting, str(failure), failure) from failure

        self.state = RunStep.RESUMED

        self._prune()
        self.state = RunStep.PRUNED

        self.state = RunStep.DONE
        self._log(f"Backup job completed successfully: {self.record.id}")
        return self.record

    def _quiesce(self):
        if self.job.skip_quiesce:
            self._log("Quiesce step skipped for this job")
            return

        self._log("Stopping external services")
        # Set before the call so resume is still attempted if quiesce fails midway
        self._quiesced = True
        self._tokens = list(self.quiescer.quiesce() or [])
        self._log(f"Stopped {len(self._tokens)} services")

    def _archive(self) -> List[DirectoryRecord]:
        self.storage_path = self.storage_resolver.prepare(self.job)
        store = MetadataStore(self.storage_path)

        self.started_at = self.clock()
        base_id = generate_backup_id(self.job.name, self.started_at)
        self.backup_id, self.backup_dir = store.create_backup_dir(base_id)
        self._log(f"Creating backup {self.backup_id} in {self.backup_dir}")

        archiver = Archiver(cancellation_check=self.cancellation_check)
        directories = []

        for entry in self.job.directories:
            if self.cancellation_check:
                self.cancellation_check()

            self._log(f"Backing up directory: {entry.path} -> {entry.name}")
            try:
                directory = archiver.archive(entry, self.backup_dir)
            except SourceUnavailable as e:
                logger.warning(str(e))
                self._log(f"Warning: {e}, skipping")
                continue

            directories.append(directory)
            self._log(
                f"Backed up {entry.name}: {directory.file_count} files, {directory.size} bytes"
            )

        if not directories:
            self._log("Warning: no directories were archived")

        return directories

    def _write_record(self, directories: List[DirectoryRecord]):
        record = BackupRecord(
            id=self.backup_id,
            timestamp=self.started_at,
            directories=directories,
            total_size=sum(d.size for d in directories),
            checksum=combined_checksum(directories),
            compressed=bool(directories) and all(d.compressed for d in directories)
        )

        MetadataStore(self.storage_path).save(record)
        self.record = record
        self._log(
            f"Backup record saved: {len(directories)} directories, {record.total_size} bytes"
        )

    def _resume(self):
        if not self._quiesced:
            return

        self._log("Restarting external services")
        try:
            self.quiescer.resume(self._tokens)
        except Exception as e:
            logger.warning(f"Resume failed for job {self.job.name}: {e}")
            self._log(f"Warning: Failed to restart services: {e}")

    def _prune(self):
        self._log("Cleaning up old backups")
        manager = RetentionManager(MetadataStore(self.storage_path), log=self._log)

        try:
            self.retention_result = manager.enforce(self.job.retention, now=self.clock())
        except Exception as e:
            logger.warning(f"Retention failed for job {self.job.name}: {e}")
            self._log(f"Warning: Failed to cleanup old backups: {e}")

    def _discard_backup_dir(self):
        """Remove the directory of an aborted run so no torn backup remains."""
        if not self.backup_dir:
            return
        try:
            shutil.rmtree(self.backup_dir)
            self._log(f"Removed incomplete backup directory {self.backup_dir}")
        except OSError as e:
            self._log(f"Warning: Failed to remove incomplete backup {self.backup_dir}: {e}")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(f"[{self.job.name}] {message}")
