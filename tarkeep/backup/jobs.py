"""
Job-level entry points used by the CLI, the HTTP API and the scheduler.

Job configuration is read from the database as JobConfig snapshots; backups
themselves are found through the on-disk metadata under each job's storage
path. All functions must be called inside an application context.
"""

import logging
import os
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from flask import current_app

from tarkeep import db
from tarkeep.models import BackupJob, BackupHistory
from .archiver import archive_filename
from .errors import (
    BackupError, BackupRunError, ConfigurationError, MetadataError, QuiesceError, RestoreError
)
from .executor import BackupOrchestrator
from .metadata import MetadataStore
from .quiesce import create_quiescer
from .restorer import Restorer
from .retention import RetentionManager, RetentionResult
from .storage import StorageResolver
from .types import BackupRecord, JobConfig

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_storage_resolver() -> StorageResolver:
    return StorageResolver(
        current_app.config['LOCAL_BACKUP_DIR'],
        current_app.config.get('REMOTE_MOUNT_DIR')
    )


def get_quiescer():
    """Quiescer registered on the app, or one built from configuration."""
    quiescer = current_app.extensions.get('tarkeep_quiescer')
    if quiescer is None:
        quiescer = create_quiescer(
            current_app.config.get('QUIESCE_BACKEND', 'none'),
            current_app.config.get('DOCKER_STATE_FILE')
        )
        current_app.extensions['tarkeep_quiescer'] = quiescer
        try:
            quiescer.recover()
        except QuiesceError as e:
            logger.warning(f"Failed to restart containers left stopped: {e}")
    return quiescer


def load_job_configs() -> List[JobConfig]:
    """Snapshot every configured job, ordered by name."""
    return [job.to_config() for job in BackupJob.query.order_by(BackupJob.name).all()]


def find_job_config(job_name: str) -> JobConfig:
    """
    Look up one job by name.

    Raises:
        ConfigurationError: If the job does not exist
    """
    job = BackupJob.query.filter_by(name=job_name).first()
    if not job:
        raise ConfigurationError(f"Backup job not found: {job_name}")
    return job.to_config()


def run_job(job_name: str, trigger: str = 'manual', allow_disabled: bool = False,
            cancellation_check=None) -> BackupRecord:
    """
    Run one backup job and record the run in the history table.

    Args:
        job_name: Name of the job
        trigger: 'manual' or 'scheduled'
        allow_disabled: If True, run the job even when it is disabled
        cancellation_check: Optional function raising OperationCancelled

    Returns:
        The created BackupRecord

    Raises:
        ConfigurationError: If the job is missing, disabled or invalid
        BackupRunError: If the run aborts
    """
    job = find_job_config(job_name)

    if not job.enabled and not allow_disabled:
        raise ConfigurationError(f"Backup job is disabled: {job_name}")

    history = BackupHistory(
        job_id=job.id,
        status='running',
        trigger=trigger,
        started_at=_utcnow()
    )
    db.session.add(history)
    db.session.commit()

    orchestrator = BackupOrchestrator(
        job,
        get_storage_resolver(),
        quiescer=get_quiescer(),
        cancellation_check=cancellation_check
    )

    try:
        record = orchestrator.run()
        history.status = 'success'
        history.backup_id = record.id
        history.total_size = record.total_size
        return record

    except BackupError as e:
        history.status = 'failed'
        history.error_message = str(e)
        history.failed_step = e.step.value if isinstance(e, BackupRunError) else 'init'
        logger.error(f"Backup job {job_name} failed: {e}")
        raise

    finally:
        history.completed_at = _utcnow()
        history.logs = '\n'.join(orchestrator.logs)
        db.session.commit()


def run_all_enabled_jobs(trigger: str = 'manual') -> Tuple[List[BackupRecord], List[BackupError]]:
    """
    Run every enabled job in turn.

    A failing job never stops the others.

    Returns:
        Tuple of (created records, errors of the failed jobs)
    """
    records = []
    errors = []

    for job in load_job_configs():
        if not job.enabled:
            continue
        try:
            records.append(run_job(job.name, trigger=trigger))
        except BackupError as e:
            errors.append(e)

    return records, errors


def list_records(job_name: str) -> List[BackupRecord]:
    """All backup records of a job, oldest first."""
    job = find_job_config(job_name)
    return MetadataStore(get_storage_resolver().resolve(job)).list_records()


def _candidate_jobs(job_name: Optional[str]) -> List[JobConfig]:
    if job_name:
        return [find_job_config(job_name)]
    return load_job_configs()


def locate_backup(backup_id: str, job_name: Optional[str] = None) -> Tuple[JobConfig, str]:
    """
    Find the job and backup directory holding a backup id.

    Raises:
        MetadataError: If no job's storage path holds the backup
    """
    resolver = get_storage_resolver()

    for job in _candidate_jobs(job_name):
        try:
            store = MetadataStore(resolver.resolve(job))
        except ConfigurationError as e:
            logger.warning(f"Skipping job {job.name} while searching backups: {e}")
            continue

        if store.exists(backup_id):
            return job, store.backup_dir(backup_id)

    raise MetadataError(f"Backup not found: {backup_id}")


def restore_from_path(backup_dir: str, target: Optional[str] = None,
                      cancellation_check=None) -> List[str]:
    """
    Restore every directory of the backup stored in backup_dir.

    With a target, each directory is restored to <target>/<name>; otherwise
    it returns to its recorded source path. A failing directory does not
    stop the others.

    Returns:
        Names of the restored directories

    Raises:
        MetadataError: If the backup metadata cannot be read
        RestoreError: If any directory failed to restore
    """
    record = MetadataStore.load_from_dir(backup_dir)
    restorer = Restorer(
        verify_checksum=current_app.config.get('VERIFY_CHECKSUM_ON_RESTORE', True),
        cancellation_check=cancellation_check
    )

    restored = []
    failures = {}

    for directory in record.directories:
        target_dir = os.path.join(target, directory.name) if target else directory.path
        archive_path = os.path.join(backup_dir, archive_filename(directory.name, directory.compressed))

        logger.info(f"Restoring {directory.name} from {record.id} to {target_dir}")
        try:
            count = restorer.restore(directory, archive_path, target_dir)
        except BackupError as e:
            logger.error(f"Failed to restore {directory.name} from {record.id}: {e}")
            failures[directory.name] = e
            continue

        restored.append(directory.name)
        logger.info(f"Restored {count} files to {target_dir}")

    if failures:
        raise RestoreError(record.id, failures)

    return restored


def restore_record(backup_id: str, target: Optional[str] = None,
                   job_name: Optional[str] = None) -> List[str]:
    """
    Restore a backup by id, searching every job's storage path.

    Returns:
        Names of the restored directories

    Raises:
        MetadataError: If the backup cannot be found
        RestoreError: If any directory failed to restore
    """
    job, backup_dir = locate_backup(backup_id, job_name)
    logger.info(f"Restoring backup {backup_id} of job {job.name}")
    return restore_from_path(backup_dir, target)


def _retention_manager(job: JobConfig) -> RetentionManager:
    return RetentionManager(MetadataStore(get_storage_resolver().resolve(job)))


def cleanup(job_name: str, dry_run: bool = False) -> RetentionResult:
    """
    Apply a job's retention policy outside of a backup run.

    Raises:
        ConfigurationError: If the job is missing or disabled
    """
    job = find_job_config(job_name)
    if not job.enabled:
        raise ConfigurationError(f"Backup job is disabled: {job_name}")

    return _retention_manager(job).enforce(job.retention, dry_run=dry_run)


def preview_cleanup(job_name: str) -> List[str]:
    """Ids of the backups cleanup would delete."""
    return cleanup(job_name, dry_run=True).selected


def delete_record(backup_id: str, job_name: Optional[str] = None) -> str:
    """
    Delete one backup with all its archives and metadata.

    Returns:
        Name of the job the backup belonged to

    Raises:
        MetadataError: If the backup cannot be found
        RetentionDeletionFailure: If the backup directory cannot be removed
    """
    job, backup_dir = locate_backup(backup_id, job_name)
    MetadataStore(os.path.dirname(backup_dir)).delete(backup_id)
    logger.info(f"Deleted backup {backup_id} of job {job.name}")
    return job.name
