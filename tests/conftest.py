"""
Shared pytest fixtures for tarkeep tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- Backup job fixtures (database rows and JobConfig snapshots)
- Source directory trees and storage locations
"""

import os
from datetime import datetime, timezone

import pytest

from tarkeep import create_app, db as _db
from tarkeep.models import BackupJob, BackupDirectory, BackupHistory
from tarkeep.backup.quiesce import NoopQuiescer
from tarkeep.backup.storage import StorageResolver
from tarkeep.backup.types import (
    BackupRecord, DirectoryEntry, DirectoryRecord, JobConfig, RetentionPolicy
)


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing', test_config={
        'LOCAL_BACKUP_DIR': str(tmp_path / 'backups'),
        'REMOTE_MOUNT_DIR': str(tmp_path / 'remote'),
        'DOCKER_STATE_FILE': str(tmp_path / 'containers.json'),
    })
    app.extensions['tarkeep_quiescer'] = NoopQuiescer()

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a source directory tree.

    Creates:
    - file1.txt (0644)
    - script.sh (0755)
    - nested/file2.log
    - nested/deeper/empty.bin (empty file)
    - link -> file1.txt (symlink)
    """
    root = tmp_path / 'source'
    root.mkdir()

    (root / 'file1.txt').write_text('Test content 1')
    os.chmod(root / 'file1.txt', 0o644)

    (root / 'script.sh').write_text('#!/bin/sh\necho hello\n')
    os.chmod(root / 'script.sh', 0o755)

    nested = root / 'nested'
    nested.mkdir()
    (nested / 'file2.log').write_text('Nested log content\n' * 100)

    deeper = nested / 'deeper'
    deeper.mkdir()
    (deeper / 'empty.bin').write_bytes(b'')

    os.symlink('file1.txt', root / 'link')

    return root


@pytest.fixture
def storage_dir(tmp_path):
    path = tmp_path / 'storage'
    path.mkdir()
    return path


@pytest.fixture
def storage_resolver(tmp_path):
    return StorageResolver(str(tmp_path / 'backups'), str(tmp_path / 'remote'))


@pytest.fixture
def job_config(source_tree, storage_dir):
    """JobConfig with one compressed directory stored in storage_dir."""
    return JobConfig(
        name='test_job',
        directories=(DirectoryEntry(path=str(source_tree), name='data', compression=True),),
        storage_path=str(storage_dir),
        skip_quiesce=True
    )


@pytest.fixture(scope='function')
def local_backup_job(db, source_tree):
    """
    Create a backup job storing into the default local backup directory.
    """
    job = BackupJob(
        name='nightly',
        description='Nightly data backup',
        enabled=True,
        storage_kind='local',
        schedule_interval='24h',
        schedule_enabled=True,
        retention_keep_count=5
    )
    job.directories = [
        BackupDirectory(position=0, path=str(source_tree), name='data', compression=False)
    ]
    db.session.add(job)
    db.session.commit()
    return job


@pytest.fixture(scope='function')
def backup_history(db, local_backup_job):
    """
    Create a backup history record for testing.
    """
    history = BackupHistory(
        job_id=local_backup_job.id,
        status='success',
        trigger='scheduled',
        started_at=datetime(2024, 1, 15, 12, 0, 0),
        completed_at=datetime(2024, 1, 15, 12, 0, 5),
        backup_id='nightly-20240115_120000',
        total_size=1024,
        logs='[2024-01-15 12:00:00 UTC] Starting backup job: nightly\n'
             '[2024-01-15 12:00:05 UTC] Backup job completed successfully: nightly-20240115_120000'
    )
    db.session.add(history)
    db.session.commit()
    return history


def make_record(backup_id, timestamp, directories=None):
    """Build a BackupRecord for retention and metadata tests."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return BackupRecord(
        id=backup_id,
        timestamp=timestamp,
        directories=directories or [
            DirectoryRecord(
                path='/data', name='data', size=10, file_count=1,
                checksum='0' * 64, compressed=True
            )
        ],
        total_size=10,
        checksum='f' * 64,
        compressed=True
    )


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def retention_policy():
    return RetentionPolicy(keep_days=30, keep_count=5, keep_monthly=0)
