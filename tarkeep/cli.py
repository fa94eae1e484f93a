"""
Command line interface: flask --app tarkeep backup <command>.

Every command exits with status 1 when the operation fails.
"""

import signal
import threading
from datetime import datetime

import click
from flask import current_app
from flask.cli import AppGroup

from tarkeep.backup import jobs as backup_jobs
from tarkeep.backup.errors import BackupError, RestoreError


backup_cli = AppGroup('backup', help='Run, list, restore and clean up backups.')


def _fail(message):
    click.echo(f"Error: {message}", err=True)
    raise SystemExit(1)


def _format_size(size):
    for unit in ('B', 'KB', 'MB', 'GB'):
        if size < 1024:
            return f"{size:.1f} {unit}" if unit != 'B' else f"{size} B"
        size /= 1024
    return f"{size:.1f} TB"


@backup_cli.command('run')
@click.argument('job_name')
@click.option('--force', is_flag=True, help='Run the job even if it is disabled.')
def run_command(job_name, force):
    """Run one backup job now."""
    try:
        record = backup_jobs.run_job(job_name, trigger='manual', allow_disabled=force)
    except BackupError as e:
        _fail(e)

    click.echo(f"Backup completed: {record.id}")
    click.echo(f"  Directories: {len(record.directories)}")
    click.echo(f"  Total size: {_format_size(record.total_size)}")
    click.echo(f"  Checksum: {record.checksum}")


@backup_cli.command('run-all')
def run_all_command():
    """Run every enabled backup job."""
    records, errors = backup_jobs.run_all_enabled_jobs()

    for record in records:
        click.echo(f"Backup completed: {record.id} ({_format_size(record.total_size)})")
    for error in errors:
        click.echo(f"Backup failed: {error}", err=True)

    click.echo(f"{len(records)} succeeded, {len(errors)} failed")
    if errors:
        raise SystemExit(1)


@backup_cli.command('list')
@click.argument('job_name')
def list_command(job_name):
    """List the backups stored for a job, newest first."""
    try:
        records = backup_jobs.list_records(job_name)
    except BackupError as e:
        _fail(e)

    if not records:
        click.echo(f"No backups found for job {job_name}")
        return

    for record in reversed(records):
        timestamp = record.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC')
        names = ', '.join(d.name for d in record.directories) or '-'
        click.echo(
            f"{record.id}  {timestamp}  {_format_size(record.total_size):>10}  "
            f"{'compressed' if record.compressed else 'plain':<10}  {names}"
        )


@backup_cli.command('restore')
@click.argument('backup_id')
@click.option('--target', type=click.Path(file_okay=False),
              help='Restore each directory to TARGET/<name> instead of its source path.')
@click.option('--job', 'job_name', help='Only search the storage of this job.')
def restore_command(backup_id, target, job_name):
    """Restore a backup by id."""
    try:
        restored = backup_jobs.restore_record(backup_id, target=target, job_name=job_name)
    except RestoreError as e:
        for name, cause in e.failures.items():
            click.echo(f"  {name}: {cause}", err=True)
        _fail(e)
    except BackupError as e:
        _fail(e)

    click.echo(f"Restored {len(restored)} directories from {backup_id}: {', '.join(restored)}")


@backup_cli.command('cleanup')
@click.argument('job_name')
@click.option('--dry-run', is_flag=True, help='Only show which backups would be deleted.')
def cleanup_command(job_name, dry_run):
    """Apply a job's retention policy."""
    try:
        result = backup_jobs.cleanup(job_name, dry_run=dry_run)
    except BackupError as e:
        _fail(e)

    if dry_run:
        if not result.selected:
            click.echo("No backups would be deleted")
        for backup_id in result.selected:
            click.echo(f"Would delete: {backup_id}")
        return

    for backup_id in result.deleted:
        click.echo(f"Deleted: {backup_id}")
    for backup_id, message in result.failed.items():
        click.echo(f"Failed to delete {backup_id}: {message}", err=True)

    click.echo(f"{len(result.deleted)} deleted, {len(result.failed)} failed")
    if result.failed:
        raise SystemExit(1)


@backup_cli.command('delete')
@click.argument('backup_id')
@click.option('--job', 'job_name', help='Only search the storage of this job.')
@click.confirmation_option(prompt='Delete this backup permanently?')
def delete_command(backup_id, job_name):
    """Delete one backup with all its archives."""
    try:
        owner = backup_jobs.delete_record(backup_id, job_name=job_name)
    except BackupError as e:
        _fail(e)

    click.echo(f"Deleted backup {backup_id} of job {owner}")


@backup_cli.command('daemon')
def daemon_command():
    """Run the backup scheduler until interrupted."""
    from tarkeep.scheduler import start_scheduler, stop_scheduler

    app = current_app._get_current_object()
    stop_event = threading.Event()

    def handle_signal(signum, frame):
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    # Restarts containers a crashed run left stopped
    backup_jobs.get_quiescer()

    start_scheduler(app)
    click.echo(f"Scheduler started at {datetime.now().isoformat(timespec='seconds')}, press Ctrl+C to stop")

    try:
        stop_event.wait()
    finally:
        stop_scheduler(app)
        click.echo("Scheduler stopped")
